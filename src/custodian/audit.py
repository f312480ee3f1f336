"""
Audit log for every policy, authentication and transaction event.

Entries are append-only: built once, persisted through the memory
collaborator, then cached in a bounded recent-entry cache for point
lookups. A persistence failure means the action was not logged and is
raised to the caller as ``StorageError``.

``details`` follows a closed, versioned schema per action type:

    {"schema_version": 1, "kind": "<kind>", "changes": {...}, "context": {...}}
"""

from __future__ import annotations

import csv
import io
import json
import logging
import math
import uuid
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from .clock import Clock, SystemClock, iso_timestamp, parse_timestamp, utc_datetime
from .errors import StorageError, ValidationError
from .memory import MemoryBackend
from .storage import BoundedCache

logger = logging.getLogger(__name__)


AUDIT_COLLECTION = "audit_logs"
DETAILS_SCHEMA_VERSION = 1
DEFAULT_CACHE_SIZE = 1000
REPORT_WINDOW_DAYS = 30
REPORT_MAX_ENTRIES = 10_000
FAILURE_RATE_THRESHOLD = 0.10
HIGH_ACTIVITY_THRESHOLD = 100

CSV_FIELDS = [
    "id", "timestamp", "action_type", "user_id",
    "entity_type", "entity_id", "status", "ip_address",
]
CSV_DISPLAY_HEADERS = [
    "ID", "Timestamp", "Action Type", "Entity Type",
    "Entity ID", "User ID", "Status", "IP Address",
]
_DISPLAY_FIELD_ORDER = [
    "id", "timestamp", "action_type", "entity_type",
    "entity_id", "user_id", "status", "ip_address",
]


class ActionType(str, Enum):
    TRANSFER = "TRANSFER"
    SWAP = "SWAP"
    DEPLOY = "DEPLOY"
    CALL = "CALL"
    AUTH = "AUTH"
    POLICY_CHANGE = "POLICY_CHANGE"
    ADDRESS_ALLOW = "ADDRESS_ALLOW"
    ADDRESS_BLOCK = "ADDRESS_BLOCK"
    SESSION_INIT = "SESSION_INIT"
    PAYMENT_PREPARED = "PAYMENT_PREPARED"
    PAYMENT_REJECTED = "PAYMENT_REJECTED"
    PAYMENT_VERIFIED = "PAYMENT_VERIFIED"


class EntityType(str, Enum):
    TRANSACTION = "TRANSACTION"
    CONTRACT = "CONTRACT"
    USER = "USER"
    POLICY = "POLICY"
    SESSION = "SESSION"
    UNKNOWN = "UNKNOWN"


class AuditStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


ENTITY_TYPES: dict[str, EntityType] = {
    ActionType.TRANSFER.value: EntityType.TRANSACTION,
    ActionType.SWAP.value: EntityType.TRANSACTION,
    ActionType.DEPLOY.value: EntityType.CONTRACT,
    ActionType.CALL.value: EntityType.CONTRACT,
    ActionType.AUTH.value: EntityType.USER,
    ActionType.POLICY_CHANGE.value: EntityType.POLICY,
    ActionType.ADDRESS_ALLOW.value: EntityType.POLICY,
    ActionType.ADDRESS_BLOCK.value: EntityType.POLICY,
    ActionType.SESSION_INIT.value: EntityType.SESSION,
    ActionType.PAYMENT_PREPARED.value: EntityType.TRANSACTION,
    ActionType.PAYMENT_REJECTED.value: EntityType.TRANSACTION,
    ActionType.PAYMENT_VERIFIED.value: EntityType.TRANSACTION,
}

TRANSACTION_ACTIONS: dict[str, ActionType] = {
    "transfer": ActionType.TRANSFER,
    "swap": ActionType.SWAP,
    "deploy": ActionType.DEPLOY,
    "call": ActionType.CALL,
}


def entity_type_for(action_type: str) -> EntityType:
    return ENTITY_TYPES.get(action_type, EntityType.UNKNOWN)


def transaction_action_type(action: Optional[str]) -> ActionType:
    return TRANSACTION_ACTIONS.get((action or "").lower(), ActionType.TRANSFER)


@dataclass(frozen=True)
class DetailsSchema:
    """Allowed ``changes`` keys for one family of action types."""

    kind: str
    required: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    closed: bool = True

    def build(self, action_type: str, changes: Mapping[str, Any]) -> dict:
        missing = [k for k in self.required if k not in changes]
        if missing:
            raise ValidationError(
                f"{action_type} details missing required field(s): {', '.join(missing)}"
            )
        if self.closed:
            allowed = set(self.required) | set(self.optional)
            unknown = sorted(k for k in changes if k not in allowed)
            if unknown:
                raise ValidationError(
                    f"{action_type} details have unknown field(s): {', '.join(unknown)}"
                )
        return dict(changes)


_TRANSACTION_SCHEMA = DetailsSchema(
    kind="transaction",
    required=("from", "to", "amount"),
    optional=("token", "gas_used", "gas_cost", "status", "nonce", "session_id"),
)
_PAYMENT_DECISION_SCHEMA = DetailsSchema(
    kind="payment_decision",
    required=("session_id", "amount", "recipient"),
    optional=("action", "nonce", "message_hash", "violations", "risk_level", "warnings", "reason"),
)
GENERIC_SCHEMA = DetailsSchema(kind="generic", closed=False)

DETAILS_SCHEMAS: dict[str, DetailsSchema] = {
    ActionType.TRANSFER.value: _TRANSACTION_SCHEMA,
    ActionType.SWAP.value: _TRANSACTION_SCHEMA,
    ActionType.DEPLOY.value: _TRANSACTION_SCHEMA,
    ActionType.CALL.value: _TRANSACTION_SCHEMA,
    ActionType.AUTH.value: DetailsSchema(
        kind="auth",
        required=("event_type",),
        optional=("timestamp", "session_id", "agent_address", "nonce", "reason"),
    ),
    ActionType.POLICY_CHANGE.value: DetailsSchema(
        kind="policy_change",
        required=("field", "old_value", "new_value"),
    ),
    ActionType.ADDRESS_ALLOW.value: DetailsSchema(
        kind="address_list",
        required=("list_type", "address", "action"),
        optional=("timestamp", "reason"),
    ),
    ActionType.ADDRESS_BLOCK.value: DetailsSchema(
        kind="address_list",
        required=("list_type", "address", "action"),
        optional=("timestamp", "reason"),
    ),
    ActionType.SESSION_INIT.value: DetailsSchema(
        kind="session",
        required=("session_id", "agent_address", "nonce", "expires_at"),
    ),
    ActionType.PAYMENT_PREPARED.value: _PAYMENT_DECISION_SCHEMA,
    ActionType.PAYMENT_REJECTED.value: _PAYMENT_DECISION_SCHEMA,
    ActionType.PAYMENT_VERIFIED.value: _PAYMENT_DECISION_SCHEMA,
}

_LIFTED_METADATA = ("agent_id", "ip_address", "user_agent", "status", "error_message")


@dataclass(frozen=True)
class AuditEntry:
    """A single immutable audit record."""

    id: str
    timestamp: str
    action_type: str
    entity_type: str
    entity_id: str
    user_id: str
    agent_id: Optional[str]
    details: dict[str, Any] = field(default_factory=dict)
    status: str = AuditStatus.SUCCESS.value
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["details"] = json.loads(json.dumps(self.details))
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "AuditEntry":
        action_type = str(d.get("action_type", ""))
        return cls(
            id=str(d.get("id", "")),
            timestamp=str(d.get("timestamp", "")),
            action_type=action_type,
            entity_type=str(d.get("entity_type") or entity_type_for(action_type).value),
            entity_id=str(d.get("entity_id", "")),
            user_id=str(d.get("user_id", "")),
            agent_id=d.get("agent_id"),
            details=dict(d.get("details") or {}),
            status=str(d.get("status", AuditStatus.SUCCESS.value)),
            ip_address=str(d.get("ip_address", "unknown")),
            user_agent=str(d.get("user_agent", "unknown")),
            error_message=d.get("error_message"),
        )


@dataclass
class AuditExport:
    format: str
    count: int
    data: str

    def to_dict(self) -> dict:
        return {"format": self.format, "count": self.count, "data": self.data}


def _parse_bound(value: str):
    try:
        return parse_timestamp(value)
    except ValueError as e:
        raise ValidationError(f"Invalid date: {value}") from e


def entries_to_csv(
    entries: Iterable[AuditEntry],
    headers: Optional[list[str]] = None,
    fields: Optional[list[str]] = None,
) -> str:
    """Header row plus one fully quoted row per entry."""
    headers = headers or CSV_FIELDS
    fields = fields or CSV_FIELDS
    buf = io.StringIO()
    buf.write(",".join(headers) + "\n")
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for entry in entries:
        row = entry.to_dict()
        writer.writerow(["" if row.get(f) is None else row.get(f) for f in fields])
    return buf.getvalue().rstrip("\n")


def entries_to_display_csv(entries: Iterable[AuditEntry]) -> str:
    return entries_to_csv(entries, headers=CSV_DISPLAY_HEADERS, fields=_DISPLAY_FIELD_ORDER)


class AuditLog:
    """Append-only audit log backed by the memory collaborator."""

    def __init__(
        self,
        memory: MemoryBackend,
        clock: Optional[Clock] = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
        default_agent_id: Optional[str] = None,
    ):
        self.memory = memory
        self.clock = clock or SystemClock()
        self.default_agent_id = default_agent_id
        self._cache: BoundedCache[str, AuditEntry] = BoundedCache(cache_size)

    # ── Writing ───────────────────────────────────────────────────

    def log_action(
        self,
        action_type: ActionType | str,
        entity_id: str,
        user_id: str,
        changes: Optional[Mapping[str, Any]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> AuditEntry:
        action = action_type.value if isinstance(action_type, ActionType) else str(action_type)
        if not action:
            raise ValidationError("action_type is required")
        if not entity_id:
            raise ValidationError("entity_id is required")
        if not user_id:
            raise ValidationError("user_id is required")

        meta = dict(metadata or {})
        schema = DETAILS_SCHEMAS.get(action, GENERIC_SCHEMA)
        details = {
            "schema_version": DETAILS_SCHEMA_VERSION,
            "kind": schema.kind,
            "changes": schema.build(action, changes or {}),
            "context": {k: v for k, v in meta.items() if k not in _LIFTED_METADATA},
        }

        status = str(meta.get("status") or AuditStatus.SUCCESS.value).upper()
        if status not in {s.value for s in AuditStatus}:
            raise ValidationError(f"Invalid audit status: {status}")

        entry = AuditEntry(
            id=str(uuid.uuid4()),
            timestamp=iso_timestamp(self.clock),
            action_type=action,
            entity_type=entity_type_for(action).value,
            entity_id=str(entity_id),
            user_id=str(user_id),
            agent_id=meta.get("agent_id") or self.default_agent_id,
            details=details,
            status=status,
            ip_address=meta.get("ip_address") or "unknown",
            user_agent=meta.get("user_agent") or "unknown",
            error_message=meta.get("error_message"),
        )

        try:
            self.memory.store(AUDIT_COLLECTION, entry.to_dict())
        except Exception as e:
            logger.error("Failed to log action %s for %s: %s", action, user_id, e)
            raise StorageError(f"Failed to log action: {e}") from e

        self._cache.put(entry.id, entry)
        logger.info(
            "Action logged: %s entity=%s user=%s status=%s",
            action, entity_id, user_id, entry.status,
        )
        return entry

    def log_transaction(
        self,
        tx_hash: str,
        details: Mapping[str, Any],
        user_id: str,
    ) -> AuditEntry:
        tx_status = details.get("status")
        changes = {
            "from": details.get("from"),
            "to": details.get("to") or details.get("recipient"),
            "amount": details.get("amount"),
            "token": details.get("token") or "BNB",
            "gas_used": details.get("gas_used"),
            "gas_cost": details.get("gas_cost_bnb"),
            "status": tx_status,
        }
        for key in ("nonce", "session_id"):
            if details.get(key) is not None:
                changes[key] = details[key]
        return self.log_action(
            transaction_action_type(details.get("action")),
            tx_hash,
            user_id,
            changes,
            {
                "agent_id": details.get("agent_id"),
                "block_number": details.get("block_number"),
                "chain_id": details.get("chain_id"),
                "status": AuditStatus.SUCCESS.value if tx_status == "success" else AuditStatus.FAILED.value,
                "error_message": details.get("error_message"),
            },
        )

    def log_policy_change(self, policy_id: str, old_value: Any, new_value: Any, user_id: str) -> AuditEntry:
        return self.log_action(
            ActionType.POLICY_CHANGE,
            policy_id,
            user_id,
            {"field": policy_id, "old_value": old_value, "new_value": new_value},
            {"change_type": "policy_update"},
        )

    def log_auth_event(
        self,
        user_id: str,
        event_type: str,
        metadata: Optional[Mapping[str, Any]] = None,
        changes: Optional[Mapping[str, Any]] = None,
    ) -> AuditEntry:
        meta = dict(metadata or {})
        meta["status"] = AuditStatus.FAILED.value if event_type == "failed" else meta.get("status", AuditStatus.SUCCESS.value)
        return self.log_action(
            ActionType.AUTH,
            user_id,
            user_id,
            {"event_type": event_type, "timestamp": iso_timestamp(self.clock), **(changes or {})},
            meta,
        )

    def log_address_list_change(
        self,
        user_id: str,
        list_type: str,
        address: str,
        action: str,
        reason: Optional[str] = None,
    ) -> AuditEntry:
        action_type = ActionType.ADDRESS_ALLOW if list_type == "allow" else ActionType.ADDRESS_BLOCK
        changes = {
            "list_type": list_type,
            "address": address,
            "action": action,
            "timestamp": iso_timestamp(self.clock),
        }
        if reason:
            changes["reason"] = reason
        return self.log_action(action_type, address, user_id, changes)

    # ── Reading ───────────────────────────────────────────────────

    def get_audit_trail(
        self,
        user_id: Optional[str] = None,
        action_type: Optional[str] = None,
        entity_type: Optional[str] = None,
        status: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditEntry]:
        """Exact-match filters plus an inclusive timestamp range, newest first."""
        filters = {
            "user_id": user_id,
            "action_type": action_type,
            "entity_type": entity_type,
            "status": status,
        }
        filters = {k: v for k, v in filters.items() if v is not None}
        ranged = bool(start_date or end_date)
        try:
            records = self.memory.query_memory(
                AUDIT_COLLECTION, filters, None if ranged else limit * 2
            )
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to get audit trail: {e}") from e

        entries = [AuditEntry.from_dict(r) for r in records]
        if ranged:
            start = _parse_bound(start_date) if start_date else None
            end = _parse_bound(end_date) if end_date else None
            entries = [
                e for e in entries
                if (start is None or parse_timestamp(e.timestamp) >= start)
                and (end is None or parse_timestamp(e.timestamp) <= end)
            ]

        entries.sort(key=lambda e: parse_timestamp(e.timestamp), reverse=True)
        entries = entries[:limit]
        logger.debug("Audit trail retrieved: %s (%d entries)", filters, len(entries))
        return entries

    def get_user_audit_trail(self, user_id: str, limit: int = 100) -> list[AuditEntry]:
        return self.get_audit_trail(user_id=user_id, limit=limit)

    def get_transaction_audit(self, tx_hash: str) -> Optional[AuditEntry]:
        try:
            results = self.memory.query_memory(AUDIT_COLLECTION, {"entity_id": tx_hash}, 1)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to get transaction audit: {e}") from e
        return AuditEntry.from_dict(results[0]) if results else None

    def get_cached_entry(self, entry_id: str) -> Optional[AuditEntry]:
        return self._cache.get(entry_id)

    def get_entry(self, entry_id: str) -> Optional[AuditEntry]:
        """Point lookup: recent-entry cache first, then the memory collaborator."""
        cached = self._cache.get(entry_id)
        if cached is not None:
            return cached
        try:
            results = self.memory.query_memory(AUDIT_COLLECTION, {"id": entry_id}, 1)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to get audit entry: {e}") from e
        return AuditEntry.from_dict(results[0]) if results else None

    # ── Reporting ─────────────────────────────────────────────────

    def generate_compliance_report(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> dict:
        end = _parse_bound(end_date) if end_date else utc_datetime(self.clock)
        start = _parse_bound(start_date) if start_date else end - timedelta(days=REPORT_WINDOW_DAYS)

        logs = self.get_audit_trail(
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            limit=REPORT_MAX_ENTRIES,
        )
        stats = self.generate_statistics(logs)
        report = {
            "report_id": str(uuid.uuid4()),
            "generated_at": iso_timestamp(self.clock),
            "period": {
                "start": start.isoformat(),
                "end": end.isoformat(),
                "days": math.ceil((end - start).total_seconds() / 86400),
            },
            "summary": self.generate_summary(logs, stats),
            "statistics": stats,
            "action_breakdown": {
                action: [e.to_dict() for e in entries]
                for action, entries in self.group_by_action_type(logs).items()
            },
            "user_activity": self.group_by_user(logs),
            "anomalies": self.identify_anomalies(logs),
            "total_entries": len(logs),
        }
        logger.info(
            "Compliance report generated: %s to %s (%d entries)",
            report["period"]["start"], report["period"]["end"], len(logs),
        )
        return report

    @staticmethod
    def generate_statistics(logs: list[AuditEntry]) -> dict:
        stats: dict[str, Any] = {
            "total_actions": len(logs),
            "successful_actions": sum(1 for e in logs if e.status == AuditStatus.SUCCESS.value),
            "failed_actions": sum(1 for e in logs if e.status == AuditStatus.FAILED.value),
            "unique_users": len({e.user_id for e in logs}),
            "action_types": {},
            "entity_types": {},
            "daily_activity": {},
        }
        for e in logs:
            stats["action_types"][e.action_type] = stats["action_types"].get(e.action_type, 0) + 1
            stats["entity_types"][e.entity_type] = stats["entity_types"].get(e.entity_type, 0) + 1
            day = e.timestamp.split("T")[0]
            stats["daily_activity"][day] = stats["daily_activity"].get(day, 0) + 1
        return stats

    @staticmethod
    def group_by_action_type(logs: list[AuditEntry]) -> dict[str, list[AuditEntry]]:
        grouped: dict[str, list[AuditEntry]] = {}
        for e in logs:
            grouped.setdefault(e.action_type, []).append(e)
        return grouped

    @staticmethod
    def group_by_user(logs: list[AuditEntry]) -> dict[str, dict]:
        users: dict[str, dict] = {}
        for e in logs:
            user = users.setdefault(
                e.user_id,
                {
                    "user_id": e.user_id,
                    "total_actions": 0,
                    "action_types": {},
                    "first_action": e.timestamp,
                    "last_action": e.timestamp,
                },
            )
            user["total_actions"] += 1
            user["action_types"][e.action_type] = user["action_types"].get(e.action_type, 0) + 1
            ts = parse_timestamp(e.timestamp)
            if ts < parse_timestamp(user["first_action"]):
                user["first_action"] = e.timestamp
            if ts > parse_timestamp(user["last_action"]):
                user["last_action"] = e.timestamp
        return users

    def identify_anomalies(self, logs: list[AuditEntry]) -> list[dict]:
        anomalies: list[dict] = []

        failed = sum(1 for e in logs if e.status == AuditStatus.FAILED.value)
        if logs and failed > len(logs) * FAILURE_RATE_THRESHOLD:
            anomalies.append({
                "type": "high_failure_rate",
                "severity": "medium",
                "message": f"High failure rate: {failed}/{len(logs)} ({failed / len(logs) * 100:.1f}%)",
                "count": failed,
            })

        for user in self.group_by_user(logs).values():
            if user["total_actions"] > HIGH_ACTIVITY_THRESHOLD:
                anomalies.append({
                    "type": "high_activity",
                    "severity": "low",
                    "message": (
                        f"User {user['user_id']} has unusually high activity: "
                        f"{user['total_actions']} actions"
                    ),
                    "user_id": user["user_id"],
                    "count": user["total_actions"],
                })
        return anomalies

    @staticmethod
    def generate_summary(logs: list[AuditEntry], stats: dict) -> dict:
        total = stats["total_actions"]
        success_rate = f"{stats['successful_actions'] / total * 100:.1f}%" if total else "N/A"

        def _top(counts: dict[str, int]) -> str:
            if not counts:
                return "N/A"
            return max(counts.items(), key=lambda kv: kv[1])[0]

        return {
            "total_actions": total,
            "success_rate": success_rate,
            "unique_users": stats["unique_users"],
            "most_common_action": _top(stats["action_types"]),
            "busiest_day": _top(stats["daily_activity"]),
        }

    def export_audit_log(self, format: str = "json", **filters: Any) -> AuditExport:
        fmt = format.lower()
        if fmt not in {"json", "csv"}:
            raise ValidationError(f"Unsupported export format: {format}")
        filters.setdefault("limit", REPORT_MAX_ENTRIES)
        logs = self.get_audit_trail(**filters)
        if fmt == "csv":
            data = entries_to_csv(logs)
        else:
            data = json.dumps([e.to_dict() for e in logs])
        logger.info("Audit log exported as %s (%d entries)", fmt, len(logs))
        return AuditExport(format=fmt, count=len(logs), data=data)
