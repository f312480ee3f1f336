"""
Spending policy: per-user limits, allow/deny lists, and daily tracking.

PolicyStore caches the policy loaded from the memory collaborator and
drops the cache entry on every write. DailyTracker keeps counters per
``(user_id, UTC day)``; only committed payments are recorded there.
PolicyEngine combines the two into a compliance verdict.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional

from eth_utils import is_address

from .clock import Clock, SystemClock, day_key
from .errors import StorageError, ValidationError
from .memory import MemoryBackend
from .money import format_native, native_to_wei
from .storage import InMemoryTrackingStore, KeyedLocks, TrackingStore
from .transaction import PendingTransaction

if TYPE_CHECKING:
    from .audit import AuditLog

logger = logging.getLogger(__name__)


POLICY_PREFERENCE_KEY = "payment_policy"
DEFAULT_MAX_DAILY_SPEND_WEI = native_to_wei("1")
DEFAULT_MAX_SINGLE_TX_WEI = native_to_wei("0.1")
DEFAULT_DAILY_TX_LIMIT = 100


def _normalize_addresses(addresses: Optional[Iterable[str]]) -> tuple[str, ...]:
    if not addresses:
        return ()
    out: list[str] = []
    for address in addresses:
        if not is_address(address):
            raise ValidationError(f"Invalid address in policy list: {address}")
        if address.lower() not in out:
            out.append(address.lower())
    return tuple(out)


@dataclass(frozen=True)
class Policy:
    """Per-user spending policy. Amounts are wei; addresses are lower-cased."""

    max_daily_spend: int = DEFAULT_MAX_DAILY_SPEND_WEI
    max_single_tx: int = DEFAULT_MAX_SINGLE_TX_WEI
    daily_tx_limit: int = DEFAULT_DAILY_TX_LIMIT
    allowed_addresses: tuple[str, ...] = ()
    denied_addresses: tuple[str, ...] = ()

    def allows(self, address: str) -> bool:
        return not self.allowed_addresses or address.lower() in self.allowed_addresses

    def denies(self, address: str) -> bool:
        return address.lower() in self.denied_addresses

    def to_dict(self) -> dict:
        return {
            "max_daily_spend": str(self.max_daily_spend),
            "max_single_tx": str(self.max_single_tx),
            "daily_tx_limit": self.daily_tx_limit,
            "allowed_addresses": list(self.allowed_addresses),
            "denied_addresses": list(self.denied_addresses),
        }

    def to_display(self) -> dict:
        d = self.to_dict()
        d["max_daily_spend_bnb"] = format_native(self.max_daily_spend)
        d["max_single_tx_bnb"] = format_native(self.max_single_tx)
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Policy":
        default = get_default_policy()
        try:
            return cls(
                max_daily_spend=int(d.get("max_daily_spend", default.max_daily_spend)),
                max_single_tx=int(d.get("max_single_tx", default.max_single_tx)),
                daily_tx_limit=int(d.get("daily_tx_limit", default.daily_tx_limit)),
                allowed_addresses=_normalize_addresses(d.get("allowed_addresses")),
                denied_addresses=_normalize_addresses(d.get("denied_addresses")),
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Malformed stored policy: {e}") from e


def get_default_policy() -> Policy:
    return Policy()


@dataclass
class PaymentSummary:
    amount_wei: int
    recipient: str
    tx_hash: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "amount_wei": str(self.amount_wei),
            "amount": format_native(self.amount_wei),
            "recipient": self.recipient,
            "tx_hash": self.tx_hash,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
        }


@dataclass
class DailyTrackingRecord:
    tx_count: int = 0
    spent: int = 0
    payments: list[PaymentSummary] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "tx_count": self.tx_count,
            "spent": str(self.spent),
            "payments": [p.to_dict() for p in self.payments],
        }


@dataclass
class ComplianceResult:
    compliant: bool
    violations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"compliant": self.compliant, "violations": list(self.violations)}


class PolicyStore:
    """Loads, caches and persists policies through the memory collaborator."""

    def __init__(self, memory: MemoryBackend):
        self.memory = memory
        self._lock = threading.Lock()
        self._cache: dict[str, Policy] = {}

    def get_policy(self, user_id: str) -> Policy:
        with self._lock:
            cached = self._cache.get(user_id)
        if cached is not None:
            return cached

        try:
            prefs = self.memory.get_user_preferences(user_id)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to load policy for {user_id}: {e}") from e

        stored = prefs.get(POLICY_PREFERENCE_KEY)
        policy = Policy.from_dict(stored) if stored else get_default_policy()
        with self._lock:
            # A concurrent loader may have won; keep the first object
            policy = self._cache.setdefault(user_id, policy)
        return policy

    def store_policy(self, user_id: str, policy: Policy) -> dict:
        try:
            self.memory.store_user_preference(user_id, POLICY_PREFERENCE_KEY, policy.to_dict())
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to store policy for {user_id}: {e}") from e
        self.invalidate(user_id)
        logger.info("Policy stored for %s", user_id)
        return {"success": True, "policy": policy.to_dict()}

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._cache.pop(user_id, None)


class DailyTracker:
    """Per-user, per-UTC-day transaction count and spend."""

    def __init__(self, store: Optional[TrackingStore] = None, clock: Optional[Clock] = None):
        self.store = store or InMemoryTrackingStore(DailyTrackingRecord)
        self.clock = clock or SystemClock()
        self._locks = KeyedLocks()

    def get_today_key(self) -> str:
        return day_key(self.clock)

    def record_payment(self, user_id: str, payment: PaymentSummary) -> DailyTrackingRecord:
        if payment.timestamp is None:
            payment = replace(payment, timestamp=int(self.clock.now()))
        with self._locks.hold(user_id):
            record = self.store.get_or_create(user_id, self.get_today_key())
            record.tx_count += 1
            record.spent += payment.amount_wei
            record.payments.append(payment)
        logger.info(
            "Payment tracked for %s: %s BNB (%d today)",
            user_id, format_native(payment.amount_wei), record.tx_count,
        )
        return record

    def get_record(self, user_id: str) -> Optional[DailyTrackingRecord]:
        return self.store.get(user_id, self.get_today_key())

    def get_daily_spending(self, user_id: str) -> int:
        record = self.get_record(user_id)
        return record.spent if record else 0

    def get_daily_transaction_count(self, user_id: str) -> int:
        record = self.get_record(user_id)
        return record.tx_count if record else 0

    def clear_old_tracking(self) -> int:
        """Drop every record not keyed to today. Idempotent."""
        removed = self.store.retain_only(self.get_today_key())
        if removed:
            logger.info("Cleared %d stale tracking record(s)", removed)
        return removed


class PolicyEngine:
    """Evaluates candidate transactions and applies policy changes."""

    def __init__(
        self,
        store: PolicyStore,
        tracker: DailyTracker,
        audit: Optional["AuditLog"] = None,
    ):
        self.store = store
        self.tracker = tracker
        self.audit = audit
        self._locks = KeyedLocks()

    def get_policy(self, user_id: str) -> Policy:
        return self.store.get_policy(user_id)

    def check_policy_compliance(self, tx: PendingTransaction, user_id: str) -> ComplianceResult:
        """
        Run every rule and collect violations in a fixed order:
        allowlist, denylist, single-tx cap, daily spend, daily count.
        All rules run; none short-circuits the others.
        """
        policy = self.get_policy(user_id)
        violations: list[str] = []
        recipient = tx.recipient or ""

        if not policy.allows(recipient):
            violations.append(f"Recipient {recipient} is not on allowlist")

        if policy.denies(recipient):
            violations.append(f"Recipient {recipient} is on denylist")

        if tx.amount_wei > policy.max_single_tx:
            violations.append(
                f"Amount {format_native(tx.amount_wei)} BNB exceeds single transaction limit "
                f"of {format_native(policy.max_single_tx)} BNB"
            )

        spent = self.tracker.get_daily_spending(user_id)
        if spent + tx.amount_wei > policy.max_daily_spend:
            violations.append(
                f"Daily total {format_native(spent + tx.amount_wei)} BNB exceeds daily spend limit "
                f"of {format_native(policy.max_daily_spend)} BNB"
            )

        count = self.tracker.get_daily_transaction_count(user_id)
        if count >= policy.daily_tx_limit:
            violations.append(
                f"{count} transactions today exceeds daily transaction count limit "
                f"of {policy.daily_tx_limit}"
            )

        if violations:
            logger.warning("Policy check failed for %s: %s", user_id, "; ".join(violations))
        return ComplianceResult(compliant=not violations, violations=violations)

    def set_spending_limit(self, user_id: str, limit_bnb: Decimal | str | float) -> dict:
        if not user_id:
            raise ValidationError("user_id is required")
        limit_wei = native_to_wei(limit_bnb)
        if limit_wei <= 0:
            raise ValidationError("Spending limit must be positive")
        policy = self.update_policy(user_id, max_daily_spend=limit_wei)
        return {
            "success": True,
            "max_daily_spend_bnb": format_native(policy.max_daily_spend),
            "policy": policy.to_dict(),
        }

    def update_policy(
        self,
        user_id: str,
        max_daily_spend: Optional[int] = None,
        max_single_tx: Optional[int] = None,
        daily_tx_limit: Optional[int] = None,
        allowed_addresses: Optional[Iterable[str]] = None,
        denied_addresses: Optional[Iterable[str]] = None,
    ) -> Policy:
        """
        Merge the given fields into the user's stored policy.

        Each field is independent: amounts are wei, lists replace the
        stored lists wholesale. Every changed field is audit-logged.
        """
        if not user_id:
            raise ValidationError("user_id is required")

        changes: dict[str, Any] = {}
        if max_daily_spend is not None:
            changes["max_daily_spend"] = self._positive(max_daily_spend, "max_daily_spend")
        if max_single_tx is not None:
            changes["max_single_tx"] = self._positive(max_single_tx, "max_single_tx")
        if daily_tx_limit is not None:
            changes["daily_tx_limit"] = self._positive(daily_tx_limit, "daily_tx_limit")
        if allowed_addresses is not None:
            changes["allowed_addresses"] = _normalize_addresses(allowed_addresses)
        if denied_addresses is not None:
            changes["denied_addresses"] = _normalize_addresses(denied_addresses)

        with self._locks.hold(user_id):
            current = self.store.get_policy(user_id)
            if not changes:
                return current
            updated = replace(current, **changes)
            self.store.store_policy(user_id, updated)

        if self.audit is not None:
            old, new = current.to_dict(), updated.to_dict()
            for name in changes:
                if old[name] != new[name]:
                    self.audit.log_policy_change(name, old[name], new[name], user_id)
        logger.info("Policy updated for %s: %s", user_id, ", ".join(sorted(changes)))
        return updated

    @staticmethod
    def _positive(value: Any, name: str) -> int:
        try:
            number = int(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"{name} must be an integer") from e
        if number <= 0:
            raise ValidationError(f"{name} must be positive")
        return number
