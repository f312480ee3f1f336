"""
Per-wallet security settings: spend caps and allow/deny lists.

Kept in their own store, keyed by lower-cased wallet address. They feed
the payment policy only when ``apply_lists_to_policy`` copies the lists
into a user's policy.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from typing import Any, Optional

from eth_utils import is_address

from .audit import AuditLog
from .clock import Clock, SystemClock, iso_timestamp
from .errors import NotFoundError, StorageError, ValidationError
from .money import format_native, native_to_wei
from .policy import Policy, PolicyEngine

logger = logging.getLogger(__name__)


CAP_TYPES = ("per_transaction", "daily", "weekly", "monthly")
LIST_TYPES = ("allow", "deny")
BLOCKED_SCORE = 100
CAP_EXCEEDED_SCORE = 20
NOT_ALLOWLISTED_SCORE = 10
MAX_RISK_SCORE = 100


def _wallet_key(wallet: str) -> str:
    if not wallet or not is_address(wallet):
        raise ValidationError(f"Invalid wallet address: {wallet}")
    return wallet.lower()


@dataclass(frozen=True)
class SpendCap:
    id: str
    type: str
    limit: int
    current: int
    created_at: str

    def would_exceed(self, amount_wei: int) -> bool:
        if self.type == "per_transaction":
            return amount_wei > self.limit
        return self.current + amount_wei > self.limit

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "limit": format_native(self.limit),
            "limit_wei": str(self.limit),
            "current": format_native(self.current),
            "current_wei": str(self.current),
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class AddressListEntry:
    id: str
    address: str
    type: str
    reason: Optional[str]
    created_at: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "address": self.address,
            "type": self.type,
            "reason": self.reason,
            "created_at": self.created_at,
        }


@dataclass
class WalletSecurity:
    spend_caps: list[SpendCap]
    entries: list[AddressListEntry]


class SecuritySettings:
    """CRUD over per-wallet caps and lists, plus a pre-flight transaction check."""

    def __init__(
        self,
        audit: AuditLog,
        policy: Optional[PolicyEngine] = None,
        clock: Optional[Clock] = None,
    ):
        self.audit = audit
        self.policy = policy
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._wallets: dict[str, WalletSecurity] = {}

    def _wallet(self, wallet: str) -> WalletSecurity:
        key = _wallet_key(wallet)
        return self._wallets.setdefault(key, WalletSecurity(spend_caps=[], entries=[]))

    # ── Spend caps ────────────────────────────────────────────────

    def add_spend_cap(self, wallet: str, cap_type: str, limit: Any) -> SpendCap:
        if cap_type not in CAP_TYPES:
            raise ValidationError(f"Invalid cap type: {cap_type} (expected one of {', '.join(CAP_TYPES)})")
        limit_wei = native_to_wei(limit)
        if limit_wei <= 0:
            raise ValidationError("Cap limit must be positive")
        cap = SpendCap(
            id=str(uuid.uuid4()),
            type=cap_type,
            limit=limit_wei,
            current=0,
            created_at=iso_timestamp(self.clock),
        )
        with self._lock:
            self._wallet(wallet).spend_caps.append(cap)
        logger.info("Spend cap added for %s: %s %s BNB", wallet, cap_type, format_native(limit_wei))
        return cap

    def list_spend_caps(self, wallet: str) -> list[SpendCap]:
        with self._lock:
            return list(self._wallet(wallet).spend_caps)

    def remove_spend_cap(self, wallet: str, cap_id: str) -> SpendCap:
        with self._lock:
            state = self._wallet(wallet)
            for cap in state.spend_caps:
                if cap.id == cap_id:
                    state.spend_caps.remove(cap)
                    break
            else:
                raise NotFoundError(f"Spend cap not found: {cap_id}")
        logger.info("Spend cap removed for %s: %s", wallet, cap_id)
        return cap

    def record_spend(self, wallet: str, amount_wei: int) -> list[SpendCap]:
        """Add a committed spend to every cumulative cap of the wallet."""
        with self._lock:
            state = self._wallet(wallet)
            state.spend_caps = [
                cap if cap.type == "per_transaction" else replace(cap, current=cap.current + amount_wei)
                for cap in state.spend_caps
            ]
            return list(state.spend_caps)

    # ── Allow / deny lists ────────────────────────────────────────

    def add_list_entry(
        self,
        wallet: str,
        address: str,
        list_type: str,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> AddressListEntry:
        if list_type not in LIST_TYPES:
            raise ValidationError(f"Invalid list type: {list_type}")
        if not address or not is_address(address):
            raise ValidationError(f"Invalid address: {address}")
        entry = AddressListEntry(
            id=str(uuid.uuid4()),
            address=address.lower(),
            type=list_type,
            reason=reason,
            created_at=iso_timestamp(self.clock),
        )
        with self._lock:
            state = self._wallet(wallet)
            if any(e.address == entry.address and e.type == list_type for e in state.entries):
                raise ValidationError(f"{address} is already on the {list_type} list")
            state.entries.append(entry)
        try:
            self.audit.log_address_list_change(user_id or wallet.lower(), list_type, entry.address, "add", reason)
        except StorageError:
            with self._lock:
                state.entries.remove(entry)
            raise
        return entry

    def list_entries(self, wallet: str, list_type: Optional[str] = None) -> list[AddressListEntry]:
        with self._lock:
            entries = list(self._wallet(wallet).entries)
        if list_type:
            entries = [e for e in entries if e.type == list_type]
        return entries

    def remove_list_entry(self, wallet: str, entry_id: str, user_id: Optional[str] = None) -> AddressListEntry:
        with self._lock:
            state = self._wallet(wallet)
            for index, entry in enumerate(state.entries):
                if entry.id == entry_id:
                    del state.entries[index]
                    break
            else:
                raise NotFoundError(f"List entry not found: {entry_id}")
        try:
            self.audit.log_address_list_change(user_id or wallet.lower(), entry.type, entry.address, "remove")
        except StorageError:
            with self._lock:
                state.entries.insert(index, entry)
            raise
        return entry

    # ── Checks ────────────────────────────────────────────────────

    def verify_transaction(self, wallet: str, to: str, amount: Any) -> dict:
        amount_wei = native_to_wei(amount)
        target = (to or "").lower()
        entries = self.list_entries(wallet)
        warnings: list[dict] = []
        score = 0

        if any(e.type == "deny" and e.address == target for e in entries):
            warnings.append({
                "type": "blocked_address",
                "severity": "critical",
                "message": f"Recipient {to} is on the deny list",
            })
            score = BLOCKED_SCORE

        allowed = [e for e in entries if e.type == "allow"]
        if allowed and not any(e.address == target for e in allowed):
            warnings.append({
                "type": "not_allowlisted",
                "severity": "medium",
                "message": f"Recipient {to} is not on the allow list",
            })
            score += NOT_ALLOWLISTED_SCORE

        for cap in self.list_spend_caps(wallet):
            if cap.would_exceed(amount_wei):
                warnings.append({
                    "type": "spend_cap_exceeded",
                    "severity": "high",
                    "message": (
                        f"Amount {format_native(amount_wei)} BNB exceeds {cap.type} cap "
                        f"of {format_native(cap.limit)} BNB"
                    ),
                    "cap_id": cap.id,
                })
                score += CAP_EXCEEDED_SCORE

        return {
            "allowed": not any(w["severity"] == "critical" for w in warnings),
            "warnings": warnings,
            "risk_score": min(score, MAX_RISK_SCORE),
        }

    def apply_lists_to_policy(self, wallet: str, user_id: str) -> Policy:
        if self.policy is None:
            raise ValidationError("No policy engine configured")
        entries = self.list_entries(wallet)
        return self.policy.update_policy(
            user_id,
            allowed_addresses=[e.address for e in entries if e.type == "allow"],
            denied_addresses=[e.address for e in entries if e.type == "deny"],
        )
