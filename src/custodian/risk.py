"""
Heuristic risk scoring for pending transactions.

Each check returns a warning or None. The final level is the highest
warning severity; a known-bad address is always CRITICAL and stops the
remaining checks. Only CRITICAL blocks execution.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional, Sequence

from .chain import ChainClient
from .errors import StorageError
from .memory import MemoryBackend
from .money import WEI_PER_NATIVE, format_native
from .policy import DailyTracker
from .transaction import PendingTransaction

logger = logging.getLogger(__name__)


ZERO_ADDRESS = "0x" + "0" * 40
PAYMENTS_COLLECTION = "payments"
GAS_WINDOW_SIZE = 10
GAS_SPIKE_FACTOR = Decimal("1.5")
AMOUNT_HISTORY_SIZE = 10
AMOUNT_SPIKE_FACTOR = 2
HIGH_FREQUENCY_THRESHOLD = 50
ROUND_NUMBER_UNIT_WEI = 10 * WEI_PER_NATIVE


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _RANKS[self]


_RANKS = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2, RiskLevel.CRITICAL: 3}


@dataclass(frozen=True)
class RiskWarning:
    type: str
    severity: RiskLevel
    message: str

    def to_dict(self) -> dict:
        return {"type": self.type, "severity": self.severity.value, "message": self.message}


@dataclass(frozen=True)
class RiskAssessment:
    risk_level: RiskLevel = RiskLevel.LOW
    warnings: tuple[RiskWarning, ...] = field(default_factory=tuple)

    @property
    def can_execute(self) -> bool:
        return self.risk_level is not RiskLevel.CRITICAL

    @classmethod
    def from_warnings(cls, warnings: Iterable[RiskWarning]) -> "RiskAssessment":
        warnings = tuple(warnings)
        level = max((w.severity for w in warnings), key=lambda s: s.rank, default=RiskLevel.LOW)
        return cls(risk_level=level, warnings=warnings)

    def to_dict(self) -> dict:
        return {
            "risk_level": self.risk_level.value,
            "warnings": [w.to_dict() for w in self.warnings],
            "can_execute": self.can_execute,
        }


class RiskAssessor:
    """Scores transactions against chain conditions and user history."""

    def __init__(
        self,
        chain: ChainClient,
        memory: MemoryBackend,
        tracker: DailyTracker,
        bad_addresses: Optional[Iterable[str]] = None,
    ):
        self.chain = chain
        self.memory = memory
        self.tracker = tracker
        self.bad_addresses = {ZERO_ADDRESS} | {a.lower() for a in (bad_addresses or ())}
        self._gas_lock = threading.Lock()
        self._gas_window: deque[int] = deque(maxlen=GAS_WINDOW_SIZE)

    def assess_transaction(self, tx: PendingTransaction) -> RiskAssessment:
        address_warning = self.check_address(tx)
        if address_warning is not None:
            logger.warning("Known bad address in transaction to %s", tx.recipient)
            return RiskAssessment.from_warnings([address_warning])

        current_gas = self.chain.get_gas_price().wei
        warnings = [
            w for w in (
                self.check_gas_price(tx, current_gas),
                self.check_amount(tx),
                self.check_balance(tx, current_gas),
                self.check_transaction_frequency(tx),
            )
            if w is not None
        ]
        warnings.extend(self.check_suspicious_patterns(tx))

        assessment = RiskAssessment.from_warnings(warnings)
        if warnings:
            logger.info(
                "Risk assessment for %s: %s (%s)",
                tx.recipient, assessment.risk_level.value, ", ".join(w.type for w in warnings),
            )
        return assessment

    def check_address(self, tx: PendingTransaction) -> Optional[RiskWarning]:
        for role, address in (("Recipient", tx.recipient), ("Sender", tx.sender)):
            if address and address.lower() in self.bad_addresses:
                return RiskWarning(
                    type="known_bad_address",
                    severity=RiskLevel.CRITICAL,
                    message=f"{role} {address} is a known bad address",
                )
        return None

    def gas_window(self) -> list[int]:
        with self._gas_lock:
            return list(self._gas_window)

    def check_gas_price(
        self, tx: PendingTransaction, current_gas_wei: Optional[int] = None
    ) -> Optional[RiskWarning]:
        if current_gas_wei is None:
            current_gas_wei = self.chain.get_gas_price().wei
        with self._gas_lock:
            self._gas_window.append(current_gas_wei)
            average = Decimal(sum(self._gas_window)) / len(self._gas_window)

        if tx.gas_price_wei is None or average == 0:
            return None
        if tx.gas_price_wei > average * GAS_SPIKE_FACTOR:
            return RiskWarning(
                type="high_gas_price",
                severity=RiskLevel.MEDIUM,
                message=(
                    f"Gas price {tx.gas_price_wei} wei is more than "
                    f"{GAS_SPIKE_FACTOR}x the recent average ({average:.0f} wei)"
                ),
            )
        return None

    def amount_history(self, user_id: Optional[str]) -> list[int]:
        if not user_id:
            return []
        try:
            records = self.memory.query_memory(
                PAYMENTS_COLLECTION, {"user_id": user_id}, AMOUNT_HISTORY_SIZE
            )
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to load payment history for {user_id}: {e}") from e
        return [int(r["amount_wei"]) for r in records if r.get("amount_wei") is not None]

    def check_amount(
        self, tx: PendingTransaction, history: Optional[Sequence[int]] = None
    ) -> Optional[RiskWarning]:
        """Flag amounts above twice the user's historical average (wei)."""
        if history is None:
            history = self.amount_history(tx.user_id)
        if not history:
            return None
        average = Decimal(sum(history)) / len(history)
        if tx.amount_wei > average * AMOUNT_SPIKE_FACTOR:
            return RiskWarning(
                type="unusual_amount",
                severity=RiskLevel.MEDIUM,
                message=(
                    f"Amount {format_native(tx.amount_wei)} BNB is more than "
                    f"{AMOUNT_SPIKE_FACTOR}x the average of recent payments "
                    f"({format_native(int(average))} BNB)"
                ),
            )
        return None

    def check_balance(
        self, tx: PendingTransaction, gas_price_wei: Optional[int] = None
    ) -> Optional[RiskWarning]:
        if not tx.sender:
            return None
        if tx.gas_price_wei is not None:
            gas_price_wei = tx.gas_price_wei
        elif gas_price_wei is None:
            gas_price_wei = self.chain.get_gas_price().wei

        balance = self.chain.get_balance(tx.sender).balance_wei
        required = tx.amount_wei + tx.gas_limit * gas_price_wei
        if balance < required:
            return RiskWarning(
                type="insufficient_balance",
                severity=RiskLevel.HIGH,
                message=(
                    f"Balance {format_native(balance)} BNB is below amount plus "
                    f"estimated fee ({format_native(required)} BNB)"
                ),
            )
        return None

    def check_transaction_frequency(self, tx: PendingTransaction) -> Optional[RiskWarning]:
        if not tx.user_id:
            return None
        count = self.tracker.get_daily_transaction_count(tx.user_id)
        if count > HIGH_FREQUENCY_THRESHOLD:
            return RiskWarning(
                type="high_frequency",
                severity=RiskLevel.MEDIUM,
                message=f"{count} transactions today exceeds {HIGH_FREQUENCY_THRESHOLD}",
            )
        return None

    def check_suspicious_patterns(self, tx: PendingTransaction) -> list[RiskWarning]:
        warnings: list[RiskWarning] = []
        if tx.amount_wei > 0 and tx.amount_wei % ROUND_NUMBER_UNIT_WEI == 0:
            warnings.append(RiskWarning(
                type="round_number",
                severity=RiskLevel.LOW,
                message=f"Round amount {format_native(tx.amount_wei)} BNB",
            ))
        return warnings
