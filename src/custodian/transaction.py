"""Candidate transaction passed through the policy and risk gates."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional

from .chain import DEFAULT_GAS_LIMIT
from .errors import ValidationError
from .money import native_to_wei, parse_wei, wei_to_native


@dataclass(frozen=True)
class PendingTransaction:
    """A transaction that has not been signed yet. Amounts are wei."""

    recipient: str
    amount_wei: int
    user_id: Optional[str] = None
    sender: Optional[str] = None
    action: str = "transfer"
    gas_price_wei: Optional[int] = None
    gas_limit: int = DEFAULT_GAS_LIMIT
    data: Optional[str] = None

    @property
    def amount(self) -> Decimal:
        return wei_to_native(self.amount_wei)

    @classmethod
    def from_native(cls, recipient: str, amount: Any, **kwargs: Any) -> "PendingTransaction":
        if not recipient:
            raise ValidationError("recipient is required")
        return cls(recipient=recipient, amount_wei=native_to_wei(amount), **kwargs)

    @classmethod
    def from_request(cls, body: Mapping[str, Any], user_id: Optional[str] = None) -> "PendingTransaction":
        """Build from an API-style dict: ``amount`` in BNB, ``to`` or ``recipient``."""
        recipient = body.get("recipient") or body.get("to")
        if body.get("amount") is None:
            raise ValidationError("amount is required")
        gas_price = body.get("gas_price_wei")
        return cls.from_native(
            recipient,
            body["amount"],
            user_id=user_id or body.get("user_id"),
            sender=body.get("sender") or body.get("from"),
            action=body.get("action") or "transfer",
            gas_price_wei=parse_wei(gas_price, "gas_price_wei") if gas_price is not None else None,
            data=body.get("data"),
        )

    def to_dict(self) -> dict:
        return {
            "recipient": self.recipient,
            "amount_wei": str(self.amount_wei),
            "amount": str(self.amount),
            "user_id": self.user_id,
            "sender": self.sender,
            "action": self.action,
            "gas_price_wei": None if self.gas_price_wei is None else str(self.gas_price_wei),
            "gas_limit": self.gas_limit,
        }
