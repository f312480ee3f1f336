"""
Payment payload signing and verification.

A payload is hashed as keccak256 over its canonical JSON form (sorted
keys, no whitespace, no floats) and the hash is signed as an EIP-191
personal message with the injected agent key. Verification recomputes
the hash and recovers the signer; it never raises.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import is_address, keccak

from .chain import DEFAULT_CHAIN_ID
from .clock import Clock, SystemClock
from .errors import ReplayError, SignatureError, ValidationError
from .storage import InMemoryNonceStore, NonceStore

logger = logging.getLogger(__name__)


REQUIRED_PAYLOAD_FIELDS = ("action", "amount", "recipient", "nonce")
DEFAULT_SIGNATURE_TTL_SECONDS = 3600
SIGNATURE_HEX_LENGTH = 130  # r (32 bytes) + s (32 bytes) + v (1 byte)


def _strip_0x(value: str) -> str:
    return value[2:] if value.lower().startswith("0x") else value


def _normalize_for_canonical_json(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _normalize_for_canonical_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_canonical_json(item) for item in value]
    if isinstance(value, float):
        raise ValueError("Floats are not allowed in signed payloads; use wei strings")
    if isinstance(value, (str, int, bool)) or value is None:
        return value
    raise ValueError(f"Unsupported payload value type: {type(value).__name__}")


def canonical_json_bytes(value: Any) -> bytes:
    return json.dumps(
        _normalize_for_canonical_json(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def canonical_json_hash(value: Any) -> str:
    """keccak256 of the canonical JSON bytes, 0x-prefixed."""
    return "0x" + keccak(canonical_json_bytes(value)).hex()


@dataclass(frozen=True)
class SignedPayload:
    payload: dict[str, Any]
    message_hash: str
    signature: str

    @property
    def nonce(self) -> int:
        return int(self.payload["nonce"])

    def to_dict(self) -> dict:
        return {
            "payload": json.loads(json.dumps(self.payload)),
            "message_hash": self.message_hash,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "SignedPayload":
        return cls(
            payload=dict(d.get("payload") or {}),
            message_hash=str(d.get("message_hash", "")),
            signature=str(d.get("signature", "")),
        )


@dataclass(frozen=True)
class SignedBatch(SignedPayload):
    """Several sub-actions under one signature and one nonce."""

    actions: tuple[dict, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["actions"] = [dict(a) for a in self.actions]
        return d


class SignatureService:
    """Signs payment payloads with the agent key and enforces nonce rules."""

    def __init__(
        self,
        private_key: str,
        nonces: Optional[NonceStore] = None,
        clock: Optional[Clock] = None,
        chain_id: int = DEFAULT_CHAIN_ID,
    ):
        try:
            self._account = Account.from_key(private_key)
        except Exception as e:
            raise ValidationError("Invalid agent private key") from e
        self.nonces = nonces or InMemoryNonceStore()
        self.clock = clock or SystemClock()
        self.chain_id = chain_id

    @property
    def address(self) -> str:
        return self._account.address

    # ── Signing ───────────────────────────────────────────────────

    def generate_payment_signature(self, payload: Mapping[str, Any]) -> SignedPayload:
        missing = [k for k in REQUIRED_PAYLOAD_FIELDS if payload.get(k) in (None, "")]
        if missing:
            raise ValidationError(f"Payload missing required field(s): {', '.join(missing)}")

        body = dict(payload)
        body.setdefault("signer", self.address)
        body.setdefault("chain_id", self.chain_id)
        if body["signer"].lower() != self.address.lower():
            raise SignatureError("Payload signer does not match the agent key")

        try:
            message_hash = canonical_json_hash(body)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        signed = Account.sign_message(encode_defunct(hexstr=message_hash), self._account.key)
        signature = "0x" + _strip_0x(signed.signature.hex())
        logger.debug("Signed %s payload nonce=%s hash=%s", body["action"], body["nonce"], message_hash)
        return SignedPayload(payload=body, message_hash=message_hash, signature=signature)

    def create_single_tx_signature(
        self,
        actions: Sequence[Mapping[str, Any]],
        user_id: Optional[str] = None,
        expires: Optional[int] = None,
    ) -> SignedBatch:
        """
        Sign an ordered batch of ``{type, target, data?, value?}`` actions.

        The batch is executed by the agent itself, so the payload
        recipient is the signer and the amount is the summed ``value``.
        """
        if not actions:
            raise ValidationError("Batch must contain at least one action")
        normalized: list[dict] = []
        total = 0
        for i, action in enumerate(actions):
            if not action.get("type") or not action.get("target"):
                raise ValidationError(f"Batch action {i} needs type and target")
            value = int(action.get("value") or 0)
            if value < 0:
                raise ValidationError(f"Batch action {i} has a negative value")
            total += value
            normalized.append({
                "type": str(action["type"]),
                "target": str(action["target"]),
                "data": action.get("data"),
                "value": str(value),
            })

        payload = {
            "action": "batch",
            "actions": normalized,
            "amount": str(total),
            "recipient": self.address,
            "nonce": self.nonces.issue(user_id or self.address),
            "expires": expires or int(self.clock.now()) + DEFAULT_SIGNATURE_TTL_SECONDS,
        }
        if user_id:
            payload["user_id"] = user_id
        signed = self.generate_payment_signature(payload)
        logger.info("Signed batch of %d action(s) nonce=%s", len(normalized), payload["nonce"])
        return SignedBatch(
            payload=signed.payload,
            message_hash=signed.message_hash,
            signature=signed.signature,
            actions=tuple(normalized),
        )

    def sign_contract_call(
        self,
        contract_address: str,
        method: str,
        args: Optional[Sequence[Any]] = None,
        user_id: Optional[str] = None,
        value_wei: int = 0,
        expires: Optional[int] = None,
    ) -> SignedPayload:
        if not is_address(contract_address):
            raise ValidationError(f"Invalid contract address: {contract_address}")
        if not method:
            raise ValidationError("method is required")
        payload = {
            "action": "call",
            "amount": str(int(value_wei)),
            "recipient": contract_address,
            "method": method,
            "args": list(args or []),
            "nonce": self.nonces.issue(user_id or self.address),
            "expires": expires or int(self.clock.now()) + DEFAULT_SIGNATURE_TTL_SECONDS,
        }
        if user_id:
            payload["user_id"] = user_id
        return self.generate_payment_signature(payload)

    # ── Verification ──────────────────────────────────────────────

    def verify_signature(self, payment: SignedPayload | Mapping[str, Any]) -> bool:
        """Recompute the hash and check it was signed by the claimed signer."""
        try:
            if not isinstance(payment, SignedPayload):
                payment = SignedPayload.from_dict(payment)
            payload = payment.payload
            expected_hash = canonical_json_hash(payload)
            if payment.message_hash and payment.message_hash.lower() != expected_hash:
                return False
            recovered = Account.recover_message(
                encode_defunct(hexstr=expected_hash),
                signature=bytes.fromhex(_strip_0x(payment.signature)),
            )
            claimed = str(payload.get("signer") or self.address)
            return recovered.lower() == claimed.lower()
        except Exception as e:
            logger.debug("Signature verification failed: %s", e)
            return False

    def verify_expiration(self, payload: Mapping[str, Any]) -> bool:
        try:
            return int(payload["expires"]) > self.clock.now()
        except (KeyError, TypeError, ValueError):
            return False

    def verify_nonce(self, user_id: str, nonce: Any) -> bool:
        try:
            value = int(nonce)
        except (TypeError, ValueError):
            return False
        if isinstance(nonce, bool) or value <= 0:
            return False
        return not self.nonces.is_consumed(user_id, value)

    def consume_nonce(self, user_id: str, nonce: int) -> None:
        """Mark a nonce spent. Raises on invalid or replayed nonces."""
        if isinstance(nonce, bool) or int(nonce) <= 0:
            raise SignatureError(f"Invalid nonce: {nonce}")
        if not self.nonces.consume(user_id, int(nonce)):
            logger.warning("Replay attempt for %s with nonce %s", user_id, nonce)
            raise ReplayError(f"Nonce {nonce} already used")

    @staticmethod
    def decode_signature(signature: str) -> dict:
        """Split a 65-byte signature into ``r``, ``s`` and ``v``."""
        if not isinstance(signature, str):
            raise SignatureError("Signature must be a hex string")
        raw = _strip_0x(signature.strip())
        if len(raw) != SIGNATURE_HEX_LENGTH:
            raise SignatureError(
                f"Signature must be {SIGNATURE_HEX_LENGTH} hex characters, got {len(raw)}"
            )
        try:
            bytes.fromhex(raw)
        except ValueError as e:
            raise SignatureError("Signature is not valid hex") from e
        return {"r": "0x" + raw[:64], "s": "0x" + raw[64:128], "v": int(raw[128:130], 16)}
