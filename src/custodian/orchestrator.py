"""
Payment orchestration: session → policy → risk → sign.

``prepare`` returns a tagged outcome so callers can branch on rejections
without exception handling; ``prepare_payment`` is the raising variant.
Nonce issuance, policy/risk evaluation, signing and session consumption
for one user run inside that user's lock, so two concurrent prepares can
never share a session or a nonce.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Optional, Union

from eth_utils import is_address, to_checksum_address

from .audit import ActionType, AuditLog, AuditStatus
from .chain import ChainClient, GasEstimate
from .clock import Clock, SystemClock, iso_timestamp
from .errors import (
    PolicyViolation,
    ReplayError,
    RiskError,
    SessionError,
    StorageError,
    ValidationError,
)
from .memory import MemoryBackend
from .money import format_native, native_to_wei, parse_native, parse_wei
from .policy import DailyTracker, PaymentSummary, PolicyEngine
from .risk import PAYMENTS_COLLECTION, RiskAssessment, RiskAssessor
from .session import PaymentSession, SessionManager, SessionStatus
from .signature import SignatureService, SignedPayload
from .transaction import PendingTransaction

logger = logging.getLogger(__name__)


DEFAULT_HISTORY_LIMIT = 50


@dataclass(frozen=True)
class PaymentRequest:
    session_id: str
    amount: Decimal
    recipient: str
    action: str = "transfer"
    sender: Optional[str] = None
    gas_price_wei: Optional[int] = None

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PaymentRequest":
        missing = [k for k in ("session_id", "amount", "recipient") if d.get(k) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}")
        if not is_address(d["recipient"]):
            raise ValidationError(f"Invalid recipient address: {d['recipient']}")
        gas_price = d.get("gas_price_wei")
        return cls(
            session_id=str(d["session_id"]),
            amount=parse_native(d["amount"]),
            recipient=to_checksum_address(d["recipient"]),
            action=str(d.get("action") or "transfer"),
            sender=d.get("sender"),
            gas_price_wei=parse_wei(gas_price, "gas_price_wei") if gas_price is not None else None,
        )

    @property
    def amount_wei(self) -> int:
        return native_to_wei(self.amount)

    def to_transaction(self, user_id: str) -> PendingTransaction:
        return PendingTransaction(
            recipient=self.recipient,
            amount_wei=self.amount_wei,
            user_id=user_id,
            sender=self.sender,
            action=self.action,
            gas_price_wei=self.gas_price_wei,
        )


@dataclass(frozen=True)
class PreparedPayment:
    signed: SignedPayload
    session_id: str
    gas_estimate: Optional[GasEstimate] = None
    assessment: RiskAssessment = field(default_factory=RiskAssessment)

    @property
    def signature(self) -> str:
        return self.signed.signature

    @property
    def payload(self) -> dict:
        return self.signed.payload

    def to_dict(self) -> dict:
        signed = self.signed.to_dict()
        return {
            "prepared": True,
            "session_id": self.session_id,
            "signature": signed["signature"],
            "payload": signed["payload"],
            "message_hash": signed["message_hash"],
            "gas_estimate": self.gas_estimate.to_dict() if self.gas_estimate else None,
            "risk": self.assessment.to_dict(),
        }


# ── Tagged prepare outcomes ───────────────────────────────────────

@dataclass(frozen=True)
class Prepared:
    payment: PreparedPayment
    ok = True

    def unwrap(self) -> PreparedPayment:
        return self.payment


@dataclass(frozen=True)
class PolicyRejected:
    violations: tuple[str, ...]
    ok = False

    def unwrap(self) -> PreparedPayment:
        raise PolicyViolation(list(self.violations))


@dataclass(frozen=True)
class RiskRejected:
    assessment: RiskAssessment
    ok = False

    def unwrap(self) -> PreparedPayment:
        raise RiskError(self.assessment)


@dataclass(frozen=True)
class SessionInvalid:
    error: SessionError
    ok = False

    @property
    def reason(self) -> str:
        return str(self.error)

    def unwrap(self) -> PreparedPayment:
        raise self.error


PrepareOutcome = Union[Prepared, PolicyRejected, RiskRejected, SessionInvalid]


class PaymentOrchestrator:
    """Top-level payment API over sessions, policy, risk and signing."""

    def __init__(
        self,
        sessions: SessionManager,
        policy: PolicyEngine,
        risk: RiskAssessor,
        signer: SignatureService,
        audit: AuditLog,
        chain: ChainClient,
        memory: MemoryBackend,
        tracker: DailyTracker,
        clock: Optional[Clock] = None,
    ):
        self.sessions = sessions
        self.policy = policy
        self.risk = risk
        self.signer = signer
        self.audit = audit
        self.chain = chain
        self.memory = memory
        self.tracker = tracker
        self.clock = clock or SystemClock()

    # ── Sessions ──────────────────────────────────────────────────

    def initialize_session(self, user_id: str, agent_address: str) -> PaymentSession:
        session = self.sessions.initialize_session(user_id, agent_address)
        try:
            self.audit.log_action(
                ActionType.SESSION_INIT,
                session.session_id,
                user_id,
                {
                    "session_id": session.session_id,
                    "agent_address": agent_address,
                    "nonce": session.nonce,
                    "expires_at": session.expires_at,
                },
                {"agent_id": agent_address},
            )
        except StorageError:
            # an unaudited session must not be usable
            self.sessions.discard(session.session_id)
            raise
        return session

    # ── Prepare ───────────────────────────────────────────────────

    def prepare(self, request: PaymentRequest | Mapping[str, Any]) -> PrepareOutcome:
        if not isinstance(request, PaymentRequest):
            request = PaymentRequest.from_dict(request)

        known = self.sessions.get_session(request.session_id)
        try:
            session = self.sessions.resolve(request.session_id)
        except SessionError as e:
            return self._session_invalid(known, request, e)

        with self.sessions.user_lock(session.user_id):
            try:
                session = self.sessions.resolve(request.session_id)
            except SessionError as e:
                return self._session_invalid(session, request, e)

            tx = request.to_transaction(session.user_id)

            compliance = self.policy.check_policy_compliance(tx, session.user_id)
            if not compliance.compliant:
                self._audit_decision(
                    ActionType.PAYMENT_REJECTED, session, request,
                    {"violations": list(compliance.violations), "reason": "policy"},
                    status=AuditStatus.FAILED,
                    error="Policy violation",
                )
                return PolicyRejected(tuple(compliance.violations))

            assessment = self.risk.assess_transaction(tx)
            if not assessment.can_execute:
                logger.warning("Payment blocked by risk for %s: %s", session.user_id, assessment.risk_level.value)
                self._audit_decision(
                    ActionType.PAYMENT_REJECTED, session, request,
                    {
                        "risk_level": assessment.risk_level.value,
                        "warnings": [w.to_dict() for w in assessment.warnings],
                        "reason": "risk",
                    },
                    status=AuditStatus.FAILED,
                    error="Risk assessment blocked transaction",
                )
                return RiskRejected(assessment)

            gas_estimate = self.chain.estimate_gas({
                "from": self.signer.address,
                "to": request.recipient,
                "value": tx.amount_wei,
            })
            signed = self.signer.generate_payment_signature(self._build_payload(session, request))
            self._audit_decision(
                ActionType.PAYMENT_PREPARED, session, request,
                {
                    "nonce": session.nonce,
                    "message_hash": signed.message_hash,
                    "risk_level": assessment.risk_level.value,
                },
            )
            self.sessions.consume(session.session_id, signed.payload)

        logger.info(
            "Payment prepared: session=%s user=%s amount=%s BNB",
            session.session_id, session.user_id, request.amount,
        )
        return Prepared(PreparedPayment(
            signed=signed,
            session_id=session.session_id,
            gas_estimate=gas_estimate,
            assessment=assessment,
        ))

    def prepare_payment(self, request: PaymentRequest | Mapping[str, Any]) -> PreparedPayment:
        """Like ``prepare`` but raises the matching error on rejection."""
        return self.prepare(request).unwrap()

    def _build_payload(self, session: PaymentSession, request: PaymentRequest) -> dict:
        return {
            "action": request.action,
            "amount": str(request.amount_wei),
            "recipient": request.recipient,
            "nonce": session.nonce,
            "expires": session.expires_at,
            "user_id": session.user_id,
            "session_id": session.session_id,
            "signer": self.signer.address,
            "chain_id": self.signer.chain_id,
        }

    def _session_invalid(
        self,
        session: Optional[PaymentSession],
        request: PaymentRequest,
        error: SessionError,
    ) -> SessionInvalid:
        logger.warning("Invalid session %s: %s", request.session_id, error)
        if session is not None:
            self.audit.log_auth_event(
                session.user_id,
                "failed",
                {"agent_id": session.agent_address, "error_message": str(error)},
                {"session_id": session.session_id, "reason": str(error)},
            )
        return SessionInvalid(error)

    def _audit_decision(
        self,
        action_type: ActionType,
        session: PaymentSession,
        request: PaymentRequest,
        extra: Mapping[str, Any],
        status: AuditStatus = AuditStatus.SUCCESS,
        error: Optional[str] = None,
    ) -> None:
        changes = {
            "session_id": session.session_id,
            "amount": str(request.amount_wei),
            "recipient": request.recipient,
            "action": request.action,
            **extra,
        }
        self.audit.log_action(
            action_type,
            session.session_id,
            session.user_id,
            changes,
            {"agent_id": session.agent_address, "status": status.value, "error_message": error},
        )

    # ── Verify / record ───────────────────────────────────────────

    def verify_payment(
        self,
        session_id: str,
        signature: str,
        amount: Any,
        recipient: str,
        action: str = "transfer",
    ) -> dict:
        """
        Re-check a prepared payment's signature, expiry and nonce.

        Policy and risk are not re-run; they gate issuance only.
        """
        request = PaymentRequest.from_dict({
            "session_id": session_id,
            "amount": amount,
            "recipient": recipient,
            "action": action,
        })
        session = self.sessions.resolve(session_id, allow_consumed=True)
        payload = self._build_payload(session, request)
        signed = SignedPayload(payload=payload, message_hash="", signature=signature or "")

        reason = None
        if not self.signer.verify_signature(signed):
            reason = "invalid signature"
        elif not self.signer.verify_expiration(payload):
            reason = "payload expired"
        elif not self.signer.verify_nonce(session.user_id, session.nonce):
            reason = "nonce already used"

        valid = reason is None
        if not valid:
            logger.warning("Payment verification failed for %s: %s", session_id, reason)
        self._audit_decision(
            ActionType.PAYMENT_VERIFIED, session, request,
            {"nonce": session.nonce, "reason": reason} if reason else {"nonce": session.nonce},
            status=AuditStatus.SUCCESS if valid else AuditStatus.FAILED,
            error=reason,
        )
        result: dict[str, Any] = {"valid": valid}
        if reason:
            result["reason"] = reason
        return result

    def record_payment(
        self,
        user_id: str,
        session_id: str,
        tx_hash: str,
        status: str = "success",
    ) -> dict:
        """
        Record the on-chain outcome of a prepared payment.

        The session's nonce is consumed here, so a payment can be recorded
        only once. Session expiry does not apply: a payment submitted just
        before ``expires_at`` still has to be counted. Only successful
        payments count toward daily tracking.

        The payment row and its audit entry are written first; the nonce
        and the daily tracker change only once both writes succeed.
        """
        if not tx_hash:
            raise ValidationError("tx_hash is required")
        if status not in ("success", "failed"):
            raise ValidationError(f"Invalid payment status: {status}")

        session = self.sessions.resolve(session_id, allow_consumed=True, allow_expired=True)
        if session.user_id != user_id:
            raise ValidationError("Session does not belong to this user")
        if session.status is not SessionStatus.CONSUMED or not session.payload:
            raise ValidationError("Session has no prepared payment")

        payload = session.payload
        with self.sessions.user_lock(user_id):
            if not self.signer.verify_nonce(user_id, session.nonce):
                error = ReplayError(f"Nonce {session.nonce} already used")
                logger.warning("Replay attempt for %s with nonce %s", user_id, session.nonce)
                self.audit.log_auth_event(
                    user_id,
                    "failed",
                    {"agent_id": session.agent_address, "error_message": str(error)},
                    {"session_id": session_id, "nonce": session.nonce, "reason": str(error)},
                )
                raise error

            now = int(self.clock.now())
            record = {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "session_id": session_id,
                "tx_hash": tx_hash,
                "amount_wei": str(payload["amount"]),
                "amount": format_native(payload["amount"]),
                "recipient": payload["recipient"],
                "action": payload.get("action", "transfer"),
                "nonce": session.nonce,
                "status": status,
                "timestamp": iso_timestamp(self.clock),
            }
            try:
                self.memory.store(PAYMENTS_COLLECTION, record)
            except StorageError:
                raise
            except Exception as e:
                raise StorageError(f"Failed to store payment: {e}") from e

            try:
                self.audit.log_transaction(
                    tx_hash,
                    {
                        "action": record["action"],
                        "from": payload.get("signer"),
                        "to": payload["recipient"],
                        "amount": record["amount_wei"],
                        "status": status,
                        "nonce": session.nonce,
                        "session_id": session_id,
                        "agent_id": session.agent_address,
                        "chain_id": payload.get("chain_id"),
                    },
                    user_id,
                )
            except StorageError:
                self._discard_payment(record["id"])
                raise

            self.signer.consume_nonce(user_id, session.nonce)
            if status == "success":
                self.tracker.record_payment(user_id, PaymentSummary(
                    amount_wei=int(payload["amount"]),
                    recipient=payload["recipient"],
                    tx_hash=tx_hash,
                    session_id=session_id,
                    timestamp=now,
                ))

        logger.info("Payment recorded: %s user=%s status=%s", tx_hash, user_id, status)
        return {"success": True, "payment": record}

    def _discard_payment(self, record_id: str) -> None:
        try:
            self.memory.delete(PAYMENTS_COLLECTION, record_id)
        except Exception:
            logger.exception("Failed to roll back payment record %s", record_id)

    # ── Read-only helpers ─────────────────────────────────────────

    def get_payment_history(self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> dict:
        if not user_id:
            raise ValidationError("user_id is required")
        try:
            payments = self.memory.query_memory(PAYMENTS_COLLECTION, {"user_id": user_id}, limit)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to load payment history: {e}") from e
        return {"payments": payments, "limit": limit}

    def generate_payment_preview(self, tx: PendingTransaction) -> dict:
        """Estimated fee and total cost. Reads only."""
        estimate = self.chain.estimate_gas({
            "from": tx.sender or self.signer.address,
            "to": tx.recipient,
            "value": tx.amount_wei,
        })
        fee = estimate.estimated_cost_wei
        return {
            "recipient": tx.recipient,
            "amount": format_native(tx.amount_wei),
            "amount_wei": str(tx.amount_wei),
            "estimated_fee_wei": str(fee),
            "estimated_fee_bnb": format_native(fee),
            "total_cost_wei": str(tx.amount_wei + fee),
            "total_cost_bnb": format_native(tx.amount_wei + fee),
            "gas_estimate": estimate.to_dict(),
        }

    def assess_risk(self, tx: PendingTransaction) -> RiskAssessment:
        return self.risk.assess_transaction(tx)
