"""
Custodian error types.

Specific exceptions for each authorization failure mode. Every class
carries the HTTP status the API layer reports it with, so callers can
tell business rejections (4xx) from infrastructure failures (5xx).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .risk import RiskAssessment


class CustodianError(Exception):
    """Base error for all Custodian operations."""
    status_code = 500


class ValidationError(CustodianError):
    """Missing or malformed input."""
    status_code = 400


class NotFoundError(CustodianError):
    """Requested record does not exist."""
    status_code = 404


# Session errors
class SessionError(CustodianError):
    """Base error for payment session issues."""
    status_code = 401


class SessionNotFoundError(SessionError):
    """Session ID is unknown."""
    def __init__(self, message: str = "invalid session"):
        super().__init__(message)


class SessionExpiredError(SessionError):
    """Session is past its TTL."""
    def __init__(self, message: str = "session expired"):
        super().__init__(message)


class SessionConsumedError(SessionError):
    """Session already backed a prepared payment."""
    status_code = 409

    def __init__(self, message: str = "session already consumed"):
        super().__init__(message)


# Authorization rejections
class PolicyViolation(CustodianError):
    """Transaction fails allow/deny-list or spend-limit rules."""
    status_code = 403

    def __init__(self, violations: list[str]):
        self.violations = list(violations)
        super().__init__(f"Policy violation: {'; '.join(self.violations)}")


class RiskError(CustodianError):
    """Risk assessment classified the transaction as CRITICAL."""
    status_code = 403

    def __init__(self, assessment: "RiskAssessment", message: Optional[str] = None):
        self.assessment = assessment
        if message is None:
            reasons = "; ".join(w.message for w in assessment.warnings) or "no detail"
            message = f"Transaction blocked by risk assessment ({assessment.risk_level.value}): {reasons}"
        super().__init__(message)


class SignatureError(CustodianError):
    """Bad or forged signature, invalid nonce, or expired payload."""
    status_code = 401


class ReplayError(SignatureError):
    """Nonce was already consumed for this user."""
    status_code = 409


# Collaborator failures
class StorageError(CustodianError):
    """Memory/persistence collaborator failed. Nothing was committed."""
    status_code = 500


class ChainError(CustodianError):
    """Blockchain collaborator failed or returned an RPC error."""
    status_code = 502
