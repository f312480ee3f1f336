"""
Custodian — authorization gate for agent payments.

Every payment an agent makes on a user's behalf passes through the same
pipeline: session → spend-limit policy → risk scoring → signed payload,
with each decision written to an append-only audit log.
"""

__version__ = "0.1.0"

from .audit import ActionType, AuditEntry, AuditLog, AuditStatus, EntityType
from .chain import ChainClient, JsonRpcChainClient
from .clock import ManualClock, SystemClock
from .config import Settings
from .errors import (
    ChainError,
    CustodianError,
    PolicyViolation,
    ReplayError,
    RiskError,
    SessionError,
    SignatureError,
    StorageError,
    ValidationError,
)
from .memory import InMemoryBackend, MemoryBackend, SqliteMemoryBackend
from .orchestrator import (
    PaymentOrchestrator,
    PaymentRequest,
    PolicyRejected,
    Prepared,
    PreparedPayment,
    RiskRejected,
    SessionInvalid,
)
from .policy import DailyTracker, Policy, PolicyEngine, PolicyStore, get_default_policy
from .risk import RiskAssessment, RiskAssessor, RiskLevel, RiskWarning
from .security import SecuritySettings
from .services import Services, build_services
from .session import PaymentSession, SessionManager, SessionStatus
from .signature import SignatureService, SignedBatch, SignedPayload
from .transaction import PendingTransaction

__all__ = [
    "ActionType", "AuditEntry", "AuditLog", "AuditStatus", "EntityType",
    "ChainClient", "JsonRpcChainClient", "ManualClock", "SystemClock", "Settings",
    "CustodianError", "ValidationError", "SessionError", "PolicyViolation", "RiskError",
    "SignatureError", "ReplayError", "StorageError", "ChainError",
    "MemoryBackend", "InMemoryBackend", "SqliteMemoryBackend",
    "PaymentOrchestrator", "PaymentRequest", "PreparedPayment",
    "Prepared", "PolicyRejected", "RiskRejected", "SessionInvalid",
    "Policy", "PolicyStore", "PolicyEngine", "DailyTracker", "get_default_policy",
    "RiskAssessor", "RiskAssessment", "RiskLevel", "RiskWarning",
    "SecuritySettings", "Services", "build_services",
    "PaymentSession", "SessionManager", "SessionStatus",
    "SignatureService", "SignedPayload", "SignedBatch", "PendingTransaction",
]
