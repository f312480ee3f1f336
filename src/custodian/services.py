"""Wires the authorization components from ``Settings``."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .audit import AuditLog
from .chain import ChainClient, JsonRpcChainClient
from .clock import Clock, SystemClock
from .config import AGENT_KEY_ENV, Settings
from .errors import ValidationError
from .memory import MemoryBackend, SqliteMemoryBackend
from .orchestrator import PaymentOrchestrator
from .policy import DailyTracker, PolicyEngine, PolicyStore
from .risk import RiskAssessor
from .security import SecuritySettings
from .session import SessionManager
from .signature import SignatureService
from .storage import InMemoryNonceStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    memory: MemoryBackend
    chain: ChainClient
    audit: AuditLog
    tracker: DailyTracker
    policy: PolicyEngine
    risk: RiskAssessor
    sessions: SessionManager
    signer: SignatureService
    orchestrator: PaymentOrchestrator
    security: SecuritySettings


def build_memory(settings: Settings) -> MemoryBackend:
    return SqliteMemoryBackend(settings.memory_db_path)


def build_policy_engine(
    settings: Settings,
    memory: Optional[MemoryBackend] = None,
    clock: Optional[Clock] = None,
) -> PolicyEngine:
    """Policy engine alone, for tools that never sign."""
    clock = clock or SystemClock()
    memory = memory or build_memory(settings)
    audit = AuditLog(memory, clock=clock, cache_size=settings.audit_cache_size)
    return PolicyEngine(PolicyStore(memory), DailyTracker(clock=clock), audit=audit)


def build_services(
    settings: Settings,
    memory: Optional[MemoryBackend] = None,
    chain: Optional[ChainClient] = None,
    clock: Optional[Clock] = None,
) -> Services:
    if not settings.agent_key:
        raise ValidationError(f"{AGENT_KEY_ENV} is not set; the agent signing key is required")

    clock = clock or SystemClock()
    memory = memory or build_memory(settings)
    chain = chain or JsonRpcChainClient(settings.rpc_url, settings.chain_id)

    audit = AuditLog(memory, clock=clock, cache_size=settings.audit_cache_size)
    tracker = DailyTracker(clock=clock)
    policy = PolicyEngine(PolicyStore(memory), tracker, audit=audit)
    risk = RiskAssessor(chain, memory, tracker, bad_addresses=settings.bad_addresses)

    # Sessions and signatures share one nonce space per user
    nonces = InMemoryNonceStore()
    sessions = SessionManager(nonces=nonces, clock=clock, ttl_seconds=settings.session_ttl)
    signer = SignatureService(settings.agent_key, nonces=nonces, clock=clock, chain_id=settings.chain_id)

    orchestrator = PaymentOrchestrator(
        sessions=sessions,
        policy=policy,
        risk=risk,
        signer=signer,
        audit=audit,
        chain=chain,
        memory=memory,
        tracker=tracker,
        clock=clock,
    )
    security = SecuritySettings(audit, policy=policy, clock=clock)
    logger.info("Services ready: chain_id=%d agent=%s", settings.chain_id, signer.address)
    return Services(
        settings=settings,
        memory=memory,
        chain=chain,
        audit=audit,
        tracker=tracker,
        policy=policy,
        risk=risk,
        sessions=sessions,
        signer=signer,
        orchestrator=orchestrator,
        security=security,
    )
