"""
Short-lived payment sessions.

A session binds a user, an agent address and one nonce. Sessions are
stored by ``session_id``; nonces are issued per ``user_id``. Expiry is
checked lazily whenever a session is resolved, never by a sweep.
"""

from __future__ import annotations

import logging
import secrets
from contextlib import contextmanager
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Iterator, Optional

from eth_utils import is_address

from .clock import Clock, SystemClock
from .errors import (
    SessionConsumedError,
    SessionExpiredError,
    SessionNotFoundError,
    ValidationError,
)
from .storage import InMemoryNonceStore, InMemorySessionStore, KeyedLocks, NonceStore, SessionStore

logger = logging.getLogger(__name__)


DEFAULT_SESSION_TTL_SECONDS = 3600
MAX_SESSION_TTL_SECONDS = 7200


class SessionStatus(str, Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class PaymentSession:
    session_id: str
    user_id: str
    agent_address: str
    nonce: int
    created_at: int
    expires_at: int
    status: SessionStatus = SessionStatus.ACTIVE
    payload: Optional[dict[str, Any]] = None

    def is_expired(self, now: float) -> bool:
        return self.status is SessionStatus.EXPIRED or now >= self.expires_at

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d


class SessionManager:
    """Creates, resolves and consumes payment sessions."""

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        nonces: Optional[NonceStore] = None,
        clock: Optional[Clock] = None,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
    ):
        if not 0 < ttl_seconds <= MAX_SESSION_TTL_SECONDS:
            raise ValidationError(
                f"Session TTL must be between 1 and {MAX_SESSION_TTL_SECONDS} seconds"
            )
        self.store = store or InMemorySessionStore()
        self.nonces = nonces or InMemoryNonceStore()
        self.clock = clock or SystemClock()
        self.ttl_seconds = ttl_seconds
        self._locks = KeyedLocks()

    @contextmanager
    def user_lock(self, user_id: str) -> Iterator[None]:
        """Serialize nonce issuance and session consumption for one user."""
        with self._locks.hold(user_id):
            yield

    def initialize_session(self, user_id: str, agent_address: str) -> PaymentSession:
        if not user_id:
            raise ValidationError("user_id is required")
        if not agent_address or not is_address(agent_address):
            raise ValidationError(f"Invalid agent address: {agent_address}")

        with self.user_lock(user_id):
            nonce = self.nonces.issue(user_id)
            now = int(self.clock.now())
            session = PaymentSession(
                session_id=f"ps-{secrets.token_hex(16)}",
                user_id=user_id,
                agent_address=agent_address,
                nonce=nonce,
                created_at=now,
                expires_at=now + self.ttl_seconds,
            )
            self.store.put(session)

        logger.info("Session created: %s user=%s nonce=%d", session.session_id, user_id, nonce)
        return session

    def get_session(self, session_id: str) -> Optional[PaymentSession]:
        return self.store.get(session_id)

    def list_sessions(self, user_id: str) -> list[PaymentSession]:
        return self.store.list_for_user(user_id)

    def resolve(
        self,
        session_id: str,
        allow_consumed: bool = False,
        allow_expired: bool = False,
    ) -> PaymentSession:
        """
        Look up a usable session.

        Unknown IDs raise ``SessionNotFoundError``; sessions past their TTL
        raise ``SessionExpiredError`` unless ``allow_expired``. Consumed
        sessions raise ``SessionConsumedError`` unless ``allow_consumed``.

        Only active sessions are marked expired. A consumed session keeps
        its status and payload so its outcome can still be recorded.
        """
        session = self.store.get(session_id) if session_id else None
        if session is None:
            raise SessionNotFoundError()

        if not allow_expired and session.is_expired(self.clock.now()):
            if session.status is SessionStatus.ACTIVE:
                self.store.put(replace(session, status=SessionStatus.EXPIRED))
            logger.warning("Expired session used: %s", session_id)
            raise SessionExpiredError()

        if session.status is SessionStatus.CONSUMED and not allow_consumed:
            raise SessionConsumedError()
        return session

    def discard(self, session_id: str) -> None:
        """Drop a session outright. The nonce it was issued is never reissued."""
        self.store.delete(session_id)
        logger.info("Session discarded: %s", session_id)

    def consume(self, session_id: str, payload: Optional[dict[str, Any]] = None) -> PaymentSession:
        """Mark an active session consumed, keeping the payload it authorized."""
        session = self.resolve(session_id)
        with self.user_lock(session.user_id):
            session = self.resolve(session_id)
            consumed = replace(session, status=SessionStatus.CONSUMED, payload=payload)
            self.store.put(consumed)
        logger.info("Session consumed: %s", session_id)
        return consumed
