"""Runtime settings loaded from ``CUSTODIAN_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .audit import DEFAULT_CACHE_SIZE
from .chain import DEFAULT_CHAIN_ID, DEFAULT_RPC_URL
from .errors import ValidationError
from .session import DEFAULT_SESSION_TTL_SECONDS, MAX_SESSION_TTL_SECONDS

HOME_ENV = "CUSTODIAN_HOME"
AGENT_KEY_ENV = "CUSTODIAN_AGENT_KEY"
RPC_URL_ENV = "CUSTODIAN_RPC_URL"
CHAIN_ID_ENV = "CUSTODIAN_CHAIN_ID"
SESSION_TTL_ENV = "CUSTODIAN_SESSION_TTL"
AUDIT_CACHE_SIZE_ENV = "CUSTODIAN_AUDIT_CACHE_SIZE"
LOG_LEVEL_ENV = "CUSTODIAN_LOG_LEVEL"
BAD_ADDRESSES_ENV = "CUSTODIAN_BAD_ADDRESSES"

DEFAULT_HOME = Path.home() / ".custodian"
MEMORY_DB_NAME = "memory.db"


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from e


@dataclass(frozen=True)
class Settings:
    home: Path = DEFAULT_HOME
    agent_key: Optional[str] = field(default=None, repr=False)
    rpc_url: str = DEFAULT_RPC_URL
    chain_id: int = DEFAULT_CHAIN_ID
    session_ttl: int = DEFAULT_SESSION_TTL_SECONDS
    audit_cache_size: int = DEFAULT_CACHE_SIZE
    log_level: str = "INFO"
    bad_addresses: tuple[str, ...] = ()

    def __post_init__(self):
        if not 0 < self.session_ttl <= MAX_SESSION_TTL_SECONDS:
            raise ValidationError(
                f"{SESSION_TTL_ENV} must be between 1 and {MAX_SESSION_TTL_SECONDS}"
            )
        if self.audit_cache_size <= 0:
            raise ValidationError(f"{AUDIT_CACHE_SIZE_ENV} must be positive")

    @property
    def memory_db_path(self) -> Path:
        return self.home / MEMORY_DB_NAME

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        bad = tuple(a.strip() for a in env.get(BAD_ADDRESSES_ENV, "").split(",") if a.strip())
        return cls(
            home=Path(env.get(HOME_ENV) or DEFAULT_HOME).expanduser(),
            agent_key=env.get(AGENT_KEY_ENV) or None,
            rpc_url=env.get(RPC_URL_ENV) or DEFAULT_RPC_URL,
            chain_id=_int_env(env, CHAIN_ID_ENV, DEFAULT_CHAIN_ID),
            session_ttl=_int_env(env, SESSION_TTL_ENV, DEFAULT_SESSION_TTL_SECONDS),
            audit_cache_size=_int_env(env, AUDIT_CACHE_SIZE_ENV, DEFAULT_CACHE_SIZE),
            log_level=(env.get(LOG_LEVEL_ENV) or "INFO").upper(),
            bad_addresses=bad,
        )
