"""
Process-local state stores and local storage hardening helpers.

Each store documents its key space and eviction policy. All of them are
thread-safe; per-user atomic sections are taken with ``KeyedLocks``.
A multi-instance deployment would need these backed by a shared store.
"""

from __future__ import annotations

import os
import secrets
import threading
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Generic, Iterator, Optional, Protocol, TypeVar

if TYPE_CHECKING:
    from .policy import DailyTrackingRecord
    from .session import PaymentSession


K = TypeVar("K")
V = TypeVar("V")

NONCE_SEED_RANGE = 1_000_000


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


class KeyedLocks:
    """One re-entrant lock per key (typically a user ID)."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield


# ── Sessions ──────────────────────────────────────────────────────

class SessionStore(Protocol):
    """Sessions keyed by ``session_id``. No eviction; expiry is lazy."""

    def put(self, session: "PaymentSession") -> None: ...
    def get(self, session_id: str) -> Optional["PaymentSession"]: ...
    def delete(self, session_id: str) -> None: ...
    def list_for_user(self, user_id: str) -> list["PaymentSession"]: ...


class InMemorySessionStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: dict[str, "PaymentSession"] = {}

    def put(self, session: "PaymentSession") -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional["PaymentSession"]:
        with self._lock:
            return self._sessions.get(session_id)

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def list_for_user(self, user_id: str) -> list["PaymentSession"]:
        with self._lock:
            return [s for s in self._sessions.values() if s.user_id == user_id]


# ── Nonces ────────────────────────────────────────────────────────

class NonceStore(Protocol):
    """
    Nonces keyed by user ID.

    ``issue`` returns a strictly increasing positive integer per user;
    ``consume`` marks a nonce spent and reports whether it was fresh.
    Nothing is evicted: a consumed nonce must stay consumed.
    """

    def issue(self, user_id: str) -> int: ...
    def consume(self, user_id: str, nonce: int) -> bool: ...
    def is_consumed(self, user_id: str, nonce: int) -> bool: ...


class InMemoryNonceStore:
    def __init__(self, seed: Optional[Callable[[], int]] = None):
        self._lock = threading.Lock()
        self._last: dict[str, int] = {}
        self._consumed: dict[str, set[int]] = {}
        self._seed = seed or (lambda: secrets.randbelow(NONCE_SEED_RANGE) + 1)

    def issue(self, user_id: str) -> int:
        with self._lock:
            last = self._last.get(user_id)
            nonce = self._seed() if last is None else last + 1
            if nonce <= 0:
                raise ValueError("Nonce seed must be positive")
            self._last[user_id] = nonce
            return nonce

    def consume(self, user_id: str, nonce: int) -> bool:
        with self._lock:
            spent = self._consumed.setdefault(user_id, set())
            if nonce in spent:
                return False
            spent.add(nonce)
            return True

    def is_consumed(self, user_id: str, nonce: int) -> bool:
        with self._lock:
            return nonce in self._consumed.get(user_id, set())


# ── Daily tracking ────────────────────────────────────────────────

class TrackingStore(Protocol):
    """
    Daily records keyed by ``(user_id, YYYY-MM-DD)``.

    Records are created lazily; ``retain_only`` drops every key whose date
    differs from the given day.
    """

    def get(self, user_id: str, day: str) -> Optional["DailyTrackingRecord"]: ...
    def get_or_create(self, user_id: str, day: str) -> "DailyTrackingRecord": ...
    def keys(self) -> list[tuple[str, str]]: ...
    def retain_only(self, day: str) -> int: ...


class InMemoryTrackingStore:
    def __init__(self, factory: Callable[[], "DailyTrackingRecord"]):
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str], "DailyTrackingRecord"] = {}
        self._factory = factory

    def get(self, user_id: str, day: str) -> Optional["DailyTrackingRecord"]:
        with self._lock:
            return self._records.get((user_id, day))

    def get_or_create(self, user_id: str, day: str) -> "DailyTrackingRecord":
        with self._lock:
            record = self._records.get((user_id, day))
            if record is None:
                record = self._factory()
                self._records[(user_id, day)] = record
            return record

    def keys(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._records.keys())

    def retain_only(self, day: str) -> int:
        with self._lock:
            stale = [key for key in self._records if key[1] != day]
            for key in stale:
                del self._records[key]
            return len(stale)


# ── Bounded cache ─────────────────────────────────────────────────

class BoundedCache(Generic[K, V]):
    """Fixed-capacity insertion-ordered cache; the oldest entry is evicted first."""

    def __init__(self, capacity: int = 1000):
        if capacity <= 0:
            raise ValueError("Cache capacity must be positive")
        self.capacity = capacity
        self._lock = threading.Lock()
        self._items: OrderedDict[K, V] = OrderedDict()

    def put(self, key: K, value: V) -> None:
        with self._lock:
            self._items[key] = value
            while len(self._items) > self.capacity:
                self._items.popitem(last=False)

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            return self._items.get(key)

    def __contains__(self, key: Any) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
