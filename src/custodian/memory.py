"""
Memory collaborator: durable records and per-user preferences.

The authorization core only needs four narrow operations, captured by
``MemoryBackend``. Two implementations ship: a process-local one for
tests and single-shot tools, and a SQLite one for anything that must
survive a restart.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

from .errors import StorageError
from .storage import ensure_private_dir, ensure_private_file

logger = logging.getLogger(__name__)


class MemoryBackend(Protocol):
    def store(self, collection: str, record: Mapping[str, Any]) -> dict: ...

    def query_memory(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = 100,
    ) -> list[dict]:
        """Records matching every filter exactly, newest first."""
        ...

    def delete(self, collection: str, record_id: str) -> bool:
        """Remove a record by its ``id``; used to undo a write whose follow-up failed."""
        ...

    def get_user_preferences(self, user_id: str) -> dict: ...

    def store_user_preference(self, user_id: str, key: str, value: Any) -> dict: ...


def _matches(record: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    return all(record.get(k) == v for k, v in filters.items())


def _clean_filters(filters: Optional[Mapping[str, Any]]) -> dict:
    return {k: v for k, v in (filters or {}).items() if v is not None}


class InMemoryBackend:
    """Thread-safe process-local memory backend."""

    def __init__(self):
        self._lock = threading.Lock()
        self._collections: dict[str, list[dict]] = {}
        self._preferences: dict[str, dict] = {}

    def store(self, collection: str, record: Mapping[str, Any]) -> dict:
        record_id = str(record.get("id") or uuid.uuid4())
        # JSON round-trip so callers can't mutate stored state
        snapshot = json.loads(json.dumps(dict(record)))
        with self._lock:
            self._collections.setdefault(collection, []).append(snapshot)
        return {"success": True, "id": record_id}

    def query_memory(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = 100,
    ) -> list[dict]:
        wanted = _clean_filters(filters)
        with self._lock:
            records = list(self._collections.get(collection, []))
        results: list[dict] = []
        for record in reversed(records):
            if _matches(record, wanted):
                results.append(json.loads(json.dumps(record)))
                if limit is not None and len(results) >= limit:
                    break
        return results

    def delete(self, collection: str, record_id: str) -> bool:
        with self._lock:
            records = self._collections.get(collection, [])
            kept = [r for r in records if str(r.get("id")) != record_id]
            self._collections[collection] = kept
            return len(kept) != len(records)

    def get_user_preferences(self, user_id: str) -> dict:
        with self._lock:
            return json.loads(json.dumps(self._preferences.get(user_id, {})))

    def store_user_preference(self, user_id: str, key: str, value: Any) -> dict:
        snapshot = json.loads(json.dumps(value))
        with self._lock:
            self._preferences.setdefault(user_id, {})[key] = snapshot
        return {"success": True, "user_id": user_id, "key": key}


class SqliteMemoryBackend:
    """
    SQLite-backed memory backend.

    Records are stored as JSON documents in insertion order; filtering is
    exact-match on top-level keys. Any sqlite error surfaces as
    ``StorageError`` so callers never treat a failed write as committed.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        ensure_private_dir(self.db_path.parent)
        self._init_db()
        ensure_private_file(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=FULL")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS records (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        collection TEXT NOT NULL,
                        record_id TEXT NOT NULL,
                        body TEXT NOT NULL,
                        stored_at REAL NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_records_collection
                    ON records (collection, seq)
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS preferences (
                        user_id TEXT NOT NULL,
                        pref_key TEXT NOT NULL,
                        value TEXT NOT NULL,
                        updated_at REAL NOT NULL,
                        PRIMARY KEY (user_id, pref_key)
                    )
                    """
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to initialize memory database: {e}") from e

    def store(self, collection: str, record: Mapping[str, Any]) -> dict:
        record_id = str(record.get("id") or uuid.uuid4())
        try:
            body = json.dumps(dict(record), sort_keys=True, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise StorageError(f"Record is not JSON-serializable: {e}") from e
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO records (collection, record_id, body, stored_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (collection, record_id, body, time.time()),
                )
        except sqlite3.Error as e:
            logger.error("Memory store failed for %s: %s", collection, e)
            raise StorageError(f"Failed to store record in {collection}: {e}") from e
        return {"success": True, "id": record_id}

    def query_memory(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = 100,
    ) -> list[dict]:
        wanted = _clean_filters(filters)
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT body FROM records WHERE collection = ? ORDER BY seq DESC",
                    (collection,),
                ).fetchall()
        except sqlite3.Error as e:
            logger.error("Memory query failed for %s: %s", collection, e)
            raise StorageError(f"Failed to query {collection}: {e}") from e

        results: list[dict] = []
        for row in rows:
            record = json.loads(row["body"])
            if _matches(record, wanted):
                results.append(record)
                if limit is not None and len(results) >= limit:
                    break
        return results

    def delete(self, collection: str, record_id: str) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "DELETE FROM records WHERE collection = ? AND record_id = ?",
                    (collection, record_id),
                )
        except sqlite3.Error as e:
            logger.error("Memory delete failed for %s: %s", collection, e)
            raise StorageError(f"Failed to delete record from {collection}: {e}") from e
        return cur.rowcount > 0

    def get_user_preferences(self, user_id: str) -> dict:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT pref_key, value FROM preferences WHERE user_id = ?",
                    (user_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to load preferences for {user_id}: {e}") from e
        return {row["pref_key"]: json.loads(row["value"]) for row in rows}

    def store_user_preference(self, user_id: str, key: str, value: Any) -> dict:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO preferences (user_id, pref_key, value, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (user_id, pref_key)
                    DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (user_id, key, json.dumps(value, sort_keys=True), time.time()),
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to store preference {key} for {user_id}: {e}") from e
        return {"success": True, "user_id": user_id, "key": key}
