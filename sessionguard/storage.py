"""
SessionGuard Audit Storage — persistence backends behind AuditLogger.

Backends:
  jsonl   → append-only JSONL file with fcntl advisory locking
  sqlite  → `session_logs` table, indexed on session_id and created_at

Contract (both backends):
  • persist_log(entry) -> bool   never raises for ordinary write failures
  • query_logs(filters) -> list  filters: session_id, user_id, action;
                                 newest first, capped at 100 rows
  • Construction failure (unwritable path, bad database) raises StorageError
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .utils import jsonl_append, jsonl_scan

logger = logging.getLogger("sessionguard.storage")

QUERY_LIMIT = 100
FILTER_KEYS = ("session_id", "user_id", "action")

_COLUMNS = (
    "session_id", "user_id", "action", "ip", "user_agent",
    "fingerprint", "meta", "created_at", "integrity_tag",
)


class StorageError(RuntimeError):
    """Audit storage could not be opened. Fatal at startup."""


def _active_filters(filters: Optional[dict]) -> dict:
    filters = filters or {}
    return {k: filters[k] for k in FILTER_KEYS if filters.get(k)}


class AuditStorage(ABC):

    @abstractmethod
    def persist_log(self, entry: dict) -> bool:
        ...

    @abstractmethod
    def query_logs(self, filters: Optional[dict] = None) -> list[dict]:
        ...


class JsonlAuditStorage(AuditStorage):
    """One JSON object per line. Rows are never rewritten."""

    def __init__(self, path: str | os.PathLike):
        self._path = Path(path)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            # Touch with append mode so permission problems surface now
            with open(self._path, "a", encoding="utf-8"):
                pass
        except OSError as e:
            raise StorageError(f"Cannot open audit log {self._path}: {e}") from e

    @property
    def path(self) -> Path:
        return self._path

    def persist_log(self, entry: dict) -> bool:
        row = {k: entry.get(k) for k in _COLUMNS}
        if row["meta"] is None:
            row["meta"] = {}
        try:
            jsonl_append(str(self._path), row)
        except (OSError, TypeError, ValueError) as e:
            logger.error("Audit persist failed (jsonl): %s", e)
            return False
        return True

    def query_logs(self, filters: Optional[dict] = None) -> list[dict]:
        active = _active_filters(filters)
        rows = jsonl_scan(
            str(self._path),
            lambda r: all(r.get(k) == v for k, v in active.items()),
        )
        # File order is insertion order; reversing first keeps
        # newest-inserted first among equal timestamps after the stable sort.
        rows.reverse()
        rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
        return rows[:QUERY_LIMIT]


class SqliteAuditStorage(AuditStorage):
    """SQLite-backed audit log. One connection per storage instance."""

    def __init__(self, path: str | os.PathLike):
        self._path = Path(path)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._path))
            self._conn.row_factory = sqlite3.Row
            self._init_schema()
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Cannot open audit database {self._path}: {e}") from e

    def _init_schema(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS session_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT,
                    user_id TEXT,
                    action TEXT NOT NULL,
                    ip TEXT,
                    user_agent TEXT,
                    fingerprint TEXT,
                    meta TEXT,
                    created_at TEXT NOT NULL,
                    integrity_tag TEXT NOT NULL
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_session_id ON session_logs(session_id)")
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_created_at ON session_logs(created_at)")

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        self._conn.close()

    def persist_log(self, entry: dict) -> bool:
        values = [entry.get(k) for k in _COLUMNS]
        values[_COLUMNS.index("meta")] = json.dumps(
            entry.get("meta") or {}, separators=(",", ":"), ensure_ascii=False
        )
        placeholders = ",".join("?" for _ in _COLUMNS)
        try:
            with self._conn:
                self._conn.execute(
                    f"INSERT INTO session_logs ({','.join(_COLUMNS)}) VALUES ({placeholders})",
                    values,
                )
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.error("Audit persist failed (sqlite): %s", e)
            return False
        return True

    def query_logs(self, filters: Optional[dict] = None) -> list[dict]:
        active = _active_filters(filters)
        sql = "SELECT * FROM session_logs"
        if active:
            # keys come from FILTER_KEYS, never from the caller
            sql += " WHERE " + " AND ".join(f"{k} = ?" for k in active)
        sql += f" ORDER BY created_at DESC, id DESC LIMIT {QUERY_LIMIT}"

        out = []
        for row in self._conn.execute(sql, list(active.values())):
            item = dict(row)
            try:
                item["meta"] = json.loads(item["meta"]) if item["meta"] else {}
            except json.JSONDecodeError:
                # leave undecodable meta as-is; verification will flag the row
                pass
            out.append(item)
        return out
