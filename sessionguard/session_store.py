"""
SessionGuard Session Stores — server-side persistence behind a session id.

A store is bound to ONE client identifier for the duration of a request
(the value of the session cookie, or None). SessionManager never touches
global state; everything it knows about the session comes through here.

Stores:
  MemorySessionStore  → dict-backed, for tests and single-process apps
  FileSessionStore    → JSON registry on disk, atomic writes + fcntl lock

Unknown identifiers behave exactly like a missing cookie: the next
create_identifier() issues a fresh server-generated id, so a client can
never choose its own session id (fixation).
"""
from __future__ import annotations

import copy
import logging
import os
import secrets
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from .utils import atomic_json_save, file_lock, json_load_safe

logger = logging.getLogger("sessionguard.session_store")

_SESSION_ID_BYTES = 32  # 64 hex chars


def new_session_id() -> str:
    return secrets.token_hex(_SESSION_ID_BYTES)


@dataclass
class SessionRecord:
    id: str
    created_at: float
    last_activity: float
    fingerprint: str
    user_id: Optional[str] = None
    previous_context: Optional[dict] = None
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SessionRecord":
        return cls(
            id=data["id"],
            created_at=float(data["created_at"]),
            last_activity=float(data["last_activity"]),
            fingerprint=data.get("fingerprint", ""),
            user_id=data.get("user_id"),
            previous_context=data.get("previous_context"),
            payload=dict(data.get("payload") or {}),
        )


class SessionStore(ABC):
    """Per-request handle on one session's server-side record."""

    @abstractmethod
    def identifier(self) -> Optional[str]:
        """Current session id, or None when the client has none."""

    @abstractmethod
    def get(self) -> Optional[SessionRecord]:
        """The stored record for the current id, or None."""

    @abstractmethod
    def set(self, record: SessionRecord) -> None:
        """Persist `record` under the current id."""

    @abstractmethod
    def clear(self) -> None:
        """Delete the record and forget the id."""

    @abstractmethod
    def create_identifier(self) -> str:
        """Bind a fresh server-generated id (no record yet)."""

    @abstractmethod
    def regenerate_identifier(self) -> str:
        """Move the record to a fresh id and retire the old one. Returns the new id."""


class MemorySessionStore(SessionStore):
    """Stores records in a caller-owned dict shared across requests."""

    def __init__(self, backend: dict, session_id: Optional[str] = None):
        self._backend = backend
        self._sid = session_id

    def identifier(self) -> Optional[str]:
        return self._sid

    def get(self) -> Optional[SessionRecord]:
        if not self._sid or self._sid not in self._backend:
            return None
        return SessionRecord.from_dict(copy.deepcopy(self._backend[self._sid]))

    def set(self, record: SessionRecord) -> None:
        if record.id != self._sid:
            raise ValueError("record id does not match the bound session id")
        self._backend[self._sid] = copy.deepcopy(record.to_dict())

    def clear(self) -> None:
        if self._sid:
            self._backend.pop(self._sid, None)
        self._sid = None

    def create_identifier(self) -> str:
        self._sid = new_session_id()
        return self._sid

    def regenerate_identifier(self) -> str:
        old = self._sid
        new = new_session_id()
        data = self._backend.pop(old, None) if old else None
        if data is not None:
            data["id"] = new
            self._backend[new] = data
        self._sid = new
        return new


class FileSessionStore(SessionStore):
    """Sessions in `<data_dir>/.sg_sessions.json`, shared across workers.

    Each operation is a locked load-modify-save of the whole registry.
    Concurrent requests on the SAME id are last-writer-wins.
    """

    def __init__(self, session_id: Optional[str], data_dir: str | os.PathLike):
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._file = str(self._data_dir / ".sg_sessions.json")
        self._sid = session_id

    def _load(self) -> dict:
        data = json_load_safe(self._file, {"sessions": {}})
        data.setdefault("sessions", {})
        return data

    def identifier(self) -> Optional[str]:
        return self._sid

    def get(self) -> Optional[SessionRecord]:
        if not self._sid:
            return None
        with file_lock(self._file, exclusive=False):
            raw = self._load()["sessions"].get(self._sid)
        if raw is None:
            return None
        try:
            return SessionRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding malformed session record: session=%s", self._sid[:8])
            return None

    def set(self, record: SessionRecord) -> None:
        if record.id != self._sid:
            raise ValueError("record id does not match the bound session id")
        with file_lock(self._file):
            data = self._load()
            data["sessions"][self._sid] = record.to_dict()
            atomic_json_save(self._file, data)

    def clear(self) -> None:
        if self._sid:
            with file_lock(self._file):
                data = self._load()
                if data["sessions"].pop(self._sid, None) is not None:
                    atomic_json_save(self._file, data)
        self._sid = None

    def create_identifier(self) -> str:
        self._sid = new_session_id()
        return self._sid

    def regenerate_identifier(self) -> str:
        old = self._sid
        new = new_session_id()
        with file_lock(self._file):
            data = self._load()
            raw = data["sessions"].pop(old, None) if old else None
            if raw is not None:
                raw["id"] = new
                data["sessions"][new] = raw
                atomic_json_save(self._file, data)
        self._sid = new
        return new
