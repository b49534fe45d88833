"""
SessionGuard Audit Logger — tamper-evident session event trail.

Every security-relevant session event becomes one append-only row:

  • Canonical form: JSON with sorted keys, compact separators, UTF-8
  • integrity_tag = HMAC-SHA256(secret, canonical form of every other field)
  • Verification re-serialises the same field set and compares in constant time

This is tamper EVIDENCE: a modified field is detected, but a compromised
store deleting whole rows is not.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .storage import AuditStorage

logger = logging.getLogger("sessionguard.audit")

_MIN_SECRET_LENGTH = 8


class AuditAction(str, Enum):
    CREATE = "create"
    REGENERATE = "regenerate"
    DESTROY = "destroy"
    TIMEOUT = "timeout"
    ANOMALY = "anomaly"


class AuditLogEntry(BaseModel):
    """One audit row. Frozen once built; the tag is attached by AuditLogger."""

    model_config = ConfigDict(frozen=True, extra="forbid", use_enum_values=True)

    session_id: Optional[str] = None
    user_id: Optional[str] = None
    action: AuditAction
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    fingerprint: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: str
    integrity_tag: Optional[str] = None


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def canonical_encoding(row: dict) -> bytes:
    """Byte encoding the tag is computed over. Excludes the tag itself."""
    payload = {k: v for k, v in row.items() if k != "integrity_tag"}
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_integrity_tag(row: dict, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_encoding(row), hashlib.sha256).hexdigest()


class AuditLogger:
    """Builds, signs and forwards audit rows to a storage backend."""

    def __init__(self, storage: AuditStorage, secret_key: str):
        if not secret_key or len(secret_key) < _MIN_SECRET_LENGTH:
            raise ValueError(f"audit secret must be at least {_MIN_SECRET_LENGTH} characters")
        self._storage = storage
        self._secret = secret_key

    def __repr__(self) -> str:
        return f"AuditLogger(storage={type(self._storage).__name__})"

    @property
    def storage(self) -> AuditStorage:
        return self._storage

    def write(self, event: dict) -> bool:
        """Stamp, sign and persist one event. Returns the storage result.

        Raises pydantic.ValidationError for a malformed event (unknown action,
        unexpected field): that is a programming error, not a write failure.
        """
        data = dict(event)
        data.pop("integrity_tag", None)
        if not data.get("created_at"):
            data["created_at"] = utc_now_iso()

        row = AuditLogEntry(**data).model_dump(exclude={"integrity_tag"})
        row["integrity_tag"] = compute_integrity_tag(row, self._secret)

        ok = self._storage.persist_log(row)
        if not ok:
            logger.warning(
                "Audit write failed: action=%s session=%s",
                row["action"],
                (row.get("session_id") or "")[:8],
            )
        return ok

    def verify(self, row: dict) -> bool:
        """True when the stored tag matches a recomputation over the row."""
        tag = row.get("integrity_tag")
        if not isinstance(tag, str) or not tag:
            return False
        fields = {k: row.get(k) for k in AuditLogEntry.model_fields if k != "integrity_tag"}
        expected = compute_integrity_tag(fields, self._secret)
        return hmac.compare_digest(expected, tag)

    def query(self, filters: Optional[dict] = None) -> list[dict]:
        return self._storage.query_logs(filters or {})
