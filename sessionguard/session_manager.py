"""
SessionGuard Session Manager — per-request session lifecycle state machine
==========================================================================

States: ABSENT → ACTIVE → DESTROYED

  • start()       load or create the record, enforce idle/absolute timeout
                  (an expired record is replaced by a fresh one), run
                  anomaly detection, persist
  • regenerate()  new identifier, payload carried forward (anti-fixation)
  • destroy()     audit first, then clear server and client state
  • get()/set()   payload access while ACTIVE

Ordering inside start() is load-bearing: the timeout check runs strictly
before anomaly detection, and an expired record is destroyed before
anything else touches it.

One instance serves exactly one request. There is no internal locking;
concurrent requests on the same session id are serialised (or not) by the
session store, and otherwise resolve as last-writer-wins.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, NamedTuple, Optional

from .anomaly import AnomalyDetector, ClientContext
from .audit import AuditAction, AuditLogger
from .policy import SecurityPolicy
from .request import RequestContext
from .session_store import SessionRecord, SessionStore

logger = logging.getLogger("sessionguard.session_manager")

USER_ID_KEY = "user_id"


class _Absent:
    """Marker returned by SessionManager.get() for keys that were never set."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT: Any = _Absent()


class SessionState(str, Enum):
    ABSENT = "absent"
    ACTIVE = "active"
    DESTROYED = "destroyed"


class RegenerateResult(NamedTuple):
    old: Optional[str]
    new: Optional[str]


class SessionTransport(ABC):
    """Carries the session identifier to and from the client (cookies)."""

    @abstractmethod
    def issue(self, session_id: str) -> None:
        ...

    @abstractmethod
    def invalidate(self, session_id: str) -> None:
        ...


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class SessionManager:
    """Owns one session record for the lifetime of one request."""

    def __init__(
        self,
        policy: SecurityPolicy,
        audit_logger: AuditLogger,
        detector: AnomalyDetector,
        store: SessionStore,
        request: RequestContext,
        transport: Optional[SessionTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._policy = policy
        self._audit = audit_logger
        self._detector = detector
        self._store = store
        self._request = request
        self._transport = transport
        self._clock = clock

        self._state = SessionState.ABSENT
        self._record: Optional[SessionRecord] = None
        self._started = False
        self._context = ClientContext.build(request.ip, request.user_agent)

    # ── Introspection ────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is SessionState.ACTIVE

    @property
    def session_id(self) -> Optional[str]:
        return self._record.id if self._record else None

    @property
    def user_id(self) -> Optional[str]:
        return self._record.user_id if self._record else None

    @property
    def record(self) -> Optional[SessionRecord]:
        return self._record

    @property
    def request(self) -> RequestContext:
        return self._request

    @property
    def policy(self) -> SecurityPolicy:
        return self._policy

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self) -> SessionState:
        """Load or create the session for this request. Idempotent."""
        if self._started:
            return self._state
        self._started = True

        now = self._clock()
        record = self._store.get()
        if record is None:
            self._create(now)
            return self._state

        self._record = record
        self._state = SessionState.ACTIVE

        if self._expire_if_needed(record, now):
            # Expired record is gone; the request continues on a fresh id
            self._create(now)
            return self._state

        record.last_activity = max(record.last_activity, now)
        self._check_anomaly(record, now)
        self._store.set(record)
        return self._state

    def regenerate(self) -> RegenerateResult:
        """Swap the session identifier, keeping payload and created_at."""
        if self._state is not SessionState.ACTIVE or self._record is None:
            return RegenerateResult(None, None)

        now = self._clock()
        record = self._record
        old_id = record.id
        new_id = self._store.regenerate_identifier()
        record.id = new_id
        record.last_activity = max(record.last_activity, now)
        self._store.set(record)

        self._emit(AuditAction.REGENERATE, now, {
            "old_session_id": old_id,
            "new_session_id": new_id,
        })
        if self._transport is not None:
            self._transport.issue(new_id)

        logger.info(
            "Session regenerated: user=%s old=%s new=%s",
            record.user_id,
            old_id[:8],
            new_id[:8],
        )
        return RegenerateResult(old_id, new_id)

    def destroy(self) -> None:
        """Audit, then wipe the session. No-op unless ACTIVE."""
        if self._state is not SessionState.ACTIVE or self._record is None:
            return

        now = self._clock()
        record = self._record
        # Log before clearing so the row still carries the user association
        self._emit(AuditAction.DESTROY, now)

        record.payload.clear()
        self._store.clear()
        if self._transport is not None:
            self._transport.invalidate(record.id)
        self._state = SessionState.DESTROYED

        logger.info("Session destroyed: user=%s session=%s", record.user_id, record.id[:8])
        self._record = None

    # ── Payload ──────────────────────────────────────────────────────────

    def get(self, key: str) -> Any:
        """Payload value for `key`, or ABSENT."""
        record = self._require_active()
        return record.payload.get(key, ABSENT)

    def set(self, key: str, value: Any) -> None:
        record = self._require_active()
        record.payload[key] = value
        if key == USER_ID_KEY:
            record.user_id = None if value is None else str(value)
        self._store.set(record)

    def _require_active(self) -> SessionRecord:
        if self._state is not SessionState.ACTIVE or self._record is None:
            raise RuntimeError(f"session is {self._state.value}; call start() first")
        return self._record

    # ── Internals ────────────────────────────────────────────────────────

    def _create(self, now: float) -> None:
        session_id = self._store.create_identifier()
        record = SessionRecord(
            id=session_id,
            created_at=now,
            last_activity=now,
            fingerprint=self._context.fingerprint,
            # First observation: nothing to compare against yet
            previous_context=self._context.to_dict(),
        )
        self._store.set(record)
        self._record = record
        self._state = SessionState.ACTIVE

        self._emit(AuditAction.CREATE, now)
        if self._transport is not None:
            self._transport.issue(session_id)

        logger.info(
            "Session created: session=%s device=%s",
            session_id[:8],
            self._context.fingerprint[:16],
        )

    def _expire_if_needed(self, record: SessionRecord, now: float) -> bool:
        idle = now - record.last_activity
        limit = self._policy.idle_timeout_seconds
        if idle > limit:
            self._emit(AuditAction.TIMEOUT, now, {
                "kind": "idle",
                "idle_seconds": round(idle, 3),
                "timeout_limit": limit,
                "last_activity": _iso(record.last_activity),
                "current_time": _iso(now),
            })
            logger.warning(
                "Session idle timeout: user=%s session=%s idle=%.0fs limit=%ds",
                record.user_id,
                record.id[:8],
                idle,
                limit,
            )
            self.destroy()
            return True

        absolute = self._policy.absolute_timeout_seconds
        age = now - record.created_at
        if absolute is not None and age > absolute:
            self._emit(AuditAction.TIMEOUT, now, {
                "kind": "absolute",
                "session_age": round(age, 3),
                "timeout_limit": absolute,
                "created_at": _iso(record.created_at),
                "current_time": _iso(now),
            })
            logger.warning(
                "Session absolute timeout: user=%s session=%s age=%.0fs limit=%ds",
                record.user_id,
                record.id[:8],
                age,
                absolute,
            )
            self.destroy()
            return True

        return False

    def _check_anomaly(self, record: SessionRecord, now: float) -> None:
        previous = ClientContext.from_dict(record.previous_context)
        result = self._detector.detect(self._context, previous)
        if result.is_anomalous:
            self._emit(AuditAction.ANOMALY, now, {
                "reasons": list(result.reasons),
                "previous_ip": previous.ip if previous else None,
                "previous_fingerprint": previous.fingerprint if previous else None,
            })
            logger.warning(
                "Session anomaly: user=%s session=%s reasons=%s",
                record.user_id,
                record.id[:8],
                ", ".join(result.reasons),
            )
        record.previous_context = self._context.to_dict()
        record.fingerprint = self._context.fingerprint

    def _emit(self, action: AuditAction, now: float, meta: Optional[dict] = None) -> bool:
        record = self._record
        return self._audit.write({
            "session_id": record.id if record else self._store.identifier(),
            "user_id": record.user_id if record else None,
            "action": action,
            "ip": self._context.ip,
            "user_agent": self._context.user_agent,
            "fingerprint": self._context.fingerprint,
            "meta": meta or {},
            "created_at": _iso(now),
        })
