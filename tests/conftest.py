"""
SessionGuard Test Configuration — pytest fixtures and helpers.

Sets up temporary secrets, data dirs and a controllable clock so the
session lifecycle can be tested without a web server or real waiting.
"""
import os

import pytest

from sessionguard import secret_loader
from sessionguard.anomaly import AnomalyDetector
from sessionguard.audit import AuditLogger
from sessionguard.policy import SecurityPolicy
from sessionguard.request import RequestContext
from sessionguard.session_manager import SessionManager, SessionTransport
from sessionguard.session_store import MemorySessionStore
from sessionguard.storage import JsonlAuditStorage

TEST_SECRET = "test-audit-hmac-key-for-unit-tests-1234567890"

BROWSER_UA = "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0"
PHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Safari/604.1"


@pytest.fixture(autouse=True)
def _isolate_env(tmp_path, monkeypatch):
    """Ensure every test runs in isolation with its own secrets and data dirs."""
    secrets_dir = tmp_path / "secrets"
    secrets_dir.mkdir()
    data_dir = tmp_path / "data"
    data_dir.mkdir()

    _write(secrets_dir / "audit_hmac_key", TEST_SECRET)

    monkeypatch.setenv("SG_SECRETS_DIR", str(secrets_dir))
    monkeypatch.setenv("SG_DATA_DIR", str(data_dir))
    monkeypatch.delenv("AUDIT_HMAC_KEY_FILE", raising=False)
    for name in (
        "SESSION_IDLE_TIMEOUT", "SESSION_ABSOLUTE_TIMEOUT", "SESSION_COOKIE_NAME",
        "SESSION_COOKIE_SAMESITE", "SESSION_COOKIE_SECURE", "SESSION_COOKIE_HTTPONLY",
        "SESSION_COOKIE_PATH", "SESSION_COOKIE_DOMAIN", "SG_AUDIT_BACKEND",
    ):
        monkeypatch.delenv(name, raising=False)
    secret_loader.reset()

    yield

    secret_loader.reset()


def _write(path, content):
    path.write_text(content, encoding="utf-8")
    os.chmod(str(path), 0o640)


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingTransport(SessionTransport):
    def __init__(self):
        self.issued = []
        self.invalidated = []

    def issue(self, session_id):
        self.issued.append(session_id)

    def invalidate(self, session_id):
        self.invalidated.append(session_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit_storage(tmp_path):
    return JsonlAuditStorage(tmp_path / "audit.jsonl")


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage, TEST_SECRET)


@pytest.fixture
def policy():
    return SecurityPolicy(idle_timeout_seconds=300, absolute_timeout_seconds=3600, secure=False)


@pytest.fixture
def backend():
    """Shared session registry standing in for the server-side store."""
    return {}


@pytest.fixture
def make_manager(policy, audit_logger, backend, clock):
    """Build one request's SessionManager, the way a web adapter would."""

    def _make(session_id=None, ip="203.0.113.10", user_agent=BROWSER_UA, transport=None, **request_kw):
        request = RequestContext(ip=ip, user_agent=user_agent, **request_kw)
        return SessionManager(
            policy,
            audit_logger,
            AnomalyDetector(),
            MemorySessionStore(backend, session_id),
            request,
            transport=transport,
            clock=clock,
        )

    return _make


def actions(rows):
    """Chronological action list from a newest-first query result."""
    return [r["action"] for r in reversed(rows)]
