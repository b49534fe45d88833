"""SessionGuard — session lifecycle security, CSRF tokens and a tamper-evident audit trail."""
from .anomaly import AnomalyDetector, AnomalyResult, AnomalyStatus, ClientContext, compute_fingerprint
from .audit import AuditAction, AuditLogEntry, AuditLogger, compute_integrity_tag
from .csrf import CsrfProtection, CsrfViolation
from .policy import SecurityPolicy
from .request import RequestContext
from .session_manager import ABSENT, RegenerateResult, SessionManager, SessionState, SessionTransport
from .session_store import FileSessionStore, MemorySessionStore, SessionRecord, SessionStore
from .storage import AuditStorage, JsonlAuditStorage, SqliteAuditStorage, StorageError

__version__ = "1.0.0"
