"""
SessionGuard FastAPI adapter — wires the session core into a web app.

  • client_ip()           X-Forwarded-For honoured only from trusted proxies
  • build_request_context Starlette Request → RequestContext
  • CookieTransport       session cookie issue / expiry on the Response
  • SessionGuard          FastAPI dependency yielding a started SessionManager,
                          plus CSRF enforcement and audit routes

Usage:
    guard = SessionGuard.from_env()
    app = FastAPI()

    @app.post("/transfer")
    async def transfer(csrf: CsrfProtection = Depends(guard.csrf_required())):
        ...

    register_audit_routes(app, guard.audit_logger, dependencies=[Depends(require_admin)])
"""
from __future__ import annotations

import ipaddress
import logging
import os
import time
from pathlib import Path
from typing import Callable, Iterable, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response

from .anomaly import AnomalyDetector
from .audit import AuditAction, AuditLogger
from .csrf import CsrfProtection
from .policy import SecurityPolicy
from .request import RequestContext
from .secret_loader import get_secret
from .session_manager import SessionManager, SessionTransport
from .session_store import FileSessionStore, SessionStore
from .storage import AuditStorage, JsonlAuditStorage, SqliteAuditStorage

logger = logging.getLogger("sessionguard.web")

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})
_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

_DEFAULT_TRUSTED = "172.16.0.0/12,10.0.0.0/8,192.168.0.0/16,127.0.0.0/8,::1/128"


def _parse_cidrs(raw: str) -> list:
    nets = []
    for cidr in raw.split(","):
        cidr = cidr.strip()
        if not cidr:
            continue
        try:
            nets.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.warning("Ignoring invalid CIDR in TRUSTED_PROXY_IPS: %r", cidr)
    return nets


# ── Trusted proxy CIDR list (only trust X-Forwarded-For from these) ───
_TRUSTED_PROXY_NETS: list = _parse_cidrs(os.getenv("TRUSTED_PROXY_IPS", _DEFAULT_TRUSTED))


def reload_trusted_proxies() -> None:
    global _TRUSTED_PROXY_NETS
    _TRUSTED_PROXY_NETS = _parse_cidrs(os.getenv("TRUSTED_PROXY_IPS", _DEFAULT_TRUSTED))


def ip_is_trusted(ip_str: str) -> bool:
    """Check if an IP address falls within trusted proxy CIDRs."""
    try:
        addr = ipaddress.ip_address(ip_str)
        return any(addr in net for net in _TRUSTED_PROXY_NETS)
    except ValueError:
        return False


def client_ip(request: Request) -> str:
    """Extract client IP safely. Only trust X-Forwarded-For when the direct
    peer is in TRUSTED_PROXY_IPS; then take the rightmost non-trusted IP
    from the XFF chain."""
    peer = request.client.host if request.client else "unknown"
    fwd = request.headers.get("X-Forwarded-For", "")
    if fwd and ip_is_trusted(peer):
        parts = [p.strip() for p in fwd.split(",") if p.strip()]
        for ip in reversed(parts):
            if not ip_is_trusted(ip):
                return ip
        # All IPs in chain are trusted → return leftmost
        return parts[0] if parts else peer
    return peer


def _is_https(request: Request) -> bool:
    if request.url.scheme == "https":
        return True
    peer = request.client.host if request.client else ""
    return ip_is_trusted(peer) and request.headers.get("X-Forwarded-Proto", "").lower() == "https"


async def build_request_context(request: Request) -> RequestContext:
    form: dict[str, str] = {}
    if request.method not in SAFE_METHODS:
        ctype = request.headers.get("content-type", "")
        if ctype.startswith(_FORM_TYPES):
            data = await request.form()
            form = {k: v for k, v in data.items() if isinstance(v, str)}
    return RequestContext(
        method=request.method,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent", "unknown"),
        host=request.headers.get("host", ""),
        headers=dict(request.headers),
        form=form,
        https=_is_https(request),
    )


class CookieTransport(SessionTransport):
    """Writes the session cookie onto a Starlette Response."""

    def __init__(self, response: Response, policy: SecurityPolicy, https: bool = False):
        self._response = response
        self._params = policy.cookie_params(https)

    def issue(self, session_id: str) -> None:
        self._response.set_cookie(value=session_id, **self._params)

    def invalidate(self, session_id: str) -> None:
        self._response.delete_cookie(
            self._params["key"],
            path=self._params["path"],
            domain=self._params["domain"],
            secure=self._params["secure"],
            httponly=self._params["httponly"],
            samesite=self._params["samesite"],
        )


class SessionGuard:
    """Per-app wiring. Calling the instance is a FastAPI dependency."""

    def __init__(
        self,
        policy: SecurityPolicy,
        audit_logger: AuditLogger,
        store_factory: Callable[[Optional[str]], SessionStore],
        detector: Optional[AnomalyDetector] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.policy = policy
        self.audit_logger = audit_logger
        self.store_factory = store_factory
        self.detector = detector or AnomalyDetector()
        self.clock = clock

    @classmethod
    def from_env(cls) -> "SessionGuard":
        """Build from SESSION_* / SG_* env vars and the audit key secret.

        Fails fast (RuntimeError / StorageError) on a missing key or an
        unusable data directory.
        """
        data_dir = Path(os.getenv("SG_DATA_DIR", "/data"))
        backend = os.getenv("SG_AUDIT_BACKEND", "jsonl").lower().strip()
        storage: AuditStorage
        if backend == "sqlite":
            storage = SqliteAuditStorage(data_dir / "session_logs.sqlite")
        else:
            if backend != "jsonl":
                logger.warning("Unknown SG_AUDIT_BACKEND=%r, falling back to jsonl", backend)
            storage = JsonlAuditStorage(data_dir / ".sg_audit.jsonl")

        audit_logger = AuditLogger(storage, get_secret("AUDIT_HMAC_KEY"))
        logger.info("SessionGuard ready: audit=%s data_dir=%s", type(storage).__name__, data_dir)
        return cls(
            policy=SecurityPolicy.from_env(),
            audit_logger=audit_logger,
            store_factory=lambda sid: FileSessionStore(sid, data_dir),
        )

    async def __call__(self, request: Request, response: Response) -> SessionManager:
        ctx = await build_request_context(request)
        sid = request.cookies.get(self.policy.cookie_name)
        manager = SessionManager(
            self.policy,
            self.audit_logger,
            self.detector,
            self.store_factory(sid),
            ctx,
            transport=CookieTransport(response, self.policy, ctx.https),
            clock=self.clock,
        )
        manager.start()
        request.state.session = manager
        return manager

    def csrf_required(self, allowed_origins: Iterable[str] = (), one_time: bool = False):
        """Dependency factory: 403 on unsafe methods failing token/origin checks.

        With one_time=True a valid token is rotated on use, so a captured
        token cannot be replayed.
        """
        allowed = tuple(allowed_origins)

        async def dependency(manager: SessionManager = Depends(self)) -> CsrfProtection:
            csrf = CsrfProtection(manager)
            if manager.request.method in SAFE_METHODS:
                return csrf
            if one_time:
                # origin first so a cross-site request cannot burn the token
                ok = csrf.validate_origin(allowed) and csrf.validate_and_regenerate(csrf.request_token())
            else:
                ok = csrf.validate_full(allowed)
            if not ok:
                csrf.handle_failure(terminate=True)
            return csrf

        return dependency


def register_audit_routes(app: FastAPI, audit_logger: AuditLogger, dependencies: Iterable = ()) -> None:
    """Mount read-only audit endpoints under /audit. Guard them via `dependencies`."""
    router = APIRouter(prefix="/audit", dependencies=list(dependencies))

    def _filters(session_id, user_id, action) -> dict:
        return {
            "session_id": session_id,
            "user_id": user_id,
            "action": action.value if action else None,
        }

    @router.get("/logs")
    async def list_logs(
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
    ):
        items = audit_logger.query(_filters(session_id, user_id, action))
        return {"items": items, "count": len(items)}

    @router.get("/verify")
    async def verify_logs(
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
    ):
        items = []
        for row in audit_logger.query(_filters(session_id, user_id, action)):
            items.append({
                "session_id": row.get("session_id"),
                "action": row.get("action"),
                "created_at": row.get("created_at"),
                "valid": audit_logger.verify(row),
            })
        tampered = sum(1 for i in items if not i["valid"])
        if tampered:
            logger.warning("Audit verification found %d tampered row(s)", tampered)
        return {"checked": len(items), "tampered": tampered, "items": items}

    app.include_router(router)
