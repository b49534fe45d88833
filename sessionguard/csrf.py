"""
SessionGuard CSRF Protection — session-bound double-submit tokens.

Wire contract:
  • form field       csrf_token
  • request header   X-CSRF-Token
  • meta tag         <meta name="csrf-token" content="...">
  • token format     64 lowercase hex chars (32 bytes from `secrets`)

Tokens are compared with hmac.compare_digest only. Failures are non-fatal:
validators return booleans and handle_failure() raises only when the caller
passes terminate=True.
"""
from __future__ import annotations

import hmac
import html
import logging
import secrets
from typing import Iterable, Optional
from urllib.parse import urlsplit

from fastapi import HTTPException

from .request import RequestContext
from .session_manager import SessionManager

logger = logging.getLogger("sessionguard.csrf")

TOKEN_NAME = "csrf_token"
HEADER_NAME = "X-CSRF-Token"
META_NAME = "csrf-token"
TOKEN_BYTES = 32

FAILURE_BODY = {
    "error": "CSRF validation failed",
    "message": "Invalid or missing CSRF token",
}


class CsrfViolation(HTTPException):
    """403 raised by handle_failure(terminate=True)."""

    def __init__(self):
        super().__init__(status_code=403, detail=dict(FAILURE_BODY))


_DEFAULT_PORTS = {"http": 80, "https": 443}


def _split_origin(url: str) -> Optional[tuple[str, str, Optional[int]]]:
    """(scheme, host, explicit port) of an Origin/Referer value, or None."""
    try:
        parts = urlsplit(url)
        host, port = parts.hostname, parts.port
    except ValueError:
        return None
    if not host:
        return None
    return parts.scheme.lower(), host.lower(), port


def _split_host(host: str) -> tuple[str, Optional[int]]:
    try:
        parts = urlsplit("//" + host.strip())
        return (parts.hostname or "").lower(), parts.port
    except ValueError:
        return "", None


class CsrfProtection:
    """Token issue/validation against one SessionManager's payload."""

    def __init__(self, session_manager: SessionManager, request: Optional[RequestContext] = None):
        self._sm = session_manager
        self._request = request or session_manager.request

    # ── Tokens ───────────────────────────────────────────────────────────

    def generate_token(self) -> str:
        """Create, store and return a fresh token, replacing any prior one."""
        token = secrets.token_hex(TOKEN_BYTES)
        self._sm.set(TOKEN_NAME, token)
        return token

    def get_token(self) -> str:
        token = self._sm.get(TOKEN_NAME)
        if not token or not isinstance(token, str):
            token = self.generate_token()
        return token

    def validate_token(self, candidate: Optional[str]) -> bool:
        if not candidate or not isinstance(candidate, str):
            return False
        if not self._sm.is_active:
            return False
        stored = self._sm.get(TOKEN_NAME)
        if not stored or not isinstance(stored, str):
            return False
        return hmac.compare_digest(stored.encode("utf-8"), candidate.encode("utf-8"))

    def request_token(self) -> Optional[str]:
        """Form field first, X-CSRF-Token header for AJAX callers."""
        candidate = self._request.form_field(TOKEN_NAME)
        if not candidate:
            candidate = self._request.header(HEADER_NAME)
        return candidate

    def validate_request(self) -> bool:
        return self.validate_token(self.request_token())

    def validate_and_regenerate(self, candidate: Optional[str]) -> bool:
        """One-time use: a valid token is rotated immediately."""
        if not self.validate_token(candidate):
            return False
        self.generate_token()
        return True

    # ── Origin ───────────────────────────────────────────────────────────

    def validate_origin(self, allowed_origins: Iterable[str] = ()) -> bool:
        """Check Origin (or Referer) against the request host and allow-list.

        Host and port must both match the Host header. A side without an
        explicit port takes the default port of the Origin's scheme. The
        scheme itself is not compared (TLS may end at a proxy).
        Allow-list entries are either "host" (any port) or "host:port".

        Requests carrying neither header are treated as same-origin. That is
        a weaker guarantee; pair with validate_request() for real protection.
        """
        source = self._request.header("Origin") or self._request.header("Referer")
        if not source:
            return True

        parsed = _split_origin(source)
        if parsed is None:
            return False
        scheme, origin_host, origin_port = parsed
        default_port = _DEFAULT_PORTS.get(scheme)
        origin_port = origin_port or default_port

        if self._request.host:
            current_host, current_port = _split_host(self._request.host)
            if origin_host == current_host and origin_port == (current_port or default_port):
                return True

        allowed = {a.strip().lower() for a in allowed_origins if a and a.strip()}
        return origin_host in allowed or f"{origin_host}:{origin_port}" in allowed

    def validate_full(self, allowed_origins: Iterable[str] = ()) -> bool:
        return self.validate_request() and self.validate_origin(allowed_origins)

    # ── Failure handling ─────────────────────────────────────────────────

    def handle_failure(self, terminate: bool = False) -> None:
        """Log the rejected request; raise 403 only if the caller opts in."""
        logger.warning(
            "CSRF validation failed - ip=%s user_agent=%s referer=%s",
            self._request.ip or "unknown",
            self._request.user_agent or "unknown",
            self._request.header("Referer") or "none",
        )
        if terminate:
            raise CsrfViolation()

    # ── HTML carriers ────────────────────────────────────────────────────

    def hidden_input(self) -> str:
        token = html.escape(self.get_token(), quote=True)
        return f'<input type="hidden" name="{TOKEN_NAME}" value="{token}">'

    def meta_tag(self) -> str:
        token = html.escape(self.get_token(), quote=True)
        return f'<meta name="{META_NAME}" content="{token}">'
