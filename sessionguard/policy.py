"""
SessionGuard Security Policy — immutable per-manager configuration.

A policy carries the timeout limits enforced by SessionManager and the cookie
attributes handed to the transport collaborator. It is frozen after
construction and safe to share read-only across requests.
"""
from __future__ import annotations

import os
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

_TRUTHY = ("true", "1", "yes", "on")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


def _env_optional_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip()
    # 0 / empty disables the limit
    if raw in ("", "0"):
        return None
    return int(raw)


class SecurityPolicy(BaseModel):
    """Timeouts plus cookie attributes. Frozen."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    idle_timeout_seconds: int = Field(default=300, gt=0)
    absolute_timeout_seconds: Optional[int] = Field(default=86400, gt=0)

    # Cookie attributes (consumed only by the transport)
    cookie_name: str = Field(default="sgsid", min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    same_site: Literal["Strict", "Lax", "None"] = "Lax"
    secure: bool = True
    http_only: bool = True
    path: str = "/"
    domain: Optional[str] = None

    @classmethod
    def from_env(cls) -> "SecurityPolicy":
        """Build a policy from SESSION_* environment variables.

        Raises pydantic.ValidationError for out-of-range values and
        ValueError for non-numeric timeouts, so a bad deployment fails at
        startup rather than on the first request.
        """
        return cls(
            idle_timeout_seconds=int(os.getenv("SESSION_IDLE_TIMEOUT", "300")),
            absolute_timeout_seconds=_env_optional_int("SESSION_ABSOLUTE_TIMEOUT", 86400),
            cookie_name=os.getenv("SESSION_COOKIE_NAME", "sgsid"),
            same_site=os.getenv("SESSION_COOKIE_SAMESITE", "Lax"),
            secure=_env_bool("SESSION_COOKIE_SECURE", True),
            http_only=_env_bool("SESSION_COOKIE_HTTPONLY", True),
            path=os.getenv("SESSION_COOKIE_PATH", "/"),
            domain=os.getenv("SESSION_COOKIE_DOMAIN") or None,
        )

    def cookie_params(self, https: bool) -> dict:
        """Keyword arguments for Starlette's ``Response.set_cookie``.

        The Secure flag is only emitted when the policy asks for it AND the
        request actually arrived over HTTPS; browsers drop Secure cookies set
        over plain HTTP. SameSite=None always forces Secure.
        """
        secure = self.secure and https
        if self.same_site == "None":
            secure = True
        return {
            "key": self.cookie_name,
            "max_age": self.idle_timeout_seconds,
            "path": self.path,
            "domain": self.domain,
            "secure": secure,
            "httponly": self.http_only,
            "samesite": self.same_site.lower(),
        }
