"""Per-request client data consumed by the session core."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional


@dataclass(frozen=True)
class RequestContext:
    """What the core needs to know about the current request.

    Built by the web adapter (see ``sessionguard.web``) or by hand in tests.
    Header lookup is case-insensitive.
    """

    method: str = "GET"
    ip: str = "0.0.0.0"
    user_agent: str = "unknown"
    host: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    form: Mapping[str, str] = field(default_factory=dict)
    https: bool = False

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def form_field(self, name: str) -> Optional[str]:
        value = self.form.get(name)
        return value if isinstance(value, str) else None
