"""
SessionGuard Anomaly Detection — client-context drift between requests.

Compares the client context of the current request with the one stored on
the session by the previous request. Detection only: callers decide what a
drift means. Behind NAT or rotating proxies the IP field is unstable, so an
anomaly is a signal, never proof of hijacking.
"""
from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

REASON_IP_CHANGED = "IP address changed"
REASON_UA_CHANGED = "Device/User-Agent changed"


def compute_fingerprint(ip: str, user_agent: str) -> str:
    """SHA-256 of ``user_agent|ip``. A cheap identity proxy, not a device id."""
    canonical = f"{user_agent}|{ip}".encode("utf-8")
    return hashlib.sha256(canonical).hexdigest()


@dataclass(frozen=True)
class ClientContext:
    ip: str
    user_agent: str
    fingerprint: str

    @classmethod
    def build(cls, ip: Optional[str], user_agent: Optional[str]) -> "ClientContext":
        ip = ip or "0.0.0.0"
        user_agent = user_agent or "unknown"
        return cls(ip=ip, user_agent=user_agent, fingerprint=compute_fingerprint(ip, user_agent))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ClientContext"]:
        if not data:
            return None
        return cls(
            ip=data.get("ip", ""),
            user_agent=data.get("user_agent", ""),
            fingerprint=data.get("fingerprint", ""),
        )


class AnomalyStatus(str, Enum):
    NORMAL = "normal"
    ANOMALOUS = "anomalous"


@dataclass(frozen=True)
class AnomalyResult:
    status: AnomalyStatus
    reasons: list[str] = field(default_factory=list)

    @property
    def is_anomalous(self) -> bool:
        return self.status is AnomalyStatus.ANOMALOUS


class AnomalyDetector:
    """Stateless field-by-field comparator."""

    def detect(self, current: ClientContext, previous: Optional[ClientContext]) -> AnomalyResult:
        if previous is None:
            return AnomalyResult(AnomalyStatus.NORMAL)

        reasons = []
        if current.ip != previous.ip:
            reasons.append(REASON_IP_CHANGED)
        if current.user_agent != previous.user_agent:
            reasons.append(REASON_UA_CHANGED)

        if reasons:
            return AnomalyResult(AnomalyStatus.ANOMALOUS, reasons)
        return AnomalyResult(AnomalyStatus.NORMAL)
