from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class SessionStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"


# terminated is absorbing
TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset({SessionStatus.SUSPENDED, SessionStatus.TERMINATED}),
    SessionStatus.SUSPENDED: frozenset({SessionStatus.ACTIVE, SessionStatus.TERMINATED}),
    SessionStatus.TERMINATED: frozenset(),
}


def can_transition(src: SessionStatus, dst: SessionStatus) -> bool:
    return dst in TRANSITIONS[src]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MonitoredSession:
    session_id: str
    user_id: str
    device_id: str
    baseline_risk_score: float
    current_risk_score: Optional[float] = None
    last_evaluated_at: datetime = field(default_factory=_utc_now)
    status: SessionStatus = SessionStatus.ACTIVE
    # used to rebuild risk factors on each tick
    ip_address: str = "127.0.0.1"
    resource_id: str = "session"
    timezone: str = "UTC"
    reauth_required: bool = False
    interval: Optional[float] = None

    def __post_init__(self) -> None:
        if self.current_risk_score is None:
            self.current_risk_score = self.baseline_risk_score

    def snapshot(self) -> "MonitoredSession":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "baseline_risk_score": self.baseline_risk_score,
            "current_risk_score": self.current_risk_score,
            "last_evaluated_at": self.last_evaluated_at.isoformat(),
            "status": self.status.value,
            "reauth_required": self.reauth_required,
            "interval": self.interval,
        }
