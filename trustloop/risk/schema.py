from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

FACTORS: Tuple[str, ...] = ("location", "device", "behavior", "time", "resource")

# Fixed weights; they sum to 1.0 so the total stays in [0, 1].
FACTOR_WEIGHTS: Dict[str, float] = {
    "location": 0.30,
    "device": 0.20,
    "behavior": 0.25,
    "time": 0.15,
    "resource": 0.10,
}

# (exclusive lower bound, band), checked top-down
SEVERITY_BANDS: Tuple[Tuple[float, str], ...] = (
    (0.9, "critical"),
    (0.7, "high"),
    (0.4, "medium"),
)


def severity_band(score: float) -> str:
    """
    Shared severity classification for any risk score in [0, 1]:
    >0.9 critical, >0.7 high, >0.4 medium, else low.
    """
    for bound, band in SEVERITY_BANDS:
        if score > bound:
            return band
    return "low"


def weighted_total(breakdown: Dict[str, float]) -> float:
    return sum(FACTOR_WEIGHTS[name] * float(breakdown[name]) for name in FACTORS)


@dataclass(frozen=True)
class BehaviorMetrics:
    """Snapshot of recent activity handed to the behavior analyzer."""
    anomaly_score: float = 0.0
    failed_attempts: int = 0
    actions_per_minute: float = 0.0
    new_resources: int = 0


@dataclass(frozen=True)
class Location:
    ip: str
    country: Optional[str] = None
    known: bool = False
    suspicious: bool = False
    anomalous: bool = False
    # set when the geo collaborator already scored the origin
    risk_score: Optional[float] = None


@dataclass(frozen=True)
class DeviceTrust:
    device_id: str
    compliant: bool = True
    risk_score: float = 0.0
    factors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RiskFactors:
    user_id: str
    ip_address: str
    device_id: str
    timestamp: datetime
    resource_id: str
    # None -> the analyzer falls back to what it knows about the user
    behavior: Optional[BehaviorMetrics] = None
    timezone: str = "UTC"


@dataclass(frozen=True)
class RiskScore:
    total: float
    breakdown: Dict[str, float]
    recommendations: List[str] = field(default_factory=list)

    @classmethod
    def from_breakdown(cls, breakdown: Dict[str, float], recommendations: Optional[List[str]] = None) -> "RiskScore":
        missing = [f for f in FACTORS if f not in breakdown]
        if missing:
            raise ValueError(f"breakdown missing factors: {missing}")
        scores = {name: float(breakdown[name]) for name in FACTORS}
        return cls(total=weighted_total(scores), breakdown=scores, recommendations=list(recommendations or []))

    @property
    def band(self) -> str:
        return severity_band(self.total)

    def to_dict(self) -> Dict[str, object]:
        return {
            "total": round(self.total, 6),
            "band": self.band,
            "breakdown": dict(self.breakdown),
            "recommendations": list(self.recommendations),
        }
