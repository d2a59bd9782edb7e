from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol

from trustloop.risk.schema import BehaviorMetrics, DeviceTrust, Location


class LocationSource(Protocol):
    async def get_location(self, ip: str) -> Location:
        ...


class DeviceTrustSource(Protocol):
    async def get_device_trust(self, device_id: str) -> DeviceTrust:
        ...


class BehaviorAnalyzer(Protocol):
    async def analyze_behavior(self, user_id: str, metrics: Optional[BehaviorMetrics] = None) -> float:
        """
        Return a behavior risk score in [0, 1]. Implementations own clamping.
        """
        ...


class ResourceSensitivitySource(Protocol):
    async def get_sensitivity(self, resource_id: str) -> float:
        ...


def _clamp(x: float) -> float:
    return max(0.0, min(1.0, float(x)))


def _networks(cidrs: Iterable[str]) -> List[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    return [ipaddress.ip_network(c, strict=False) for c in cidrs]


@dataclass
class StaticLocationSource:
    """
    Public-safe baseline: classifies an address against configured networks.
    Real deployments plug a geo-IP service in behind the same surface.
    """
    known_networks: List[str] = field(default_factory=lambda: ["10.0.0.0/8", "192.168.0.0/16", "127.0.0.0/8"])
    suspicious_networks: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.set_networks(self.known_networks, self.suspicious_networks)

    def set_networks(self, known: Iterable[str], suspicious: Iterable[str]) -> None:
        self.known_networks = list(known)
        self.suspicious_networks = list(suspicious)
        self._known = _networks(self.known_networks)
        self._suspicious = _networks(self.suspicious_networks)

    async def get_location(self, ip: str) -> Location:
        addr = ipaddress.ip_address(ip)
        suspicious = any(addr in n for n in self._suspicious)
        known = (not suspicious) and any(addr in n for n in self._known)
        return Location(ip=ip, known=known, suspicious=suspicious)


@dataclass
class DeviceRegistry:
    """In-memory device trust records; unknown devices get a middling risk."""
    devices: Dict[str, DeviceTrust] = field(default_factory=dict)
    unknown_risk: float = 0.5

    def register(self, device: DeviceTrust) -> None:
        self.devices[device.device_id] = device

    async def get_device_trust(self, device_id: str) -> DeviceTrust:
        dev = self.devices.get(device_id)
        if dev is None:
            return DeviceTrust(device_id=device_id, compliant=False, risk_score=self.unknown_risk, factors=("unknown_device",))
        return dev


@dataclass
class BaselineBehaviorAnalyzer:
    """
    Uses the anomaly score of the activity snapshot when one is given,
    otherwise the last score recorded for the user.
    """
    user_scores: Dict[str, float] = field(default_factory=dict)
    default_score: float = 0.1

    def record(self, user_id: str, score: float) -> None:
        self.user_scores[user_id] = _clamp(score)

    async def analyze_behavior(self, user_id: str, metrics: Optional[BehaviorMetrics] = None) -> float:
        if metrics is not None:
            score = metrics.anomaly_score
            score += min(0.3, 0.05 * metrics.failed_attempts)
            score += min(0.2, 0.05 * metrics.new_resources)
            return _clamp(score)
        return self.user_scores.get(user_id, self.default_score)


@dataclass
class ResourceCatalog:
    """Resource sensitivity in [0, 1]; unknown resources use the default."""
    sensitivity: Dict[str, float] = field(default_factory=dict)
    default_sensitivity: float = 0.5

    async def get_sensitivity(self, resource_id: str) -> float:
        return _clamp(self.sensitivity.get(resource_id, self.default_sensitivity))
