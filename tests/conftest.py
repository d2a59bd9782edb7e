from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from trustloop.alerts.schema import AlertService
from trustloop.audit.writer import MemoryAuditSink
from trustloop.risk.engine import RiskScoringEngine
from trustloop.risk.schema import FACTORS, BehaviorMetrics, DeviceTrust, Location, RiskScore

# Monday 10:00 UTC -> business hours, time factor 0.1
BUSINESS_HOURS = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)
OFF_HOURS = datetime(2025, 1, 6, 23, 30, tzinfo=timezone.utc)


class FixedLocation:
    def __init__(self, score: float) -> None:
        self.score = score
        self.calls = 0

    async def get_location(self, ip: str) -> Location:
        self.calls += 1
        return Location(ip=ip, risk_score=self.score)


class FixedDevice:
    def __init__(self, score: float) -> None:
        self.score = score

    async def get_device_trust(self, device_id: str) -> DeviceTrust:
        return DeviceTrust(device_id=device_id, risk_score=self.score)


class FixedBehavior:
    def __init__(self, score: float) -> None:
        self.score = score
        self.calls: List[str] = []

    async def analyze_behavior(self, user_id: str, metrics: Optional[BehaviorMetrics] = None) -> float:
        self.calls.append(user_id)
        return self.score


class FixedResource:
    def __init__(self, score: float) -> None:
        self.score = score

    async def get_sensitivity(self, resource_id: str) -> float:
        return self.score


class Failing:
    """Any lookup method raises."""

    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    async def _fail(self, *a, **kw):
        raise self.exc

    get_location = get_device_trust = analyze_behavior = get_sensitivity = _fail


def make_engine(location_score=0.2, device_score=0.1, behavior_score=0.1, resource_score=0.1, **overrides) -> RiskScoringEngine:
    # overrides replace whole collaborators by constructor key (locations, devices, behavior, resources)
    parts = {
        "locations": FixedLocation(location_score),
        "devices": FixedDevice(device_score),
        "behavior": FixedBehavior(behavior_score),
        "resources": FixedResource(resource_score),
    }
    parts.update(overrides)
    return RiskScoringEngine(**parts)


class StubRisk:
    """Risk engine stand-in returning a fixed total (or raising)."""

    def __init__(self, total: float = 0.1, exc: Optional[Exception] = None) -> None:
        self.total = total
        self.exc = exc
        self.gate: Optional[asyncio.Event] = None
        self.calls = 0

    async def evaluate(self, factors) -> RiskScore:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.exc is not None:
            raise self.exc
        return RiskScore(total=self.total, breakdown={f: self.total for f in FACTORS}, recommendations=[])


class FakeTimer:
    def __init__(self, interval: float, callback, name: str) -> None:
        self.interval = interval
        self.callback = callback
        self.name = name
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class FakeScheduler:
    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def call_every(self, interval: float, callback, *, name: str = "") -> FakeTimer:
        t = FakeTimer(interval, callback, name)
        self.timers.append(t)
        return t

    def live(self, name: Optional[str] = None) -> List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and (name is None or t.name == name)]

    def for_session(self, name: str) -> List[FakeTimer]:
        return [t for t in self.timers if t.name == name]


class RecordingSessionControl:
    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    async def require_reauthentication(self, session_id: str, user_id: str) -> None:
        self.calls.append({"session_id": session_id, "user_id": user_id})


@pytest.fixture
def audit() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def alerts() -> AlertService:
    return AlertService(forward_to_log=False)


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()
