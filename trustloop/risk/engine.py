from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from trustloop.core.errors import RiskEvaluationError
from trustloop.risk.schema import (
    FACTORS,
    DeviceTrust,
    Location,
    RiskFactors,
    RiskScore,
    severity_band,
    weighted_total,
)
from trustloop.risk.sources import (
    BehaviorAnalyzer,
    DeviceTrustSource,
    LocationSource,
    ResourceSensitivitySource,
)

log = logging.getLogger("trustloop.risk")


def location_risk(location: Location) -> float:
    if location.risk_score is not None:
        return float(location.risk_score)
    if location.suspicious:
        return 1.0
    if location.anomalous:
        return 0.7
    if location.known:
        return 0.1
    return 0.3


def device_risk(device: DeviceTrust) -> float:
    return float(device.risk_score)


def time_of_day_risk(ts: datetime, tz: str = "UTC") -> float:
    """
    Business hours 09-17 -> 0.1, extended 07-20 -> 0.5, off hours -> 1.0.
    Naive timestamps are taken as UTC.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    try:
        hour = ts.astimezone(ZoneInfo(tz)).hour
    except ZoneInfoNotFoundError as e:
        raise ValueError(f"unknown timezone: {tz}") from e

    if 9 <= hour <= 17:
        return 0.1
    if 7 <= hour <= 20:
        return 0.5
    return 1.0


def recommendations_for(total: float, breakdown: Dict[str, float]) -> List[str]:
    out = [f"risk_{severity_band(total)}"]
    if breakdown["location"] > 0.7:
        out.append("verify_location")
    if breakdown["device"] > 0.6:
        out.append("check_device_compliance")
    if breakdown["time"] > 0.8:
        out.append("manager_approval")
    return out


class RiskScoringEngine:
    """
    Aggregates the five factor scores into one weighted total.

    Factor collaborators are expected to return scores already clamped to
    [0, 1]; the engine does not re-clamp. Lookups run concurrently and the
    evaluation fails as a whole on the first lookup error.
    """

    def __init__(
        self,
        *,
        locations: LocationSource,
        devices: DeviceTrustSource,
        behavior: BehaviorAnalyzer,
        resources: ResourceSensitivitySource,
    ) -> None:
        self.locations = locations
        self.devices = devices
        self.behavior = behavior
        self.resources = resources

    async def _location(self, f: RiskFactors) -> float:
        return location_risk(await self.locations.get_location(f.ip_address))

    async def _device(self, f: RiskFactors) -> float:
        return device_risk(await self.devices.get_device_trust(f.device_id))

    async def _behavior(self, f: RiskFactors) -> float:
        return float(await self.behavior.analyze_behavior(f.user_id, f.behavior))

    async def _time(self, f: RiskFactors) -> float:
        return time_of_day_risk(f.timestamp, f.timezone)

    async def _resource(self, f: RiskFactors) -> float:
        return float(await self.resources.get_sensitivity(f.resource_id))

    @staticmethod
    async def _lookup(name: str, aw: Awaitable[float]) -> float:
        try:
            return await aw
        except Exception as e:
            raise RiskEvaluationError(f"{name} lookup failed: {e}", factor=name) from e

    async def evaluate(self, factors: RiskFactors) -> RiskScore:
        lookups: Dict[str, Any] = {
            "location": self._location(factors),
            "device": self._device(factors),
            "behavior": self._behavior(factors),
            "time": self._time(factors),
            "resource": self._resource(factors),
        }
        tasks = [asyncio.ensure_future(self._lookup(name, lookups[name])) for name in FACTORS]
        try:
            values = await asyncio.gather(*tasks)
        except RiskEvaluationError as e:
            for t in tasks:
                t.cancel()
            log.warning("risk evaluation failed user=%s factor=%s: %s", factors.user_id, e.factor, e)
            raise

        breakdown = dict(zip(FACTORS, values))
        score = RiskScore.from_breakdown(breakdown, recommendations_for(weighted_total(breakdown), breakdown))
        log.debug("risk evaluated user=%s total=%.4f band=%s", factors.user_id, score.total, score.band)
        return score
