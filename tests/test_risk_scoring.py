import itertools
from datetime import datetime, timezone

import pytest

from conftest import BUSINESS_HOURS, OFF_HOURS, Failing, FixedLocation, make_engine
from trustloop.core.errors import RiskEvaluationError
from trustloop.risk.engine import location_risk, time_of_day_risk
from trustloop.risk.schema import FACTOR_WEIGHTS, Location, RiskFactors, RiskScore, severity_band


def _factors(ts=BUSINESS_HOURS, tz="UTC") -> RiskFactors:
    return RiskFactors(
        user_id="u1",
        ip_address="10.0.0.1",
        device_id="d1",
        timestamp=ts,
        resource_id="payroll",
        timezone=tz,
    )


def test_weights_sum_to_one():
    assert sum(FACTOR_WEIGHTS.values()) == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_low_risk_weighted_total():
    engine = make_engine(location_score=0.2, device_score=0.1, behavior_score=0.1, resource_score=0.1)
    score = await engine.evaluate(_factors())

    assert score.breakdown == {"location": 0.2, "device": 0.1, "behavior": 0.1, "time": 0.1, "resource": 0.1}
    # 0.3*0.2 + 0.2*0.1 + 0.25*0.1 + 0.15*0.1 + 0.1*0.1
    assert score.total == pytest.approx(0.13)
    assert score.band == "low"
    assert score.recommendations[0] == "risk_low"


@pytest.mark.asyncio
async def test_total_is_weighted_sum_and_bounded():
    grid = [0.0, 0.35, 1.0]
    for loc, dev, beh, res in itertools.product(grid, repeat=4):
        engine = make_engine(location_score=loc, device_score=dev, behavior_score=beh, resource_score=res)
        score = await engine.evaluate(_factors(ts=OFF_HOURS))
        expected = 0.3 * loc + 0.2 * dev + 0.25 * beh + 0.15 * 1.0 + 0.1 * res
        assert score.total == pytest.approx(expected)
        assert 0.0 <= score.total <= 1.0 + 1e-9


@pytest.mark.asyncio
async def test_same_inputs_same_score():
    engine = make_engine(location_score=0.6, device_score=0.3, behavior_score=0.4, resource_score=0.9)
    first = await engine.evaluate(_factors())
    second = await engine.evaluate(_factors())
    assert first == second


@pytest.mark.asyncio
@pytest.mark.parametrize("factor,kwarg", [
    ("location", "locations"),
    ("device", "devices"),
    ("behavior", "behavior"),
    ("resource", "resources"),
])
async def test_single_lookup_failure_aborts_evaluation(factor, kwarg):
    engine = make_engine(**{kwarg: Failing(ConnectionError("upstream down"))})
    with pytest.raises(RiskEvaluationError) as ei:
        await engine.evaluate(_factors())
    assert ei.value.factor == factor
    assert isinstance(ei.value.__cause__, ConnectionError)


@pytest.mark.asyncio
async def test_bad_timezone_fails_time_factor():
    engine = make_engine()
    with pytest.raises(RiskEvaluationError) as ei:
        await engine.evaluate(_factors(tz="Mars/Olympus"))
    assert ei.value.factor == "time"


@pytest.mark.parametrize("score,band", [
    (0.0, "low"),
    (0.4, "low"),
    (0.41, "medium"),
    (0.7, "medium"),
    (0.71, "high"),
    (0.9, "high"),
    (0.91, "critical"),
    (1.0, "critical"),
])
def test_severity_band_boundaries(score, band):
    assert severity_band(score) == band


def test_time_of_day_bands():
    assert time_of_day_risk(datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)) == 0.1
    assert time_of_day_risk(datetime(2025, 1, 6, 17, 59, tzinfo=timezone.utc)) == 0.1
    assert time_of_day_risk(datetime(2025, 1, 6, 7, 30, tzinfo=timezone.utc)) == 0.5
    assert time_of_day_risk(datetime(2025, 1, 6, 20, 59, tzinfo=timezone.utc)) == 0.5
    assert time_of_day_risk(datetime(2025, 1, 6, 2, 0, tzinfo=timezone.utc)) == 1.0


def test_time_of_day_uses_user_timezone():
    # 23:30 UTC is 08:30 next day in Tokyo -> extended hours
    assert time_of_day_risk(OFF_HOURS, "Asia/Tokyo") == 0.5
    assert time_of_day_risk(OFF_HOURS, "UTC") == 1.0


def test_location_mapping():
    assert location_risk(Location(ip="1.1.1.1", suspicious=True)) == 1.0
    assert location_risk(Location(ip="1.1.1.1", anomalous=True)) == 0.7
    assert location_risk(Location(ip="1.1.1.1", known=True)) == 0.1
    assert location_risk(Location(ip="1.1.1.1")) == 0.3
    assert location_risk(Location(ip="1.1.1.1", risk_score=0.42, suspicious=True)) == 0.42


@pytest.mark.asyncio
async def test_factor_specific_recommendations():
    engine = make_engine(location_score=0.9, device_score=0.8, behavior_score=0.5, resource_score=0.5)
    score = await engine.evaluate(_factors(ts=OFF_HOURS))
    assert score.recommendations == ["risk_high", "verify_location", "check_device_compliance", "manager_approval"]


@pytest.mark.asyncio
async def test_lookups_run_once_per_evaluation():
    loc = FixedLocation(0.2)
    engine = make_engine(locations=loc)
    await engine.evaluate(_factors())
    assert loc.calls == 1


def test_breakdown_must_be_complete():
    with pytest.raises(ValueError):
        RiskScore.from_breakdown({"location": 0.1})
