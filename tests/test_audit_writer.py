import json
from datetime import datetime, timezone

import pytest

from trustloop.audit.writer import AuditEvent, JsonlAuditSink


def _event(result="denied") -> AuditEvent:
    return AuditEvent(
        event_type="PolicyEvaluation",
        user_id="u1",
        resource_id="payroll",
        action="read",
        result=result,
        risk_score=0.89,
        metadata={"applied_rule_ids": ["POLICY_001"]},
        timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )


@pytest.mark.asyncio
async def test_jsonl_sink_writes_rows(tmp_path):
    out = tmp_path / "audit" / "events.jsonl"
    with JsonlAuditSink(str(out)) as sink:
        await sink.log_event(_event("denied"))
        await sink.log_event(_event("granted"))

    rows = [json.loads(line) for line in out.read_text(encoding="utf-8").splitlines()]
    assert [r["result"] for r in rows] == ["denied", "granted"]
    assert rows[0]["timestamp"] == "2025-01-01T00:00:00+00:00"
    assert rows[0]["metadata"]["applied_rule_ids"] == ["POLICY_001"]


@pytest.mark.asyncio
async def test_jsonl_sink_is_append_only(tmp_path):
    out = tmp_path / "events.jsonl"
    for _ in range(2):
        with JsonlAuditSink(str(out)) as sink:
            await sink.log_event(_event())

    lines = out.read_text(encoding="utf-8").strip().splitlines()
    assert len(lines) == 2, "Audit sink must append, not overwrite"


@pytest.mark.asyncio
async def test_jsonl_sink_requires_open(tmp_path):
    sink = JsonlAuditSink(str(tmp_path / "events.jsonl"))
    with pytest.raises(RuntimeError):
        await sink.log_event(_event())
