from __future__ import annotations

import json
import operator
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Tuple
from zoneinfo import ZoneInfo

from trustloop.risk.schema import FACTORS, RiskScore

if TYPE_CHECKING:
    from trustloop.policy.engine import AccessContext


COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "eq": lambda a, b: abs(a - b) < 1e-9,
}


@dataclass(frozen=True)
class Condition:
    type: str
    operator: str
    value: Any
    field: str | None = None

    def describe(self) -> str:
        subject = f"{self.type}.{self.field}" if self.field else self.type
        return f"{subject} {self.operator} {self.value}"


@dataclass(frozen=True)
class PolicyRule:
    id: str
    name: str
    conditions: Tuple[Condition, ...]
    actions: Tuple[str, ...]
    risk_threshold: float
    priority: int


@dataclass(frozen=True)
class RuleCatalog:
    version: str
    rules: Tuple[PolicyRule, ...] = field(default_factory=tuple)


ConditionEvaluator = Callable[[Condition, "AccessContext", RiskScore], bool]


def parse_window(window: str) -> Tuple[time, time]:
    """'0900-1700' -> (09:00, 17:00). Start inclusive, end exclusive."""
    try:
        start_s, end_s = window.split("-", 1)
        start = time(int(start_s[:2]), int(start_s[2:]))
        end = time(int(end_s[:2]), int(end_s[2:]))
    except (ValueError, AttributeError) as e:
        raise ValueError(f"invalid time window {window!r}, expected HHMM-HHMM") from e
    return start, end


def in_window(t: time, start: time, end: time) -> bool:
    if start <= end:
        return start <= t < end
    # wraps midnight, e.g. 2200-0600
    return t >= start or t < end


def local_time(ts: datetime, tz: str) -> time:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(ZoneInfo(tz)).time().replace(second=0, microsecond=0)


def _compare(cond: Condition, value: float) -> bool:
    return COMPARATORS[cond.operator](value, float(cond.value))


def _risk_score(cond: Condition, ctx: "AccessContext", risk: RiskScore) -> bool:
    return _compare(cond, risk.total)


def _factor(cond: Condition, ctx: "AccessContext", risk: RiskScore) -> bool:
    # unknown factor never holds, same as an unregistered condition type
    value = risk.breakdown.get(cond.field) if cond.field else None
    if value is None:
        return False
    return _compare(cond, value)


def _time_of_day(cond: Condition, ctx: "AccessContext", risk: RiskScore) -> bool:
    start, end = parse_window(cond.value)
    inside = in_window(local_time(ctx.timestamp, ctx.timezone), start, end)
    return inside if cond.operator == "inside" else not inside


def _resource(cond: Condition, ctx: "AccessContext", risk: RiskScore) -> bool:
    listed = ctx.resource_id in set(cond.value)
    return listed if cond.operator == "in" else not listed


CONDITION_EVALUATORS: Dict[str, ConditionEvaluator] = {
    "risk_score": _risk_score,
    "factor": _factor,
    "time_of_day": _time_of_day,
    "resource": _resource,
}

CONDITION_OPERATORS: Dict[str, set] = {
    "risk_score": set(COMPARATORS),
    "factor": set(COMPARATORS),
    "time_of_day": {"inside", "outside"},
    "resource": {"in", "not_in"},
}


def register_condition(type_name: str, evaluator: ConditionEvaluator, operators: set) -> None:
    CONDITION_EVALUATORS[type_name] = evaluator
    CONDITION_OPERATORS[type_name] = set(operators)


def condition_holds(cond: Condition, ctx: "AccessContext", risk: RiskScore) -> bool:
    evaluator = CONDITION_EVALUATORS.get(cond.type)
    if evaluator is None:
        return False
    return evaluator(cond, ctx, risk)


def rule_applies(rule: PolicyRule, ctx: "AccessContext", risk: RiskScore) -> bool:
    return all(condition_holds(c, ctx, risk) for c in rule.conditions)


def _parse_condition(raw: Mapping[str, Any], rule_id: str) -> Condition:
    ctype = raw.get("type")
    if ctype not in CONDITION_EVALUATORS:
        raise ValueError(f"rule {rule_id}: unknown condition type {ctype!r}. Allowed: {sorted(CONDITION_EVALUATORS)}")
    op = raw.get("operator")
    if op not in CONDITION_OPERATORS[ctype]:
        raise ValueError(f"rule {rule_id}: operator {op!r} not valid for {ctype}")

    cond = Condition(type=ctype, operator=op, value=raw.get("value"), field=raw.get("field"))

    if ctype in ("risk_score", "factor"):
        try:
            float(cond.value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"rule {rule_id}: {ctype} value must be a number") from e
    if ctype == "factor" and cond.field not in FACTORS:
        raise ValueError(f"rule {rule_id}: factor must be one of {list(FACTORS)}")
    if ctype == "time_of_day":
        parse_window(cond.value)
    if ctype == "resource" and not isinstance(cond.value, list):
        raise ValueError(f"rule {rule_id}: resource value must be a list of ids")
    return cond


def _parse_action(raw: Any) -> str:
    # accepts "require_mfa" or {"type": "require_mfa"}
    if isinstance(raw, Mapping):
        raw = raw.get("type")
    if not isinstance(raw, str) or not raw:
        raise ValueError(f"invalid action: {raw!r}")
    return raw


def parse_rule(raw: Mapping[str, Any]) -> PolicyRule:
    rule_id = raw.get("id")
    if not isinstance(rule_id, str) or not rule_id:
        raise ValueError("rule is missing an id")
    return PolicyRule(
        id=rule_id,
        name=str(raw.get("name") or rule_id),
        conditions=tuple(_parse_condition(c, rule_id) for c in raw.get("conditions") or []),
        actions=tuple(_parse_action(a) for a in raw.get("actions") or []),
        risk_threshold=float(raw.get("risk_threshold", raw.get("riskThreshold", 0.0))),
        priority=int(raw.get("priority", 100)),
    )


def parse_catalog(doc: Mapping[str, Any]) -> RuleCatalog:
    rules = [parse_rule(r) for r in doc.get("rules") or []]
    seen: set = set()
    for r in rules:
        if r.id in seen:
            raise ValueError(f"duplicate rule id {r.id}")
        seen.add(r.id)
    return RuleCatalog(version=str(doc.get("version", "1")), rules=tuple(rules))


def load_catalog(path: str) -> RuleCatalog:
    doc = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(doc, dict):
        raise ValueError(f"{path}: catalog must be a JSON object")
    return parse_catalog(doc)


DEFAULT_CATALOG_DOC: Dict[str, Any] = {
    "version": "1",
    "rules": [
        {
            "id": "POLICY_001",
            "name": "High Risk Access Control",
            "conditions": [{"type": "risk_score", "operator": "gt", "value": 0.7}],
            "actions": ["require_mfa", "require_manager_approval"],
            "risk_threshold": 0.7,
            "priority": 1,
        },
        {
            "id": "POLICY_002",
            "name": "Off Hours Access Control",
            "conditions": [{"type": "time_of_day", "operator": "outside", "value": "0900-1700"}],
            "actions": ["require_justification", "notify_manager"],
            "risk_threshold": 0.5,
            "priority": 2,
        },
    ],
}


def default_catalog() -> RuleCatalog:
    return parse_catalog(DEFAULT_CATALOG_DOC)


def catalog_summary(catalog: RuleCatalog) -> List[Dict[str, Any]]:
    return [
        {
            "id": r.id,
            "name": r.name,
            "priority": r.priority,
            "risk_threshold": r.risk_threshold,
            "conditions": [c.describe() for c in r.conditions],
            "actions": list(r.actions),
        }
        for r in sorted(catalog.rules, key=lambda r: r.priority)
    ]
