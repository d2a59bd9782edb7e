from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple

from trustloop.alerts.schema import AlertSink
from trustloop.audit.writer import AuditEvent, AuditSink
from trustloop.core.errors import PolicyEvaluationError, RiskEvaluationError
from trustloop.policy.rules import PolicyRule, RuleCatalog, rule_applies
from trustloop.risk.engine import RiskScoringEngine
from trustloop.risk.schema import BehaviorMetrics, RiskFactors, RiskScore

log = logging.getLogger("trustloop.policy")

DEFAULT_MAX_RISK = 0.7
HARD_FLOOR_ABOVE = 0.8
HARD_FLOOR_CONTROLS = ("require_mfa", "require_device_compliance")
BASE_WINDOW = timedelta(hours=4)
MIN_WINDOW_RATIO = 0.2

Access = Literal["granted", "denied", "conditional"]


@dataclass(frozen=True)
class AccessContext:
    user_id: str
    resource_id: str
    device_id: str
    ip_address: str
    timestamp: datetime
    action: str = "access"
    timezone: str = "UTC"
    behavior: Optional[BehaviorMetrics] = None
    session_id: Optional[str] = None

    def risk_factors(self) -> RiskFactors:
        return RiskFactors(
            user_id=self.user_id,
            ip_address=self.ip_address,
            device_id=self.device_id,
            timestamp=self.timestamp,
            resource_id=self.resource_id,
            behavior=self.behavior,
            timezone=self.timezone,
        )


@dataclass(frozen=True)
class ResourcePolicy:
    resource_id: str
    max_risk_threshold: float = DEFAULT_MAX_RISK
    additional_controls: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PolicyDecision:
    access: Access
    required_controls: Tuple[str, ...]
    risk_score: float
    applied_rule_ids: Tuple[str, ...]
    explanation: str
    reason: str
    expiration_time: Optional[datetime] = None
    recommendations: Tuple[str, ...] = ()

    @property
    def allowed(self) -> bool:
        return self.access != "denied"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access": self.access,
            "allowed": self.allowed,
            "required_controls": list(self.required_controls),
            "risk_score": round(self.risk_score, 6),
            "applied_rule_ids": list(self.applied_rule_ids),
            "explanation": self.explanation,
            "reason": self.reason,
            "expiration_time": self.expiration_time.isoformat() if self.expiration_time else None,
            "recommendations": list(self.recommendations),
        }


def grant_window(total: float) -> timedelta:
    """Higher risk shortens the grant window, never below 20% of the base."""
    return BASE_WINDOW * max(MIN_WINDOW_RATIO, 1.0 - total)


def fail_closed(ctx: AccessContext, reason: str) -> PolicyDecision:
    """Denied decision for callers that could not obtain a real one."""
    return PolicyDecision(
        access="denied",
        required_controls=(),
        risk_score=1.0,
        applied_rule_ids=(),
        explanation=f"Access denied: {reason}.",
        reason=reason,
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PolicyDecisionEngine:
    """
    Turns a risk score plus request context into an access decision.

    Every applicable rule contributes its actions; priority only orders the
    explanation and applied_rule_ids. Rules are read-only after load.
    """

    def __init__(
        self,
        *,
        risk: RiskScoringEngine,
        catalog: RuleCatalog,
        audit: AuditSink,
        alerts: AlertSink,
        resource_policies: Optional[Mapping[str, ResourcePolicy]] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.risk = risk
        self.catalog = catalog
        self.audit = audit
        self.alerts = alerts
        self.resource_policies = dict(resource_policies or {})
        self.clock = clock

    def policy_for(self, resource_id: str) -> ResourcePolicy:
        return self.resource_policies.get(resource_id) or ResourcePolicy(resource_id=resource_id)

    def applicable_rules(self, ctx: AccessContext, risk: RiskScore) -> List[PolicyRule]:
        rules = [r for r in self.catalog.rules if rule_applies(r, ctx, risk)]
        # sorted() is stable: equal priorities keep catalog order
        return sorted(rules, key=lambda r: r.priority)

    @staticmethod
    def required_controls(rules: List[PolicyRule], risk: RiskScore, policy: ResourcePolicy) -> Tuple[str, ...]:
        controls = set(policy.additional_controls)
        for r in rules:
            controls.update(r.actions)
        if risk.total > HARD_FLOOR_ABOVE:
            controls.update(HARD_FLOOR_CONTROLS)
        return tuple(sorted(controls))

    @staticmethod
    def explain(rules: List[PolicyRule], risk: RiskScore, policy: ResourcePolicy, access: Access) -> str:
        parts = [f"Risk score {risk.total:.3f} ({risk.band})"]
        if risk.total > policy.max_risk_threshold:
            parts.append(f"exceeds resource threshold {policy.max_risk_threshold:.2f} for {policy.resource_id}")
        for r in rules:
            crossed = "crossed" if risk.total > r.risk_threshold else "not crossed"
            parts.append(f"{r.id} {r.name} applied (threshold {r.risk_threshold:.2f} {crossed})")
        if risk.total > HARD_FLOOR_ABOVE:
            parts.append(f"risk above {HARD_FLOOR_ABOVE:.1f} requires {' and '.join(HARD_FLOOR_CONTROLS)}")
        if not rules:
            parts.append("no policy rules applied")
        return f"Access {access}: " + "; ".join(parts) + "."

    async def evaluate_access(self, ctx: AccessContext) -> PolicyDecision:
        try:
            risk = await self.risk.evaluate(ctx.risk_factors())
        except RiskEvaluationError as e:
            log.error("policy evaluation failed user=%s resource=%s: %s", ctx.user_id, ctx.resource_id, e)
            raise PolicyEvaluationError(f"failed to evaluate access policy: {e}") from e

        policy = self.policy_for(ctx.resource_id)
        rules = self.applicable_rules(ctx, risk)
        controls = self.required_controls(rules, risk, policy)

        expiration: Optional[datetime] = None
        if risk.total > policy.max_risk_threshold:
            access: Access = "denied"
            reason = "Risk score exceeds threshold"
        elif not controls:
            access = "granted"
            reason = "Access granted"
        else:
            access = "conditional"
            reason = "Additional verification required"
            expiration = self.clock() + grant_window(risk.total)

        decision = PolicyDecision(
            access=access,
            required_controls=controls,
            risk_score=risk.total,
            applied_rule_ids=tuple(r.id for r in rules),
            explanation=self.explain(rules, risk, policy, access),
            reason=reason,
            expiration_time=expiration,
            recommendations=tuple(risk.recommendations),
        )

        await self._report(ctx, decision, risk)
        return decision

    async def _report(self, ctx: AccessContext, decision: PolicyDecision, risk: RiskScore) -> None:
        await self.audit.log_event(
            AuditEvent(
                event_type="PolicyEvaluation",
                user_id=ctx.user_id,
                resource_id=ctx.resource_id,
                action=ctx.action,
                result=decision.access,
                risk_score=decision.risk_score,
                metadata={
                    "required_controls": list(decision.required_controls),
                    "applied_rule_ids": list(decision.applied_rule_ids),
                    "explanation": decision.explanation,
                    "factors": dict(risk.breakdown),
                    "catalog_version": self.catalog.version,
                    "expiration_time": decision.expiration_time.isoformat() if decision.expiration_time else None,
                },
                timestamp=self.clock(),
            )
        )

        if decision.access == "denied":
            # the decision is already audited; a failed alert must not change it
            try:
                await self.alerts.send_alert(
                    severity="medium",
                    component="PolicyDecision",
                    message=f"Access denied for user {ctx.user_id} to resource {ctx.resource_id}",
                    details={"risk_score": decision.risk_score, "reason": decision.reason},
                )
            except Exception:
                log.exception("denial alert failed user=%s resource=%s", ctx.user_id, ctx.resource_id)
        log.info(
            "access %s user=%s resource=%s risk=%.3f rules=%s",
            decision.access,
            ctx.user_id,
            ctx.resource_id,
            decision.risk_score,
            ",".join(decision.applied_rule_ids) or "-",
        )
