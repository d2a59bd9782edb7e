from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from trustloop.core.errors import Outcome, PolicyEvaluationError
from trustloop.monitor.monitor import ContinuousSessionMonitor
from trustloop.policy.engine import AccessContext, PolicyDecision, PolicyDecisionEngine, fail_closed
from trustloop.risk.schema import severity_band

log = logging.getLogger("trustloop.enforce")


class PolicyEnforcementFacade:
    """
    Thin orchestration: access requests go to the policy engine, outcomes
    that affect a live session go to the monitor.

    Decision order for a denied request bound to a monitored session:
      1) critical risk band -> terminate the session
      2) otherwise          -> suspend it (re-authentication required)
    """

    def __init__(
        self,
        *,
        policy: PolicyDecisionEngine,
        monitor: Optional[ContinuousSessionMonitor] = None,
        timeout: Optional[float] = 5.0,
    ) -> None:
        self.policy = policy
        self.monitor = monitor
        self.timeout = timeout

    async def enforce(self, ctx: AccessContext) -> Outcome[PolicyDecision]:
        try:
            decision = await asyncio.wait_for(self.policy.evaluate_access(ctx), self.timeout)
        except asyncio.TimeoutError as e:
            log.error("access decision timed out user=%s resource=%s timeout=%s", ctx.user_id, ctx.resource_id, self.timeout)
            return Outcome.failure(e, fail_closed(ctx, "decision timed out"))
        except PolicyEvaluationError as e:
            return Outcome.failure(e, fail_closed(ctx, "risk evaluation unavailable"))

        if ctx.session_id and self.monitor is not None and decision.access == "denied":
            await self._route_denial(ctx.session_id, decision)
        return Outcome.success(decision)

    async def _route_denial(self, session_id: str, decision: PolicyDecision) -> None:
        if not self.monitor.is_monitored(session_id):
            log.debug("denial for unmonitored session %s", session_id)
            return
        if severity_band(decision.risk_score) == "critical":
            if await self.monitor.terminate_session(session_id, "access_denied_critical_risk"):
                log.info("session %s terminated after critical-risk denial", session_id)
            return
        if await self.monitor.suspend_session(session_id, "access_denied"):
            log.info("session %s suspended after denial", session_id)

    async def reauthenticated(self, session_id: str) -> bool:
        if self.monitor is None:
            return False
        return await self.monitor.resume_session(session_id)

    def describe(self) -> Dict[str, Any]:
        return {
            "timeout": self.timeout,
            "monitor": self.monitor is not None,
            "catalog_version": self.policy.catalog.version,
            "rules": len(self.policy.catalog.rules),
        }
