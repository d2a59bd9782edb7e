from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional, Protocol

from trustloop.alerts.schema import AlertSink
from trustloop.audit.writer import AuditEvent, AuditSink
from trustloop.core.config import MonitorSettings
from trustloop.core.errors import DuplicateSessionError
from trustloop.monitor.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from trustloop.monitor.session import MonitoredSession, SessionStatus, can_transition
from trustloop.risk.engine import RiskScoringEngine
from trustloop.risk.schema import RiskFactors
from trustloop.risk.sources import BehaviorAnalyzer

log = logging.getLogger("trustloop.monitor")

RISK_WEIGHT = 0.6
BEHAVIOR_WEIGHT = 0.4

TERMINATE_ABOVE = 0.8
SUSPEND_ABOVE = 0.6
ESCALATE_DELTA = 0.3

COMPONENT = "ContinuousAuth"

TickOutcome = Literal["skipped", "failed", "terminated", "suspended", "escalated", "updated"]


def combined_score(risk_total: float, behavior_score: float) -> float:
    return RISK_WEIGHT * risk_total + BEHAVIOR_WEIGHT * behavior_score


class SessionControl(Protocol):
    async def require_reauthentication(self, session_id: str, user_id: str) -> None:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ContinuousSessionMonitor:
    """
    Owns the live-session registry and one recurring timer per session.

    Only this class mutates a MonitoredSession; callers get snapshots.
    A tick that finishes after its session was removed discards its result.
    """

    def __init__(
        self,
        *,
        risk: RiskScoringEngine,
        behavior: BehaviorAnalyzer,
        audit: AuditSink,
        alerts: AlertSink,
        scheduler: Optional[Scheduler] = None,
        settings: Optional[MonitorSettings] = None,
        session_control: Optional[SessionControl] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.risk = risk
        self.behavior = behavior
        self.audit = audit
        self.alerts = alerts
        self.scheduler = scheduler or AsyncioScheduler()
        self.settings = settings or MonitorSettings()
        self.session_control = session_control
        self.clock = clock
        self._sessions: Dict[str, MonitoredSession] = {}
        self._timers: Dict[str, TimerHandle] = {}

    # -----------------------------
    # Read-only queries
    # -----------------------------
    def get_session(self, session_id: str) -> Optional[MonitoredSession]:
        entry = self._sessions.get(session_id)
        return entry.snapshot() if entry else None

    def session_ids(self) -> List[str]:
        return sorted(self._sessions)

    def is_monitored(self, session_id: str) -> bool:
        return session_id in self._sessions

    def interval_for(self, session_id: str) -> Optional[float]:
        timer = self._timers.get(session_id)
        return timer.interval if timer else None

    # -----------------------------
    # Scheduling
    # -----------------------------
    def _schedule(self, session_id: str, interval: float) -> None:
        # cancel before arming so two timers are never live for one session
        old = self._timers.pop(session_id, None)
        if old is not None:
            old.cancel()
        tick = functools.partial(self.evaluate_tick, session_id)
        self._timers[session_id] = self.scheduler.call_every(interval, tick, name=session_id)
        self._sessions[session_id].interval = interval

    def _unschedule(self, session_id: str) -> None:
        timer = self._timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def start_monitoring(self, session: MonitoredSession) -> MonitoredSession:
        if session.session_id in self._sessions:
            raise DuplicateSessionError(session.session_id)
        if session.status is SessionStatus.TERMINATED:
            raise ValueError(f"cannot monitor terminated session {session.session_id}")

        entry = replace(session, current_risk_score=session.baseline_risk_score, last_evaluated_at=self.clock())
        self._sessions[entry.session_id] = entry
        self._schedule(entry.session_id, self.settings.tick_interval)

        log.info(
            "monitoring started session=%s user=%s baseline=%.3f interval=%s",
            entry.session_id,
            entry.user_id,
            entry.baseline_risk_score,
            self.settings.tick_interval,
        )
        try:
            await self.audit.log_event(
                AuditEvent(
                    event_type="SessionMonitoringStarted",
                    user_id=entry.user_id,
                    resource_id=entry.resource_id,
                    action="start_monitoring",
                    result=entry.status.value,
                    risk_score=entry.baseline_risk_score,
                    metadata={"session_id": entry.session_id, "device_id": entry.device_id},
                    timestamp=self.clock(),
                )
            )
        except Exception:
            # unaudited sessions are not monitored; the caller may retry
            if self._sessions.get(entry.session_id) is entry:
                self._sessions.pop(entry.session_id)
                self._unschedule(entry.session_id)
            log.error("monitoring start rolled back session=%s: audit failed", entry.session_id)
            raise
        return entry.snapshot()

    def stop_monitoring(self, session_id: str) -> bool:
        """Remove a session without a status change. Unknown ids are a no-op."""
        entry = self._sessions.pop(session_id, None)
        self._unschedule(session_id)
        if entry is None:
            return False
        log.info("monitoring stopped session=%s user=%s", session_id, entry.user_id)
        return True

    async def terminate_session(self, session_id: str, reason: str) -> bool:
        entry = self._sessions.pop(session_id, None)
        if entry is None:
            return False
        self._unschedule(session_id)
        entry.status = SessionStatus.TERMINATED

        log.warning("session terminated session=%s user=%s reason=%s risk=%.3f", session_id, entry.user_id, reason, entry.current_risk_score)
        await self.audit.log_event(
            AuditEvent(
                event_type="SessionTerminated",
                user_id=entry.user_id,
                resource_id=entry.resource_id,
                action="terminate_session",
                result=reason,
                risk_score=entry.current_risk_score,
                metadata={
                    "session_id": session_id,
                    "device_id": entry.device_id,
                    "reason": reason,
                    "final_risk_score": entry.current_risk_score,
                    "baseline_risk_score": entry.baseline_risk_score,
                },
                timestamp=self.clock(),
            )
        )
        return True

    async def suspend_session(self, session_id: str, reason: str) -> bool:
        entry = self._sessions.get(session_id)
        if entry is None or not can_transition(entry.status, SessionStatus.SUSPENDED):
            return False
        await self._suspend(entry, reason)
        return True

    async def resume_session(self, session_id: str) -> bool:
        """Suspended -> active, after the user re-authenticated."""
        entry = self._sessions.get(session_id)
        if entry is None or entry.status is not SessionStatus.SUSPENDED:
            return False
        entry.status = SessionStatus.ACTIVE
        entry.reauth_required = False

        log.info("session resumed session=%s user=%s", session_id, entry.user_id)
        await self.audit.log_event(
            AuditEvent(
                event_type="SessionResumed",
                user_id=entry.user_id,
                resource_id=entry.resource_id,
                action="resume_session",
                result=entry.status.value,
                risk_score=entry.current_risk_score,
                metadata={"session_id": session_id},
                timestamp=self.clock(),
            )
        )
        return True

    def shutdown(self) -> None:
        for session_id in list(self._timers):
            self._unschedule(session_id)
        n = len(self._sessions)
        self._sessions.clear()
        if n:
            log.info("monitor shut down, %d sessions released", n)

    # -----------------------------
    # Ticks
    # -----------------------------
    async def _suspend(self, entry: MonitoredSession, reason: str) -> None:
        entry.status = SessionStatus.SUSPENDED
        entry.reauth_required = True
        log.warning("session suspended session=%s user=%s reason=%s risk=%.3f", entry.session_id, entry.user_id, reason, entry.current_risk_score)

        await self._alert(
            "high",
            "Reauthentication required due to increased risk",
            {
                "session_id": entry.session_id,
                "user_id": entry.user_id,
                "current_risk_score": entry.current_risk_score,
                "reason": reason,
                "action": "reauthenticate",
            },
        )
        if self.session_control is not None:
            try:
                await self.session_control.require_reauthentication(entry.session_id, entry.user_id)
            except Exception:
                log.exception("reauthentication signal failed session=%s", entry.session_id)

    async def _alert(self, severity: str, message: str, details: Dict[str, Any]) -> None:
        try:
            await self.alerts.send_alert(severity=severity, component=COMPONENT, message=message, details=details)
        except Exception:
            log.exception("alert delivery failed: %s", message)

    async def _lookup(self, entry: MonitoredSession, now: datetime):
        factors = RiskFactors(
            user_id=entry.user_id,
            ip_address=entry.ip_address,
            device_id=entry.device_id,
            timestamp=now,
            resource_id=entry.resource_id,
            timezone=entry.timezone,
        )
        tasks = [
            asyncio.ensure_future(self.risk.evaluate(factors)),
            asyncio.ensure_future(self.behavior.analyze_behavior(entry.user_id)),
        ]
        try:
            risk, behavior = await asyncio.gather(*tasks)
        except Exception:
            for t in tasks:
                t.cancel()
            raise
        return risk, float(behavior)

    async def evaluate_tick(self, session_id: str) -> TickOutcome:
        entry = self._sessions.get(session_id)
        if entry is None:
            return "skipped"

        now = self.clock()
        try:
            risk, behavior = await self._lookup(entry, now)
        except Exception as e:
            if self._sessions.get(session_id) is not entry:
                return "skipped"
            log.warning("session evaluation failed session=%s: %s", session_id, e)
            await self._alert(
                "high",
                "Session evaluation failed",
                {"session_id": session_id, "user_id": entry.user_id, "error": f"{type(e).__name__}: {e}"},
            )
            return "failed"

        # stop/terminate may have run while the lookups were in flight
        if self._sessions.get(session_id) is not entry:
            log.debug("discarding stale tick session=%s", session_id)
            return "skipped"

        score = combined_score(risk.total, behavior)
        entry.current_risk_score = score
        entry.last_evaluated_at = now

        if score > TERMINATE_ABOVE:
            await self.terminate_session(session_id, "high_risk")
            return "terminated"

        if score > SUSPEND_ABOVE:
            if entry.status is SessionStatus.ACTIVE:
                await self._suspend(entry, "elevated_risk")
            return "suspended"

        if score - entry.baseline_risk_score > ESCALATE_DELTA:
            self._schedule(session_id, self.settings.escalated_interval)
            log.info("monitoring escalated session=%s risk=%.3f baseline=%.3f", session_id, score, entry.baseline_risk_score)
            return "escalated"

        log.debug("session evaluated session=%s risk=%.3f", session_id, score)
        return "updated"
