from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

SEVERITIES = ("low", "medium", "high", "critical")

log = logging.getLogger("trustloop.alerts")


def make_alert_id(component: str, ts: float) -> str:
    return f"{component}:{int(ts)}:{uuid.uuid4().hex[:8]}"


def make_alert(
    *,
    severity: str,
    component: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    ts: Optional[datetime] = None,
    alert_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Canonical alert shape (SIEM-ready-friendly).
    """
    if severity not in SEVERITIES:
        raise ValueError(f"unknown severity {severity!r}. Allowed: {list(SEVERITIES)}")
    ts = ts or datetime.now(timezone.utc)
    return {
        "alert_id": alert_id or make_alert_id(component, ts.timestamp()),
        "severity": severity,
        "component": component,
        "message": message,
        "details": details or {},
        "ts": ts.isoformat(),
        "status": "new",
        "schema_version": 1,
    }


class AlertSink(Protocol):
    async def send_alert(
        self,
        *,
        severity: str,
        component: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Deliver an alert and return its id."""
        ...


_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


@dataclass
class AlertService:
    """
    In-memory alert book: new -> acknowledged -> resolved.
    Resolved alerts leave the active set but stay in history.
    """
    forward_to_log: bool = True
    active: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    history: List[Dict[str, Any]] = field(default_factory=list)

    async def send_alert(self, *, severity: str, component: str, message: str, details: Optional[Dict[str, Any]] = None) -> str:
        alert = make_alert(severity=severity, component=component, message=message, details=details)
        self.active[alert["alert_id"]] = alert
        self.history.append(alert)
        if self.forward_to_log:
            log.log(_LEVELS[severity], "alert %s [%s] %s: %s", alert["alert_id"], component, severity, message)
        return alert["alert_id"]

    def _get(self, alert_id: str) -> Dict[str, Any]:
        alert = self.active.get(alert_id)
        if alert is None:
            raise KeyError(f"alert {alert_id} not found")
        return alert

    async def acknowledge(self, alert_id: str, user_id: str) -> Dict[str, Any]:
        alert = self._get(alert_id)
        alert["status"] = "acknowledged"
        alert["acknowledged_by"] = user_id
        log.info("alert %s acknowledged by %s", alert_id, user_id)
        return alert

    async def resolve(self, alert_id: str, user_id: str, resolution: str) -> Dict[str, Any]:
        alert = self._get(alert_id)
        alert["status"] = "resolved"
        alert["resolved_by"] = user_id
        alert["resolution"] = resolution
        del self.active[alert_id]
        log.info("alert %s resolved by %s", alert_id, user_id)
        return alert

    def active_alerts(self, component: Optional[str] = None) -> List[Dict[str, Any]]:
        return [a for a in self.active.values() if component is None or a["component"] == component]
