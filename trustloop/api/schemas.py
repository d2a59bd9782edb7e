from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress

from trustloop.policy.engine import AccessContext
from trustloop.risk.schema import BehaviorMetrics, RiskFactors
from trustloop.monitor.session import MonitoredSession


class BehaviorIn(BaseModel):
    anomaly_score: float = Field(0.0, ge=0.0, le=1.0)
    failed_attempts: int = Field(0, ge=0)
    actions_per_minute: float = Field(0.0, ge=0.0)
    new_resources: int = Field(0, ge=0)

    def to_metrics(self) -> BehaviorMetrics:
        return BehaviorMetrics(**self.model_dump())


class RiskRequest(BaseModel):
    user_id: str
    ip_address: IPvAnyAddress
    device_id: str
    resource_id: str
    timestamp: Optional[datetime] = Field(None, description="Defaults to server time (UTC)")
    timezone: str = "UTC"
    behavior: Optional[BehaviorIn] = Field(None, description="Recent activity; omitted -> per-user baseline")

    def to_factors(self, now: datetime) -> RiskFactors:
        return RiskFactors(
            user_id=self.user_id,
            ip_address=str(self.ip_address),
            device_id=self.device_id,
            timestamp=self.timestamp or now,
            resource_id=self.resource_id,
            behavior=self.behavior.to_metrics() if self.behavior else None,
            timezone=self.timezone,
        )


class AccessRequest(RiskRequest):
    action: str = "access"
    session_id: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "user_id": "u1",
                "ip_address": "10.1.2.3",
                "device_id": "d1",
                "resource_id": "payroll",
                "action": "read",
                "timezone": "Europe/Berlin",
                "session_id": "s1",
            }
        }
    )

    def to_context(self, now: datetime) -> AccessContext:
        return AccessContext(
            user_id=self.user_id,
            resource_id=self.resource_id,
            device_id=self.device_id,
            ip_address=str(self.ip_address),
            timestamp=self.timestamp or now,
            action=self.action,
            timezone=self.timezone,
            behavior=self.behavior.to_metrics() if self.behavior else None,
            session_id=self.session_id,
        )


class SessionRequest(BaseModel):
    session_id: str
    user_id: str
    device_id: str
    baseline_risk_score: float = Field(..., ge=0.0, le=1.0)
    ip_address: IPvAnyAddress = Field("127.0.0.1", validate_default=True)
    resource_id: str = "session"
    timezone: str = "UTC"

    def to_session(self) -> MonitoredSession:
        return MonitoredSession(**self.model_dump(mode="json"))


class TerminateRequest(BaseModel):
    reason: str = "manual"


class AlertActionRequest(BaseModel):
    user_id: str
    resolution: Optional[str] = None


class DecisionResponse(BaseModel):
    ok: bool = True
    request_id: str
    decision: Dict[str, Any]


class ErrorResponse(BaseModel):
    ok: bool = False
    request_id: str
    error: Dict[str, Any]
    hint: Optional[str] = None


class AlertsResponse(BaseModel):
    ok: bool = True
    request_id: str
    alerts: List[Dict[str, Any]]
