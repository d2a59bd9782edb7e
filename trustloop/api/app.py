from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from trustloop.api.schemas import (
    AccessRequest,
    AlertActionRequest,
    AlertsResponse,
    DecisionResponse,
    ErrorResponse,
    RiskRequest,
    SessionRequest,
    TerminateRequest,
)
from trustloop.core.config import Settings
from trustloop.core.errors import DuplicateSessionError, RiskEvaluationError
from trustloop.core.wiring import Services, build_services
from trustloop.policy.rules import catalog_summary

log = logging.getLogger("trustloop.api")


def _request_id() -> str:
    return uuid.uuid4().hex


def _rid(request: Request) -> str:
    return getattr(request.state, "request_id", "") or _request_id()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _error(request_id: str, status: int, code: str, message: str, *, details: Dict[str, Any] | None = None, hint: str | None = None):
    payload = ErrorResponse(
        request_id=request_id,
        error={
            "code": code,
            "message": message,
            "details": details or {},
        },
        hint=hint,
    ).model_dump()
    return JSONResponse(payload, status_code=status)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    if not logging.getLogger().handlers:
        logging.basicConfig(level=settings.log_level)
    svc = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        svc.close()

    app = FastAPI(
        title="trustloop API",
        version="0.1.0",
        description="Risk-adaptive access decisions and continuous session monitoring.",
        lifespan=lifespan,
    )
    app.state.services = svc

    # -----------------------------
    # Middleware: request_id
    # -----------------------------
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = request.headers.get("x-request-id") or _request_id()
        request.state.request_id = rid
        resp = await call_next(request)
        resp.headers["x-request-id"] = rid
        return resp

    # -----------------------------
    # Exception handlers (structured errors, no tracebacks)
    # -----------------------------
    @app.exception_handler(Exception)
    async def handle_exception(request: Request, exc: Exception):
        rid = _rid(request)
        log.exception("Unhandled error rid=%s path=%s", rid, request.url.path)
        return _error(
            rid,
            500,
            "INTERNAL_ERROR",
            "Unexpected server error.",
            details={"type": exc.__class__.__name__},
            hint="Check server logs using the request_id header.",
        )

    # -----------------------------
    # Routes
    # -----------------------------
    @app.get("/healthz", response_model=dict)
    def healthz(request: Request):
        return {
            "ok": True,
            "request_id": _rid(request),
            "sessions": len(svc.monitor.session_ids()),
            "catalog_version": svc.catalog.version,
            "enforcement": svc.facade.describe(),
        }

    @app.post("/v1/risk", responses={503: {"model": ErrorResponse}})
    async def evaluate_risk(req: RiskRequest, request: Request):
        rid = _rid(request)
        try:
            score = await svc.risk.evaluate(req.to_factors(_now()))
        except RiskEvaluationError as e:
            return _error(rid, 503, "RISK_EVALUATION", "Risk evaluation failed.", details={"factor": e.factor}, hint="Treat as high risk (fail closed).")
        return {"ok": True, "request_id": rid, "risk": score.to_dict()}

    @app.post(
        "/v1/access",
        response_model=DecisionResponse,
        responses={
            503: {
                "model": ErrorResponse,
                "content": {
                    "application/json": {
                        "example": {
                            "ok": False,
                            "request_id": "abc123",
                            "error": {
                                "code": "POLICY_EVALUATION",
                                "message": "Access decision unavailable; failing closed.",
                                "details": {"decision": {"access": "denied"}},
                            },
                        }
                    }
                },
            }
        },
    )
    async def evaluate_access(req: AccessRequest, request: Request):
        rid = _rid(request)
        outcome = await svc.facade.enforce(req.to_context(_now()))
        if not outcome.ok:
            return _error(
                rid,
                503,
                "POLICY_EVALUATION",
                "Access decision unavailable; failing closed.",
                details={"type": outcome.error_code, "decision": outcome.value.to_dict()},
            )
        return DecisionResponse(request_id=rid, decision=outcome.value.to_dict())

    @app.get("/v1/rules")
    def list_rules(request: Request):
        return {"ok": True, "request_id": _rid(request), "version": svc.catalog.version, "rules": catalog_summary(svc.catalog)}

    @app.post("/v1/sessions", status_code=201, responses={409: {"model": ErrorResponse}})
    async def start_session(req: SessionRequest, request: Request):
        rid = _rid(request)
        try:
            session = await svc.monitor.start_monitoring(req.to_session())
        except DuplicateSessionError as e:
            return _error(rid, 409, "DUPLICATE_SESSION", str(e), details={"session_id": e.session_id})
        return {"ok": True, "request_id": rid, "session": session.to_dict()}

    @app.get("/v1/sessions/{session_id}", responses={404: {"model": ErrorResponse}})
    def get_session(session_id: str, request: Request):
        rid = _rid(request)
        session = svc.monitor.get_session(session_id)
        if session is None:
            return _error(rid, 404, "SESSION_NOT_FOUND", f"session {session_id} is not monitored")
        return {"ok": True, "request_id": rid, "session": session.to_dict()}

    @app.delete("/v1/sessions/{session_id}")
    async def stop_session(session_id: str, request: Request):
        stopped = svc.monitor.stop_monitoring(session_id)
        return {"ok": True, "request_id": _rid(request), "stopped": stopped}

    @app.post("/v1/sessions/{session_id}/terminate")
    async def terminate_session(session_id: str, req: TerminateRequest, request: Request):
        terminated = await svc.monitor.terminate_session(session_id, req.reason)
        return {"ok": True, "request_id": _rid(request), "terminated": terminated}

    @app.post("/v1/sessions/{session_id}/reauthenticated")
    async def reauthenticated(session_id: str, request: Request):
        resumed = await svc.facade.reauthenticated(session_id)
        return {"ok": True, "request_id": _rid(request), "resumed": resumed}

    @app.get("/v1/alerts", response_model=AlertsResponse)
    def list_alerts(request: Request, component: Optional[str] = None):
        return AlertsResponse(request_id=_rid(request), alerts=svc.alerts.active_alerts(component))

    @app.post("/v1/alerts/{alert_id}/acknowledge", responses={404: {"model": ErrorResponse}})
    async def acknowledge_alert(alert_id: str, req: AlertActionRequest, request: Request):
        rid = _rid(request)
        try:
            alert = await svc.alerts.acknowledge(alert_id, req.user_id)
        except KeyError:
            return _error(rid, 404, "ALERT_NOT_FOUND", f"alert {alert_id} is not active")
        return {"ok": True, "request_id": rid, "alert": alert}

    @app.post("/v1/alerts/{alert_id}/resolve", responses={404: {"model": ErrorResponse}})
    async def resolve_alert(alert_id: str, req: AlertActionRequest, request: Request):
        rid = _rid(request)
        try:
            alert = await svc.alerts.resolve(alert_id, req.user_id, req.resolution or "resolved")
        except KeyError:
            return _error(rid, 404, "ALERT_NOT_FOUND", f"alert {alert_id} is not active")
        return {"ok": True, "request_id": rid, "alert": alert}

    return app
