import pytest
from fastapi.testclient import TestClient

from conftest import FakeScheduler
from trustloop.api.app import create_app
from trustloop.core.config import Settings
from trustloop.core.wiring import build_services, seed_services

STATE = {
    "devices": {"d1": {"compliant": True, "risk_score": 0.1}},
    "resources": {"wiki": 0.2, "payroll": 0.9},
    "known_networks": ["10.0.0.0/8"],
    "suspicious_networks": ["203.0.113.0/24"],
}

CALM = {
    "user_id": "u1",
    "ip_address": "10.1.2.3",
    "device_id": "d1",
    "resource_id": "wiki",
    "timestamp": "2025-01-06T10:00:00Z",
}

HOSTILE = {
    "user_id": "u1",
    "ip_address": "203.0.113.9",
    "device_id": "unknown-laptop",
    "resource_id": "payroll",
    "timestamp": "2025-01-06T23:30:00Z",
    "behavior": {"anomaly_score": 1.0, "failed_attempts": 10},
}


@pytest.fixture
def svc():
    s = build_services(Settings(), scheduler=FakeScheduler())
    seed_services(s, STATE)
    return s


@pytest.fixture
def client(svc):
    with TestClient(create_app(services=svc)) as c:
        yield c


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    j = r.json()
    assert j["ok"] is True
    assert j["sessions"] == 0


def test_request_id_header_roundtrip(client):
    r = client.get("/healthz")
    assert "x-request-id" in r.headers
    assert r.json()["request_id"] == r.headers["x-request-id"]


def test_request_id_passthrough(client):
    r = client.get("/healthz", headers={"x-request-id": "myid123"})
    assert r.headers["x-request-id"] == "myid123"
    assert r.json()["request_id"] == "myid123"


def test_risk_endpoint(client):
    r = client.post("/v1/risk", json=CALM)
    assert r.status_code == 200
    risk = r.json()["risk"]
    assert risk["total"] == pytest.approx(0.11)
    assert risk["band"] == "low"
    assert set(risk["breakdown"]) == {"location", "device", "behavior", "time", "resource"}


def test_risk_endpoint_bad_timezone_is_503(client):
    r = client.post("/v1/risk", json={**CALM, "timezone": "Mars/Olympus"})
    assert r.status_code == 503
    j = r.json()
    assert j["ok"] is False
    assert j["error"]["code"] == "RISK_EVALUATION"
    assert j["error"]["details"]["factor"] == "time"


@pytest.mark.parametrize("path", ["/v1/risk", "/v1/access"])
def test_malformed_ip_is_rejected_as_bad_input(client, path):
    r = client.post(path, json={**CALM, "ip_address": "not-an-ip"})
    assert r.status_code == 422
    assert r.json()["detail"][0]["loc"][-1] == "ip_address"


def test_session_malformed_ip_is_rejected(client):
    r = client.post("/v1/sessions", json={"session_id": "s1", "user_id": "u1", "device_id": "d1", "baseline_risk_score": 0.1, "ip_address": "999.1.1.1"})
    assert r.status_code == 422


def test_access_granted(client, svc):
    r = client.post("/v1/access", json=CALM)
    assert r.status_code == 200, r.text
    d = r.json()["decision"]
    assert d["access"] == "granted"
    assert d["allowed"] is True
    assert svc.audit.of_type("PolicyEvaluation")[-1].result == "granted"


def test_access_denied_suspends_bound_session(client):
    r = client.post("/v1/sessions", json={"session_id": "s1", "user_id": "u1", "device_id": "d1", "baseline_risk_score": 0.1})
    assert r.status_code == 201

    r = client.post("/v1/access", json={**HOSTILE, "session_id": "s1"})
    assert r.status_code == 200
    d = r.json()["decision"]
    assert d["access"] == "denied"
    assert "require_mfa" in d["required_controls"]

    s = client.get("/v1/sessions/s1").json()["session"]
    assert s["status"] == "suspended"
    assert s["reauth_required"] is True

    alerts = client.get("/v1/alerts", params={"component": "PolicyDecision"}).json()["alerts"]
    assert len(alerts) == 1

    r = client.post("/v1/sessions/s1/reauthenticated")
    assert r.json()["resumed"] is True
    assert client.get("/v1/sessions/s1").json()["session"]["status"] == "active"


def test_access_fails_closed_when_scoring_breaks(client, svc, monkeypatch):
    async def broken(ip):
        raise ConnectionError("geo service down")

    monkeypatch.setattr(svc.locations, "get_location", broken)
    r = client.post("/v1/access", json=CALM, headers={"x-request-id": "testid-456"})
    assert r.status_code == 503, r.text

    j = r.json()
    assert j["ok"] is False
    assert j["request_id"] == "testid-456"
    assert j["error"]["code"] == "POLICY_EVALUATION"
    assert j["error"]["details"]["decision"]["access"] == "denied"
    assert r.headers.get("x-request-id") == j["request_id"]


def test_session_lifecycle(client, svc):
    body = {"session_id": "s1", "user_id": "u1", "device_id": "d1", "baseline_risk_score": 0.2}
    r = client.post("/v1/sessions", json=body)
    assert r.status_code == 201
    assert r.json()["session"]["status"] == "active"
    assert r.json()["session"]["interval"] == 30.0

    r = client.post("/v1/sessions", json=body)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "DUPLICATE_SESSION"

    r = client.post("/v1/sessions/s1/terminate", json={"reason": "admin"})
    assert r.json()["terminated"] is True
    assert svc.audit.of_type("SessionTerminated")[0].metadata["reason"] == "admin"

    r = client.get("/v1/sessions/s1")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "SESSION_NOT_FOUND"

    r = client.delete("/v1/sessions/s1")
    assert r.json()["stopped"] is False


def test_session_request_validation(client):
    r = client.post("/v1/sessions", json={"session_id": "s1", "user_id": "u1", "device_id": "d1", "baseline_risk_score": 1.5})
    assert r.status_code == 422


def test_rules_listing(client):
    j = client.get("/v1/rules").json()
    assert j["version"] == "1"
    assert [r["id"] for r in j["rules"]] == ["POLICY_001", "POLICY_002"]


def test_access_endpoint_openapi_includes_503_example():
    app = create_app(services=build_services(Settings(), scheduler=FakeScheduler()))
    spec = app.openapi()
    post = spec["paths"]["/v1/access"]["post"]
    responses = post.get("responses", {})
    assert "503" in responses, "Expected 503 response in OpenAPI for /v1/access"

    example = responses["503"].get("content", {}).get("application/json", {}).get("example")
    assert example is not None
    assert example.get("error", {}).get("code") == "POLICY_EVALUATION"


def test_access_request_has_example():
    app = create_app(services=build_services(Settings(), scheduler=FakeScheduler()))
    spec = app.openapi()

    post = spec.get("paths", {}).get("/v1/access", {}).get("post", {})
    rb_example = post.get("requestBody", {}).get("content", {}).get("application/json", {}).get("example")
    comp_example = spec.get("components", {}).get("schemas", {}).get("AccessRequest", {}).get("example")

    assert (rb_example or comp_example), "Expected an example for AccessRequest in OpenAPI"


def test_alert_acknowledge_and_resolve(client):
    client.post("/v1/access", json=HOSTILE)
    alerts = client.get("/v1/alerts").json()["alerts"]
    assert len(alerts) == 1
    alert_id = alerts[0]["alert_id"]

    r = client.post(f"/v1/alerts/{alert_id}/acknowledge", json={"user_id": "analyst"})
    assert r.json()["alert"]["status"] == "acknowledged"

    r = client.post(f"/v1/alerts/{alert_id}/resolve", json={"user_id": "analyst", "resolution": "travel confirmed"})
    assert r.json()["alert"]["status"] == "resolved"
    assert client.get("/v1/alerts").json()["alerts"] == []

    r = client.post(f"/v1/alerts/{alert_id}/resolve", json={"user_id": "analyst"})
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "ALERT_NOT_FOUND"
