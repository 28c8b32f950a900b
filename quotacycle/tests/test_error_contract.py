"""Tests for normalized error responses of the engine's errors."""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from quotacycle.core.errors import register_error_handlers


def _app(enforcer, lifecycle) -> FastAPI:
    app = FastAPI()
    register_error_handlers(app)

    @app.post("/v1/requests/{organization_id}")
    async def consume(organization_id: str):
        result = enforcer.enforce_quota(organization_id)
        return {"status": result.status.value}

    @app.post("/v1/organizations/{organization_id}/plan/{plan_id}")
    async def change_plan(organization_id: str, plan_id: str):
        org = lifecycle.schedule_plan_change(organization_id, plan_id)
        return {"plan_id": org.pricing_plan_id}

    return app


def test_disabled_and_quota_denials_are_distinguishable(enforcer, lifecycle):
    lifecycle.register_organization("org-off", plan_id="starter")
    lifecycle.disable_organization("org-off")
    lifecycle.register_organization("org-trial")
    lifecycle.clock.advance(days=8)
    client = TestClient(_app(enforcer, lifecycle))

    disabled = client.post("/v1/requests/org-off")
    expired = client.post("/v1/requests/org-trial")

    assert disabled.status_code == 403
    assert disabled.json()["error"]["code"] == "organization_disabled"
    assert expired.status_code == 429
    assert expired.json()["error"]["code"] == "trial_expired"


def test_error_carries_request_id_header(enforcer, lifecycle):
    lifecycle.register_organization("org-off", plan_id="starter")
    lifecycle.disable_organization("org-off")
    client = TestClient(_app(enforcer, lifecycle))

    resp = client.post("/v1/requests/org-off", headers={"x-request-id": "rid-123"})

    body = resp.json()
    assert resp.headers.get("x-request-id") == "rid-123"
    assert body["error"]["request_id"] == "rid-123"
    assert body["detail"] == body["error"]["message"]


def test_validation_and_not_found_codes(enforcer, lifecycle):
    lifecycle.register_organization("org-1", plan_id="starter")
    client = TestClient(_app(enforcer, lifecycle))

    same_plan = client.post("/v1/organizations/org-1/plan/starter")
    unknown = client.post("/v1/organizations/org-1/plan/gold")

    assert same_plan.status_code == 400
    assert same_plan.json()["error"]["code"] == "validation_error"
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "not_found"


def test_trial_reentry_code(enforcer, lifecycle):
    lifecycle.register_organization("org-1")
    lifecycle.schedule_plan_change("org-1", "starter")
    client = TestClient(_app(enforcer, lifecycle))

    resp = client.post("/v1/organizations/org-1/plan/trial")

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "trial_already_used"
