"""
Tests for the HTTP surface: routing, role checks and error-to-status mapping.
The database dependency is pointed at the test session and the caller identity is fixed per test.
"""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from app.auth import get_current_user_id
from app.database import get_db
from app.main import app
from app.models import IntegrationSecret, ProposedAction, Recommendation


class _Caller:
    user_id = "owner-1"


@pytest.fixture
async def api(db):
    caller = _Caller()

    async def _get_db():
        yield db
        await db.commit()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_current_user_id] = lambda: caller.user_id
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        client.caller = caller
        yield client
    app.dependency_overrides.clear()


def _ws_url(workspace, path=""):
    return f"/api/workspaces/{workspace.id}{path}"


# ── Workspaces & settings ─────────────────────────────────────────────

@pytest.mark.anyio
async def test_create_workspace_and_read_defaults(api):
    api.caller.user_id = "founder"
    response = await api.post("/api/workspaces", json={"name": "Cape Coffee", "slug": "cape-coffee"})
    assert response.status_code == 201
    created = response.json()
    assert created["role"] == "OWNER"

    response = await api.get(f"/api/workspaces/{created['id']}/settings")
    assert response.status_code == 200
    data = response.json()
    assert data["workspace"]["slug"] == "cape-coffee"
    assert data["guardrails"]["max_budget_change_percent_daily"] == 20.0
    assert data["guardrails"]["max_pauses_per_day"] == 5
    assert set(data["guardrails"]["require_approval_for"]) == {
        "UPDATE_BUDGET", "PAUSE_ENTITY", "DUPLICATE_ADSET", "CREATE_TASK",
    }


@pytest.mark.anyio
async def test_duplicate_slug_conflicts(api, workspace):
    response = await api.post("/api/workspaces", json={"name": "Again", "slug": "test-store"})
    assert response.status_code == 409


@pytest.mark.anyio
async def test_invalid_slug_is_rejected(api):
    response = await api.post("/api/workspaces", json={"name": "Bad", "slug": "Not A Slug"})
    assert response.status_code == 422


@pytest.mark.anyio
async def test_non_member_is_forbidden(api, workspace):
    api.caller.user_id = "stranger"
    response = await api.get(_ws_url(workspace, "/settings"))
    assert response.status_code == 403


@pytest.mark.anyio
async def test_guardrails_update_requires_admin(api, workspace):
    api.caller.user_id = "operator-1"
    response = await api.put(_ws_url(workspace, "/guardrails"), json={"max_pauses_per_day": 2})
    assert response.status_code == 403

    api.caller.user_id = "owner-1"
    response = await api.put(_ws_url(workspace, "/guardrails"), json={"maxPausesPerDay": 2, "maxSpendZar": 5000})
    assert response.status_code == 200
    data = response.json()
    assert data["max_pauses_per_day"] == 2
    assert data["max_spend_zar"] == 5000
    assert data["max_budget_change_percent_daily"] == 30.0


@pytest.mark.anyio
async def test_business_profile_validation(api, workspace):
    response = await api.put(_ws_url(workspace, "/business-profile"), json={"gross_margin_pct": 1.5})
    assert response.status_code == 422

    response = await api.put(_ws_url(workspace, "/business-profile"), json={"target_cpa_zar": 120, "strategic_mode": "GROWTH"})
    assert response.status_code == 200
    assert response.json()["target_cpa_zar"] == 120
    assert response.json()["strategic_mode"] == "GROWTH"


@pytest.mark.anyio
async def test_integration_secret_is_stored_not_echoed(api, db, workspace):
    response = await api.put(
        _ws_url(workspace, "/integrations/META"),
        json={"access_token": "EAAB-secret", "ad_account_id": "act_123"},
    )
    assert response.status_code == 200
    assert response.json() == {"integration_type": "META", "configured": True}
    assert "EAAB-secret" not in response.text
    assert (await db.execute(select(IntegrationSecret))).scalar_one().workspace_id == workspace.id


@pytest.mark.anyio
async def test_performance_endpoint(api, db, workspace, seed_meta_campaign):
    await seed_meta_campaign(workspace.id, "m1", spend=1000, revenue=4000, purchases=20)
    await db.commit()
    api.caller.user_id = "viewer-1"

    response = await api.get(_ws_url(workspace, "/performance"), params={"days": 7})

    assert response.status_code == 200
    [entity] = response.json()["entities"]
    assert entity["entity_id"] == "m1"
    assert entity["action"] == "SCALE"
    assert entity["suggested_budget_change"] == 15


@pytest.mark.anyio
async def test_bad_uuid_is_400(api):
    response = await api.get("/api/workspaces/not-a-uuid/settings")
    assert response.status_code == 400
    assert "workspace_id" in response.json()["detail"]


# ── Recommendations & executions ──────────────────────────────────────

@pytest.mark.anyio
async def test_generate_without_data_is_422(api, workspace):
    response = await api.post(_ws_url(workspace, "/recommendations"))
    assert response.status_code == 422
    assert response.json()["detail"] == "No entity data available"


@pytest.mark.anyio
async def test_unknown_recommendation_is_404(api, workspace):
    response = await api.get(_ws_url(workspace, f"/recommendations/{uuid.uuid4()}"))
    assert response.status_code == 404


@pytest.mark.anyio
async def test_schema_failure_is_502(api, db, workspace, seed_meta_campaign, fake_ai):
    await seed_meta_campaign(workspace.id, "m1", spend=1000, revenue=4000, purchases=20)
    await db.commit()
    ai = fake_ai({"summary": "missing everything else"}, {"summary": "still wrong"})

    with patch("app.services.ai_service.load_ai_service", AsyncMock(return_value=ai)):
        response = await api.post(_ws_url(workspace, "/recommendations"))

    assert response.status_code == 502
    assert (await db.execute(select(Recommendation))).scalars().all() == []


@pytest.mark.anyio
async def test_full_review_and_execution_flow(api, db, workspace, seed_meta_campaign, fake_ai):
    await seed_meta_campaign(workspace.id, "m1", spend=1000, revenue=4000, purchases=20)
    await db.commit()
    ai = fake_ai({
        "summary": "Scale the winning campaign and brief fresh creative.",
        "modeRecommendation": "GROWTH",
        "diagnostics": [{"metric": "ROAS", "finding": "m1 is well above break-even", "evidence": "4.00 vs 2.5"}],
        "proposedActions": [{
            "channel": "OPS",
            "type": "CREATE_TASK",
            "entity": {"level": "campaign", "id": "m1"},
            "rationale": "Brief three new hooks before scaling further",
        }],
    })

    with patch("app.services.ai_service.load_ai_service", AsyncMock(return_value=ai)):
        response = await api.post(_ws_url(workspace, "/recommendations"))
    assert response.status_code == 201
    rec = response.json()
    assert rec["status"] == "DRAFT"
    rec_url = f"/recommendations/{rec['id']}"

    # A DRAFT cannot be approved before it is proposed
    response = await api.post(_ws_url(workspace, rec_url + "/approve"))
    assert response.status_code == 409

    response = await api.get(_ws_url(workspace, rec_url + "/snapshot"))
    assert response.status_code == 200
    assert response.json()["entities"][0]["entityId"] == "m1"

    assert (await api.post(_ws_url(workspace, rec_url + "/propose"))).status_code == 200
    response = await api.post(_ws_url(workspace, rec_url + "/approve"))
    assert response.status_code == 200
    [action] = response.json()["proposed_actions"]
    assert action["status"] == "APPROVED"

    api.caller.user_id = "viewer-1"
    response = await api.post(_ws_url(workspace, rec_url + "/executions"), json={"action_ids": [action["id"]]})
    assert response.status_code == 403

    api.caller.user_id = "operator-1"
    response = await api.post(_ws_url(workspace, rec_url + "/executions"), json={"action_ids": [action["id"]]})
    assert response.status_code == 200
    summary = response.json()
    assert summary["status"] == "COMPLETED"
    assert summary["results"][0]["success"] is True

    response = await api.get(_ws_url(workspace, f"/executions/{summary['execution_run_id']}"))
    assert response.status_code == 200
    assert response.json()["actions"][0]["after_state"]["status"] == "TODO"

    response = await api.get(_ws_url(workspace, rec_url))
    assert response.json()["status"] == "EXECUTED"

    response = await api.get(_ws_url(workspace, "/audit"))
    actions = [entry["action"] for entry in response.json()]
    assert "EXECUTE_CREATE_TASK" in actions
    assert "RECOMMENDATION_APPROVED" in actions


@pytest.mark.anyio
async def test_execute_pending_actions_is_422(api, db, workspace):
    rec = Recommendation(
        workspace_id=workspace.id,
        status="PROPOSED",
        summary="Pending review",
        mode_recommendation="HOLD",
        data_snapshot={"entities": [], "ruleResults": []},
        created_by="operator-1",
    )
    rec.proposed_actions = [ProposedAction(
        position=0, channel="OPS", action_type="CREATE_TASK",
        entity={"level": "campaign", "id": "m1"}, rationale="Check stock", status="PENDING",
    )]
    db.add(rec)
    await db.commit()

    response = await api.post(
        _ws_url(workspace, f"/recommendations/{rec.id}/executions"),
        json={"action_ids": [str(rec.proposed_actions[0].id)]},
    )
    assert response.status_code == 422
    assert response.json()["detail"] == "No approved actions to execute"


@pytest.mark.anyio
async def test_execute_requires_action_ids(api, workspace):
    response = await api.post(_ws_url(workspace, f"/recommendations/{uuid.uuid4()}/executions"), json={"action_ids": []})
    assert response.status_code == 422


# ── App settings ──────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_llm_setting_rejects_unknown_provider(api):
    response = await api.put("/api/settings/llm", json={"default_llm_id": "mistral:large"})
    assert response.status_code == 400

    response = await api.put("/api/settings/llm", json={"default_llm_id": "anthropic:claude-sonnet-4-20250514"})
    assert response.status_code == 200

    response = await api.get("/api/settings/llm")
    assert response.json()["default_llm_id"] == "anthropic:claude-sonnet-4-20250514"
