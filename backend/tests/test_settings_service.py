"""
Tests for workspace creation, membership and decision-settings updates.
"""

import pytest
from sqlalchemy import select

from app.exceptions import AuthorizationError, InvalidTransitionError
from app.models import AuditLog, Role
from app.schemas import BusinessProfileUpdate, GuardrailsUpdate
from app.services import settings_service
from app.services.access_service import get_member_role


@pytest.mark.anyio
async def test_create_workspace_with_defaults(db):
    ws = await settings_service.create_workspace(db, "Durban Denim", "durban-denim", "founder")
    await db.commit()

    assert await get_member_role(db, ws.id, "founder") == Role.OWNER.value
    data = await settings_service.get_workspace_settings(db, ws.id, "founder")
    assert data["business_profile"]["strategic_mode"] == "HOLD"
    assert data["guardrails"]["min_spend_zar"] == 100.0
    assert data["guardrails"]["max_spend_zar"] is None

    with pytest.raises(InvalidTransitionError, match="already taken"):
        await settings_service.create_workspace(db, "Copycat", "durban-denim", "someone-else")


@pytest.mark.anyio
async def test_add_member_requires_admin(db, workspace):
    with pytest.raises(AuthorizationError):
        await settings_service.add_member(db, workspace.id, "operator-1", "new-hire", Role.VIEWER)

    member = await settings_service.add_member(db, workspace.id, "owner-1", "new-hire", Role.ADMIN)
    assert member.role == Role.ADMIN.value

    # An ADMIN can manage members but cannot mint owners
    with pytest.raises(AuthorizationError):
        await settings_service.add_member(db, workspace.id, "new-hire", "viewer-1", Role.OWNER)
    updated = await settings_service.add_member(db, workspace.id, "new-hire", "viewer-1", Role.OPERATOR)
    assert updated.role == Role.OPERATOR.value

    audit = (await db.execute(
        select(AuditLog).where(AuditLog.action == "MEMBER_ROLE_SET", AuditLog.entity_id == "viewer-1")
    )).scalar_one()
    assert audit.before_state == {"role": "VIEWER"}
    assert audit.after_state == {"role": "OPERATOR"}


@pytest.mark.anyio
async def test_guardrail_update_only_touches_sent_fields(db, workspace):
    guardrails = await settings_service.update_guardrails(
        db, workspace.id, "owner-1", GuardrailsUpdate(max_spend_zar=2500.0, require_approval_for=["PAUSE_ENTITY"]),
    )
    assert guardrails.max_spend_zar == 2500.0
    assert guardrails.require_approval_for == ["PAUSE_ENTITY"]
    assert guardrails.max_budget_change_percent_daily == 30.0

    # An explicit null clears a nullable cap
    guardrails = await settings_service.update_guardrails(
        db, workspace.id, "owner-1", GuardrailsUpdate(max_spend_zar=None),
    )
    assert guardrails.max_spend_zar is None

    audit = (await db.execute(
        select(AuditLog).where(AuditLog.action == "GUARDRAILS_UPDATED").order_by(AuditLog.created_at)
    )).scalars().all()
    assert audit[0].before_state["max_spend_zar"] is None
    assert audit[0].after_state["max_spend_zar"] == 2500.0


@pytest.mark.anyio
async def test_business_profile_update(db, workspace):
    profile = await settings_service.update_business_profile(
        db, workspace.id, "owner-1", BusinessProfileUpdate(target_cpa_zar=None, break_even_roas=3.0),
    )
    # A null on a required field leaves it unchanged
    assert profile.target_cpa_zar == 100.0
    assert profile.break_even_roas == 3.0

    with pytest.raises(AuthorizationError):
        await settings_service.update_business_profile(
            db, workspace.id, "viewer-1", BusinessProfileUpdate(break_even_roas=1.0),
        )
