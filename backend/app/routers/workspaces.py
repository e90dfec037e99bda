"""
Workspaces Router — Workspace setup, decision settings, integrations and the audit trail.
Every endpoint is scoped to one workspace and checks the caller's role there.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from typing import Optional
from app.auth import get_current_user_id
from app.database import get_db
from app.models import IntegrationType, Role
from app.routers.errors import translate_errors
from app.schemas import BusinessProfileUpdate, GuardrailsUpdate
from app.services.access_service import require_workspace_access
from app.services.audit_service import list_audit_logs, serialize_audit_log
from app.services.credential_service import save_integration_secret
from app.services.performance_service import analyze_entity_performance
from app.services.rules_service import apply_rules
from app.services import settings_service
from app.utils import parse_uuid

router = APIRouter()


# ── Request Models ────────────────────────────────────────────────────

class WorkspaceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=1, max_length=255, pattern=r"^[a-z0-9][a-z0-9-]*$")


class MemberUpdate(BaseModel):
    user_id: str = Field(min_length=1)
    role: Role


class IntegrationSecretUpdate(BaseModel):
    # Stored encrypted, never echoed back
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[str] = None
    login_customer_id: Optional[str] = None
    ad_account_id: Optional[str] = None

    def to_secret(self) -> dict:
        data = {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at,
            "loginCustomerId": self.login_customer_id,
            "adAccountId": self.ad_account_id,
        }
        return {k: v for k, v in data.items() if v}


# ── Workspace ─────────────────────────────────────────────────────────

@router.post("", status_code=201)
async def create_workspace(
    payload: WorkspaceCreate,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Create a workspace; the caller becomes its OWNER."""
    with translate_errors():
        workspace = await settings_service.create_workspace(db, payload.name, payload.slug, user_id)
    return {"id": str(workspace.id), "name": workspace.name, "slug": workspace.slug, "role": Role.OWNER.value}


@router.get("/{workspace_id}/settings")
async def get_settings(
    workspace_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    with translate_errors():
        return await settings_service.get_workspace_settings(db, parse_uuid(workspace_id, "workspace_id"), user_id)


@router.put("/{workspace_id}/business-profile")
async def update_business_profile(
    workspace_id: str,
    payload: BusinessProfileUpdate,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    with translate_errors():
        profile = await settings_service.update_business_profile(
            db, parse_uuid(workspace_id, "workspace_id"), user_id, payload,
        )
    return settings_service.serialize_business_profile(profile)


@router.put("/{workspace_id}/guardrails")
async def update_guardrails(
    workspace_id: str,
    payload: GuardrailsUpdate,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    with translate_errors():
        guardrails = await settings_service.update_guardrails(
            db, parse_uuid(workspace_id, "workspace_id"), user_id, payload,
        )
    return settings_service.serialize_guardrails(guardrails)


@router.put("/{workspace_id}/members")
async def set_member(
    workspace_id: str,
    payload: MemberUpdate,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    with translate_errors():
        member = await settings_service.add_member(
            db, parse_uuid(workspace_id, "workspace_id"), user_id, payload.user_id, payload.role,
        )
    return {"user_id": member.user_id, "role": member.role}


@router.put("/{workspace_id}/integrations/{integration_type}")
async def save_integration(
    workspace_id: str,
    integration_type: IntegrationType,
    payload: IntegrationSecretUpdate,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Store channel credentials (encrypted). ADMIN+."""
    ws_id = parse_uuid(workspace_id, "workspace_id")
    with translate_errors():
        await require_workspace_access(db, ws_id, user_id, Role.ADMIN)
        await save_integration_secret(db, ws_id, integration_type, payload.to_secret())
    return {"integration_type": integration_type.value, "configured": True}


# ── Analysis & audit ──────────────────────────────────────────────────

@router.get("/{workspace_id}/performance")
async def get_performance(
    workspace_id: str,
    days: int = Query(7, ge=1, le=90),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Per-entity performance over the window with the rule verdict for each."""
    ws_id = parse_uuid(workspace_id, "workspace_id")
    with translate_errors():
        await require_workspace_access(db, ws_id, user_id, Role.VIEWER)
        entities = await analyze_entity_performance(db, ws_id, days=days)
        results = await apply_rules(db, ws_id, entities) if entities else []
    return {
        "days": days,
        "entities": [
            {
                **r.entity.to_dict(),
                "action": r.action,
                "reason": r.reason,
                "suggested_budget_change": r.suggested_budget_change,
            }
            for r in results
        ],
    }


@router.get("/{workspace_id}/audit")
async def get_audit_logs(
    workspace_id: str,
    entity_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    ws_id = parse_uuid(workspace_id, "workspace_id")
    with translate_errors():
        await require_workspace_access(db, ws_id, user_id, Role.VIEWER)
        logs = await list_audit_logs(db, ws_id, entity_id=entity_id, limit=limit)
    return [serialize_audit_log(entry) for entry in logs]
