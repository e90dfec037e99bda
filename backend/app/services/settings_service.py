"""
Settings Service — Workspace creation and per-workspace decision settings
(business profile, guardrails).
"""

import logging
import uuid
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.exceptions import ConfigurationError, InvalidTransitionError
from app.models import BusinessProfile, Guardrails, Role, Workspace, WorkspaceMember
from app.schemas import BusinessProfileUpdate, GuardrailsUpdate
from app.services.access_service import require_workspace_access
from app.services.audit_service import record_audit

logger = logging.getLogger(__name__)

# Fields an explicit null clears; for every other field a null means "leave as is"
_NULLABLE_PROFILE_FIELDS = {"monthly_spend_cap_zar"}
_NULLABLE_GUARDRAIL_FIELDS = {"max_spend_zar", "max_budget_change_percent_daily", "max_pauses_per_day"}


async def create_workspace(db: AsyncSession, name: str, slug: str, owner_user_id: str) -> Workspace:
    """Create a workspace with its owner, a default business profile and default guardrails."""
    existing = (await db.execute(select(Workspace).where(Workspace.slug == slug))).scalar_one_or_none()
    if existing:
        raise InvalidTransitionError(f"Workspace slug '{slug}' is already taken")

    workspace = Workspace(name=name, slug=slug)
    db.add(workspace)
    await db.flush()

    db.add(WorkspaceMember(workspace_id=workspace.id, user_id=owner_user_id, role=Role.OWNER.value))
    db.add(BusinessProfile(workspace_id=workspace.id))
    db.add(Guardrails(workspace_id=workspace.id))
    record_audit(
        db, workspace.id, owner_user_id, "WORKSPACE_CREATED",
        entity_type="workspace", entity_id=str(workspace.id),
        after_state={"name": name, "slug": slug},
    )
    await db.flush()
    logger.info(f"Workspace {workspace.id} ({slug}) created by {owner_user_id}")
    return workspace


async def add_member(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    user_id: str,
    member_user_id: str,
    role: Role,
) -> WorkspaceMember:
    """Add or re-role a member. ADMIN+ only; only an OWNER can grant OWNER."""
    await require_workspace_access(db, workspace_id, user_id, Role.OWNER if role == Role.OWNER else Role.ADMIN)
    member = (await db.execute(
        select(WorkspaceMember).where(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.user_id == member_user_id,
        )
    )).scalar_one_or_none()
    before = {"role": member.role} if member else None
    if member:
        member.role = role.value
    else:
        member = WorkspaceMember(workspace_id=workspace_id, user_id=member_user_id, role=role.value)
        db.add(member)
    record_audit(
        db, workspace_id, user_id, "MEMBER_ROLE_SET",
        entity_type="workspace_member", entity_id=member_user_id,
        before_state=before, after_state={"role": role.value},
    )
    await db.flush()
    return member


async def _get_profile(db: AsyncSession, workspace_id: uuid.UUID) -> BusinessProfile:
    profile = (await db.execute(
        select(BusinessProfile).where(BusinessProfile.workspace_id == workspace_id)
    )).scalar_one_or_none()
    if not profile:
        raise ConfigurationError("Business profile not configured")
    return profile


async def _get_guardrails(db: AsyncSession, workspace_id: uuid.UUID) -> Guardrails:
    guardrails = (await db.execute(
        select(Guardrails).where(Guardrails.workspace_id == workspace_id)
    )).scalar_one_or_none()
    if not guardrails:
        raise ConfigurationError("Guardrails not configured")
    return guardrails


def serialize_business_profile(p: BusinessProfile) -> dict:
    return {
        "target_cpa_zar": p.target_cpa_zar,
        "break_even_roas": p.break_even_roas,
        "gross_margin_pct": p.gross_margin_pct,
        "avg_shipping_cost_zar": p.avg_shipping_cost_zar,
        "return_rate_pct": p.return_rate_pct,
        "payment_fees_pct": p.payment_fees_pct,
        "monthly_spend_cap_zar": p.monthly_spend_cap_zar,
        "strategic_mode": p.strategic_mode,
    }


def serialize_guardrails(g: Guardrails) -> dict:
    return {
        "max_budget_change_percent_daily": g.max_budget_change_percent_daily,
        "max_pauses_per_day": g.max_pauses_per_day,
        "min_spend_zar": g.min_spend_zar,
        "max_spend_zar": g.max_spend_zar,
        "require_approval_for": g.require_approval_for or [],
    }


async def get_workspace_settings(db: AsyncSession, workspace_id: uuid.UUID, user_id: str) -> dict:
    await require_workspace_access(db, workspace_id, user_id, Role.VIEWER)
    workspace = await db.get(Workspace, workspace_id)
    profile = await _get_profile(db, workspace_id)
    guardrails = await _get_guardrails(db, workspace_id)
    return {
        "workspace": {"id": str(workspace.id), "name": workspace.name, "slug": workspace.slug},
        "business_profile": serialize_business_profile(profile),
        "guardrails": serialize_guardrails(guardrails),
    }


def _apply_update(row, update: dict, nullable: set[str]) -> dict:
    """Set fields on row; returns {field: old_value} for the ones that changed."""
    changed = {}
    for key, value in update.items():
        if value is None and key not in nullable:
            continue
        if hasattr(value, "value"):
            value = value.value
        if isinstance(value, list):
            value = [v.value if hasattr(v, "value") else v for v in value]
        old = getattr(row, key)
        if old != value:
            changed[key] = old
            setattr(row, key, value)
    return changed


async def update_business_profile(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    user_id: str,
    update: BusinessProfileUpdate,
) -> BusinessProfile:
    await require_workspace_access(db, workspace_id, user_id, Role.ADMIN)
    profile = await _get_profile(db, workspace_id)
    changed = _apply_update(profile, update.model_dump(exclude_unset=True), _NULLABLE_PROFILE_FIELDS)
    if changed:
        record_audit(
            db, workspace_id, user_id, "BUSINESS_PROFILE_UPDATED",
            entity_type="business_profile", entity_id=str(profile.id),
            before_state=changed,
            after_state={k: getattr(profile, k) for k in changed},
        )
    await db.flush()
    logger.info(f"Workspace {workspace_id}: business profile updated ({', '.join(changed) or 'no changes'})")
    return profile


async def update_guardrails(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    user_id: str,
    update: GuardrailsUpdate,
) -> Guardrails:
    await require_workspace_access(db, workspace_id, user_id, Role.ADMIN)
    guardrails = await _get_guardrails(db, workspace_id)
    changed = _apply_update(guardrails, update.model_dump(exclude_unset=True), _NULLABLE_GUARDRAIL_FIELDS)
    if changed:
        record_audit(
            db, workspace_id, user_id, "GUARDRAILS_UPDATED",
            entity_type="guardrails", entity_id=str(guardrails.id),
            before_state=changed,
            after_state={k: getattr(guardrails, k) for k in changed},
        )
    await db.flush()
    logger.info(f"Workspace {workspace_id}: guardrails updated ({', '.join(changed) or 'no changes'})")
    return guardrails
