"""
Recommendation Service — Generation and lifecycle of recommendations.

generate_recommendation:
  business profile → 7-day aggregation → rules → prompt → text generation (schema-validated,
  retried on violation) → DRAFT recommendation with a frozen data snapshot.

Lifecycle: DRAFT → PROPOSED → APPROVED | REJECTED → EXECUTED.
A recommendation becomes EXECUTED once every proposed action is terminal
(EXECUTED, FAILED or REJECTED), re-counted globally after each change.
"""

import logging
import uuid
from typing import Optional, Protocol
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload

from app.config import get_settings
from app.exceptions import (
    AIResponseFormatError, EmptyDataError, InvalidTransitionError, NotFoundError, RecommendationSchemaError,
)
from app.models import (
    ActionType, BusinessProfile, CreativeBrief, Diagnostic, Guardrails, ProposedAction,
    ProposedActionStatus, Recommendation, RecommendationStatus, Role, TERMINAL_ACTION_STATUSES,
)
from app.schemas import (
    DataSnapshot, ProposedActionPayload, RecommendationPayload, SnapshotEntity, SnapshotRuleResult,
    entity_to_json, recommendation_json_schema,
)
from app.services.access_service import require_workspace_access
from app.services.audit_service import record_audit
from app.services.guardrail_service import clamp_budget_change
from app.services.performance_service import analyze_entity_performance
from app.services.rules_service import (
    DEFAULT_THRESHOLDS, RuleAction, RuleResult, RuleThresholds, evaluate_entities, load_rule_config,
)
from app.utils import utcnow

logger = logging.getLogger(__name__)

RECOMMENDATION_WINDOW_DAYS = 7


class TextGenerator(Protocol):
    async def generate_json(self, prompt: str, schema: dict) -> dict: ...


# ── Snapshot ──────────────────────────────────────────────────────────

def build_data_snapshot(results: list[RuleResult]) -> DataSnapshot:
    return DataSnapshot(
        entities=[
            SnapshotEntity(
                entity_id=r.entity.entity_id,
                entity_name=r.entity.entity_name,
                spend=r.entity.spend,
                revenue=r.entity.revenue,
                roas=r.entity.roas,
                cpa=r.entity.cpa,
            )
            for r in results
        ],
        rule_results=[
            SnapshotRuleResult(action=r.action, entity_id=r.entity.entity_id, reason=r.reason)
            for r in results
        ],
    )


def load_snapshot(recommendation: Recommendation) -> DataSnapshot:
    """Re-parse the frozen snapshot exactly as it was stored at generation time."""
    return DataSnapshot.model_validate(recommendation.data_snapshot)


# ── Prompt ────────────────────────────────────────────────────────────

def _money(value: Optional[float]) -> str:
    return "not set" if value is None else f"R{value:,.2f}"


def _rule_line(r: RuleResult) -> str:
    e = r.entity
    change = f" {r.suggested_budget_change:+.0f}%" if r.suggested_budget_change is not None else ""
    freq = f", frequency {e.frequency:.1f}" if e.frequency else ""
    return (
        f"- [{e.channel}] {e.entity_name or e.entity_id} (level={e.level}, id={e.entity_id}): "
        f"{r.action}{change} | spend {_money(e.spend)}, revenue {_money(e.revenue)}, "
        f"ROAS {e.roas:.2f}, CPA {_money(e.cpa)}, purchases {e.purchases:g}, CTR {e.ctr:.2f}%{freq}. "
        f"Reason: {r.reason}"
    )


def build_prompt(profile: BusinessProfile, results: list[RuleResult]) -> str:
    winners = [r for r in results if r.action == RuleAction.SCALE.value]
    losers = [r for r in results if r.action in (RuleAction.REDUCE.value, RuleAction.PAUSE.value)]
    refresh = [r for r in results if r.needs_creative_refresh]

    parts = [
        f"Analyze the last {RECOMMENDATION_WINDOW_DAYS} days of ad performance and produce one recommendation.",
        "",
        "## Business context",
        f"- Target CPA: {_money(profile.target_cpa_zar)}",
        f"- Break-even ROAS: {profile.break_even_roas}",
        f"- Gross margin: {(profile.gross_margin_pct or 0) * 100:.0f}%",
        f"- Monthly spend cap: {_money(profile.monthly_spend_cap_zar)}",
        f"- Strategic mode: {profile.strategic_mode}",
        "",
        "## Rule engine summary",
        f"- Winners to scale: {len(winners)}",
        f"- Losers to reduce or pause: {len(losers)}",
        f"- Entities needing creative refresh: {len(refresh)}",
    ]
    if winners:
        parts.append("Winners: " + ", ".join(r.entity.entity_name or r.entity.entity_id for r in winners))
    if losers:
        parts.append("Losers: " + ", ".join(r.entity.entity_name or r.entity.entity_id for r in losers))
    if refresh:
        parts.append(
            "Creative refresh: " + ", ".join(r.entity.entity_name or r.entity.entity_id for r in refresh)
            + " (include creativeBriefs for these)."
        )
    parts += ["", "## Rule results"]
    parts += [_rule_line(r) for r in results]
    return "\n".join(parts)


async def _generate_payload(ai: TextGenerator, prompt: str, max_attempts: int) -> RecommendationPayload:
    """Call the generator until its output validates, up to max_attempts. Nothing is persisted here."""
    schema = recommendation_json_schema()
    errors: list[str] = []
    attempt_prompt = prompt
    for attempt in range(1, max_attempts + 1):
        try:
            raw = await ai.generate_json(attempt_prompt, schema)
            return RecommendationPayload.model_validate(raw)
        except (ValidationError, AIResponseFormatError) as e:
            errors.append(str(e))
            logger.warning(f"Recommendation payload rejected (attempt {attempt}/{max_attempts}): {e}")
            attempt_prompt = (
                f"{prompt}\n\nYour previous response did not match the JSON schema:\n{e}\n"
                "Return a corrected JSON object only."
            )
    raise RecommendationSchemaError(
        f"Generated recommendation failed schema validation after {max_attempts} attempts",
        errors=errors,
    )


def _resolve_budget_change(
    action: ProposedActionPayload,
    rules_by_entity: dict[tuple[str, str], RuleResult],
    max_change_pct: Optional[float],
) -> tuple[Optional[float], Optional[str]]:
    """Budget change for an UPDATE_BUDGET action: the rule's (already clamped) value wins."""
    notes = action.guardrail_notes
    if action.action_type != ActionType.UPDATE_BUDGET:
        return None, notes

    rule = rules_by_entity.get((action.channel.value, action.entity.id))
    if rule and rule.suggested_budget_change is not None:
        return rule.suggested_budget_change, notes

    if action.budget_change_pct is None:
        return None, notes
    clamped = clamp_budget_change(action.budget_change_pct, max_change_pct)
    if clamped != action.budget_change_pct:
        note = f"Budget change {action.budget_change_pct:+.0f}% clamped to ±{max_change_pct:g}% by guardrails."
        notes = f"{notes} {note}" if notes else note
    return clamped, notes


async def generate_recommendation(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    user_id: str,
    ai: Optional[TextGenerator] = None,
    thresholds: RuleThresholds = DEFAULT_THRESHOLDS,
) -> uuid.UUID:
    """Build and persist a DRAFT recommendation. Returns its id."""
    await require_workspace_access(db, workspace_id, user_id, Role.OPERATOR)
    profile, guardrails = await load_rule_config(db, workspace_id)

    entities = await analyze_entity_performance(db, workspace_id, days=RECOMMENDATION_WINDOW_DAYS)
    if not entities:
        raise EmptyDataError("No entity data available")

    results = evaluate_entities(entities, profile, guardrails, thresholds)
    snapshot = build_data_snapshot(results)

    if ai is None:
        from app.services.ai_service import load_ai_service
        ai = await load_ai_service(db)
    payload = await _generate_payload(ai, build_prompt(profile, results), get_settings().llm_max_attempts)

    rules_by_entity = {(r.entity.channel, r.entity.entity_id): r for r in results}
    rec = Recommendation(
        workspace_id=workspace_id,
        status=RecommendationStatus.DRAFT.value,
        summary=payload.summary,
        mode_recommendation=payload.mode_recommendation.value,
        data_snapshot=snapshot.to_json(),
        created_by=user_id,
    )
    rec.diagnostics = [
        Diagnostic(position=i, metric=d.metric, finding=d.finding, evidence=d.evidence)
        for i, d in enumerate(payload.diagnostics)
    ]
    actions = []
    for i, a in enumerate(payload.proposed_actions):
        change, notes = _resolve_budget_change(a, rules_by_entity, guardrails.max_budget_change_percent_daily)
        actions.append(ProposedAction(
            position=i,
            channel=a.channel.value,
            action_type=a.action_type.value,
            entity=entity_to_json(a.entity),
            rationale=a.rationale,
            expected_impact=a.expected_impact.model_dump(by_alias=True, exclude_none=True) if a.expected_impact else None,
            guardrail_notes=notes,
            budget_change_pct=change,
            status=ProposedActionStatus.PENDING.value,
        ))
    rec.proposed_actions = actions
    rec.creative_briefs = [
        CreativeBrief(
            position=i,
            title=b.title,
            angle=b.angle,
            hook=b.hook,
            script=b.script,
            shot_list=b.shot_list,
            overlays=b.overlays,
            captions=b.captions,
            placements=b.placements,
        )
        for i, b in enumerate(payload.creative_briefs or [])
    ]
    db.add(rec)
    await db.flush()

    record_audit(
        db, workspace_id, user_id, "RECOMMENDATION_GENERATED",
        entity_type="recommendation", entity_id=str(rec.id),
        after_state={"status": rec.status, "actions": len(actions), "mode": rec.mode_recommendation},
        reason=payload.summary,
    )
    await db.flush()
    logger.info(
        f"Workspace {workspace_id}: recommendation {rec.id} drafted "
        f"({len(actions)} actions, {len(rec.diagnostics)} diagnostics, {len(rec.creative_briefs)} briefs)"
    )
    return rec.id


# ── Lifecycle ─────────────────────────────────────────────────────────

async def _load(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    recommendation_id: uuid.UUID,
) -> Recommendation:
    result = await db.execute(
        select(Recommendation)
        .where(Recommendation.id == recommendation_id, Recommendation.workspace_id == workspace_id)
        .options(
            selectinload(Recommendation.diagnostics),
            selectinload(Recommendation.proposed_actions),
            selectinload(Recommendation.creative_briefs),
        )
        .execution_options(populate_existing=True)
    )
    rec = result.scalar_one_or_none()
    if not rec:
        raise NotFoundError("Recommendation not found")
    return rec


def _require_status(rec: Recommendation, *allowed: RecommendationStatus) -> None:
    if rec.status not in {s.value for s in allowed}:
        wanted = " or ".join(s.value for s in allowed)
        raise InvalidTransitionError(f"Recommendation is {rec.status}; expected {wanted}")


async def get_recommendation(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    recommendation_id: uuid.UUID,
    user_id: str,
) -> Recommendation:
    await require_workspace_access(db, workspace_id, user_id, Role.VIEWER)
    return await _load(db, workspace_id, recommendation_id)


async def list_recommendations(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    user_id: str,
    status: Optional[str] = None,
    limit: int = 50,
) -> list[Recommendation]:
    await require_workspace_access(db, workspace_id, user_id, Role.VIEWER)
    query = (
        select(Recommendation)
        .where(Recommendation.workspace_id == workspace_id)
        .options(selectinload(Recommendation.proposed_actions))
        .order_by(Recommendation.created_at.desc())
        .limit(limit)
    )
    if status:
        query = query.where(Recommendation.status == status)
    result = await db.execute(query)
    return list(result.scalars().all())


async def propose_recommendation(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    recommendation_id: uuid.UUID,
    user_id: str,
) -> Recommendation:
    """DRAFT → PROPOSED. Action types outside require_approval_for are auto-approved."""
    await require_workspace_access(db, workspace_id, user_id, Role.OPERATOR)
    rec = await _load(db, workspace_id, recommendation_id)
    _require_status(rec, RecommendationStatus.DRAFT)

    guardrails = (await db.execute(
        select(Guardrails).where(Guardrails.workspace_id == workspace_id)
    )).scalar_one_or_none()
    needs_approval = set(guardrails.require_approval_for or []) if guardrails else {t.value for t in ActionType}

    auto_approved = 0
    for action in rec.proposed_actions:
        if action.status == ProposedActionStatus.PENDING.value and action.action_type not in needs_approval:
            action.status = ProposedActionStatus.APPROVED.value
            auto_approved += 1

    rec.status = RecommendationStatus.PROPOSED.value
    rec.proposed_at = utcnow()
    record_audit(
        db, workspace_id, user_id, "RECOMMENDATION_PROPOSED",
        entity_type="recommendation", entity_id=str(rec.id),
        before_state={"status": RecommendationStatus.DRAFT.value},
        after_state={"status": rec.status, "auto_approved_actions": auto_approved},
    )
    await db.flush()
    logger.info(f"Recommendation {rec.id} proposed ({auto_approved} actions auto-approved)")
    return rec


async def approve_recommendation(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    recommendation_id: uuid.UUID,
    user_id: str,
) -> Recommendation:
    """PROPOSED → APPROVED; every PENDING action becomes APPROVED."""
    await require_workspace_access(db, workspace_id, user_id, Role.OPERATOR)
    rec = await _load(db, workspace_id, recommendation_id)
    _require_status(rec, RecommendationStatus.PROPOSED)

    for action in rec.proposed_actions:
        if action.status == ProposedActionStatus.PENDING.value:
            action.status = ProposedActionStatus.APPROVED.value

    rec.status = RecommendationStatus.APPROVED.value
    rec.reviewed_at = utcnow()
    rec.reviewed_by = user_id
    record_audit(
        db, workspace_id, user_id, "RECOMMENDATION_APPROVED",
        entity_type="recommendation", entity_id=str(rec.id),
        before_state={"status": RecommendationStatus.PROPOSED.value},
        after_state={"status": rec.status},
    )
    await db.flush()
    return rec


async def reject_recommendation(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    recommendation_id: uuid.UUID,
    user_id: str,
    reason: Optional[str] = None,
) -> Recommendation:
    """PROPOSED → REJECTED; every action not yet run becomes REJECTED."""
    await require_workspace_access(db, workspace_id, user_id, Role.OPERATOR)
    rec = await _load(db, workspace_id, recommendation_id)
    _require_status(rec, RecommendationStatus.PROPOSED)

    for action in rec.proposed_actions:
        if action.status in (ProposedActionStatus.PENDING.value, ProposedActionStatus.APPROVED.value):
            action.status = ProposedActionStatus.REJECTED.value

    rec.status = RecommendationStatus.REJECTED.value
    rec.reviewed_at = utcnow()
    rec.reviewed_by = user_id
    record_audit(
        db, workspace_id, user_id, "RECOMMENDATION_REJECTED",
        entity_type="recommendation", entity_id=str(rec.id),
        before_state={"status": RecommendationStatus.PROPOSED.value},
        after_state={"status": rec.status},
        reason=reason,
    )
    await db.flush()
    return rec


async def review_actions(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    recommendation_id: uuid.UUID,
    action_ids: list[uuid.UUID],
    approve: bool,
    user_id: str,
) -> Recommendation:
    """Approve or reject individual PENDING actions of a PROPOSED/APPROVED recommendation."""
    await require_workspace_access(db, workspace_id, user_id, Role.OPERATOR)
    rec = await _load(db, workspace_id, recommendation_id)
    _require_status(rec, RecommendationStatus.PROPOSED, RecommendationStatus.APPROVED)

    new_status = ProposedActionStatus.APPROVED if approve else ProposedActionStatus.REJECTED
    wanted = set(action_ids)
    changed = []
    for action in rec.proposed_actions:
        if action.id in wanted and action.status == ProposedActionStatus.PENDING.value:
            action.status = new_status.value
            changed.append(str(action.id))

    record_audit(
        db, workspace_id, user_id, f"ACTIONS_{new_status.value}",
        entity_type="recommendation", entity_id=str(rec.id),
        after_state={"action_ids": changed},
    )
    await db.flush()
    await refresh_recommendation_status(db, rec.id)
    return await _load(db, workspace_id, recommendation_id)


async def approve_actions(db, workspace_id, recommendation_id, action_ids, user_id) -> Recommendation:
    return await review_actions(db, workspace_id, recommendation_id, action_ids, True, user_id)


async def reject_actions(db, workspace_id, recommendation_id, action_ids, user_id) -> Recommendation:
    return await review_actions(db, workspace_id, recommendation_id, action_ids, False, user_id)


async def discard_recommendation(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    recommendation_id: uuid.UUID,
    user_id: str,
) -> None:
    """Delete a DRAFT and its children before anyone sees it."""
    await require_workspace_access(db, workspace_id, user_id, Role.OPERATOR)
    rec = await _load(db, workspace_id, recommendation_id)
    _require_status(rec, RecommendationStatus.DRAFT)
    record_audit(
        db, workspace_id, user_id, "RECOMMENDATION_DISCARDED",
        entity_type="recommendation", entity_id=str(rec.id),
        before_state={"status": rec.status, "summary": rec.summary},
    )
    await db.delete(rec)
    await db.flush()


async def refresh_recommendation_status(db: AsyncSession, recommendation_id: uuid.UUID) -> bool:
    """
    Global re-count: mark the recommendation EXECUTED once every one of its actions
    is terminal. Returns True when the transition happened on this call.
    """
    total, terminal = (await db.execute(
        select(
            func.count(ProposedAction.id),
            func.count(ProposedAction.id).filter(ProposedAction.status.in_(TERMINAL_ACTION_STATUSES)),
        ).where(ProposedAction.recommendation_id == recommendation_id)
    )).one()
    if not total or terminal != total:
        return False

    rec = await db.get(Recommendation, recommendation_id)
    if rec is None or rec.status == RecommendationStatus.EXECUTED.value:
        return False
    rec.status = RecommendationStatus.EXECUTED.value
    rec.executed_at = utcnow()
    await db.flush()
    logger.info(f"Recommendation {recommendation_id} EXECUTED ({terminal}/{total} actions terminal)")
    return True


# ── Serializers ───────────────────────────────────────────────────────

def serialize_action(a: ProposedAction) -> dict:
    return {
        "id": str(a.id),
        "channel": a.channel,
        "type": a.action_type,
        "entity": a.entity,
        "rationale": a.rationale,
        "expected_impact": a.expected_impact,
        "guardrail_notes": a.guardrail_notes,
        "budget_change_pct": a.budget_change_pct,
        "status": a.status,
    }


def serialize_recommendation(rec: Recommendation, detail: bool = True) -> dict:
    data = {
        "id": str(rec.id),
        "workspace_id": str(rec.workspace_id),
        "status": rec.status,
        "summary": rec.summary,
        "mode_recommendation": rec.mode_recommendation,
        "created_by": rec.created_by,
        "created_at": rec.created_at.isoformat() if rec.created_at else None,
        "proposed_at": rec.proposed_at.isoformat() if rec.proposed_at else None,
        "reviewed_at": rec.reviewed_at.isoformat() if rec.reviewed_at else None,
        "reviewed_by": rec.reviewed_by,
        "executed_at": rec.executed_at.isoformat() if rec.executed_at else None,
        "action_count": len(rec.proposed_actions),
    }
    if not detail:
        return data
    data.update({
        "data_snapshot": rec.data_snapshot,
        "diagnostics": [
            {"metric": d.metric, "finding": d.finding, "evidence": d.evidence} for d in rec.diagnostics
        ],
        "proposed_actions": [serialize_action(a) for a in rec.proposed_actions],
        "creative_briefs": [
            {
                "title": b.title,
                "angle": b.angle,
                "hook": b.hook,
                "script": b.script,
                "shot_list": b.shot_list,
                "overlays": b.overlays,
                "captions": b.captions,
                "placements": b.placements,
            }
            for b in rec.creative_briefs
        ],
    })
    return data
