"""
Recommendations Router — Generate recommendations and move them through review.
DRAFT → PROPOSED → APPROVED / REJECTED → EXECUTED.
"""

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel
from typing import Literal, Optional
from app.auth import get_current_user_id
from app.database import get_db
from app.routers.errors import translate_errors
from app.services import recommendation_service as recs
from app.utils import parse_uuid

router = APIRouter()


# ── Request Models ────────────────────────────────────────────────────

class RejectRequest(BaseModel):
    reason: Optional[str] = None


class ActionReviewRequest(BaseModel):
    action_ids: list[str]
    decision: Literal["approve", "reject"]


# ── Endpoints ─────────────────────────────────────────────────────────

@router.post("/{workspace_id}/recommendations", status_code=201)
async def generate_recommendation(
    workspace_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Analyze the last 7 days, run the rules and draft a recommendation."""
    ws_id = parse_uuid(workspace_id, "workspace_id")
    with translate_errors():
        rec_id = await recs.generate_recommendation(db, ws_id, user_id)
        rec = await recs.get_recommendation(db, ws_id, rec_id, user_id)
    return recs.serialize_recommendation(rec)


@router.get("/{workspace_id}/recommendations")
async def list_recommendations(
    workspace_id: str,
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    with translate_errors():
        items = await recs.list_recommendations(
            db, parse_uuid(workspace_id, "workspace_id"), user_id, status=status, limit=limit,
        )
    return [recs.serialize_recommendation(r, detail=False) for r in items]


@router.get("/{workspace_id}/recommendations/{recommendation_id}")
async def get_recommendation(
    workspace_id: str,
    recommendation_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    with translate_errors():
        rec = await recs.get_recommendation(
            db, parse_uuid(workspace_id, "workspace_id"), parse_uuid(recommendation_id, "recommendation_id"), user_id,
        )
    return recs.serialize_recommendation(rec)


@router.get("/{workspace_id}/recommendations/{recommendation_id}/snapshot")
async def get_snapshot(
    workspace_id: str,
    recommendation_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """The metrics and rule results the recommendation was generated from."""
    with translate_errors():
        rec = await recs.get_recommendation(
            db, parse_uuid(workspace_id, "workspace_id"), parse_uuid(recommendation_id, "recommendation_id"), user_id,
        )
        snapshot = recs.load_snapshot(rec)
    return snapshot.to_json()


@router.post("/{workspace_id}/recommendations/{recommendation_id}/propose")
async def propose_recommendation(
    workspace_id: str,
    recommendation_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    with translate_errors():
        rec = await recs.propose_recommendation(
            db, parse_uuid(workspace_id, "workspace_id"), parse_uuid(recommendation_id, "recommendation_id"), user_id,
        )
    return recs.serialize_recommendation(rec)


@router.post("/{workspace_id}/recommendations/{recommendation_id}/approve")
async def approve_recommendation(
    workspace_id: str,
    recommendation_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    with translate_errors():
        rec = await recs.approve_recommendation(
            db, parse_uuid(workspace_id, "workspace_id"), parse_uuid(recommendation_id, "recommendation_id"), user_id,
        )
    return recs.serialize_recommendation(rec)


@router.post("/{workspace_id}/recommendations/{recommendation_id}/reject")
async def reject_recommendation(
    workspace_id: str,
    recommendation_id: str,
    payload: Optional[RejectRequest] = None,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    with translate_errors():
        rec = await recs.reject_recommendation(
            db, parse_uuid(workspace_id, "workspace_id"), parse_uuid(recommendation_id, "recommendation_id"), user_id,
            reason=payload.reason if payload else None,
        )
    return recs.serialize_recommendation(rec)


@router.post("/{workspace_id}/recommendations/{recommendation_id}/actions/review")
async def review_actions(
    workspace_id: str,
    recommendation_id: str,
    payload: ActionReviewRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """Approve or reject individual pending actions."""
    action_ids = [parse_uuid(a, "action_ids") for a in payload.action_ids]
    ws_id = parse_uuid(workspace_id, "workspace_id")
    rec_id = parse_uuid(recommendation_id, "recommendation_id")
    with translate_errors():
        if payload.decision == "approve":
            rec = await recs.approve_actions(db, ws_id, rec_id, action_ids, user_id)
        else:
            rec = await recs.reject_actions(db, ws_id, rec_id, action_ids, user_id)
    return recs.serialize_recommendation(rec)


@router.delete("/{workspace_id}/recommendations/{recommendation_id}", status_code=204)
async def discard_recommendation(
    workspace_id: str,
    recommendation_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    with translate_errors():
        await recs.discard_recommendation(
            db, parse_uuid(workspace_id, "workspace_id"), parse_uuid(recommendation_id, "recommendation_id"), user_id,
        )
    return Response(status_code=204)
