"""
Executions Router — Push approved actions to Meta / Google and read run results.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from app.auth import get_current_user_id
from app.database import get_db
from app.routers.errors import translate_errors
from app.services.execution_service import get_execution_run, run_execution, serialize_execution_run
from app.utils import parse_uuid

router = APIRouter()


class ExecuteRequest(BaseModel):
    action_ids: list[str] = Field(min_length=1)


@router.post("/{workspace_id}/recommendations/{recommendation_id}/executions")
async def execute_actions(
    workspace_id: str,
    recommendation_id: str,
    payload: ExecuteRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    """
    Execute the given approved actions in order. Individual failures do not stop
    the batch; the response reports each action's outcome.
    """
    action_ids = [parse_uuid(a, "action_ids") for a in payload.action_ids]
    with translate_errors():
        return await run_execution(
            db,
            parse_uuid(workspace_id, "workspace_id"),
            parse_uuid(recommendation_id, "recommendation_id"),
            action_ids,
            user_id,
        )


@router.get("/{workspace_id}/executions/{run_id}")
async def get_execution(
    workspace_id: str,
    run_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    with translate_errors():
        run = await get_execution_run(
            db, parse_uuid(workspace_id, "workspace_id"), parse_uuid(run_id, "run_id"), user_id,
        )
    return serialize_execution_run(run)
