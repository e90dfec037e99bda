"""
Execution Service — Runs a batch of approved actions for one recommendation.

Setup (access, row lock, conflict checks, batch filtering) raises before any
mutation and creates no run. Once the ExecutionRun exists each action is
attempted on its own: failures are recorded and the loop continues, and the
session is committed after every action so a crash mid-batch loses at most
the action in flight.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Optional
import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from app.config import get_settings
from app.exceptions import (
    DecisionEngineError, EmptyBatchError, ExecutionConflictError, GuardrailViolation, NotFoundError,
)
from app.models import (
    ExecutionAction, ExecutionActionStatus, ExecutionRun, ExecutionRunStatus, ProposedAction,
    ProposedActionStatus, Recommendation, Role, TERMINAL_ACTION_STATUSES,
)
from app.services.access_service import require_workspace_access
from app.services.action_executor import ActionExecutor
from app.services.audit_service import record_audit
from app.services.credential_service import resolve_channel_credentials
from app.services.guardrail_service import GuardrailValidator
from app.services.recommendation_service import refresh_recommendation_status
from app.services.rules_service import load_rule_config
from app.utils import utcnow

logger = logging.getLogger(__name__)


async def build_action_executor(db: AsyncSession, workspace_id: uuid.UUID) -> ActionExecutor:
    """Executor wired with the workspace's guardrails and decrypted channel credentials."""
    profile, guardrails = await load_rule_config(db, workspace_id)
    credentials = await resolve_channel_credentials(db, workspace_id)
    validator = GuardrailValidator(db, workspace_id, guardrails, profile)
    return ActionExecutor(db, workspace_id, credentials, validator)


async def _release_stale_runs(db: AsyncSession, recommendation_id: uuid.UUID) -> None:
    """Raise if a live run exists; mark runs older than the stale window FAILED."""
    settings = get_settings()
    stale_before = utcnow() - timedelta(minutes=settings.execution_stale_after_minutes)
    result = await db.execute(
        select(ExecutionRun).where(
            ExecutionRun.recommendation_id == recommendation_id,
            ExecutionRun.status == ExecutionRunStatus.RUNNING.value,
        )
    )
    for run in result.scalars().all():
        if run.started_at and run.started_at > stale_before:
            raise ExecutionConflictError("An execution is already running for this recommendation")
        logger.warning(f"Execution run {run.id} stale since {run.started_at}, marking FAILED")
        run.status = ExecutionRunStatus.FAILED.value
        run.finished_at = utcnow()
    await db.flush()


def _entity_key(action: ProposedAction) -> tuple[str, str, str]:
    return action.channel, action.entity.get("level"), str(action.entity.get("id"))


async def _execute_one(
    db: AsyncSession,
    run: ExecutionRun,
    action: ProposedAction,
    executor: ActionExecutor,
    user_id: str,
    timeout: float,
) -> dict:
    entity = action.entity
    error: Optional[str] = None
    violation = False
    before = after = None

    try:
        before, after = await asyncio.wait_for(executor.execute(action), timeout=timeout)
    except asyncio.TimeoutError:
        error = f"Action timed out after {timeout:g}s"
    except GuardrailViolation as e:
        error, violation = str(e), True
    except (DecisionEngineError, httpx.HTTPError, ValueError) as e:
        error = str(e) or e.__class__.__name__
    except Exception as e:
        logger.error(f"Unexpected error executing action {action.id}: {e}", exc_info=True)
        error = f"Unexpected error: {e.__class__.__name__}: {e}" if str(e) else f"Unexpected error: {e.__class__.__name__}"

    record = ExecutionAction(
        execution_run_id=run.id,
        proposed_action_id=action.id,
        channel=action.channel,
        action_type=action.action_type,
        entity=entity,
        before_state=before,
        after_state=after,
        status=ExecutionActionStatus.FAILED.value if error else ExecutionActionStatus.EXECUTED.value,
        error=error,
        guardrail_violation=violation,
        executed_at=None if error else utcnow(),
    )
    db.add(record)
    await db.flush()

    if error:
        action.status = ProposedActionStatus.FAILED.value
        if violation:
            action.guardrail_notes = f"{action.guardrail_notes} {error}" if action.guardrail_notes else error
        record_audit(
            db, run.workspace_id, user_id, f"EXECUTE_{action.action_type}_FAILED",
            channel=action.channel,
            entity_type=entity.get("level"),
            entity_id=str(entity.get("id")),
            before_state=before,
            reason=error,
            execution_action_id=record.id,
        )
        logger.info(f"Run {run.id}: action {action.id} {action.action_type} FAILED: {error}")
    else:
        action.status = ProposedActionStatus.EXECUTED.value
        record_audit(
            db, run.workspace_id, user_id, f"EXECUTE_{action.action_type}",
            channel=action.channel,
            entity_type=entity.get("level"),
            entity_id=str(entity.get("id")),
            before_state=before,
            after_state=after,
            reason=action.rationale,
            execution_action_id=record.id,
        )
        logger.info(f"Run {run.id}: action {action.id} {action.action_type} EXECUTED")

    return {
        "action_id": str(action.id),
        "success": error is None,
        "error": error,
        "guardrail_violation": violation,
    }


def _classify(results: list[dict]) -> str:
    succeeded = sum(1 for r in results if r["success"])
    if succeeded == len(results):
        return ExecutionRunStatus.COMPLETED.value
    if succeeded:
        return ExecutionRunStatus.PARTIAL.value
    return ExecutionRunStatus.FAILED.value


async def run_execution(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    recommendation_id: uuid.UUID,
    action_ids: list[uuid.UUID],
    user_id: str,
    executor: Optional[ActionExecutor] = None,
) -> dict:
    """
    Execute the APPROVED actions among action_ids, in the order given.
    Returns {execution_run_id, status, results: [{action_id, success, error, guardrail_violation}]}.
    """
    await require_workspace_access(db, workspace_id, user_id, Role.OPERATOR)

    rec = (await db.execute(
        select(Recommendation)
        .where(Recommendation.id == recommendation_id, Recommendation.workspace_id == workspace_id)
        .with_for_update()
    )).scalar_one_or_none()
    if not rec:
        raise NotFoundError("Recommendation not found")

    await _release_stale_runs(db, rec.id)

    requested = list(dict.fromkeys(action_ids))
    rows = (await db.execute(
        select(ProposedAction).where(
            ProposedAction.recommendation_id == rec.id,
            ProposedAction.id.in_(requested),
        )
    )).scalars().all()
    by_id = {a.id: a for a in rows}
    batch = [
        by_id[i] for i in requested
        if i in by_id and by_id[i].status == ProposedActionStatus.APPROVED.value
    ]

    if not batch:
        if requested and all(i in by_id and by_id[i].status in TERMINAL_ACTION_STATUSES for i in requested):
            logger.info(f"Recommendation {rec.id}: all {len(requested)} requested actions already terminal, nothing to run")
            await db.commit()
            return {"execution_run_id": None, "status": None, "results": []}
        raise EmptyBatchError("No approved actions to execute")

    seen: set[tuple[str, str, str]] = set()
    for action in batch:
        key = _entity_key(action)
        if key in seen:
            raise ExecutionConflictError(
                f"Batch targets {key[0]} {key[1]} {key[2]} more than once; execute those actions separately"
            )
        seen.add(key)

    if executor is None:
        executor = await build_action_executor(db, workspace_id)

    run = ExecutionRun(
        workspace_id=workspace_id,
        recommendation_id=rec.id,
        triggered_by=user_id,
        status=ExecutionRunStatus.RUNNING.value,
        started_at=utcnow(),
    )
    db.add(run)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise ExecutionConflictError("An execution is already running for this recommendation") from e

    logger.info(f"Execution run {run.id} started for recommendation {rec.id} ({len(batch)} actions)")
    timeout = get_settings().action_timeout_seconds
    results = []
    for action in batch:
        results.append(await _execute_one(db, run, action, executor, user_id, timeout))
        await db.commit()

    run.status = _classify(results)
    run.finished_at = utcnow()
    await db.flush()
    await refresh_recommendation_status(db, rec.id)
    await db.commit()

    failed = sum(1 for r in results if not r["success"])
    logger.info(f"Execution run {run.id} {run.status}: {len(results) - failed} executed, {failed} failed")
    return {"execution_run_id": str(run.id), "status": run.status, "results": results}


async def get_execution_run(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    run_id: uuid.UUID,
    user_id: str,
) -> ExecutionRun:
    await require_workspace_access(db, workspace_id, user_id, Role.VIEWER)
    result = await db.execute(
        select(ExecutionRun)
        .where(ExecutionRun.id == run_id, ExecutionRun.workspace_id == workspace_id)
        .options(selectinload(ExecutionRun.actions))
    )
    run = result.scalar_one_or_none()
    if not run:
        raise NotFoundError("Execution run not found")
    return run


def serialize_execution_run(run: ExecutionRun) -> dict:
    return {
        "id": str(run.id),
        "recommendation_id": str(run.recommendation_id),
        "status": run.status,
        "triggered_by": run.triggered_by,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "actions": [
            {
                "id": str(a.id),
                "proposed_action_id": str(a.proposed_action_id) if a.proposed_action_id else None,
                "channel": a.channel,
                "type": a.action_type,
                "entity": a.entity,
                "before_state": a.before_state,
                "after_state": a.after_state,
                "status": a.status,
                "error": a.error,
                "guardrail_violation": a.guardrail_violation,
                "executed_at": a.executed_at.isoformat() if a.executed_at else None,
            }
            for a in run.actions
        ],
    }
