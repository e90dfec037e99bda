"""
Audit Service — Append-only audit trail writer and reader.
Rows are only ever inserted; nothing in the decision engine updates or deletes them.
"""

import logging
import uuid
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.models import AuditLog

logger = logging.getLogger(__name__)


def record_audit(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    user_id: Optional[str],
    action: str,
    *,
    channel: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    before_state: Optional[dict] = None,
    after_state: Optional[dict] = None,
    reason: Optional[str] = None,
    execution_action_id: Optional[uuid.UUID] = None,
) -> AuditLog:
    entry = AuditLog(
        workspace_id=workspace_id,
        user_id=user_id,
        action=action,
        channel=channel,
        entity_type=entity_type,
        entity_id=entity_id,
        before_state=before_state,
        after_state=after_state,
        reason=reason,
        execution_action_id=execution_action_id,
    )
    db.add(entry)
    return entry


async def list_audit_logs(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    entity_id: Optional[str] = None,
    limit: int = 100,
) -> list[AuditLog]:
    query = (
        select(AuditLog)
        .where(AuditLog.workspace_id == workspace_id)
        .order_by(AuditLog.created_at.desc())
        .limit(limit)
    )
    if entity_id:
        query = query.where(AuditLog.entity_id == entity_id)
    result = await db.execute(query)
    return list(result.scalars().all())


def serialize_audit_log(entry: AuditLog) -> dict:
    return {
        "id": str(entry.id),
        "user_id": entry.user_id,
        "action": entry.action,
        "channel": entry.channel,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "before_state": entry.before_state,
        "after_state": entry.after_state,
        "reason": entry.reason,
        "execution_action_id": str(entry.execution_action_id) if entry.execution_action_id else None,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
