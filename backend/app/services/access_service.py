"""
Access Service — Workspace role checks.
Role hierarchy: VIEWER < OPERATOR < ADMIN < OWNER.
"""

import logging
import uuid
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.exceptions import AuthorizationError
from app.models import Role, WorkspaceMember

logger = logging.getLogger(__name__)

ROLE_RANK = {
    Role.VIEWER.value: 0,
    Role.OPERATOR.value: 1,
    Role.ADMIN.value: 2,
    Role.OWNER.value: 3,
}


async def get_member_role(db: AsyncSession, workspace_id: uuid.UUID, user_id: str) -> str | None:
    result = await db.execute(
        select(WorkspaceMember.role).where(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def check_workspace_access(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    user_id: str,
    min_role: Role = Role.VIEWER,
) -> bool:
    role = await get_member_role(db, workspace_id, user_id)
    if role is None:
        return False
    return ROLE_RANK.get(role, -1) >= ROLE_RANK[Role(min_role).value]


async def require_workspace_access(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    user_id: str,
    min_role: Role = Role.VIEWER,
) -> None:
    """Raise AuthorizationError unless user_id holds at least min_role in the workspace."""
    if not await check_workspace_access(db, workspace_id, user_id, min_role):
        logger.warning(f"Access denied: user {user_id} needs {Role(min_role).value} on workspace {workspace_id}")
        raise AuthorizationError(f"{Role(min_role).value} role or higher required for this workspace")
