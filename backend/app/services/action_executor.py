"""
Action Executor — Applies one approved ProposedAction to its channel.

Dispatch is on (channel, action type, entity level):
  META    UPDATE_BUDGET   campaign | adset      daily_budget in cents
  META    PAUSE_ENTITY    campaign | adset | ad status=PAUSED
  META    DUPLICATE_ADSET adset                 /{id}/copies, copy starts PAUSED
  GOOGLE  UPDATE_BUDGET   campaign              campaignBudgets amountMicros
  GOOGLE  PAUSE_ENTITY    campaign | adgroup    status=PAUSED
  SHOPIFY | OPS  CREATE_TASK  any               local Task row, no external call

Anything else raises UnsupportedActionError. Guardrails run before the external
call; the local store mirror is updated only after the platform accepted the change.
"""

import logging
import uuid
from typing import Optional, Protocol, Union
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.exceptions import NotFoundError, UnsupportedActionError
from app.models import (
    ActionType, Channel, GoogleAdGroup, GoogleCampaign, MetaAd, MetaAdSet, MetaCampaign,
    ProposedAction, Task, TaskPriority, TaskStatus,
)
from app.schemas import AdGroupRef, AdRef, AdSetRef, CampaignRef, parse_entity
from app.services.guardrail_service import GuardrailValidator, apply_budget_change

logger = logging.getLogger(__name__)

MICROS_PER_UNIT = 1_000_000
PAUSED = "PAUSED"

StoreRow = Union[MetaCampaign, MetaAdSet, MetaAd, GoogleCampaign, GoogleAdGroup]


class ChannelClients(Protocol):
    def meta_client(self): ...
    def google_client(self, customer_id: str): ...


def _unsupported(channel: str, action_type: str, level: str) -> UnsupportedActionError:
    return UnsupportedActionError(f"Unsupported action: {action_type} on {channel} {level}")


class ActionExecutor:
    def __init__(
        self,
        db: AsyncSession,
        workspace_id: uuid.UUID,
        clients: ChannelClients,
        validator: GuardrailValidator,
    ):
        self.db = db
        self.workspace_id = workspace_id
        self.clients = clients
        self.validator = validator

    # ── Store lookups ─────────────────────────────────────────────────

    async def _store_row(self, channel: str, entity) -> StoreRow:
        if channel == Channel.META.value:
            if isinstance(entity, CampaignRef):
                model, column = MetaCampaign, MetaCampaign.campaign_id
            elif isinstance(entity, AdSetRef):
                model, column = MetaAdSet, MetaAdSet.adset_id
            elif isinstance(entity, AdRef):
                model, column = MetaAd, MetaAd.ad_id
            else:
                raise UnsupportedActionError(f"META has no '{entity.level}' entities")
        elif channel == Channel.GOOGLE.value:
            if isinstance(entity, CampaignRef):
                model, column = GoogleCampaign, GoogleCampaign.campaign_id
            elif isinstance(entity, AdGroupRef):
                model, column = GoogleAdGroup, GoogleAdGroup.ad_group_id
            else:
                raise UnsupportedActionError(f"GOOGLE has no '{entity.level}' entities")
        else:
            raise UnsupportedActionError(f"{channel} entities are not stored locally")

        result = await self.db.execute(
            select(model).where(model.workspace_id == self.workspace_id, column == entity.id)
        )
        row = result.scalar_one_or_none()
        if not row:
            raise NotFoundError(f"{channel} {entity.level} {entity.id} not found")
        return row

    @staticmethod
    def _budget_of(row: StoreRow) -> Optional[float]:
        if isinstance(row, GoogleCampaign):
            if row.budget_amount_micros is None:
                return None
            return row.budget_amount_micros / MICROS_PER_UNIT
        return getattr(row, "daily_budget", None)

    def resolve_before_state(self, row: StoreRow) -> dict:
        return {"budget": self._budget_of(row), "status": row.status}

    # ── Dispatch ──────────────────────────────────────────────────────

    async def execute(self, action: ProposedAction) -> tuple[Optional[dict], dict]:
        """Apply one action. Returns (before_state, after_state); raises on any failure."""
        entity = parse_entity(action.entity)
        channel, action_type = action.channel, action.action_type

        if action_type == ActionType.CREATE_TASK.value:
            if channel not in (Channel.SHOPIFY.value, Channel.OPS.value):
                raise _unsupported(channel, action_type, entity.level)
            return None, await self._create_task(action, entity)

        if channel not in (Channel.META.value, Channel.GOOGLE.value):
            raise _unsupported(channel, action_type, entity.level)

        if action_type == ActionType.UPDATE_BUDGET.value:
            if channel == Channel.META.value and isinstance(entity, (CampaignRef, AdSetRef)):
                return await self._update_budget(action, entity)
            if channel == Channel.GOOGLE.value and isinstance(entity, CampaignRef):
                return await self._update_budget(action, entity)
        elif action_type == ActionType.PAUSE_ENTITY.value:
            if channel == Channel.META.value and isinstance(entity, (CampaignRef, AdSetRef, AdRef)):
                return await self._pause(action, entity)
            if channel == Channel.GOOGLE.value and isinstance(entity, (CampaignRef, AdGroupRef)):
                return await self._pause(action, entity)
        elif action_type == ActionType.DUPLICATE_ADSET.value:
            if channel == Channel.META.value and isinstance(entity, AdSetRef):
                return await self._duplicate_adset(entity)

        raise _unsupported(channel, action_type, entity.level)

    async def _update_budget(self, action: ProposedAction, entity) -> tuple[dict, dict]:
        if action.budget_change_pct is None:
            raise ValueError("UPDATE_BUDGET action has no budget change percentage")

        row = await self._store_row(action.channel, entity)
        before = self.resolve_before_state(row)
        current = before["budget"]
        if not current or current <= 0:
            raise ValueError(f"No current daily budget recorded for {action.channel} {entity.level} {entity.id}")

        new_budget = apply_budget_change(current, action.budget_change_pct)
        check = await self.validator.check_budget_change(
            action.channel, entity.level, entity.id, current, new_budget, action.budget_change_pct,
        )
        check.raise_if_blocked()

        if action.channel == Channel.META.value:
            await self.clients.meta_client().update_budget(entity, round(new_budget * 100))
            row.daily_budget = new_budget
        else:
            if not row.budget_resource_name:
                raise ValueError(f"Google campaign {entity.id} has no campaign budget resource")
            micros = round(new_budget * MICROS_PER_UNIT)
            await self.clients.google_client(row.customer_id).update_budget(row.budget_resource_name, micros)
            row.budget_amount_micros = micros

        logger.info(
            f"{action.channel} {entity.level} {entity.id}: budget {current:.2f} → {new_budget:.2f} "
            f"({action.budget_change_pct:+.0f}%)"
        )
        return before, {"budget": new_budget, "status": row.status}

    async def _pause(self, action: ProposedAction, entity) -> tuple[dict, dict]:
        row = await self._store_row(action.channel, entity)
        before = self.resolve_before_state(row)

        check = await self.validator.check_pause(action.channel, entity.id)
        check.raise_if_blocked()

        if action.channel == Channel.META.value:
            await self.clients.meta_client().update_status(entity, PAUSED)
        else:
            await self.clients.google_client(row.customer_id).update_status(entity, PAUSED)
        row.status = PAUSED

        logger.info(f"{action.channel} {entity.level} {entity.id}: {before['status']} → {PAUSED}")
        return before, {"budget": before["budget"], "status": PAUSED}

    async def _duplicate_adset(self, entity: AdSetRef) -> tuple[dict, dict]:
        row = await self._store_row(Channel.META.value, entity)
        before = self.resolve_before_state(row)
        result = await self.clients.meta_client().duplicate_adset(entity)
        copied_id = result.get("copied_adset_id") or result.get("id")
        logger.info(f"META adset {entity.id} duplicated as {copied_id}")
        return before, {"copied_adset_id": copied_id, "status": PAUSED}

    async def _create_task(self, action: ProposedAction, entity) -> dict:
        label = entity.name or f"{entity.level} {entity.id}"
        task = Task(
            workspace_id=self.workspace_id,
            title=f"{action.channel}: {label}"[:512],
            description=action.rationale,
            priority=TaskPriority.MEDIUM.value,
            status=TaskStatus.TODO.value,
            source_action_id=action.id,
        )
        self.db.add(task)
        await self.db.flush()
        logger.info(f"Task {task.id} created from action {action.id}")
        return {"task_id": str(task.id), "status": task.status}
