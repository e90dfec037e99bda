"""
Guardrail Service — Enforces workspace limits before any budget or pause mutation.

Checks (all run, every violation reported):
  budget: change cap, cumulative daily change, max daily spend, monthly spend cap
  pause:  max distinct entities paused per day

Violations are logged at WARNING and block the action; they never raise out of
the execution loop on their own (callers decide via GuardrailCheck.blocked).
"""

import calendar
import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from app.exceptions import GuardrailViolation
from app.models import (
    ActionType, AuditLog, BusinessProfile, Channel, Guardrails,
    GoogleCampaign, GoogleInsightDaily, MetaAdSet, MetaCampaign, MetaInsightDaily,
)
from app.utils import start_of_utc_day, utcnow

logger = logging.getLogger(__name__)

MICROS_PER_UNIT = 1_000_000
_EPSILON = 1e-9


def clamp_budget_change(change_pct: float, max_change_pct: Optional[float]) -> float:
    """Clamp a signed percent to ±max_change_pct. None means unlimited."""
    if max_change_pct is None:
        return change_pct
    return max(-max_change_pct, min(max_change_pct, change_pct))


def apply_budget_change(current_budget: float, change_pct: float) -> float:
    """newBudget = currentBudget × (1 + change/100), rounded to cents."""
    return round(current_budget * (1 + change_pct / 100), 2)


@dataclass
class GuardrailCheck:
    blocked: bool = False
    reasons: list[str] = field(default_factory=list)
    checked: list[str] = field(default_factory=list)

    def block(self, reason: str) -> None:
        self.blocked = True
        self.reasons.append(reason)

    def raise_if_blocked(self) -> None:
        if self.blocked:
            raise GuardrailViolation(self.reasons)


class GuardrailValidator:
    def __init__(
        self,
        db: AsyncSession,
        workspace_id: uuid.UUID,
        guardrails: Guardrails,
        profile: Optional[BusinessProfile] = None,
    ):
        self.db = db
        self.workspace_id = workspace_id
        self.guardrails = guardrails
        self.profile = profile

    def _warn(self, channel: str, entity_id: str, reason: str) -> None:
        logger.warning(f"Workspace {self.workspace_id} {channel} entity {entity_id}: {reason}")

    # ── Budget ────────────────────────────────────────────────────────

    async def check_budget_change(
        self,
        channel: str,
        level: str,
        entity_id: str,
        current_budget: float,
        new_budget: float,
        change_pct: float,
    ) -> GuardrailCheck:
        check = GuardrailCheck()
        max_change = self.guardrails.max_budget_change_percent_daily

        # 1. Per-action change cap
        check.checked.append("change_cap")
        if max_change is not None and abs(change_pct) > max_change + _EPSILON:
            reason = f"Change cap exceeded: {change_pct:+.1f}% is beyond the ±{max_change:g}% daily limit"
            check.block(reason)
            self._warn(channel, entity_id, reason)

        # 2. Cumulative change against the first budget seen today
        check.checked.append("daily_cumulative_change")
        if max_change is not None:
            baseline = await self._first_budget_today(channel, entity_id)
            if baseline:
                cumulative = (new_budget - baseline) / baseline * 100
                if abs(cumulative) > max_change + _EPSILON:
                    reason = (
                        f"Daily change limit: {cumulative:+.1f}% cumulative change today "
                        f"(from {baseline:.2f}) is beyond ±{max_change:g}%"
                    )
                    check.block(reason)
                    self._warn(channel, entity_id, reason)

        if new_budget > current_budget:
            projected_daily = None

            # 3. Max daily spend across the workspace
            check.checked.append("max_daily_spend")
            if self.guardrails.max_spend_zar is not None:
                projected_daily = await self._projected_daily_budget(channel, level, entity_id, new_budget)
                if projected_daily > self.guardrails.max_spend_zar + _EPSILON:
                    reason = (
                        f"Max daily spend exceeded: projected {projected_daily:.2f} ZAR/day "
                        f"> {self.guardrails.max_spend_zar:.2f} ZAR"
                    )
                    check.block(reason)
                    self._warn(channel, entity_id, reason)

            # 4. Monthly spend cap
            check.checked.append("monthly_spend_cap")
            cap = self.profile.monthly_spend_cap_zar if self.profile else None
            if cap is not None:
                if projected_daily is None:
                    projected_daily = await self._projected_daily_budget(channel, level, entity_id, new_budget)
                today = utcnow().date()
                days_left = calendar.monthrange(today.year, today.month)[1] - today.day + 1
                month_to_date = await self._month_to_date_spend()
                projected_month = month_to_date + projected_daily * days_left
                if projected_month > cap + _EPSILON:
                    reason = (
                        f"Monthly spend cap exceeded: projected {projected_month:.2f} ZAR "
                        f"> {cap:.2f} ZAR cap"
                    )
                    check.block(reason)
                    self._warn(channel, entity_id, reason)

        return check

    async def _first_budget_today(self, channel: str, entity_id: str) -> Optional[float]:
        result = await self.db.execute(
            select(AuditLog.before_state)
            .where(
                AuditLog.workspace_id == self.workspace_id,
                AuditLog.action == f"EXECUTE_{ActionType.UPDATE_BUDGET.value}",
                AuditLog.channel == channel,
                AuditLog.entity_id == entity_id,
                AuditLog.created_at >= start_of_utc_day(),
            )
            .order_by(AuditLog.created_at.asc())
            .limit(1)
        )
        before = result.scalar_one_or_none()
        if not before:
            return None
        return before.get("budget")

    async def _projected_daily_budget(self, channel: str, level: str, entity_id: str, new_budget: float) -> float:
        """Total active daily budget across the workspace with this entity's budget replaced."""
        meta_campaigns = select(func.coalesce(func.sum(MetaCampaign.daily_budget), 0.0)).where(
            MetaCampaign.workspace_id == self.workspace_id,
            MetaCampaign.status == "ACTIVE",
        )
        meta_adsets = select(func.coalesce(func.sum(MetaAdSet.daily_budget), 0.0)).where(
            MetaAdSet.workspace_id == self.workspace_id,
            MetaAdSet.status == "ACTIVE",
        )
        google_campaigns = select(func.coalesce(func.sum(GoogleCampaign.budget_amount_micros), 0)).where(
            GoogleCampaign.workspace_id == self.workspace_id,
            GoogleCampaign.status == "ENABLED",
        )
        if channel == Channel.META.value and level == "campaign":
            meta_campaigns = meta_campaigns.where(MetaCampaign.campaign_id != entity_id)
        elif channel == Channel.META.value and level == "adset":
            meta_adsets = meta_adsets.where(MetaAdSet.adset_id != entity_id)
        elif channel == Channel.GOOGLE.value and level == "campaign":
            google_campaigns = google_campaigns.where(GoogleCampaign.campaign_id != entity_id)

        total = float((await self.db.execute(meta_campaigns)).scalar() or 0)
        total += float((await self.db.execute(meta_adsets)).scalar() or 0)
        total += float((await self.db.execute(google_campaigns)).scalar() or 0) / MICROS_PER_UNIT
        return total + new_budget

    async def _month_to_date_spend(self) -> float:
        today = utcnow().date()
        first = today.replace(day=1)
        meta = await self.db.execute(
            select(func.coalesce(func.sum(MetaInsightDaily.spend), 0.0)).where(
                MetaInsightDaily.workspace_id == self.workspace_id,
                MetaInsightDaily.level == "CAMPAIGN",
                MetaInsightDaily.date >= first,
                MetaInsightDaily.date <= today,
            )
        )
        google = await self.db.execute(
            select(func.coalesce(func.sum(GoogleInsightDaily.cost_micros), 0)).where(
                GoogleInsightDaily.workspace_id == self.workspace_id,
                GoogleInsightDaily.level == "CAMPAIGN",
                GoogleInsightDaily.date >= first,
                GoogleInsightDaily.date <= today,
            )
        )
        return float(meta.scalar() or 0) + float(google.scalar() or 0) / MICROS_PER_UNIT

    # ── Pause ─────────────────────────────────────────────────────────

    async def check_pause(self, channel: str, entity_id: str) -> GuardrailCheck:
        check = GuardrailCheck(checked=["max_pauses_per_day"])
        limit = self.guardrails.max_pauses_per_day
        if limit is None:
            return check

        paused_today = await self.paused_entities_today()
        if (channel, entity_id) in paused_today:
            return check
        if len(paused_today) >= limit:
            reason = f"Daily pause limit: {len(paused_today)}/{limit} entities already paused today"
            check.block(reason)
            self._warn(channel, entity_id, reason)
        return check

    async def paused_entities_today(self) -> set[tuple[str, str]]:
        result = await self.db.execute(
            select(AuditLog.channel, AuditLog.entity_id)
            .where(
                AuditLog.workspace_id == self.workspace_id,
                AuditLog.action == f"EXECUTE_{ActionType.PAUSE_ENTITY.value}",
                AuditLog.created_at >= start_of_utc_day(),
            )
            .distinct()
        )
        return {(row.channel, row.entity_id) for row in result.all()}
