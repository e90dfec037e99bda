"""
Rules Service — Maps aggregated entity metrics to one action per entity.

Evaluation order (first match wins; the rules overlap):
  1. Underperforming: ROAS below break-even OR CPA above target
     - no purchases and spend still under the minimum  → PAUSE
     - otherwise                                        → REDUCE
  2. Dead spend: spend at/above minimum with zero purchases → PAUSE
  3. Fatigue: frequency above threshold with low CTR → HOLD ("Creative refresh")
  4. Winner: ROAS above break-even band AND CPA under target band → SCALE
  5. Default → HOLD

Rule 1 fires before rule 2, so a losing entity with zero purchases and spend
above the minimum is REDUCEd rather than PAUSEd.

SCALE/REDUCE suggestions are clamped to ±max_budget_change_percent_daily.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.exceptions import ConfigurationError
from app.models import BusinessProfile, Guardrails
from app.services.guardrail_service import clamp_budget_change
from app.services.performance_service import EntityPerformance

logger = logging.getLogger(__name__)

CREATIVE_REFRESH_MARKER = "Creative refresh"
DEFAULT_HOLD_REASON = "Performance within acceptable range. No action needed."


class RuleAction(str, enum.Enum):
    SCALE = "SCALE"
    REDUCE = "REDUCE"
    PAUSE = "PAUSE"
    HOLD = "HOLD"


@dataclass(frozen=True)
class RuleThresholds:
    """Tunable constants of the rule table. Multipliers apply to the business profile values."""
    reduce_budget_change_pct: float = -30.0
    scale_budget_change_pct: float = 15.0
    scale_roas_multiplier: float = 1.2
    scale_cpa_multiplier: float = 0.8
    fatigue_frequency: float = 3.0
    fatigue_ctr: float = 1.0


DEFAULT_THRESHOLDS = RuleThresholds()


@dataclass
class RuleResult:
    action: str
    entity: EntityPerformance
    reason: str
    suggested_budget_change: Optional[float] = None  # signed percent

    @property
    def needs_creative_refresh(self) -> bool:
        return CREATIVE_REFRESH_MARKER in self.reason


def _budget_result(
    action: RuleAction,
    entity: EntityPerformance,
    reason: str,
    change: float,
    max_change_pct: Optional[float],
) -> RuleResult:
    clamped = clamp_budget_change(change, max_change_pct)
    if clamped != change:
        reason = f"{reason} ({change:+.0f}% clamped to ±{max_change_pct:g}% by guardrails)"
    return RuleResult(action=action.value, entity=entity, reason=reason, suggested_budget_change=clamped)


def evaluate_entity(
    entity: EntityPerformance,
    profile: BusinessProfile,
    guardrails: Guardrails,
    thresholds: RuleThresholds = DEFAULT_THRESHOLDS,
) -> RuleResult:
    """Pure rule evaluation for one entity. No I/O."""
    break_even = profile.break_even_roas
    target_cpa = profile.target_cpa_zar
    min_spend = guardrails.min_spend_zar or 0.0
    max_change = guardrails.max_budget_change_percent_daily

    # 1. Underperformance
    if entity.roas < break_even or entity.cpa > target_cpa:
        reason = (
            f"ROAS {entity.roas:.2f} below break-even ({break_even}) "
            f"or CPA {entity.cpa:.2f} above target ({target_cpa})."
        )
        if entity.spend < min_spend and entity.purchases == 0:
            return RuleResult(
                action=RuleAction.PAUSE.value,
                entity=entity,
                reason=f"{reason} No purchases with spend {entity.spend:.2f} ZAR under the {min_spend:.2f} ZAR minimum.",
            )
        return _budget_result(RuleAction.REDUCE, entity, reason, thresholds.reduce_budget_change_pct, max_change)

    # 2. Dead spend
    if entity.spend >= min_spend and entity.purchases == 0:
        return RuleResult(
            action=RuleAction.PAUSE.value,
            entity=entity,
            reason=f"Spend {entity.spend:.2f} ZAR with zero purchases.",
        )

    # 3. Fatigue
    if entity.frequency and entity.frequency > thresholds.fatigue_frequency and entity.ctr < thresholds.fatigue_ctr:
        return RuleResult(
            action=RuleAction.HOLD.value,
            entity=entity,
            reason=(
                f"High frequency ({entity.frequency:.1f}) with low CTR ({entity.ctr:.2f}%). "
                f"{CREATIVE_REFRESH_MARKER} needed."
            ),
        )

    # 4. Winner
    roas_bar = break_even * thresholds.scale_roas_multiplier
    cpa_bar = target_cpa * thresholds.scale_cpa_multiplier
    if entity.roas > roas_bar and entity.cpa < cpa_bar:
        reason = (
            f"Strong performance: ROAS {entity.roas:.2f} (>{roas_bar:.2f} target), "
            f"CPA {entity.cpa:.2f} (<{cpa_bar:.2f} target)."
        )
        return _budget_result(RuleAction.SCALE, entity, reason, thresholds.scale_budget_change_pct, max_change)

    # 5. Default
    return RuleResult(action=RuleAction.HOLD.value, entity=entity, reason=DEFAULT_HOLD_REASON)


def evaluate_entities(
    entities: list[EntityPerformance],
    profile: BusinessProfile,
    guardrails: Guardrails,
    thresholds: RuleThresholds = DEFAULT_THRESHOLDS,
) -> list[RuleResult]:
    return [evaluate_entity(e, profile, guardrails, thresholds) for e in entities]


async def load_rule_config(db: AsyncSession, workspace_id: uuid.UUID) -> tuple[BusinessProfile, Guardrails]:
    """Fetch the workspace's BusinessProfile and Guardrails, or raise ConfigurationError."""
    profile = (await db.execute(
        select(BusinessProfile).where(BusinessProfile.workspace_id == workspace_id)
    )).scalar_one_or_none()
    if not profile:
        raise ConfigurationError("Business profile not configured")
    guardrails = (await db.execute(
        select(Guardrails).where(Guardrails.workspace_id == workspace_id)
    )).scalar_one_or_none()
    if not guardrails:
        raise ConfigurationError("Guardrails not configured")
    return profile, guardrails


async def apply_rules(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    entities: list[EntityPerformance],
    thresholds: Optional[RuleThresholds] = None,
) -> list[RuleResult]:
    profile, guardrails = await load_rule_config(db, workspace_id)
    results = evaluate_entities(entities, profile, guardrails, thresholds or DEFAULT_THRESHOLDS)

    counts: dict[str, int] = {}
    for r in results:
        counts[r.action] = counts.get(r.action, 0) + 1
    logger.info(f"Workspace {workspace_id}: rules applied to {len(results)} entities {counts}")
    return results
