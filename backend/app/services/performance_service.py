"""
Performance Service — Collapses daily channel insights into per-entity summaries.

Reads the performance store only. One grouped aggregate query per channel over
CAMPAIGN-level daily rows in a trailing window; entities with no spend in the
window are dropped so inactive campaigns never reach the rule engine.
"""

import logging
import math
import uuid
from dataclasses import dataclass, asdict
from datetime import date, timedelta
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_

from app.models import (
    Channel, EntityLevel, GoogleCampaign, GoogleInsightDaily, MetaCampaign, MetaInsightDaily,
)
from app.utils import utcnow

logger = logging.getLogger(__name__)

MICROS_PER_UNIT = 1_000_000
DEFAULT_WINDOW_DAYS = 7


@dataclass
class EntityPerformance:
    entity_id: str
    entity_name: Optional[str]
    level: str
    channel: str
    spend: float
    revenue: float
    roas: float
    cpa: float
    purchases: float
    impressions: int
    clicks: int
    ctr: float
    frequency: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


def safe_ratio(numerator: float, denominator: float) -> float:
    """numerator / denominator, or 0 when the denominator is zero or the result is not finite."""
    if not denominator or denominator <= 0:
        return 0.0
    value = numerator / denominator
    if not math.isfinite(value) or value < 0:
        return 0.0
    return value


def build_entity_performance(
    entity_id: str,
    entity_name: Optional[str],
    channel: str,
    spend: float,
    revenue: float,
    purchases: float,
    impressions: int = 0,
    clicks: int = 0,
    ctr: float = 0.0,
    frequency: Optional[float] = None,
    level: str = EntityLevel.CAMPAIGN.value,
) -> EntityPerformance:
    """Assemble an EntityPerformance with ROAS/CPA derived and division-by-zero guarded."""
    return EntityPerformance(
        entity_id=entity_id,
        entity_name=entity_name,
        level=level,
        channel=channel,
        spend=spend,
        revenue=revenue,
        roas=safe_ratio(revenue, spend),
        cpa=safe_ratio(spend, purchases),
        purchases=purchases,
        impressions=impressions,
        clicks=clicks,
        ctr=ctr,
        frequency=frequency if frequency else None,
    )


def _window(days: int, as_of: Optional[date]) -> tuple[date, date]:
    end = as_of or utcnow().date()
    return end - timedelta(days=days - 1), end


async def _meta_entities(db: AsyncSession, workspace_id: uuid.UUID, start: date, end: date) -> list[EntityPerformance]:
    spend = func.sum(MetaInsightDaily.spend)
    stmt = (
        select(
            MetaCampaign.campaign_id,
            MetaCampaign.name,
            spend.label("spend"),
            func.sum(MetaInsightDaily.purchase_value).label("revenue"),
            func.sum(MetaInsightDaily.purchases).label("purchases"),
            func.sum(MetaInsightDaily.impressions).label("impressions"),
            func.sum(MetaInsightDaily.clicks).label("clicks"),
            func.avg(MetaInsightDaily.ctr).label("ctr"),
            func.avg(MetaInsightDaily.frequency).label("frequency"),
        )
        .join(
            MetaInsightDaily,
            and_(
                MetaInsightDaily.workspace_id == MetaCampaign.workspace_id,
                MetaInsightDaily.entity_id == MetaCampaign.campaign_id,
            ),
        )
        .where(
            MetaCampaign.workspace_id == workspace_id,
            MetaInsightDaily.level == "CAMPAIGN",
            MetaInsightDaily.date >= start,
            MetaInsightDaily.date <= end,
        )
        .group_by(MetaCampaign.campaign_id, MetaCampaign.name)
        .having(spend > 0)
        .order_by(MetaCampaign.campaign_id)
    )
    rows = (await db.execute(stmt)).all()
    return [
        build_entity_performance(
            entity_id=row.campaign_id,
            entity_name=row.name,
            channel=Channel.META.value,
            spend=float(row.spend or 0),
            revenue=float(row.revenue or 0),
            purchases=float(row.purchases or 0),
            impressions=int(row.impressions or 0),
            clicks=int(row.clicks or 0),
            ctr=float(row.ctr or 0),
            frequency=float(row.frequency) if row.frequency else None,
        )
        for row in rows
    ]


async def _google_entities(db: AsyncSession, workspace_id: uuid.UUID, start: date, end: date) -> list[EntityPerformance]:
    cost = func.sum(GoogleInsightDaily.cost_micros)
    stmt = (
        select(
            GoogleCampaign.campaign_id,
            GoogleCampaign.name,
            cost.label("cost_micros"),
            func.sum(GoogleInsightDaily.conversion_value).label("revenue"),
            func.sum(GoogleInsightDaily.conversions).label("purchases"),
            func.sum(GoogleInsightDaily.impressions).label("impressions"),
            func.sum(GoogleInsightDaily.clicks).label("clicks"),
            func.avg(GoogleInsightDaily.ctr).label("ctr"),
        )
        .join(
            GoogleInsightDaily,
            and_(
                GoogleInsightDaily.workspace_id == GoogleCampaign.workspace_id,
                GoogleInsightDaily.entity_id == GoogleCampaign.campaign_id,
            ),
        )
        .where(
            GoogleCampaign.workspace_id == workspace_id,
            GoogleInsightDaily.level == "CAMPAIGN",
            GoogleInsightDaily.date >= start,
            GoogleInsightDaily.date <= end,
        )
        .group_by(GoogleCampaign.campaign_id, GoogleCampaign.name)
        .having(cost > 0)
        .order_by(GoogleCampaign.campaign_id)
    )
    rows = (await db.execute(stmt)).all()
    return [
        build_entity_performance(
            entity_id=row.campaign_id,
            entity_name=row.name,
            channel=Channel.GOOGLE.value,
            spend=float(row.cost_micros or 0) / MICROS_PER_UNIT,
            revenue=float(row.revenue or 0),
            purchases=float(row.purchases or 0),
            impressions=int(row.impressions or 0),
            clicks=int(row.clicks or 0),
            ctr=float(row.ctr or 0),
        )
        for row in rows
    ]


async def analyze_entity_performance(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    days: int = DEFAULT_WINDOW_DAYS,
    as_of: Optional[date] = None,
) -> list[EntityPerformance]:
    """
    Summarize every campaign with spend in the last `days` days (inclusive of as_of).
    Meta entities first, then Google, each ordered by entity id.
    Returns [] when nothing qualifies. Database errors propagate.
    """
    start, end = _window(days, as_of)
    entities = await _meta_entities(db, workspace_id, start, end)
    entities += await _google_entities(db, workspace_id, start, end)
    logger.info(f"Workspace {workspace_id}: {len(entities)} entities with spend between {start} and {end}")
    return entities
