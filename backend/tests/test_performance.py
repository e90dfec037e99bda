"""
Tests for entity performance aggregation over the performance store.
"""

from datetime import timedelta

import pytest

from app.models import MetaInsightDaily
from app.services.performance_service import analyze_entity_performance, build_entity_performance, safe_ratio
from app.utils import utcnow


def test_safe_ratio_guards_division():
    assert safe_ratio(10, 0) == 0.0
    assert safe_ratio(10, -5) == 0.0
    assert safe_ratio(0, 10) == 0.0
    assert safe_ratio(30, 10) == 3.0


def test_build_entity_performance_derives_ratios():
    entity = build_entity_performance("c1", "C1", "META", spend=1000, revenue=4000, purchases=20, frequency=0)
    assert entity.roas == 4.0
    assert entity.cpa == 50.0
    assert entity.frequency is None
    assert entity.level == "campaign"


@pytest.mark.anyio
async def test_zero_spend_entities_are_excluded(db, workspace, seed_meta_campaign):
    await seed_meta_campaign(workspace.id, "active", spend=500, revenue=1500, purchases=5)
    await seed_meta_campaign(workspace.id, "idle", spend=0, revenue=0, purchases=0)
    await db.commit()

    entities = await analyze_entity_performance(db, workspace.id, days=7)
    assert [e.entity_id for e in entities] == ["active"]


@pytest.mark.anyio
async def test_window_excludes_old_rows(db, workspace, seed_meta_campaign):
    await seed_meta_campaign(workspace.id, "old", spend=500, revenue=1500, purchases=5, days_ago=30)
    await db.commit()

    assert await analyze_entity_performance(db, workspace.id, days=7) == []


@pytest.mark.anyio
async def test_window_is_exactly_days_long(db, workspace, seed_meta_campaign):
    await seed_meta_campaign(workspace.id, "edge", spend=500, revenue=1500, purchases=5, days_ago=7)
    await seed_meta_campaign(workspace.id, "inside", spend=300, revenue=900, purchases=3, days_ago=6)
    await seed_meta_campaign(workspace.id, "today", spend=100, revenue=300, purchases=1, days_ago=0)
    await db.commit()

    entities = await analyze_entity_performance(db, workspace.id, days=7)
    assert [(e.entity_id, e.spend) for e in entities] == [("inside", 300.0), ("today", 100.0)]

    [entity] = await analyze_entity_performance(db, workspace.id, days=1)
    assert entity.entity_id == "today"


@pytest.mark.anyio
async def test_daily_rows_are_summed(db, workspace, seed_meta_campaign):
    await seed_meta_campaign(workspace.id, "c1", spend=300, revenue=600, purchases=3)
    db.add(MetaInsightDaily(
        workspace_id=workspace.id,
        date=utcnow().date() - timedelta(days=2),
        level="CAMPAIGN",
        entity_id="c1",
        spend=200,
        purchase_value=400,
        purchases=2,
        impressions=1000,
        clicks=10,
        ctr=1.0,
    ))
    await db.commit()

    [entity] = await analyze_entity_performance(db, workspace.id, days=7)
    assert entity.spend == 500
    assert entity.revenue == 1000
    assert entity.purchases == 5
    assert entity.roas == 2.0
    assert entity.cpa == 100.0
    assert entity.impressions == 11_000


@pytest.mark.anyio
async def test_meta_then_google_with_micros_converted(db, workspace, seed_meta_campaign, seed_google_campaign):
    await seed_google_campaign(workspace.id, "g1", cost=250, conversion_value=1000, conversions=5)
    await seed_meta_campaign(workspace.id, "m1", spend=100, revenue=300, purchases=1)
    await db.commit()

    entities = await analyze_entity_performance(db, workspace.id, days=7)
    assert [(e.channel, e.entity_id) for e in entities] == [("META", "m1"), ("GOOGLE", "g1")]
    google = entities[1]
    assert google.spend == 250.0
    assert google.roas == 4.0
    assert google.cpa == 50.0


@pytest.mark.anyio
async def test_other_workspaces_are_ignored(db, workspace, seed_meta_campaign):
    from app.models import Workspace
    other = Workspace(name="Other", slug="other")
    db.add(other)
    await db.flush()
    await seed_meta_campaign(other.id, "theirs", spend=500, revenue=1500, purchases=5)
    await db.commit()

    assert await analyze_entity_performance(db, workspace.id) == []
