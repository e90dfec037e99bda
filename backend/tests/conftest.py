"""
Shared fixtures: an in-memory SQLite database, a seeded workspace, store seeding
helpers, and fakes for the text generator and ad-platform clients.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models import (
    BusinessProfile, GoogleAdGroup, GoogleCampaign, GoogleInsightDaily, Guardrails,
    MetaAdSet, MetaCampaign, MetaInsightDaily, Role, Workspace, WorkspaceMember,
)
from app.services.action_executor import ActionExecutor
from app.services.guardrail_service import GuardrailValidator
from app.services.rules_service import load_rule_config
from app.utils import utcnow


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(engine):
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def workspace(db):
    """Workspace with owner-1 (OWNER), operator-1 (OPERATOR) and viewer-1 (VIEWER)."""
    ws = Workspace(name="Test Store", slug="test-store")
    db.add(ws)
    await db.flush()
    db.add_all([
        WorkspaceMember(workspace_id=ws.id, user_id="owner-1", role=Role.OWNER.value),
        WorkspaceMember(workspace_id=ws.id, user_id="operator-1", role=Role.OPERATOR.value),
        WorkspaceMember(workspace_id=ws.id, user_id="viewer-1", role=Role.VIEWER.value),
        BusinessProfile(
            workspace_id=ws.id,
            target_cpa_zar=100.0,
            break_even_roas=2.5,
            gross_margin_pct=0.5,
        ),
        Guardrails(
            workspace_id=ws.id,
            max_budget_change_percent_daily=30.0,
            max_pauses_per_day=5,
            min_spend_zar=50.0,
        ),
    ])
    await db.commit()
    return ws


@pytest.fixture
def seed_meta_campaign(db):
    """Add a Meta campaign with one CAMPAIGN-level insight row dated yesterday."""
    async def _seed(
        workspace_id,
        campaign_id: str,
        spend: float,
        revenue: float,
        purchases: int,
        *,
        name: str = None,
        daily_budget: float = 100.0,
        status: str = "ACTIVE",
        ctr: float = 2.0,
        frequency: float = None,
        days_ago: int = 1,
    ) -> MetaCampaign:
        campaign = MetaCampaign(
            workspace_id=workspace_id,
            campaign_id=campaign_id,
            name=name or f"Meta {campaign_id}",
            status=status,
            daily_budget=daily_budget,
        )
        db.add(campaign)
        db.add(MetaInsightDaily(
            workspace_id=workspace_id,
            date=utcnow().date() - timedelta(days=days_ago),
            level="CAMPAIGN",
            entity_id=campaign_id,
            spend=spend,
            purchase_value=revenue,
            purchases=purchases,
            impressions=10_000,
            clicks=200,
            ctr=ctr,
            frequency=frequency,
        ))
        await db.flush()
        return campaign
    return _seed


@pytest.fixture
def seed_meta_adset(db):
    async def _seed(workspace_id, adset_id: str, campaign_id: str = "c-parent", daily_budget: float = 50.0) -> MetaAdSet:
        adset = MetaAdSet(
            workspace_id=workspace_id,
            campaign_id=campaign_id,
            adset_id=adset_id,
            name=f"Adset {adset_id}",
            status="ACTIVE",
            daily_budget=daily_budget,
        )
        db.add(adset)
        await db.flush()
        return adset
    return _seed


@pytest.fixture
def seed_google_campaign(db):
    """Add a Google campaign (budget in micros) with one insight row dated yesterday."""
    async def _seed(
        workspace_id,
        campaign_id: str,
        cost: float,
        conversion_value: float,
        conversions: float,
        *,
        customer_id: str = "1234567890",
        budget: float = 200.0,
        with_ad_group: str = None,
    ) -> GoogleCampaign:
        campaign = GoogleCampaign(
            workspace_id=workspace_id,
            customer_id=customer_id,
            campaign_id=campaign_id,
            name=f"Google {campaign_id}",
            status="ENABLED",
            budget_resource_name=f"customers/{customer_id}/campaignBudgets/b{campaign_id}",
            budget_amount_micros=int(budget * 1_000_000),
        )
        db.add(campaign)
        db.add(GoogleInsightDaily(
            workspace_id=workspace_id,
            date=utcnow().date() - timedelta(days=1),
            level="CAMPAIGN",
            entity_id=campaign_id,
            cost_micros=int(cost * 1_000_000),
            conversion_value=conversion_value,
            conversions=conversions,
            impressions=5_000,
            clicks=150,
            ctr=3.0,
        ))
        if with_ad_group:
            db.add(GoogleAdGroup(
                workspace_id=workspace_id,
                customer_id=customer_id,
                campaign_id=campaign_id,
                ad_group_id=with_ad_group,
                name=f"Ad group {with_ad_group}",
                status="ENABLED",
            ))
        await db.flush()
        return campaign
    return _seed


class FakeAI:
    """Returns queued responses in order; an Exception instance is raised instead."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts: list[str] = []

    async def generate_json(self, prompt: str, schema: dict) -> dict:
        self.prompts.append(prompt)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeClients:
    """Stands in for ChannelCredentials; records which Google customer was addressed."""

    def __init__(self):
        self.meta = AsyncMock()
        self.meta.duplicate_adset.return_value = {"copied_adset_id": "copy-1"}
        self.google = AsyncMock()
        self.google_customers: list[str] = []

    def meta_client(self):
        return self.meta

    def google_client(self, customer_id: str):
        self.google_customers.append(customer_id)
        return self.google


@pytest.fixture
def fake_ai():
    return FakeAI


@pytest.fixture
def fake_clients():
    return FakeClients()


@pytest.fixture
def make_executor(db, fake_clients):
    async def _make(workspace_id, clients=None) -> ActionExecutor:
        profile, guardrails = await load_rule_config(db, workspace_id)
        validator = GuardrailValidator(db, workspace_id, guardrails, profile)
        return ActionExecutor(db, workspace_id, clients or fake_clients, validator)
    return _make
