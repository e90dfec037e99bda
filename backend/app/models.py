"""
Ads Decision Engine — Database Models
Workspaces, the channel performance store, and the recommendation/execution lifecycle.
All state persisted to PostgreSQL — JSON columns use the generic type so the schema
also builds on SQLite.
"""

import uuid
import enum
from datetime import date as date_, datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Boolean, Date, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID
from app.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class Role(str, enum.Enum):
    VIEWER = "VIEWER"
    OPERATOR = "OPERATOR"
    ADMIN = "ADMIN"
    OWNER = "OWNER"


class StrategicMode(str, enum.Enum):
    GROWTH = "GROWTH"
    EFFICIENCY = "EFFICIENCY"
    RECOVERY = "RECOVERY"
    LIQUIDATION = "LIQUIDATION"
    HOLD = "HOLD"


class Channel(str, enum.Enum):
    META = "META"
    GOOGLE = "GOOGLE"
    SHOPIFY = "SHOPIFY"
    OPS = "OPS"


class ActionType(str, enum.Enum):
    UPDATE_BUDGET = "UPDATE_BUDGET"
    PAUSE_ENTITY = "PAUSE_ENTITY"
    CREATE_TASK = "CREATE_TASK"
    DUPLICATE_ADSET = "DUPLICATE_ADSET"


class EntityLevel(str, enum.Enum):
    CAMPAIGN = "campaign"
    ADSET = "adset"
    AD = "ad"
    ADGROUP = "adgroup"


class RecommendationStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PROPOSED = "PROPOSED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXECUTED = "EXECUTED"


class ProposedActionStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


# Terminal action statuses; a recommendation is EXECUTED once every action is in one
TERMINAL_ACTION_STATUSES = (
    ProposedActionStatus.EXECUTED.value,
    ProposedActionStatus.FAILED.value,
    ProposedActionStatus.REJECTED.value,
)


class ExecutionRunStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class ExecutionActionStatus(str, enum.Enum):
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


class TaskPriority(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class TaskStatus(str, enum.Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


class IntegrationType(str, enum.Enum):
    META = "META"
    GOOGLE_ADS = "GOOGLE_ADS"


# ══════════════════════════════════════════════════════════════════════
#  WORKSPACES & ACCESS
# ══════════════════════════════════════════════════════════════════════

class Workspace(Base):
    """Tenant boundary. Every other row is scoped to one workspace."""
    __tablename__ = "workspaces"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    members: Mapped[list["WorkspaceMember"]] = relationship("WorkspaceMember", back_populates="workspace", cascade="all, delete-orphan")
    business_profile: Mapped["BusinessProfile"] = relationship("BusinessProfile", back_populates="workspace", uselist=False, cascade="all, delete-orphan")
    guardrails: Mapped["Guardrails"] = relationship("Guardrails", back_populates="workspace", uselist=False, cascade="all, delete-orphan")


class WorkspaceMember(Base):
    __tablename__ = "workspace_members"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)  # identity provider subject
    role: Mapped[str] = mapped_column(String(20), default=Role.VIEWER.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    workspace: Mapped["Workspace"] = relationship("Workspace", back_populates="members")

    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_members_workspace_user"),
        Index("ix_workspace_members_user_id", "user_id"),
    )


class BusinessProfile(Base):
    """Unit economics that drive every rule threshold. One per workspace."""
    __tablename__ = "business_profiles"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, unique=True)
    target_cpa_zar: Mapped[float] = mapped_column(Float, default=0.0)
    break_even_roas: Mapped[float] = mapped_column(Float, default=1.0)
    gross_margin_pct: Mapped[float] = mapped_column(Float, default=0.5)  # 0–1
    avg_shipping_cost_zar: Mapped[float] = mapped_column(Float, default=0.0)
    return_rate_pct: Mapped[float] = mapped_column(Float, default=0.0)  # 0–1
    payment_fees_pct: Mapped[float] = mapped_column(Float, default=0.0)  # 0–1
    monthly_spend_cap_zar: Mapped[float] = mapped_column(Float, nullable=True)
    strategic_mode: Mapped[str] = mapped_column(String(20), default=StrategicMode.HOLD.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    workspace: Mapped["Workspace"] = relationship("Workspace", back_populates="business_profile")


class Guardrails(Base):
    """Hard limits on automated mutations. One per workspace."""
    __tablename__ = "guardrails"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, unique=True)
    max_budget_change_percent_daily: Mapped[float] = mapped_column(Float, default=20.0)
    max_pauses_per_day: Mapped[int] = mapped_column(Integer, default=5)
    min_spend_zar: Mapped[float] = mapped_column(Float, default=100.0)
    max_spend_zar: Mapped[float] = mapped_column(Float, nullable=True)
    # Action types that need a human approval; anything else is auto-approved on propose
    require_approval_for: Mapped[list] = mapped_column(JSON, default=lambda: [t.value for t in ActionType])
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    workspace: Mapped["Workspace"] = relationship("Workspace", back_populates="guardrails")


class IntegrationSecret(Base):
    """Encrypted channel credentials (JSON blob, Fernet-encrypted)."""
    __tablename__ = "integration_secrets"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    integration_type: Mapped[str] = mapped_column(String(20), nullable=False)
    encrypted_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "integration_type", name="uq_integration_secrets_workspace_type"),
    )


class AppSettings(Base):
    """Application-wide settings. Single row, key-value style."""
    __tablename__ = "app_settings"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # default_llm_id: "openai:gpt-4o-mini" or "anthropic:claude-sonnet-4-20250514"
    default_llm_id: Mapped[str] = mapped_column(String(128), nullable=True)
    # Encrypted API keys (stored from Settings UI; env vars take precedence if set)
    openai_api_key: Mapped[str] = mapped_column(Text, nullable=True)
    anthropic_api_key: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)


class Task(Base):
    """Operational to-do created by CREATE_TASK actions."""
    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=True)
    priority: Mapped[str] = mapped_column(String(20), default=TaskPriority.MEDIUM.value)
    status: Mapped[str] = mapped_column(String(20), default=TaskStatus.TODO.value)
    due_date: Mapped[date_] = mapped_column(Date, nullable=True)
    source_action_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("proposed_actions.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_tasks_workspace_status", "workspace_id", "status"),
    )


# ══════════════════════════════════════════════════════════════════════
#  PERFORMANCE STORE — META
#  Populated by the sync adapters; the decision engine only reads these,
#  except for writing back budget/status after a successful mutation.
# ══════════════════════════════════════════════════════════════════════

class MetaAdAccount(Base):
    __tablename__ = "meta_ad_accounts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)  # "act_123..."
    name: Mapped[str] = mapped_column(String(255), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="ZAR")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "account_id", name="uq_meta_ad_accounts_workspace_account"),
    )


class MetaCampaign(Base):
    __tablename__ = "meta_campaigns"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=True)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE")
    objective: Mapped[str] = mapped_column(String(64), nullable=True)
    daily_budget: Mapped[float] = mapped_column(Float, nullable=True)  # currency units, not cents
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "campaign_id", name="uq_meta_campaigns_workspace_campaign"),
    )


class MetaAdSet(Base):
    __tablename__ = "meta_adsets"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    adset_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE")
    daily_budget: Mapped[float] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "adset_id", name="uq_meta_adsets_workspace_adset"),
        Index("ix_meta_adsets_campaign_id", "campaign_id"),
    )


class MetaAd(Base):
    __tablename__ = "meta_ads"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    adset_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ad_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "ad_id", name="uq_meta_ads_workspace_ad"),
    )


class MetaInsightDaily(Base):
    """One row per entity per day. level is CAMPAIGN, ADSET or AD."""
    __tablename__ = "meta_insights_daily"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[date_] = mapped_column(Date, nullable=False)
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    spend: Mapped[float] = mapped_column(Float, default=0.0)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(BigInteger, default=0)
    ctr: Mapped[float] = mapped_column(Float, default=0.0)  # percent
    frequency: Mapped[float] = mapped_column(Float, nullable=True)
    purchases: Mapped[int] = mapped_column(Integer, default=0)
    purchase_value: Mapped[float] = mapped_column(Float, default=0.0)

    __table_args__ = (
        UniqueConstraint("workspace_id", "date", "level", "entity_id", name="uq_meta_insights_daily_key"),
        Index("ix_meta_insights_daily_workspace_level_date", "workspace_id", "level", "date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  PERFORMANCE STORE — GOOGLE ADS
# ══════════════════════════════════════════════════════════════════════

class GoogleAdsCustomer(Base):
    __tablename__ = "google_ads_customers"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(32), nullable=False)  # digits only
    name: Mapped[str] = mapped_column(String(255), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="ZAR")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "customer_id", name="uq_google_ads_customers_workspace_customer"),
    )


class GoogleCampaign(Base):
    __tablename__ = "google_campaigns"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(32), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="ENABLED")
    # customers/{cid}/campaignBudgets/{id}
    budget_resource_name: Mapped[str] = mapped_column(String(255), nullable=True)
    budget_amount_micros: Mapped[int] = mapped_column(BigInteger, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "campaign_id", name="uq_google_campaigns_workspace_campaign"),
    )


class GoogleAdGroup(Base):
    __tablename__ = "google_ad_groups"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(32), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ad_group_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="ENABLED")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "ad_group_id", name="uq_google_ad_groups_workspace_ad_group"),
    )


class GoogleInsightDaily(Base):
    """Google daily metrics. Cost is stored in micros (1e6 = one currency unit)."""
    __tablename__ = "google_insights_daily"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[date_] = mapped_column(Date, nullable=False)
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    cost_micros: Mapped[int] = mapped_column(BigInteger, default=0)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(BigInteger, default=0)
    ctr: Mapped[float] = mapped_column(Float, default=0.0)
    conversions: Mapped[float] = mapped_column(Float, default=0.0)
    conversion_value: Mapped[float] = mapped_column(Float, default=0.0)

    __table_args__ = (
        UniqueConstraint("workspace_id", "date", "level", "entity_id", name="uq_google_insights_daily_key"),
        Index("ix_google_insights_daily_workspace_level_date", "workspace_id", "level", "date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  RECOMMENDATIONS — DRAFT → PROPOSED → APPROVED/REJECTED → EXECUTED
# ══════════════════════════════════════════════════════════════════════

class Recommendation(Base):
    """
    One generated recommendation bundle. data_snapshot freezes the entity metrics
    and rule results it was built from so it can be explained later without
    re-running the rules against live data.
    """
    __tablename__ = "recommendations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=RecommendationStatus.DRAFT.value)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    mode_recommendation: Mapped[str] = mapped_column(String(20), nullable=False)
    # {"entities": [...], "ruleResults": [...]}
    data_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_by: Mapped[str] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    proposed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    reviewed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    reviewed_by: Mapped[str] = mapped_column(String(255), nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    diagnostics: Mapped[list["Diagnostic"]] = relationship(
        "Diagnostic", back_populates="recommendation", cascade="all, delete-orphan",
        order_by="Diagnostic.position",
    )
    proposed_actions: Mapped[list["ProposedAction"]] = relationship(
        "ProposedAction", back_populates="recommendation", cascade="all, delete-orphan",
        order_by="ProposedAction.position",
    )
    creative_briefs: Mapped[list["CreativeBrief"]] = relationship(
        "CreativeBrief", back_populates="recommendation", cascade="all, delete-orphan",
        order_by="CreativeBrief.position",
    )

    __table_args__ = (
        Index("ix_recommendations_workspace_status", "workspace_id", "status"),
        Index("ix_recommendations_created_at", "created_at"),
    )


class Diagnostic(Base):
    __tablename__ = "diagnostics"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    recommendation_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("recommendations.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    metric: Mapped[str] = mapped_column(String(255), nullable=False)
    finding: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[str] = mapped_column(Text, nullable=True)

    recommendation: Mapped["Recommendation"] = relationship("Recommendation", back_populates="diagnostics")

    __table_args__ = (
        Index("ix_diagnostics_recommendation_id", "recommendation_id"),
    )


class ProposedAction(Base):
    """One discrete mutation awaiting approval. Targets exactly one external entity."""
    __tablename__ = "proposed_actions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    recommendation_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("recommendations.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    action_type: Mapped[str] = mapped_column("type", String(30), nullable=False)
    # {"level": "adset", "id": "123", "name": "..."}
    entity: Mapped[dict] = mapped_column(JSON, nullable=False)
    rationale: Mapped[str] = mapped_column(Text, nullable=False)
    expected_impact: Mapped[dict] = mapped_column(JSON, nullable=True)
    guardrail_notes: Mapped[str] = mapped_column(Text, nullable=True)
    budget_change_pct: Mapped[float] = mapped_column(Float, nullable=True)  # signed percent, UPDATE_BUDGET only
    status: Mapped[str] = mapped_column(String(20), default=ProposedActionStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    recommendation: Mapped["Recommendation"] = relationship("Recommendation", back_populates="proposed_actions")

    __table_args__ = (
        Index("ix_proposed_actions_recommendation_status", "recommendation_id", "status"),
    )


class CreativeBrief(Base):
    __tablename__ = "creative_briefs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    recommendation_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("recommendations.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    angle: Mapped[str] = mapped_column(Text, nullable=False)
    hook: Mapped[str] = mapped_column(Text, nullable=False)
    script: Mapped[str] = mapped_column(Text, nullable=True)
    shot_list: Mapped[list] = mapped_column(JSON, nullable=True)
    overlays: Mapped[list] = mapped_column(JSON, nullable=True)
    captions: Mapped[list] = mapped_column(JSON, nullable=True)
    placements: Mapped[list] = mapped_column(JSON, default=list)

    recommendation: Mapped["Recommendation"] = relationship("Recommendation", back_populates="creative_briefs")

    __table_args__ = (
        Index("ix_creative_briefs_recommendation_id", "recommendation_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  EXECUTION & AUDIT
# ══════════════════════════════════════════════════════════════════════

class ExecutionRun(Base):
    """One batch attempt at applying approved actions for a recommendation."""
    __tablename__ = "execution_runs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    recommendation_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("recommendations.id", ondelete="CASCADE"), nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=ExecutionRunStatus.RUNNING.value)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    finished_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    actions: Mapped[list["ExecutionAction"]] = relationship(
        "ExecutionAction", back_populates="run", cascade="all, delete-orphan",
        order_by="ExecutionAction.created_at",
    )

    __table_args__ = (
        # At most one in-flight run per recommendation
        Index(
            "uq_execution_runs_one_running",
            "recommendation_id",
            unique=True,
            postgresql_where=text("status = 'RUNNING'"),
            sqlite_where=text("status = 'RUNNING'"),
        ),
        Index("ix_execution_runs_workspace_started", "workspace_id", "started_at"),
    )


class ExecutionAction(Base):
    """Immutable record of exactly what one attempted action did."""
    __tablename__ = "execution_actions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    execution_run_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("execution_runs.id", ondelete="CASCADE"), nullable=False)
    proposed_action_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("proposed_actions.id", ondelete="SET NULL"), nullable=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    action_type: Mapped[str] = mapped_column("type", String(30), nullable=False)
    entity: Mapped[dict] = mapped_column(JSON, nullable=False)
    before_state: Mapped[dict] = mapped_column(JSON, nullable=True)
    after_state: Mapped[dict] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=True)
    guardrail_violation: Mapped[bool] = mapped_column(Boolean, default=False)
    # Set only when the action succeeded
    executed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    run: Mapped["ExecutionRun"] = relationship("ExecutionRun", back_populates="actions")

    __table_args__ = (
        Index("ix_execution_actions_run_id", "execution_run_id"),
        Index("ix_execution_actions_type_status_created", "type", "status", "created_at"),
    )


class AuditLog(Base):
    """Append-only trail of every mutation and lifecycle transition."""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)  # EXECUTE_UPDATE_BUDGET, RECOMMENDATION_APPROVED, ...
    channel: Mapped[str] = mapped_column(String(20), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=True)
    before_state: Mapped[dict] = mapped_column(JSON, nullable=True)
    after_state: Mapped[dict] = mapped_column(JSON, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=True)
    execution_action_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("execution_actions.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_audit_logs_workspace_created", "workspace_id", "created_at"),
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
        Index("ix_audit_logs_action", "action"),
    )
