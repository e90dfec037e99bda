"""
Pydantic schemas for untrusted input: the generated recommendation payload,
the frozen data snapshot, and workspace settings updates.

The recommendation payload is the JSON contract handed to the text-generation
provider. Everything it returns is validated here before any of it is persisted.
"""

from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.models import ActionType, Channel, StrategicMode


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Entity references (tagged on level) ───────────────────────────────

class _EntityRefBase(_CamelModel):
    id: str = Field(min_length=1)
    name: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_numeric_id(cls, v):
        # Platform ids are numeric strings; models sometimes emit them as numbers
        if isinstance(v, int):
            return str(v)
        return v


class CampaignRef(_EntityRefBase):
    level: Literal["campaign"]


class AdSetRef(_EntityRefBase):
    level: Literal["adset"]


class AdRef(_EntityRefBase):
    level: Literal["ad"]


class AdGroupRef(_EntityRefBase):
    level: Literal["adgroup"]


EntityRef = Annotated[
    Union[CampaignRef, AdSetRef, AdRef, AdGroupRef],
    Field(discriminator="level"),
]

# Levels each ad platform can mutate
CHANNEL_LEVELS = {
    Channel.META: {"campaign", "adset", "ad"},
    Channel.GOOGLE: {"campaign", "adgroup"},
}


def entity_to_json(entity: "CampaignRef | AdSetRef | AdRef | AdGroupRef") -> dict:
    """Persisted shape: {"level", "id", "name"?}."""
    data = {"level": entity.level, "id": entity.id}
    if entity.name:
        data["name"] = entity.name
    return data


class _EntityHolder(BaseModel):
    entity: EntityRef


def parse_entity(data: dict) -> "CampaignRef | AdSetRef | AdRef | AdGroupRef":
    """Re-parse a persisted entity blob into its tagged variant."""
    return _EntityHolder.model_validate({"entity": data}).entity


# ── Recommendation payload ────────────────────────────────────────────

class DiagnosticPayload(_CamelModel):
    metric: str = Field(min_length=1)
    finding: str = Field(min_length=1)
    evidence: Optional[str] = None


class ExpectedImpact(_CamelModel):
    revenue_zar: Optional[float] = None
    profit_zar: Optional[float] = None
    cpa_change_zar: Optional[float] = None


class ProposedActionPayload(_CamelModel):
    channel: Channel
    action_type: ActionType = Field(alias="type")
    entity: EntityRef
    rationale: str = Field(min_length=1)
    expected_impact: Optional[ExpectedImpact] = None
    guardrail_notes: Optional[str] = None
    budget_change_pct: Optional[float] = None

    @model_validator(mode="after")
    def _check_channel_level(self) -> "ProposedActionPayload":
        allowed = CHANNEL_LEVELS.get(self.channel)
        if allowed is not None and self.entity.level not in allowed:
            raise ValueError(f"{self.channel.value} actions cannot target level '{self.entity.level}'")
        if self.action_type == ActionType.DUPLICATE_ADSET:
            if self.channel != Channel.META or self.entity.level != "adset":
                raise ValueError("DUPLICATE_ADSET is only supported for META adsets")
        return self


class CreativeBriefPayload(_CamelModel):
    title: str = Field(min_length=1)
    angle: str
    hook: str
    script: Optional[str] = None
    shot_list: Optional[list[str]] = None
    overlays: Optional[list[str]] = None
    captions: Optional[list[str]] = None
    placements: list[str] = Field(default_factory=list)


class RecommendationPayload(_CamelModel):
    summary: str = Field(min_length=1)
    mode_recommendation: StrategicMode
    diagnostics: list[DiagnosticPayload] = Field(default_factory=list)
    proposed_actions: list[ProposedActionPayload] = Field(default_factory=list)
    creative_briefs: Optional[list[CreativeBriefPayload]] = None


def recommendation_json_schema() -> dict:
    return RecommendationPayload.model_json_schema(by_alias=True)


# ── Frozen data snapshot ──────────────────────────────────────────────

class SnapshotEntity(_CamelModel):
    entity_id: str
    entity_name: Optional[str] = None
    spend: float
    revenue: float
    roas: float
    cpa: float


class SnapshotRuleResult(_CamelModel):
    action: Literal["SCALE", "REDUCE", "PAUSE", "HOLD"]
    entity_id: str
    reason: str


class DataSnapshot(_CamelModel):
    entities: list[SnapshotEntity]
    rule_results: list[SnapshotRuleResult]

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ── Workspace settings ────────────────────────────────────────────────

class BusinessProfileUpdate(_CamelModel):
    target_cpa_zar: Optional[float] = Field(None, ge=0)
    break_even_roas: Optional[float] = Field(None, ge=0)
    gross_margin_pct: Optional[float] = Field(None, ge=0, le=1)
    avg_shipping_cost_zar: Optional[float] = Field(None, ge=0)
    return_rate_pct: Optional[float] = Field(None, ge=0, le=1)
    payment_fees_pct: Optional[float] = Field(None, ge=0, le=1)
    monthly_spend_cap_zar: Optional[float] = Field(None, ge=0)
    strategic_mode: Optional[StrategicMode] = None


class GuardrailsUpdate(_CamelModel):
    max_budget_change_percent_daily: Optional[float] = Field(None, ge=0, le=100)
    max_pauses_per_day: Optional[int] = Field(None, ge=0)
    min_spend_zar: Optional[float] = Field(None, ge=0)
    max_spend_zar: Optional[float] = Field(None, ge=0)
    require_approval_for: Optional[list[ActionType]] = None
