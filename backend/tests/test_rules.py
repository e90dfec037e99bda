"""
Tests for the rule engine: scenario values and the full precedence table.
"""

import pytest

from app.models import BusinessProfile, Guardrails
from app.services.performance_service import build_entity_performance
from app.services.rules_service import (
    CREATIVE_REFRESH_MARKER, DEFAULT_HOLD_REASON, RuleAction, RuleThresholds, evaluate_entities, evaluate_entity,
)


def _profile(target_cpa=100.0, break_even=2.5):
    return BusinessProfile(target_cpa_zar=target_cpa, break_even_roas=break_even)


def _guardrails(min_spend=50.0, max_change=30.0):
    return Guardrails(min_spend_zar=min_spend, max_budget_change_percent_daily=max_change)


def _entity(spend, revenue, purchases, ctr=2.0, frequency=None, entity_id="c1"):
    return build_entity_performance(
        entity_id=entity_id,
        entity_name="Campaign",
        channel="META",
        spend=spend,
        revenue=revenue,
        purchases=purchases,
        ctr=ctr,
        frequency=frequency,
    )


def test_winner_scales_by_fifteen_percent():
    entity = _entity(spend=1000, revenue=4000, purchases=20)
    assert entity.roas == 4.0
    assert entity.cpa == 50.0

    result = evaluate_entity(entity, _profile(), _guardrails())
    assert result.action == RuleAction.SCALE.value
    assert result.suggested_budget_change == 15
    assert "Strong performance" in result.reason


def test_loser_reduces_by_thirty_percent():
    entity = _entity(spend=500, revenue=600, purchases=2)
    assert entity.roas == pytest.approx(1.2)
    assert entity.cpa == 250

    result = evaluate_entity(entity, _profile(), _guardrails())
    assert result.action == RuleAction.REDUCE.value
    assert result.suggested_budget_change == -30


def test_zero_purchases_above_min_spend_is_reduced_not_paused():
    # Rule 1 fires before the dead-spend rule
    entity = _entity(spend=200, revenue=0, purchases=0)
    result = evaluate_entity(entity, _profile(), _guardrails(min_spend=50))
    assert result.action == RuleAction.REDUCE.value
    assert result.suggested_budget_change == -30


def test_zero_purchases_below_min_spend_is_paused():
    entity = _entity(spend=40, revenue=0, purchases=0)
    result = evaluate_entity(entity, _profile(), _guardrails(min_spend=50))
    assert result.action == RuleAction.PAUSE.value
    assert result.suggested_budget_change is None


def test_dead_spend_pauses_when_ratios_look_acceptable():
    # CPA is 0 with no purchases and ROAS clears break-even thanks to attributed revenue
    entity = _entity(spend=100, revenue=400, purchases=0)
    result = evaluate_entity(entity, _profile(), _guardrails(min_spend=50))
    assert result.action == RuleAction.PAUSE.value
    assert "zero purchases" in result.reason


def test_fatigue_holds_with_creative_refresh():
    entity = _entity(spend=1000, revenue=3125, purchases=12.5, ctr=0.5, frequency=4.5)
    assert entity.roas == pytest.approx(3.125)
    assert entity.cpa == pytest.approx(80)

    result = evaluate_entity(entity, _profile(), _guardrails())
    assert result.action == RuleAction.HOLD.value
    assert CREATIVE_REFRESH_MARKER in result.reason
    assert result.needs_creative_refresh


def test_fatigue_beats_winner():
    entity = _entity(spend=1000, revenue=5000, purchases=20, ctr=0.4, frequency=5.0)
    result = evaluate_entity(entity, _profile(), _guardrails())
    assert result.action == RuleAction.HOLD.value
    assert result.needs_creative_refresh


def test_default_hold():
    # ROAS 2.8 passes break-even but not the 3.0 winner bar
    entity = _entity(spend=1000, revenue=2800, purchases=12)
    result = evaluate_entity(entity, _profile(), _guardrails())
    assert result.action == RuleAction.HOLD.value
    assert result.reason == DEFAULT_HOLD_REASON
    assert not result.needs_creative_refresh


@pytest.mark.parametrize(
    "spend,revenue,purchases,ctr,frequency,expected",
    [
        (500, 600, 2, 2.0, None, "REDUCE"),      # ROAS below break-even
        (300, 900, 2, 2.0, None, "REDUCE"),      # CPA 150 above target
        (40, 0, 0, 2.0, None, "PAUSE"),          # loser with no purchases under min spend
        (200, 0, 0, 2.0, 5.0, "REDUCE"),         # loser wins over fatigue
        (100, 400, 0, 2.0, None, "PAUSE"),       # dead spend
        (100, 400, 0, 0.5, 5.0, "PAUSE"),        # dead spend wins over fatigue
        (1000, 3125, 12.5, 0.5, 4.5, "HOLD"),    # fatigue
        (1000, 4000, 20, 2.0, 4.5, "SCALE"),     # high frequency alone is not fatigue
        (1000, 4000, 20, 2.0, None, "SCALE"),    # winner
        (1000, 2800, 12, 2.0, None, "HOLD"),     # default
    ],
)
def test_precedence_table(spend, revenue, purchases, ctr, frequency, expected):
    entity = _entity(spend=spend, revenue=revenue, purchases=purchases, ctr=ctr, frequency=frequency)
    assert evaluate_entity(entity, _profile(), _guardrails()).action == expected


def test_budget_change_clamped_by_guardrail():
    entity = _entity(spend=500, revenue=600, purchases=2)
    result = evaluate_entity(entity, _profile(), _guardrails(max_change=20))
    assert result.action == RuleAction.REDUCE.value
    assert result.suggested_budget_change == -20
    assert "clamped" in result.reason


def test_scale_within_cap_is_not_clamped():
    entity = _entity(spend=1000, revenue=4000, purchases=20)
    result = evaluate_entity(entity, _profile(), _guardrails(max_change=20))
    assert result.suggested_budget_change == 15
    assert "clamped" not in result.reason


def test_custom_thresholds():
    thresholds = RuleThresholds(scale_budget_change_pct=10.0, scale_roas_multiplier=2.0)
    # ROAS 4.0 is under the 5.0 bar the stricter multiplier sets
    entity = _entity(spend=1000, revenue=4000, purchases=20)
    assert evaluate_entity(entity, _profile(), _guardrails(), thresholds).action == RuleAction.HOLD.value

    entity = _entity(spend=1000, revenue=6000, purchases=20)
    result = evaluate_entity(entity, _profile(), _guardrails(), thresholds)
    assert result.action == RuleAction.SCALE.value
    assert result.suggested_budget_change == 10


def test_evaluate_entities_keeps_order():
    entities = [
        _entity(spend=1000, revenue=4000, purchases=20, entity_id="a"),
        _entity(spend=500, revenue=600, purchases=2, entity_id="b"),
    ]
    results = evaluate_entities(entities, _profile(), _guardrails())
    assert [r.entity.entity_id for r in results] == ["a", "b"]
    assert [r.action for r in results] == ["SCALE", "REDUCE"]
