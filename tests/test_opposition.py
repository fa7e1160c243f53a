"""Tests for opposition research, negative ads and counter-ads."""
from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from campaign_trail import opposition, phases
from campaign_trail.exceptions import InvalidStateTransition, RecordNotFound, ValidationError
from campaign_trail.models import (
    CampaignPhase,
    DiscoveryResult,
    DiscoveryTier,
    ResearchStatus,
    ResearchType,
)
from campaign_trail.opposition import AdSpendTier, ResearchSpendTier

NOW = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)


def make_state(player_id="alice", phase=CampaignPhase.ACTIVE, **changes):
    state, _ = phases.start_cycle(player_id, 1, NOW)
    changes.setdefault("funds_raised", 1_000_000)
    return replace(state, phase=phase, **changes)


def completed_research(quality=80.0, credibility=80.0):
    research, _, _ = opposition.commission_research(
        make_state(), "bob", ResearchType.FINANCIAL, 50_000, NOW
    )
    return replace(
        research,
        status=ResearchStatus.COMPLETE,
        completed_at=research.completes_at,
        discovery=DiscoveryResult(DiscoveryTier.MAJOR, quality, credibility, ("finding",)),
    )


def test_negative_ad_without_research_in_active_phase():
    """Baseline 30, standard spend, active phase and no penalties gives 36."""

    assert opposition.calculate_effectiveness(30.0, 1.0, 1.2, 0.0, 0.0) == pytest.approx(36.0)
    ad, state, result = opposition.launch_negative_ad(make_state(), "bob", 25_000, NOW)
    assert result.success
    assert ad.effectiveness == pytest.approx(36.0)
    assert ad.ethics_penalty == 0.0
    assert ad.voter_fatigue == 0.0
    assert state.funds_spent == 25_000


@pytest.mark.parametrize("research_type", list(ResearchType))
@pytest.mark.parametrize("amount", [10_000, 25_000, 50_000, 100_000, 250_000])
@pytest.mark.parametrize("prior_attempts", [0, 2, 10])
def test_discovery_probabilities_sum_to_one(research_type, amount, prior_attempts):
    for proximity in (0.5, 1.0, 1.5):
        probabilities = opposition.discovery_probabilities(research_type, amount, prior_attempts, proximity)
        assert sum(probabilities.values()) == pytest.approx(1.0)
        assert all(p > 0 for p in probabilities.values())


def test_bigger_budget_shifts_odds_toward_major():
    cheap = opposition.discovery_probabilities(ResearchType.PERSONAL, 10_000)
    rich = opposition.discovery_probabilities(ResearchType.PERSONAL, 100_000)
    assert rich[DiscoveryTier.MAJOR] > cheap[DiscoveryTier.MAJOR]
    assert rich[DiscoveryTier.NOTHING] < cheap[DiscoveryTier.NOTHING]


@pytest.mark.parametrize(
    "amount, tier, multiplier",
    [
        (10_000, ResearchSpendTier.BASIC, 0.8),
        (24_999, ResearchSpendTier.BASIC, 0.8),
        (25_000, ResearchSpendTier.STANDARD, 1.0),
        (60_000, ResearchSpendTier.PREMIUM, 1.3),
        (250_000, ResearchSpendTier.ELITE, 1.6),
    ],
)
def test_research_spend_tiers(amount, tier, multiplier):
    assert opposition.research_spend_tier(amount) == (tier, multiplier)


@pytest.mark.parametrize("amount", [9_999, 250_001, -5])
def test_research_spend_out_of_bounds(amount):
    with pytest.raises(ValidationError):
        opposition.research_spend_tier(amount)


def test_ad_spend_tiers():
    assert opposition.ad_spend_tier(5_000) == (AdSpendTier.LIGHT, 0.6)
    assert opposition.ad_spend_tier(80_000) == (AdSpendTier.HEAVY, 1.3)
    assert opposition.ad_spend_tier(500_000) == (AdSpendTier.SATURATION, 1.5)
    with pytest.raises(ValidationError):
        opposition.ad_spend_tier(4_999)


def test_repeat_penalty_caps_at_sixty_percent():
    assert opposition.repeat_penalty_factor(0) == 1.0
    assert opposition.repeat_penalty_factor(2) == pytest.approx(0.7)
    assert opposition.repeat_penalty_factor(10) == pytest.approx(0.4)


def test_skeleton_proximity_is_per_target():
    value = opposition.skeleton_proximity("bob")
    assert value == opposition.skeleton_proximity("bob")
    assert 0.5 <= value <= 1.5


def test_commission_and_complete_research():
    state = make_state(phase=CampaignPhase.FUNDRAISING)
    research, spent_state, result = opposition.commission_research(
        state, "bob", ResearchType.VOTING_RECORD, 30_000, NOW
    )
    assert result.success
    assert spent_state.funds_spent == 30_000
    # 48 game hours is 2/7 of a real hour.
    assert (research.completes_at - NOW).total_seconds() == pytest.approx(48 / 168 * 3600, abs=1e-3)
    assert research.status == ResearchStatus.PENDING

    with pytest.raises(InvalidStateTransition):
        opposition.complete_research(research, NOW)
    done = opposition.complete_research(research, research.completes_at)
    assert done == opposition.complete_research(research, research.completes_at)
    assert done.status in (ResearchStatus.COMPLETE, ResearchStatus.FAILED)
    if done.status == ResearchStatus.COMPLETE:
        low, high = opposition.QUALITY_RANGES[done.discovery.tier]
        assert low <= done.discovery.quality_score <= high
        assert len(done.discovery.findings) == opposition.FINDINGS_PER_TIER[done.discovery.tier]
    else:
        assert done.discovery.tier == DiscoveryTier.NOTHING
    with pytest.raises(InvalidStateTransition):
        opposition.complete_research(done, research.completes_at)


def test_repeat_research_counts_prior_attempts():
    state = make_state()
    first, state, _ = opposition.commission_research(state, "bob", ResearchType.BUSINESS, 25_000, NOW)
    second, _, _ = opposition.commission_research(
        state, "bob", ResearchType.BUSINESS, 25_000, NOW, existing=[first]
    )
    assert second.prior_attempts == 1
    assert second.id != first.id


def test_research_rejections():
    state = make_state()
    with pytest.raises(ValidationError):
        opposition.commission_research(state, "alice", ResearchType.BUSINESS, 25_000, NOW)
    with pytest.raises(ValidationError):
        opposition.commission_research(state, "bob", ResearchType.BUSINESS, 5_000, NOW)
    broke = make_state(funds_raised=0)
    research, same, result = opposition.commission_research(broke, "bob", ResearchType.BUSINESS, 25_000, NOW)
    assert research is None
    assert same == broke
    assert result.success is False and result.cost == 25_000


def test_ethics_penalty_terms():
    research = completed_research(credibility=50.0)
    assert opposition.calculate_ethics_penalty(research, 0, False) == pytest.approx(10.0)
    assert opposition.calculate_ethics_penalty(None, 3, False) == pytest.approx(15.0)
    assert opposition.calculate_ethics_penalty(None, 20, True) == pytest.approx(55.0)


def test_voter_fatigue_decays_over_a_week():
    assert opposition.calculate_voter_fatigue(0, None) == 0.0
    assert opposition.calculate_voter_fatigue(3, 0.0) == pytest.approx(0.3)
    assert opposition.calculate_voter_fatigue(10, 84.0) == pytest.approx(0.3)
    assert opposition.calculate_voter_fatigue(3, 200.0) == 0.0


def test_backfire_probability_is_capped():
    assert opposition.backfire_probability(None, 0.0, False) == pytest.approx(0.18)
    assert opposition.backfire_probability(90.0, 10.0, False) == pytest.approx(0.06)
    assert opposition.backfire_probability(0.0, 100.0, True) == 0.5


def test_ad_impact_normal_and_backfire():
    assert opposition.calculate_ad_impact(36.0, False) == pytest.approx((-3.6, -0.36))
    assert opposition.calculate_ad_impact(100.0, False) == pytest.approx((-10.0, -1.0))
    assert opposition.calculate_ad_impact(50.0, True) == pytest.approx((1.5, -6.0))
    assert opposition.calculate_ad_impact(100.0, True) == pytest.approx((3.0, -10.0))


def test_research_backed_ad_uses_quality():
    research = completed_research(quality=80.0, credibility=80.0)
    ad, _, _ = opposition.launch_negative_ad(make_state(), "bob", 25_000, NOW, research=research)
    assert ad.research_id == research.id
    assert ad.effectiveness == pytest.approx(80.0 * 1.2)


def test_weak_research_is_not_lifted_to_baseline():
    research = completed_research(quality=20.0)
    assert opposition.research_effectiveness(research) == pytest.approx(20.0)
    assert opposition.research_effectiveness(None) == pytest.approx(30.0)
    ad, _, _ = opposition.launch_negative_ad(make_state(), "bob", 25_000, NOW, research=research)
    assert ad.effectiveness == pytest.approx(20.0 * 1.2)


def test_repeat_ads_accrue_ethics_and_fatigue():
    state = make_state()
    first, state, _ = opposition.launch_negative_ad(state, "bob", 25_000, NOW)
    later = NOW + timedelta(minutes=30)
    second, state, _ = opposition.launch_negative_ad(state, "bob", 25_000, later, prior_ads=[first])
    assert second.ethics_penalty == pytest.approx(5.0)
    # One ad, 84 game hours ago: 0.1 x (1 - 84/168)
    assert second.voter_fatigue == pytest.approx(0.05)
    assert second.effectiveness == pytest.approx(36.0 * 0.95 * 0.95)
    assert second.id != first.id


def test_ad_guards():
    with pytest.raises(InvalidStateTransition):
        opposition.launch_negative_ad(make_state(phase=CampaignPhase.RESULTS), "bob", 25_000, NOW)
    with pytest.raises(ValidationError):
        opposition.launch_negative_ad(make_state(), "alice", 25_000, NOW)
    pending, _, _ = opposition.commission_research(make_state(), "bob", ResearchType.FINANCIAL, 25_000, NOW)
    with pytest.raises(ValidationError):
        opposition.launch_negative_ad(make_state(), "bob", 25_000, NOW, research=pending)
    ad, broke, result = opposition.launch_negative_ad(make_state(funds_raised=0), "bob", 25_000, NOW)
    assert ad is None and result.success is False


def test_counter_ads_stack_to_cap(monkeypatch):
    monkeypatch.setattr(opposition, "backfire_probability", lambda *args, **kwargs: 0.0)
    ad, _, _ = opposition.launch_negative_ad(make_state(), "bob", 25_000, NOW)
    target = make_state(player_id="bob")
    with pytest.raises(RecordNotFound):
        opposition.counter_negative_ad(ad, make_state(player_id="carol"), 10_000, NOW)

    counters = []
    for _ in range(5):
        counter, target, result = opposition.counter_negative_ad(ad, target, 100_000, NOW, counters)
        assert result.success
        counters.append(counter)
    assert counters[0].reduction == pytest.approx(0.8 * (1 - math.exp(-2)), abs=1e-4)
    assert opposition.combined_reduction(counters) == pytest.approx(0.8)
    effectiveness, impact = opposition.effective_ad_impact(ad, counters)
    assert effectiveness == pytest.approx(ad.effectiveness * 0.2)
    assert impact == pytest.approx(ad.target_impact * 0.2)
    # The original ad record is never edited.
    assert ad.effectiveness == pytest.approx(36.0)


def test_findings_table_has_every_type_and_tier():
    findings = opposition._load_findings()
    for research_type in ResearchType:
        for tier in (DiscoveryTier.MINOR, DiscoveryTier.MODERATE, DiscoveryTier.MAJOR):
            assert len(findings[research_type.value][tier.value]) >= opposition.FINDINGS_PER_TIER[tier]


def test_backfired_ad_cannot_be_countered(monkeypatch):
    monkeypatch.setattr(opposition, "backfire_probability", lambda *args, **kwargs: 1.0)
    ad, _, _ = opposition.launch_negative_ad(make_state(), "bob", 25_000, NOW)
    assert ad.backfired
    assert ad.target_impact > 0
    with pytest.raises(ValidationError):
        opposition.counter_negative_ad(ad, make_state(player_id="bob"), 100_000, NOW)
