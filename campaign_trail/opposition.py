"""Opposition research and negative advertising."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from .config import Settings, get_settings
from .exceptions import InvalidStateTransition, RecordNotFound, ValidationError
from .models import (
    CampaignPhase,
    CampaignPhaseState,
    CounterAd,
    DiscoveryResult,
    DiscoveryTier,
    NegativeAd,
    OppositionResearch,
    ResearchStatus,
    ResearchType,
    SpendResult,
)
from .phases import spend_funds
from .rng import DeterministicRNG, compose_seed, fnv1a_32, hash_chance, hash_range, hash_unit
from .timescale import elapsed_game_hours, future_real_date

logger = logging.getLogger(__name__)

_DATA_PATH = Path(__file__).parent / "data"
_FINDINGS: Optional[Dict[str, Dict[str, List[str]]]] = None

_TIER_ORDER = (DiscoveryTier.NOTHING, DiscoveryTier.MINOR, DiscoveryTier.MODERATE, DiscoveryTier.MAJOR)


@dataclass(frozen=True)
class ResearchProfile:
    probabilities: Dict[DiscoveryTier, float]
    duration_game_hours: float


def _profile(nothing: float, minor: float, moderate: float, major: float, hours: float) -> ResearchProfile:
    return ResearchProfile(
        probabilities={
            DiscoveryTier.NOTHING: nothing,
            DiscoveryTier.MINOR: minor,
            DiscoveryTier.MODERATE: moderate,
            DiscoveryTier.MAJOR: major,
        },
        duration_game_hours=hours,
    )


RESEARCH_TABLE: Dict[ResearchType, ResearchProfile] = {
    ResearchType.FINANCIAL: _profile(0.40, 0.30, 0.20, 0.10, 72),
    ResearchType.VOTING_RECORD: _profile(0.30, 0.40, 0.22, 0.08, 48),
    ResearchType.PERSONAL: _profile(0.50, 0.25, 0.15, 0.10, 96),
    ResearchType.BUSINESS: _profile(0.40, 0.30, 0.20, 0.10, 72),
    ResearchType.ASSOCIATIONS: _profile(0.45, 0.30, 0.17, 0.08, 60),
}


class ResearchSpendTier(str, Enum):
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"
    ELITE = "elite"


class AdSpendTier(str, Enum):
    LIGHT = "light"
    STANDARD = "standard"
    HEAVY = "heavy"
    SATURATION = "saturation"


# (tier, minimum spend, multiplier), ascending by minimum.
RESEARCH_SPEND_TIERS: Tuple[Tuple[ResearchSpendTier, float, float], ...] = (
    (ResearchSpendTier.BASIC, 10_000, 0.8),
    (ResearchSpendTier.STANDARD, 25_000, 1.0),
    (ResearchSpendTier.PREMIUM, 50_000, 1.3),
    (ResearchSpendTier.ELITE, 100_000, 1.6),
)

AD_SPEND_TIERS: Tuple[Tuple[AdSpendTier, float, float], ...] = (
    (AdSpendTier.LIGHT, 5_000, 0.6),
    (AdSpendTier.STANDARD, 25_000, 1.0),
    (AdSpendTier.HEAVY, 75_000, 1.3),
    (AdSpendTier.SATURATION, 200_000, 1.5),
)

PHASE_TIMING_MULTIPLIERS: Dict[CampaignPhase, float] = {
    CampaignPhase.ANNOUNCEMENT: 0.5,
    CampaignPhase.FUNDRAISING: 0.9,
    CampaignPhase.ACTIVE: 1.2,
    CampaignPhase.RESOLUTION: 0.8,
}

QUALITY_RANGES: Dict[DiscoveryTier, Tuple[float, float]] = {
    DiscoveryTier.MINOR: (20.0, 45.0),
    DiscoveryTier.MODERATE: (45.0, 75.0),
    DiscoveryTier.MAJOR: (75.0, 100.0),
}

CREDIBILITY_RANGES: Dict[DiscoveryTier, Tuple[float, float]] = {
    DiscoveryTier.MINOR: (40.0, 70.0),
    DiscoveryTier.MODERATE: (55.0, 85.0),
    DiscoveryTier.MAJOR: (70.0, 95.0),
}

FINDINGS_PER_TIER: Dict[DiscoveryTier, int] = {
    DiscoveryTier.MINOR: 1,
    DiscoveryTier.MODERATE: 2,
    DiscoveryTier.MAJOR: 3,
}


def _load_findings() -> Dict[str, Dict[str, List[str]]]:
    global _FINDINGS
    if _FINDINGS is None:
        path = _DATA_PATH / "research_findings.yaml"
        data: Dict[str, Any] = {}
        if path.exists():
            with path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        raw = data.get("findings", {})
        _FINDINGS = raw if isinstance(raw, dict) else {}
    return _FINDINGS


def _spend_tier(amount: float, tiers, low: float, high: float, label: str):
    if amount < low or amount > high:
        raise ValidationError(f"{label} spend must be between {low:,.0f} and {high:,.0f}")
    chosen = tiers[0]
    for entry in tiers:
        if amount >= entry[1]:
            chosen = entry
    return chosen[0], chosen[2]


def research_spend_tier(amount: float, settings: Settings | None = None) -> Tuple[ResearchSpendTier, float]:
    opposition = (settings or get_settings()).opposition
    return _spend_tier(amount, RESEARCH_SPEND_TIERS, opposition.spend_min, opposition.spend_max, "Research")


def ad_spend_tier(amount: float, settings: Settings | None = None) -> Tuple[AdSpendTier, float]:
    ads = (settings or get_settings()).negative_ads
    return _spend_tier(amount, AD_SPEND_TIERS, ads.spend_min, ads.spend_max, "Ad")


def skeleton_proximity(target_id: str, settings: Settings | None = None) -> float:
    """How much there is to find on ``target_id``; fixed per target."""

    opposition = (settings or get_settings()).opposition
    return hash_range(f"{target_id}:skeletons", opposition.proximity_min, opposition.proximity_max)


def repeat_penalty_factor(prior_attempts: int, settings: Settings | None = None) -> float:
    opposition = (settings or get_settings()).opposition
    penalty = min(opposition.repeat_penalty_cap, opposition.repeat_penalty_per_attempt * max(0, prior_attempts))
    return 1.0 - penalty


def discovery_probabilities(
    research_type: ResearchType,
    amount: float,
    prior_attempts: int = 0,
    proximity: float = 1.0,
    settings: Settings | None = None,
) -> Dict[DiscoveryTier, float]:
    """Outcome-tier probabilities after spend, proximity and repeat adjustment.

    The combined multiplier scales minor by its square root, moderate linearly,
    major super-linearly and nothing inversely, then the four are renormalized.
    """

    _, spend_multiplier = research_spend_tier(amount, settings)
    multiplier = spend_multiplier * proximity * repeat_penalty_factor(prior_attempts, settings)
    base = RESEARCH_TABLE[research_type].probabilities
    scaled = {
        DiscoveryTier.NOTHING: base[DiscoveryTier.NOTHING] / multiplier,
        DiscoveryTier.MINOR: base[DiscoveryTier.MINOR] * math.sqrt(multiplier),
        DiscoveryTier.MODERATE: base[DiscoveryTier.MODERATE] * multiplier,
        DiscoveryTier.MAJOR: base[DiscoveryTier.MAJOR] * multiplier ** 1.2,
    }
    total = sum(scaled.values())
    return {tier: scaled[tier] / total for tier in _TIER_ORDER}


def commission_research(
    state: CampaignPhaseState,
    target_id: str,
    research_type: ResearchType,
    amount: float,
    now: datetime,
    existing: Sequence[OppositionResearch] = (),
    settings: Settings | None = None,
) -> Tuple[Optional[OppositionResearch], CampaignPhaseState, SpendResult]:
    settings = settings or get_settings()
    if not target_id or target_id == state.player_id:
        raise ValidationError("Research needs a target other than the commissioning player")
    if not isinstance(research_type, ResearchType):
        raise ValidationError(f"Unknown research type: {research_type!r}")
    research_spend_tier(amount, settings)

    updated_state, result = spend_funds(state, amount)
    if not result.success:
        return None, state, result

    prior = sum(
        1
        for entry in existing
        if entry.player_id == state.player_id
        and entry.target_id == target_id
        and entry.research_type == research_type
    )
    seed = compose_seed(state.player_id, state.cycle, "research", target_id, research_type.value, prior)
    research = OppositionResearch(
        id="res-%08x" % fnv1a_32(seed),
        player_id=state.player_id,
        target_id=target_id,
        research_type=research_type,
        amount_spent=amount,
        started_at=now,
        completes_at=future_real_date(RESEARCH_TABLE[research_type].duration_game_hours, now),
        prior_attempts=prior,
        skeleton_proximity=skeleton_proximity(target_id, settings),
    )
    logger.info(
        "Player %s commissioned %s research on %s (%s)",
        state.player_id,
        research_type.value,
        target_id,
        research.id,
    )
    return research, updated_state, result


def roll_discovery(research: OppositionResearch, settings: Settings | None = None) -> DiscoveryResult:
    probabilities = discovery_probabilities(
        research.research_type,
        research.amount_spent,
        research.prior_attempts,
        research.skeleton_proximity,
        settings,
    )
    seed = f"{research.id}:discovery"
    roll = hash_unit(seed)
    tier = DiscoveryTier.MAJOR
    cumulative = 0.0
    for candidate in _TIER_ORDER:
        cumulative += probabilities[candidate]
        if roll < cumulative:
            tier = candidate
            break
    if tier == DiscoveryTier.NOTHING:
        return DiscoveryResult(tier=tier, quality_score=0.0, credibility=0.0)

    quality = hash_range(f"{seed}:quality", *QUALITY_RANGES[tier])
    credibility = hash_range(f"{seed}:credibility", *CREDIBILITY_RANGES[tier])
    pool = _load_findings().get(research.research_type.value, {}).get(tier.value, [])
    count = min(len(pool), FINDINGS_PER_TIER[tier])
    findings = DeterministicRNG.from_string(f"{seed}:findings").sample(list(pool), count)
    return DiscoveryResult(
        tier=tier,
        quality_score=round(quality, 2),
        credibility=round(credibility, 2),
        findings=tuple(findings),
    )


def complete_research(
    research: OppositionResearch, now: datetime, settings: Settings | None = None
) -> OppositionResearch:
    """Roll the outcome of finished research. Deterministic per research id."""

    if research.status != ResearchStatus.PENDING:
        raise InvalidStateTransition(f"Research {research.id} is already {research.status.value}")
    if now < research.completes_at:
        raise InvalidStateTransition(f"Research {research.id} is still in progress")
    discovery = roll_discovery(research, settings)
    status = ResearchStatus.FAILED if discovery.tier == DiscoveryTier.NOTHING else ResearchStatus.COMPLETE
    return replace(research, status=status, completed_at=now, discovery=discovery)


# Negative ads ----------------------------------------------------------


def research_effectiveness(research: Optional[OppositionResearch], settings: Settings | None = None) -> float:
    baseline = (settings or get_settings()).negative_ads.baseline_effectiveness
    if research is None or research.discovery is None:
        return baseline
    return research.discovery.quality_score


def calculate_ethics_penalty(
    research: Optional[OppositionResearch],
    recent_ads: int,
    extreme: bool,
    settings: Settings | None = None,
) -> float:
    ads = (settings or get_settings()).negative_ads
    penalty = 0.0
    if research is not None and research.discovery is not None:
        penalty += max(0.0, ads.credibility_reference - research.discovery.credibility) * ads.credibility_weight
    penalty += min(ads.repeat_penalty_cap, ads.repeat_penalty_per_ad * recent_ads)
    if extreme:
        penalty += ads.extreme_penalty
    return min(100.0, penalty)


def calculate_voter_fatigue(
    recent_ads: int, game_hours_since_last: Optional[float], settings: Settings | None = None
) -> float:
    if recent_ads <= 0 or game_hours_since_last is None:
        return 0.0
    ads = (settings or get_settings()).negative_ads
    intensity = min(ads.fatigue_cap, ads.fatigue_per_ad * recent_ads)
    decay = max(0.0, 1.0 - game_hours_since_last / ads.fatigue_decay_game_hours)
    return intensity * decay


def backfire_probability(
    credibility: Optional[float], ethics_penalty: float, extreme: bool, settings: Settings | None = None
) -> float:
    backfire = (settings or get_settings()).negative_ads.backfire
    if credibility is None:
        credibility = backfire["default_credibility"]
    probability = backfire["credibility_weight"] * (100.0 - credibility) / 100.0
    probability += backfire["ethics_weight"] * ethics_penalty / 100.0
    if extreme:
        probability += backfire["extreme_bonus"]
    return max(0.0, min(backfire["cap"], probability))


def calculate_effectiveness(
    research_eff: float,
    spend_multiplier: float,
    phase_multiplier: float,
    ethics_penalty: float,
    fatigue: float,
) -> float:
    value = research_eff * spend_multiplier * phase_multiplier * (1.0 - ethics_penalty / 100.0) * (1.0 - fatigue)
    return max(0.0, min(100.0, value))


def calculate_ad_impact(effectiveness: float, backfired: bool, settings: Settings | None = None) -> Tuple[float, float]:
    """Signed support change for (target, attacker)."""

    impact = (settings or get_settings()).negative_ads.impact
    if backfired:
        target = min(impact["backfire_target_gain_cap"], effectiveness * impact["backfire_target_gain_ratio"])
        attacker = min(impact["backfire_attacker_loss_cap"], effectiveness * impact["backfire_attacker_loss_ratio"])
        return target, -attacker
    loss = min(impact["target_loss_cap"], effectiveness * impact["target_loss_ratio"])
    return -loss, -loss * impact["attacker_cost_ratio"]


def launch_negative_ad(
    state: CampaignPhaseState,
    target_id: str,
    amount: float,
    now: datetime,
    prior_ads: Sequence[NegativeAd] = (),
    research: Optional[OppositionResearch] = None,
    extreme: bool = False,
    settings: Settings | None = None,
) -> Tuple[Optional[NegativeAd], CampaignPhaseState, SpendResult]:
    """Run an attack ad against ``target_id``.

    ``prior_ads`` should hold the attacker's earlier ads; they drive the repeat
    penalty and voter fatigue.
    """

    settings = settings or get_settings()
    if not target_id or target_id == state.player_id:
        raise ValidationError("Negative ads need a target other than the attacker")
    if state.phase not in PHASE_TIMING_MULTIPLIERS:
        raise InvalidStateTransition(f"No ads can run during the {state.phase.value} phase")
    _, spend_multiplier = ad_spend_tier(amount, settings)
    if research is not None:
        if research.player_id != state.player_id or research.target_id != target_id:
            raise ValidationError(f"Research {research.id} does not cover {target_id}")
        if research.status != ResearchStatus.COMPLETE:
            raise ValidationError(f"Research {research.id} has no usable findings")

    ads_settings = settings.negative_ads
    own_ads = [ad for ad in prior_ads if ad.player_id == state.player_id and ad.launched_at <= now]
    recent = [
        ad
        for ad in own_ads
        if elapsed_game_hours(ad.launched_at, now) < ads_settings.trailing_window_game_hours
    ]
    since_last = None
    if own_ads:
        since_last = elapsed_game_hours(max(ad.launched_at for ad in own_ads), now)

    ethics = calculate_ethics_penalty(research, len(recent), extreme, settings)
    fatigue = calculate_voter_fatigue(len(recent), since_last, settings)
    effectiveness = calculate_effectiveness(
        research_effectiveness(research, settings),
        spend_multiplier,
        PHASE_TIMING_MULTIPLIERS[state.phase],
        ethics,
        fatigue,
    )

    updated_state, result = spend_funds(state, amount)
    if not result.success:
        return None, state, result

    seed = compose_seed(state.player_id, state.cycle, "negative-ad", target_id, len(own_ads))
    credibility = research.discovery.credibility if research and research.discovery else None
    backfired = hash_chance(f"{seed}:backfire", backfire_probability(credibility, ethics, extreme, settings))
    target_impact, attacker_impact = calculate_ad_impact(effectiveness, backfired, settings)
    ad = NegativeAd(
        id="ad-%08x" % fnv1a_32(seed),
        player_id=state.player_id,
        target_id=target_id,
        amount_spent=amount,
        launched_at=now,
        phase=state.phase,
        effectiveness=round(effectiveness, 4),
        backfired=backfired,
        ethics_penalty=round(ethics, 4),
        voter_fatigue=round(fatigue, 4),
        target_impact=round(target_impact, 4),
        attacker_impact=round(attacker_impact, 4),
        research_id=research.id if research else None,
        extreme=extreme,
    )
    if backfired:
        logger.info("Negative ad %s by %s backfired", ad.id, state.player_id)
    return ad, updated_state, result


def counter_reduction(amount: float, settings: Settings | None = None) -> float:
    ads = (settings or get_settings()).negative_ads
    return ads.counter_max_reduction * (1.0 - math.exp(-amount / ads.counter_spend_scale))


def counter_negative_ad(
    ad: NegativeAd,
    state: CampaignPhaseState,
    amount: float,
    now: datetime,
    existing: Sequence[CounterAd] = (),
    settings: Settings | None = None,
) -> Tuple[Optional[CounterAd], CampaignPhaseState, SpendResult]:
    """Buy a response to ``ad``; only its target may counter it."""

    if ad.target_id != state.player_id:
        raise RecordNotFound(f"Negative ad {ad.id} does not target player {state.player_id}")
    if ad.backfired:
        raise ValidationError(f"Negative ad {ad.id} backfired; there is no damage to counter")
    if amount <= 0:
        raise ValidationError("Counter-ad spend must be positive")
    updated_state, result = spend_funds(state, amount)
    if not result.success:
        return None, state, result
    sequence = sum(1 for counter in existing if counter.ad_id == ad.id)
    counter = CounterAd(
        id="ctr-%08x" % fnv1a_32(f"{ad.id}:counter:{sequence}"),
        ad_id=ad.id,
        player_id=state.player_id,
        amount_spent=amount,
        countered_at=now,
        reduction=round(counter_reduction(amount, settings), 4),
    )
    return counter, updated_state, result


def combined_reduction(counters: Sequence[CounterAd], settings: Settings | None = None) -> float:
    """Stack counter reductions multiplicatively, capped at the configured maximum."""

    cap = (settings or get_settings()).negative_ads.counter_max_reduction
    remaining = 1.0
    for counter in counters:
        remaining *= 1.0 - counter.reduction
    return min(cap, 1.0 - remaining)


def effective_ad_impact(
    ad: NegativeAd, counters: Sequence[CounterAd], settings: Settings | None = None
) -> Tuple[float, float]:
    """Current (effectiveness, target impact) of ``ad`` after its counters."""

    relevant = [counter for counter in counters if counter.ad_id == ad.id]
    factor = 1.0 - combined_reduction(relevant, settings)
    return ad.effectiveness * factor, ad.target_impact * factor


__all__ = [
    "AD_SPEND_TIERS",
    "AdSpendTier",
    "CREDIBILITY_RANGES",
    "PHASE_TIMING_MULTIPLIERS",
    "QUALITY_RANGES",
    "RESEARCH_SPEND_TIERS",
    "RESEARCH_TABLE",
    "ResearchProfile",
    "ResearchSpendTier",
    "ad_spend_tier",
    "backfire_probability",
    "calculate_ad_impact",
    "calculate_effectiveness",
    "calculate_ethics_penalty",
    "calculate_voter_fatigue",
    "combined_reduction",
    "commission_research",
    "complete_research",
    "counter_negative_ad",
    "counter_reduction",
    "discovery_probabilities",
    "effective_ad_impact",
    "launch_negative_ad",
    "repeat_penalty_factor",
    "research_effectiveness",
    "research_spend_tier",
    "roll_discovery",
    "skeleton_proximity",
]
