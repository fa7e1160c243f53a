"""Endorsement acquisition with diminishing returns and expiry."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from .config import Settings, get_settings
from .exceptions import ValidationError
from .models import CampaignPhase, EndorsementRecord, EndorsementSource, EndorsementTier
from .rng import fnv1a_32
from .timescale import future_real_date


@dataclass(frozen=True)
class EndorsementProfile:
    influence_bonus: float
    fundraising_bonus: float
    duration_game_hours: Optional[float]


ENDORSEMENT_TABLE: Dict[EndorsementSource, EndorsementProfile] = {
    EndorsementSource.CELEBRITY: EndorsementProfile(4.0, 6.0, 336.0),
    EndorsementSource.UNION: EndorsementProfile(5.0, 3.0, 672.0),
    EndorsementSource.CORPORATE: EndorsementProfile(3.0, 8.0, 504.0),
    EndorsementSource.PARTY: EndorsementProfile(6.0, 4.0, None),
    EndorsementSource.GRASSROOTS: EndorsementProfile(2.0, 2.0, 168.0),
    EndorsementSource.MEDIA: EndorsementProfile(5.0, 2.0, 336.0),
}

TIER_MULTIPLIERS: Dict[EndorsementTier, float] = {
    EndorsementTier.LOCAL: 0.75,
    EndorsementTier.STATE: 1.0,
    EndorsementTier.NATIONAL: 1.25,
}

# Categories that pay off best in each phase, strongest first.
PHASE_PREFERENCES: Dict[CampaignPhase, Tuple[EndorsementSource, ...]] = {
    CampaignPhase.ANNOUNCEMENT: (
        EndorsementSource.PARTY,
        EndorsementSource.GRASSROOTS,
        EndorsementSource.UNION,
    ),
    CampaignPhase.FUNDRAISING: (
        EndorsementSource.CORPORATE,
        EndorsementSource.CELEBRITY,
        EndorsementSource.PARTY,
    ),
    CampaignPhase.ACTIVE: (
        EndorsementSource.MEDIA,
        EndorsementSource.UNION,
        EndorsementSource.CELEBRITY,
    ),
    CampaignPhase.RESOLUTION: (
        EndorsementSource.GRASSROOTS,
        EndorsementSource.MEDIA,
        EndorsementSource.UNION,
    ),
    CampaignPhase.RESULTS: (),
}


def diminishing_factor(prior_count: int, settings: Settings | None = None) -> float:
    """Multiplier for the next endorsement after ``prior_count`` of the same category."""

    if prior_count < 0:
        raise ValidationError("prior_count must be non-negative")
    factors = (settings or get_settings()).diminishing_factors
    return factors[min(prior_count, len(factors) - 1)]


def acquire_endorsement(
    player_id: str,
    source: EndorsementSource,
    tier: EndorsementTier,
    existing: Sequence[EndorsementRecord],
    now: datetime,
    settings: Settings | None = None,
) -> EndorsementRecord:
    """Create a new endorsement record.

    ``existing`` is every endorsement the player has ever held, expired ones
    included, since diminishing returns count cumulative acquisitions.
    """

    if not isinstance(source, EndorsementSource):
        raise ValidationError(f"Unknown endorsement source: {source!r}")
    if not isinstance(tier, EndorsementTier):
        raise ValidationError(f"Unknown endorsement tier: {tier!r}")
    prior = sum(1 for record in existing if record.player_id == player_id and record.source == source)
    factor = diminishing_factor(prior, settings)
    profile = ENDORSEMENT_TABLE[source]
    tier_multiplier = TIER_MULTIPLIERS[tier]
    expires_at = None
    if profile.duration_game_hours is not None:
        expires_at = future_real_date(profile.duration_game_hours, now)
    record_id = "end-%08x" % fnv1a_32(f"{player_id}:{source.value}:{prior}:{now.isoformat()}")
    return EndorsementRecord(
        id=record_id,
        player_id=player_id,
        source=source,
        tier=tier,
        acquired_at=now,
        expires_at=expires_at,
        diminishing_factor=factor,
        influence_bonus=round(profile.influence_bonus * tier_multiplier * factor, 4),
        fundraising_bonus=round(profile.fundraising_bonus * tier_multiplier * factor, 4),
    )


def active_endorsements(records: Sequence[EndorsementRecord], now: datetime) -> List[EndorsementRecord]:
    return [record for record in records if record.is_active(now)]


def total_bonus(records: Sequence[EndorsementRecord], now: datetime) -> Tuple[float, float]:
    """Sum of (influence, fundraising) bonuses across active endorsements."""

    active = active_endorsements(records, now)
    return (
        sum(record.influence_bonus for record in active),
        sum(record.fundraising_bonus for record in active),
    )


def sweep_expired(
    records: Sequence[EndorsementRecord], now: datetime
) -> Tuple[List[EndorsementRecord], List[EndorsementRecord]]:
    """Split records into (still active, expired)."""

    kept: List[EndorsementRecord] = []
    expired: List[EndorsementRecord] = []
    for record in records:
        (kept if record.is_active(now) else expired).append(record)
    return kept, expired


@dataclass(frozen=True)
class EndorsementPortfolio:
    active: List[EndorsementRecord]
    expired_count: int
    bonuses_by_category: Dict[str, Dict[str, float]] = field(default_factory=dict)
    category_counts: Dict[str, int] = field(default_factory=dict)
    total_influence: float = 0.0
    total_fundraising: float = 0.0


def build_portfolio(records: Sequence[EndorsementRecord], now: datetime) -> EndorsementPortfolio:
    active, expired = sweep_expired(records, now)
    bonuses: Dict[str, Dict[str, float]] = {}
    for record in active:
        entry = bonuses.setdefault(record.source.value, {"influence": 0.0, "fundraising": 0.0})
        entry["influence"] += record.influence_bonus
        entry["fundraising"] += record.fundraising_bonus
    counts = Counter(record.source.value for record in records)
    influence, fundraising = total_bonus(active, now)
    return EndorsementPortfolio(
        active=active,
        expired_count=len(expired),
        bonuses_by_category=bonuses,
        category_counts=dict(counts),
        total_influence=influence,
        total_fundraising=fundraising,
    )


def recommend_endorsements(
    portfolio: EndorsementPortfolio, phase: CampaignPhase, limit: int = 3
) -> List[EndorsementSource]:
    """Advisory ranking: phase-preferred categories first, least saturated first."""

    if phase == CampaignPhase.RESULTS:
        return []
    preferred = PHASE_PREFERENCES[phase]

    def score(source: EndorsementSource) -> Tuple[int, int, str]:
        rank = preferred.index(source) if source in preferred else len(preferred)
        return (portfolio.category_counts.get(source.value, 0), rank, source.value)

    return sorted(EndorsementSource, key=score)[:limit]


__all__ = [
    "ENDORSEMENT_TABLE",
    "EndorsementPortfolio",
    "EndorsementProfile",
    "PHASE_PREFERENCES",
    "TIER_MULTIPLIERS",
    "acquire_endorsement",
    "active_endorsements",
    "build_portfolio",
    "diminishing_factor",
    "recommend_endorsements",
    "sweep_expired",
    "total_bonus",
]
