"""Offline fairness floors, divergence auditing and the influence baseline.

A player returning after time away never sees their influence fall below a
level-based minimum or a fixed fraction of their last recorded value. Every
clamp is reported as an :class:`AuditEvent` for the telemetry sink; nothing
here mutates stored state.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .config import Settings, get_settings
from .exceptions import ValidationError
from .models import AuditEvent
from .rng import hash_signed

logger = logging.getLogger(__name__)


class DivergenceSeverity(str, Enum):
    NONE = "none"
    MINOR = "minor"
    MAJOR = "major"


@dataclass(frozen=True)
class InfluenceSnapshot:
    """Last recorded influence for a player."""

    total: float
    level: int
    taken_at: datetime


@dataclass(frozen=True)
class DivergenceReport:
    online_value: float
    offline_value: float
    relative_difference: float
    warning: bool
    severity: DivergenceSeverity


@dataclass(frozen=True)
class InfluenceInputs:
    donation: float
    level: int
    state_composite_weight: float = 0.0
    hours_until_election: Optional[float] = None
    reputation: float = 50.0


@dataclass(frozen=True)
class InfluenceBreakdown:
    donation_term: float
    level_multiplier: float
    state_term: float
    proximity_term: float
    reputation_term: float
    raw_total: float
    soft_capped: float
    floor: float
    floored: float
    jitter: float
    total: int


def level_minimum(level: int, settings: Settings | None = None) -> float:
    minimums = (settings or get_settings()).fairness.level_minimums
    if level < min(minimums):
        raise ValidationError(f"Unknown level {level}")
    return minimums[min(level, max(minimums))]


def retention_floor(
    snapshot: Optional[InfluenceSnapshot], level: int, settings: Settings | None = None
) -> float:
    settings = settings or get_settings()
    floor = level_minimum(level, settings)
    if snapshot is not None:
        floor = max(floor, snapshot.total * settings.fairness.retention_factor)
    return floor


def apply_retention_floor(
    raw: float, snapshot: Optional[InfluenceSnapshot], level: int, settings: Settings | None = None
) -> float:
    """Clamp ``raw`` upward to the fairness floor; never lowers it."""

    return max(raw, retention_floor(snapshot, level, settings))


def analyze_divergence(online: float, offline: float, settings: Settings | None = None) -> DivergenceReport:
    fairness = (settings or get_settings()).fairness
    scale = max(abs(online), abs(offline))
    relative = abs(online - offline) / scale if scale > 0 else 0.0
    warning = relative > fairness.divergence_warning
    if not warning:
        severity = DivergenceSeverity.NONE
    elif relative > fairness.divergence_major:
        severity = DivergenceSeverity.MAJOR
    else:
        severity = DivergenceSeverity.MINOR
    return DivergenceReport(online, offline, relative, warning, severity)


def divergence_audit_events(player_id: str, report: DivergenceReport, now: datetime) -> List[AuditEvent]:
    if not report.warning:
        return []
    logger.warning(
        "Influence divergence for %s: online %.2f vs offline %.2f (%s)",
        player_id,
        report.online_value,
        report.offline_value,
        report.severity.value,
    )
    return [
        AuditEvent(
            event_type="fairness_divergence",
            player_id=player_id,
            occurred_at=now,
            raw_value=report.offline_value,
            adjusted_value=report.online_value,
            reason=f"{report.relative_difference:.1%} difference between online and offline values",
            severity="major" if report.severity == DivergenceSeverity.MAJOR else "warning",
            metadata={"relative_difference": report.relative_difference},
        )
    ]


def floor_audit_event(
    player_id: str, raw: float, adjusted: float, now: datetime, reason: str = "retention floor applied"
) -> Optional[AuditEvent]:
    if adjusted <= raw:
        return None
    return AuditEvent(
        event_type="fairness_floor",
        player_id=player_id,
        occurred_at=now,
        raw_value=raw,
        adjusted_value=adjusted,
        reason=reason,
    )


def soft_cap(value: float, target: float) -> float:
    if value <= 0:
        return 0.0
    return value * target / (target + value)


def compute_influence_baseline(
    inputs: InfluenceInputs,
    snapshot: Optional[InfluenceSnapshot],
    seed: Optional[str] = None,
    settings: Settings | None = None,
) -> InfluenceBreakdown:
    """Compose the baseline influence for a contribution.

    Terms are summed, soft capped, clamped to the fairness floor and finally
    jittered by up to the configured amount when ``seed`` is given. The jitter
    never takes the result below the floor.
    """

    settings = settings or get_settings()
    influence = settings.influence
    if inputs.donation < 0:
        raise ValidationError("donation must be non-negative")

    multiplier = influence.level_multipliers.get(
        inputs.level, influence.level_multipliers[max(influence.level_multipliers)]
    )
    donation_term = 0.0
    if inputs.donation >= influence.min_donation:
        donation_term = influence.donation_weight * math.log10(inputs.donation / influence.min_donation)
    donation_term *= multiplier

    state_term = influence.state_weight * max(0.0, min(1.0, inputs.state_composite_weight))

    proximity_term = 0.0
    hours_left = inputs.hours_until_election
    if hours_left is not None and 0 <= hours_left <= influence.proximity_window_game_hours:
        closeness = 1.0 - hours_left / influence.proximity_window_game_hours
        proximity_term = influence.proximity_max_bonus * closeness ** 2

    reputation_term = 0.0
    if inputs.reputation > 50:
        reputation_term = influence.reputation_max_bonus * (min(100.0, inputs.reputation) - 50) / 50

    raw_total = donation_term + state_term + proximity_term + reputation_term
    capped = soft_cap(raw_total, influence.soft_cap_target)
    floor = retention_floor(snapshot, inputs.level, settings)
    floored = max(capped, floor)

    jitter = 0.0
    final = floored
    if seed is not None:
        jitter = hash_signed(f"{seed}:influence-jitter") * influence.jitter
        final = max(floor, floored + jitter)
    total = max(int(round(final)), math.ceil(floor))

    return InfluenceBreakdown(
        donation_term=round(donation_term, 4),
        level_multiplier=multiplier,
        state_term=round(state_term, 4),
        proximity_term=round(proximity_term, 4),
        reputation_term=round(reputation_term, 4),
        raw_total=round(raw_total, 4),
        soft_capped=round(capped, 4),
        floor=round(floor, 4),
        floored=round(floored, 4),
        jitter=round(jitter, 4),
        total=total,
    )


__all__ = [
    "DivergenceReport",
    "DivergenceSeverity",
    "InfluenceBreakdown",
    "InfluenceInputs",
    "InfluenceSnapshot",
    "analyze_divergence",
    "apply_retention_floor",
    "compute_influence_baseline",
    "divergence_audit_events",
    "floor_audit_event",
    "level_minimum",
    "retention_floor",
    "soft_cap",
]
