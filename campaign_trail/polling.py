"""Polling snapshot generation and trend analysis."""

from __future__ import annotations

import statistics
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .config import PollingSettings, Settings, get_settings
from .exceptions import ValidationError
from .models import CampaignPhaseState, PollingSnapshot
from .rng import compose_seed, hash_int, hash_signed


class TrendDirection(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


class MomentumClass(str, Enum):
    SURGING = "surging"
    RISING = "rising"
    STABLE = "stable"
    DECLINING = "declining"
    COLLAPSING = "collapsing"


class RaceMargin(str, Enum):
    TOSS_UP = "toss_up"
    LEAN = "lean"
    LIKELY = "likely"
    SAFE = "safe"


DEMOGRAPHIC_SEGMENTS: Dict[str, Tuple[Tuple[str, ...], float]] = {
    "age": (("18-29", "30-44", "45-64", "65+"), 10.0),
    "gender": (("men", "women"), 5.0),
    "education": (("high_school", "some_college", "bachelors", "postgraduate"), 8.0),
    "geography": (("urban", "suburban", "rural"), 6.0),
}


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def calculate_base_support(state: CampaignPhaseState, settings: Settings | None = None) -> float:
    """Support implied by reputation, endorsements, money and scandals."""

    polling = (settings or get_settings()).polling
    endorsement_term = min(polling.endorsement_cap, polling.endorsement_points * state.endorsements_acquired)
    funds_term = min(polling.funds_cap, polling.funds_points_per_100k * state.funds_raised / 100_000)
    raw = (
        polling.reputation_weight * state.reputation
        + endorsement_term
        + funds_term
        - polling.scandal_points * state.active_scandals
    )
    return _clamp(raw)


def interval_index(now: datetime, settings: Settings | None = None) -> int:
    polling = (settings or get_settings()).polling
    return int(now.timestamp() // (polling.interval_minutes * 60))


def sample_size_for(seed: str, settings: Settings | None = None) -> int:
    polling = (settings or get_settings()).polling
    return hash_int(seed + ":sample", polling.sample_size_min, polling.sample_size_max)


def margin_of_error(sample_size: int, settings: Settings | None = None) -> float:
    polling = (settings or get_settings()).polling
    scaled = polling.moe_baseline * polling.moe_reference_sample / max(1, sample_size)
    return max(polling.moe_minimum, scaled)


def offline_adjustment(hours_since: float, polling: PollingSettings) -> Tuple[float, float]:
    """Return (volatility dampening, smoothing weight) for a gap in real hours."""

    for band in polling.offline_bands:
        if hours_since > band.after_hours:
            return band.dampening, band.smoothing
    return 1.0, polling.default_smoothing


def generate_snapshot(
    state: CampaignPhaseState,
    previous: Optional[PollingSnapshot],
    now: datetime,
    settings: Settings | None = None,
) -> PollingSnapshot:
    """Produce the next polling snapshot for ``state`` at ``now``.

    The volatility draw is keyed to the polling interval containing ``now`` so
    repeated calls within one interval return identical snapshots.
    """

    settings = settings or get_settings()
    polling = settings.polling
    seed = compose_seed(state.player_id, state.cycle, "poll", interval_index(now, settings))

    base = calculate_base_support(state, settings)
    sample_size = sample_size_for(seed, settings)

    if previous is None:
        dampening, smoothing_weight = 1.0, 0.0
    else:
        hours_since = max(0.0, (now - previous.timestamp).total_seconds() / 3600.0)
        dampening, smoothing_weight = offline_adjustment(hours_since, polling)

    volatility = hash_signed(seed) * polling.max_shift_percent * state.volatility_modifier * dampening
    blended = base + volatility
    smoothing = 0.0
    if previous is not None:
        smoothing = smoothing_weight * (previous.final_support - blended)

    return PollingSnapshot(
        player_id=state.player_id,
        timestamp=now,
        sample_size=sample_size,
        base_support=round(base, 4),
        volatility_delta=round(volatility, 4),
        smoothing_delta=round(smoothing, 4),
        final_support=round(_clamp(blended + smoothing), 4),
        margin_of_error=round(margin_of_error(sample_size, settings), 4),
        reputation=state.reputation,
        seed=seed,
    )


def next_poll_time(previous: Optional[PollingSnapshot], now: datetime, settings: Settings | None = None) -> datetime:
    if previous is None:
        return now
    interval = timedelta(minutes=(settings or get_settings()).polling.interval_minutes)
    return previous.timestamp + interval


def is_poll_due(previous: Optional[PollingSnapshot], now: datetime, settings: Settings | None = None) -> bool:
    return now >= next_poll_time(previous, now, settings)


# Trend utilities -------------------------------------------------------


@dataclass(frozen=True)
class TrendSummary:
    direction: TrendDirection
    momentum_per_hour: float
    momentum_class: MomentumClass
    volatility: float
    peak: float
    low: float
    rolling_average: List[float]


def _ordered(snapshots: Sequence[PollingSnapshot]) -> List[PollingSnapshot]:
    return sorted(snapshots, key=lambda snap: snap.timestamp)


def rolling_average(snapshots: Sequence[PollingSnapshot], window: int = 3) -> List[float]:
    if window < 1:
        raise ValidationError("window must be positive")
    values = [snap.final_support for snap in _ordered(snapshots)]
    averages: List[float] = []
    for idx in range(len(values)):
        chunk = values[max(0, idx - window + 1) : idx + 1]
        averages.append(statistics.fmean(chunk))
    return averages


def trend_direction(
    snapshots: Sequence[PollingSnapshot], settings: Settings | None = None
) -> TrendDirection:
    ordered = _ordered(snapshots)
    if len(ordered) < 2:
        return TrendDirection.STABLE
    threshold = (settings or get_settings()).polling.trend_threshold
    per_interval = (ordered[-1].final_support - ordered[0].final_support) / (len(ordered) - 1)
    if per_interval > threshold:
        return TrendDirection.RISING
    if per_interval < -threshold:
        return TrendDirection.FALLING
    return TrendDirection.STABLE


def momentum_per_hour(snapshots: Sequence[PollingSnapshot]) -> float:
    """Support change in points per real hour across the window."""

    ordered = _ordered(snapshots)
    if len(ordered) < 2:
        return 0.0
    hours = (ordered[-1].timestamp - ordered[0].timestamp).total_seconds() / 3600.0
    if hours <= 0:
        return 0.0
    return (ordered[-1].final_support - ordered[0].final_support) / hours


def support_volatility(snapshots: Sequence[PollingSnapshot]) -> float:
    values = [snap.final_support for snap in snapshots]
    if len(values) < 2:
        return 0.0
    return statistics.pstdev(values)


def peak_and_low(snapshots: Sequence[PollingSnapshot]) -> Tuple[float, float]:
    if not snapshots:
        return 0.0, 0.0
    values = [snap.final_support for snap in snapshots]
    return max(values), min(values)


def classify_momentum(change_per_game_week: float) -> MomentumClass:
    if change_per_game_week >= 2.0:
        return MomentumClass.SURGING
    if change_per_game_week >= 0.5:
        return MomentumClass.RISING
    if change_per_game_week <= -2.0:
        return MomentumClass.COLLAPSING
    if change_per_game_week <= -0.5:
        return MomentumClass.DECLINING
    return MomentumClass.STABLE


def classify_race_margin(margin: float) -> RaceMargin:
    margin = abs(margin)
    if margin < 3:
        return RaceMargin.TOSS_UP
    if margin < 7:
        return RaceMargin.LEAN
    if margin < 15:
        return RaceMargin.LIKELY
    return RaceMargin.SAFE


def analyze_trend(
    snapshots: Sequence[PollingSnapshot], window: int = 3, settings: Settings | None = None
) -> TrendSummary:
    peak, low = peak_and_low(snapshots)
    momentum = momentum_per_hour(snapshots)
    return TrendSummary(
        direction=trend_direction(snapshots, settings),
        # One real hour is one game week.
        momentum_per_hour=momentum,
        momentum_class=classify_momentum(momentum),
        volatility=support_volatility(snapshots),
        peak=peak,
        low=low,
        rolling_average=rolling_average(snapshots, window),
    )


def demographic_breakdown(snapshot: PollingSnapshot) -> Dict[str, Dict[str, float]]:
    """Seeded per-segment support spread around the snapshot's topline."""

    breakdown: Dict[str, Dict[str, float]] = {}
    for dimension, (segments, spread) in DEMOGRAPHIC_SEGMENTS.items():
        breakdown[dimension] = {
            segment: round(
                _clamp(
                    snapshot.final_support
                    + hash_signed(f"{snapshot.seed}:demo:{dimension}:{segment}") * spread
                ),
                2,
            )
            for segment in segments
        }
    return breakdown


__all__ = [
    "DEMOGRAPHIC_SEGMENTS",
    "MomentumClass",
    "RaceMargin",
    "TrendDirection",
    "TrendSummary",
    "analyze_trend",
    "calculate_base_support",
    "classify_momentum",
    "classify_race_margin",
    "demographic_breakdown",
    "generate_snapshot",
    "interval_index",
    "is_poll_due",
    "margin_of_error",
    "momentum_per_hour",
    "next_poll_time",
    "offline_adjustment",
    "peak_and_low",
    "rolling_average",
    "sample_size_for",
    "support_volatility",
    "trend_direction",
]
