"""Campaign phase machine and cycle state transitions.

The phase is never stored as an independent source of truth. It is derived
from the phase clock (start instant, pause bookkeeping and early-advance skips)
so querying at any later instant reproduces the right phase without ticking.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from .config import Settings, get_settings
from .exceptions import InvalidStateTransition, ValidationError
from .models import (
    ActionLogEntry,
    CampaignPhase,
    CampaignPhaseState,
    CampaignStatus,
    SpendResult,
)
from .rng import compose_seed, hash_unit
from .timescale import (
    elapsed_game_hours,
    game_hours_to_real_hours,
    real_hours_to_game_hours,
)

logger = logging.getLogger(__name__)

PHASE_ORDER: Tuple[CampaignPhase, ...] = (
    CampaignPhase.ANNOUNCEMENT,
    CampaignPhase.FUNDRAISING,
    CampaignPhase.ACTIVE,
    CampaignPhase.RESOLUTION,
)
TERMINAL_PHASE = CampaignPhase.RESULTS

# Float slack when an early advance lands exactly on a phase boundary.
_BOUNDARY_EPSILON = 1e-6

PHASE_GATED_ACTIONS: Dict[CampaignPhase, Tuple[str, ...]] = {
    CampaignPhase.ANNOUNCEMENT: (
        "declare_candidacy",
        "build_exploratory_committee",
        "gather_petition_signatures",
        "initial_donor_outreach",
        "raise_funds",
        "acquire_endorsement",
        "mitigate_scandal",
        "contain_scandal",
    ),
    CampaignPhase.FUNDRAISING: (
        "host_fundraising_event",
        "donor_outreach",
        "pac_formation",
        "campaign_finance_filing",
        "build_campaign_infrastructure",
        "raise_funds",
        "acquire_endorsement",
        "commission_research",
        "launch_negative_ad",
        "counter_negative_ad",
        "mitigate_scandal",
        "contain_scandal",
    ),
    CampaignPhase.ACTIVE: (
        "purchase_advertising",
        "schedule_debate",
        "submit_debate_performance",
        "conduct_rally",
        "release_policy_position",
        "commission_polling",
        "voter_outreach",
        "media_appearances",
        "raise_funds",
        "acquire_endorsement",
        "commission_research",
        "launch_negative_ad",
        "counter_negative_ad",
        "mitigate_scandal",
        "contain_scandal",
    ),
    CampaignPhase.RESOLUTION: (
        "final_advertising_push",
        "gotv_operations",
        "last_minute_events",
        "monitor_early_voting",
        "prepare_concession_victory_speech",
        "raise_funds",
        "launch_negative_ad",
        "counter_negative_ad",
        "mitigate_scandal",
        "contain_scandal",
    ),
    CampaignPhase.RESULTS: (),
}


# Phase clock -----------------------------------------------------------


@dataclass(frozen=True)
class PhaseClock:
    """Serializable timing state for one campaign cycle."""

    started_at: datetime
    status: CampaignStatus = CampaignStatus.RUNNING
    paused_at: Optional[datetime] = None
    accumulated_paused_game_hours: float = 0.0
    skipped_game_hours: float = 0.0
    stopped_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "status": self.status.value,
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
            "accumulated_paused_game_hours": self.accumulated_paused_game_hours,
            "skipped_game_hours": self.skipped_game_hours,
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "PhaseClock":
        paused_at = data.get("paused_at")
        stopped_at = data.get("stopped_at")
        return PhaseClock(
            started_at=datetime.fromisoformat(data["started_at"]),
            status=CampaignStatus(data.get("status", CampaignStatus.RUNNING.value)),
            paused_at=datetime.fromisoformat(paused_at) if paused_at else None,
            accumulated_paused_game_hours=float(data.get("accumulated_paused_game_hours", 0.0)),
            skipped_game_hours=float(data.get("skipped_game_hours", 0.0)),
            stopped_at=datetime.fromisoformat(stopped_at) if stopped_at else None,
        )


@dataclass(frozen=True)
class PhaseWindow:
    phase: CampaignPhase
    start_game_hours: float
    end_game_hours: Optional[float]
    duration_real_hours: float


@dataclass(frozen=True)
class PhaseObjectives:
    candidacy_declared: bool = False
    funds_raised: float = 0.0
    debate_submitted: bool = False

    @staticmethod
    def from_state(state: CampaignPhaseState) -> "PhaseObjectives":
        return PhaseObjectives(
            candidacy_declared=state.candidacy_declared,
            funds_raised=state.funds_raised,
            debate_submitted=state.debate_submitted,
        )


@dataclass(frozen=True)
class ActionValidation:
    allowed: bool
    reason: Optional[str] = None
    allowed_actions: Tuple[str, ...] = ()


def phase_windows(settings: Settings | None = None) -> List[PhaseWindow]:
    """Ordered phase windows in game hours, ending with the open terminal phase."""

    settings = settings or get_settings()
    durations = settings.phases.durations_real_hours
    windows: List[PhaseWindow] = []
    cursor = 0.0
    for phase in PHASE_ORDER:
        real_hours = durations[phase.value]
        game_hours = real_hours_to_game_hours(real_hours)
        windows.append(PhaseWindow(phase, cursor, cursor + game_hours, real_hours))
        cursor += game_hours
    windows.append(PhaseWindow(TERMINAL_PHASE, cursor, None, 0.0))
    return windows


def total_cycle_game_hours(settings: Settings | None = None) -> float:
    return phase_windows(settings)[-1].start_game_hours


def start_clock(now: datetime) -> PhaseClock:
    return PhaseClock(started_at=now)


def _reference_instant(clock: PhaseClock, now: datetime) -> datetime:
    if clock.stopped_at is not None:
        return clock.stopped_at
    if clock.status == CampaignStatus.PAUSED and clock.paused_at is not None:
        return clock.paused_at
    return now


def elapsed_campaign_game_hours(clock: PhaseClock, now: datetime) -> float:
    """Game hours the campaign has actually run, excluding pauses."""

    reference = _reference_instant(clock, now)
    raw = elapsed_game_hours(clock.started_at, reference)
    return max(0.0, raw - clock.accumulated_paused_game_hours + clock.skipped_game_hours)


def window_for_elapsed(elapsed: float, settings: Settings | None = None) -> PhaseWindow:
    windows = phase_windows(settings)
    for window in windows:
        if window.end_game_hours is None:
            return window
        if elapsed + _BOUNDARY_EPSILON < window.end_game_hours:
            return window
    return windows[-1]


def current_phase(clock: PhaseClock, now: datetime, settings: Settings | None = None) -> CampaignPhase:
    return window_for_elapsed(elapsed_campaign_game_hours(clock, now), settings).phase


def phase_bounds(
    clock: PhaseClock, now: datetime, settings: Settings | None = None
) -> Tuple[datetime, datetime]:
    """Real start and end instants of the phase active at ``now``."""

    elapsed = elapsed_campaign_game_hours(clock, now)
    window = window_for_elapsed(elapsed, settings)
    into_phase = max(0.0, elapsed - window.start_game_hours)
    reference = _reference_instant(clock, now)
    start = reference - timedelta(hours=game_hours_to_real_hours(into_phase))
    return start, start + timedelta(hours=window.duration_real_hours)


def pause(clock: PhaseClock, now: datetime) -> PhaseClock:
    if clock.status != CampaignStatus.RUNNING:
        raise InvalidStateTransition(f"Cannot pause a {clock.status.value} campaign")
    return replace(clock, status=CampaignStatus.PAUSED, paused_at=now)


def resume(clock: PhaseClock, now: datetime) -> PhaseClock:
    if clock.status != CampaignStatus.PAUSED or clock.paused_at is None:
        raise InvalidStateTransition(f"Cannot resume a {clock.status.value} campaign")
    paused_for = elapsed_game_hours(clock.paused_at, now)
    return replace(
        clock,
        status=CampaignStatus.RUNNING,
        paused_at=None,
        accumulated_paused_game_hours=clock.accumulated_paused_game_hours + paused_for,
    )


def withdraw(clock: PhaseClock, now: datetime, settings: Settings | None = None) -> PhaseClock:
    if clock.status in (CampaignStatus.COMPLETED, CampaignStatus.WITHDRAWN):
        raise InvalidStateTransition(f"Campaign already {clock.status.value}")
    if current_phase(clock, now, settings) == TERMINAL_PHASE:
        raise InvalidStateTransition("Election results are final; withdrawal is closed")
    return replace(
        clock,
        status=CampaignStatus.WITHDRAWN,
        stopped_at=_reference_instant(clock, now),
    )


def complete(clock: PhaseClock, now: datetime, settings: Settings | None = None) -> PhaseClock:
    if clock.status in (CampaignStatus.COMPLETED, CampaignStatus.WITHDRAWN):
        raise InvalidStateTransition(f"Campaign already {clock.status.value}")
    if current_phase(clock, now, settings) != TERMINAL_PHASE:
        raise InvalidStateTransition("Campaign can only complete once results are in")
    return replace(
        clock,
        status=CampaignStatus.COMPLETED,
        stopped_at=_reference_instant(clock, now),
    )


def objectives_met(
    phase: CampaignPhase, objectives: PhaseObjectives, settings: Settings | None = None
) -> Tuple[bool, str]:
    """Whether the phase's objective allows leaving it before its time is up."""

    settings = settings or get_settings()
    if phase == CampaignPhase.ANNOUNCEMENT:
        if objectives.candidacy_declared:
            return True, "candidacy declared"
        return False, "declare candidacy before leaving the announcement phase"
    if phase == CampaignPhase.FUNDRAISING:
        minimum = settings.phases.fundraising_exit_minimum
        if objectives.funds_raised >= minimum:
            return True, "fundraising target met"
        return False, f"raise at least {minimum:,.0f} before leaving fundraising"
    if phase == CampaignPhase.ACTIVE:
        if objectives.debate_submitted:
            return True, "debate performance submitted"
        return False, "submit a debate performance before leaving the active phase"
    return False, f"the {phase.value} phase only advances on the clock"


def advance_early(
    clock: PhaseClock,
    now: datetime,
    objectives: PhaseObjectives,
    settings: Settings | None = None,
) -> PhaseClock:
    """Skip the rest of the current phase once its objective is satisfied."""

    if clock.status != CampaignStatus.RUNNING:
        raise InvalidStateTransition(f"Cannot advance a {clock.status.value} campaign")
    elapsed = elapsed_campaign_game_hours(clock, now)
    window = window_for_elapsed(elapsed, settings)
    met, reason = objectives_met(window.phase, objectives, settings)
    if not met or window.end_game_hours is None:
        raise InvalidStateTransition(reason)
    remaining = window.end_game_hours - elapsed
    logger.info("Early advance out of %s (%.1f game hours skipped)", window.phase.value, remaining)
    return replace(clock, skipped_game_hours=clock.skipped_game_hours + remaining)


def cycle_completion(clock: PhaseClock, now: datetime, settings: Settings | None = None) -> float:
    """Percent of the cycle elapsed (0-100)."""

    if clock.status == CampaignStatus.COMPLETED:
        return 100.0
    total = total_cycle_game_hours(settings)
    return min(100.0, elapsed_campaign_game_hours(clock, now) / total * 100.0)


def phase_time_remaining(clock: PhaseClock, now: datetime, settings: Settings | None = None) -> float:
    """Real hours left in the current phase; zero unless running."""

    if clock.status != CampaignStatus.RUNNING:
        return 0.0
    elapsed = elapsed_campaign_game_hours(clock, now)
    window = window_for_elapsed(elapsed, settings)
    if window.end_game_hours is None:
        return 0.0
    return max(0.0, game_hours_to_real_hours(window.end_game_hours - elapsed))


def can_restart(clock: PhaseClock) -> bool:
    return clock.status in (CampaignStatus.COMPLETED, CampaignStatus.WITHDRAWN)


# Cycle state -----------------------------------------------------------


def start_cycle(
    player_id: str,
    cycle: int,
    now: datetime,
    *,
    reputation: Optional[float] = None,
    active_scandals: int = 0,
    settings: Settings | None = None,
) -> Tuple[CampaignPhaseState, PhaseClock]:
    """Create the state and clock for a fresh cycle starting at ``now``."""

    if not player_id:
        raise ValidationError("player_id is required")
    if cycle < 1:
        raise ValidationError("cycle numbers start at 1")
    settings = settings or get_settings()
    clock = start_clock(now)
    start, end = phase_bounds(clock, now, settings)
    state = CampaignPhaseState(
        player_id=player_id,
        cycle=cycle,
        phase=CampaignPhase.ANNOUNCEMENT,
        phase_started_at=start,
        phase_ends_at=end,
        spend_pressure_index=hash_unit(compose_seed(player_id, cycle, "environment", "spi")),
        volatility_modifier=hash_unit(compose_seed(player_id, cycle, "environment", "vm")),
        engagement_saturation=hash_unit(compose_seed(player_id, cycle, "environment", "es")),
        seed=compose_seed(player_id, cycle, "cycle"),
        reputation=settings.default_reputation if reputation is None else reputation,
        active_scandals=active_scandals,
    )
    return state, clock


def advance_phase(
    state: CampaignPhaseState,
    clock: PhaseClock,
    now: datetime,
    settings: Settings | None = None,
) -> CampaignPhaseState:
    """Bring the stored phase in line with the clock. Safe to call at any cadence."""

    phase = current_phase(clock, now, settings)
    start, end = phase_bounds(clock, now, settings)
    if phase == state.phase and start == state.phase_started_at and end == state.phase_ends_at:
        return state
    if phase != state.phase:
        logger.info(
            "Player %s cycle %s: %s -> %s",
            state.player_id,
            state.cycle,
            state.phase.value,
            phase.value,
        )
    return replace(state, phase=phase, phase_started_at=start, phase_ends_at=end)


def rollover_cycle(
    state: CampaignPhaseState,
    clock: PhaseClock,
    now: datetime,
    settings: Settings | None = None,
) -> Tuple[CampaignPhaseState, PhaseClock]:
    """Start cycle N+1, carrying reputation and open scandals forward."""

    if not can_restart(clock):
        raise InvalidStateTransition("Only completed or withdrawn cycles can roll over")
    return start_cycle(
        state.player_id,
        state.cycle + 1,
        now,
        reputation=state.reputation,
        active_scandals=state.active_scandals,
        settings=settings,
    )


def validate_action(
    state: CampaignPhaseState, clock: PhaseClock, action: str
) -> ActionValidation:
    if clock.status != CampaignStatus.RUNNING:
        return ActionValidation(False, f"Campaign is {clock.status.value}, not running")
    allowed = PHASE_GATED_ACTIONS[state.phase]
    if action in allowed:
        return ActionValidation(True)
    return ActionValidation(
        False,
        f"Action '{action}' not permitted during the {state.phase.value} phase",
        allowed,
    )


def require_action(state: CampaignPhaseState, clock: PhaseClock, action: str) -> None:
    result = validate_action(state, clock, action)
    if not result.allowed:
        raise InvalidStateTransition(result.reason or action)


def record_action(state: CampaignPhaseState, action: str, now: datetime) -> CampaignPhaseState:
    entry = ActionLogEntry(action=action, phase=state.phase, timestamp=now)
    updated = replace(state, actions=state.actions + (entry,))
    if action == "declare_candidacy":
        updated = replace(updated, candidacy_declared=True)
    elif action == "submit_debate_performance":
        updated = replace(updated, debate_submitted=True)
    return updated


def raise_funds(
    state: CampaignPhaseState, amount: float, settings: Settings | None = None
) -> Tuple[CampaignPhaseState, float]:
    """Credit a donation haul, reduced by the cycle's spend pressure."""

    if amount < 0:
        raise ValidationError("amount must be non-negative")
    settings = settings or get_settings()
    credited = amount * (1.0 - settings.spi_fundraising_drag * state.spend_pressure_index)
    return replace(state, funds_raised=state.funds_raised + credited), credited


def spend_funds(state: CampaignPhaseState, cost: float) -> Tuple[CampaignPhaseState, SpendResult]:
    if cost < 0:
        raise ValidationError("cost must be non-negative")
    if cost > state.available_funds:
        return state, SpendResult(
            success=False,
            cost=cost,
            message=f"Insufficient funds (have {state.available_funds:,.0f}, need {cost:,.0f})",
        )
    return replace(state, funds_spent=state.funds_spent + cost), SpendResult(True, cost)


def adjust_reputation(state: CampaignPhaseState, delta: float) -> CampaignPhaseState:
    return replace(state, reputation=max(0.0, min(100.0, state.reputation + delta)))


__all__ = [
    "ActionValidation",
    "PHASE_GATED_ACTIONS",
    "PHASE_ORDER",
    "PhaseClock",
    "PhaseObjectives",
    "PhaseWindow",
    "TERMINAL_PHASE",
    "adjust_reputation",
    "advance_early",
    "advance_phase",
    "can_restart",
    "complete",
    "current_phase",
    "cycle_completion",
    "elapsed_campaign_game_hours",
    "objectives_met",
    "pause",
    "phase_bounds",
    "phase_time_remaining",
    "phase_windows",
    "raise_funds",
    "record_action",
    "require_action",
    "resume",
    "rollover_cycle",
    "spend_funds",
    "start_clock",
    "start_cycle",
    "total_cycle_game_hours",
    "validate_action",
]
