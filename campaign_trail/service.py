"""High-level orchestration for campaign actions.

The engine modules are pure. This service loads records from the store, calls
the engine with the injected clock, persists the results and reports to the
telemetry sink.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import balance as balance_engine
from . import endorsements as endorsement_engine
from . import fairness as fairness_engine
from . import opposition as opposition_engine
from . import phases
from . import polling as polling_engine
from . import scandals as scandal_engine
from .config import Settings, get_settings
from .exceptions import InvalidStateTransition, RecordNotFound
from .fairness import InfluenceBreakdown, InfluenceInputs, InfluenceSnapshot
from .models import (
    CampaignPhaseState,
    CampaignStatus,
    CounterAd,
    EndorsementRecord,
    EndorsementSource,
    EndorsementTier,
    MitigationAction,
    NegativeAd,
    OppositionResearch,
    PollingSnapshot,
    ResearchType,
    ScandalCategory,
    ScandalRecord,
    SpendResult,
)
from .phases import PhaseClock
from .state import CampaignStore
from .telemetry import TelemetryCollector, get_telemetry, track_duration

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CampaignService:
    """Coordinates the campaign engine, the record store and telemetry."""

    def __init__(
        self,
        db_path: Path,
        settings: Settings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        telemetry: TelemetryCollector | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = CampaignStore(db_path)
        self._clock = clock or _utcnow
        self._telemetry = telemetry or get_telemetry()

    def now(self) -> datetime:
        return self._clock()

    def _track(self, label: str, method: str, *args: Any, **kwargs: Any) -> None:
        try:
            getattr(self._telemetry, method)(*args, **kwargs)
        except Exception:
            logger.debug("Telemetry tracking for %s failed", label, exc_info=True)

    # Campaign lifecycle ------------------------------------------------
    def start_campaign(self, player_id: str) -> CampaignPhaseState:
        """Open cycle 1 for a new player, or the next cycle after a finished one."""

        now = self.now()
        existing = self.store.get_campaign(player_id)
        if existing is None:
            state, clock = phases.start_cycle(player_id, 1, now, settings=self.settings)
            stored = self.store.create_campaign(state, clock, now)
        else:
            state, clock = existing
            if not phases.can_restart(clock):
                raise InvalidStateTransition(
                    f"Player {player_id} already has a {clock.status.value} campaign"
                )
            self.store.archive_campaign(state, clock, now)
            new_state, new_clock = phases.rollover_cycle(state, clock, now, self.settings)
            stored = self.store.update_campaign(replace(new_state, version=state.version), new_clock, now)
        logger.info("Player %s started campaign cycle %s", player_id, stored.cycle)
        self.store.append_event(now, "campaign_started", {"cycle": stored.cycle}, player_id)
        self._track("campaign_started", "track_phase_transition", player_id, stored.cycle, "none", stored.phase.value)
        return stored

    def get_campaign(self, player_id: str) -> Tuple[CampaignPhaseState, PhaseClock]:
        return self.store.require_campaign(player_id)

    def _save(
        self, state: CampaignPhaseState, clock: PhaseClock, now: datetime
    ) -> CampaignPhaseState:
        return self.store.update_campaign(state, clock, now)

    def _synced(self, player_id: str) -> Tuple[CampaignPhaseState, PhaseClock, datetime]:
        """Load a campaign with its phase brought up to date (not yet saved)."""

        now = self.now()
        state, clock = self.store.require_campaign(player_id)
        updated = phases.advance_phase(state, clock, now, self.settings)
        if updated.phase != state.phase:
            self._track(
                "phase_transition",
                "track_phase_transition",
                player_id,
                state.cycle,
                state.phase.value,
                updated.phase.value,
            )
            self.store.append_event(
                now,
                "phase_transition",
                {"from": state.phase.value, "to": updated.phase.value, "cycle": state.cycle},
                player_id,
            )
        return updated, clock, now

    def advance_phase(self, player_id: str) -> CampaignPhaseState:
        """Persist the clock-derived phase. Safe to call at any cadence."""

        state, clock, now = self._synced(player_id)
        return self._save(state, clock, now)

    def advance_all(self) -> int:
        """Advance every campaign and complete those that reached results."""

        transitions = 0
        for stored_state, _ in list(self.store.all_campaigns()):
            state, clock, now = self._synced(stored_state.player_id)
            if state.phase != stored_state.phase:
                transitions += 1
            if state.phase == phases.TERMINAL_PHASE and clock.status == CampaignStatus.RUNNING:
                clock = phases.complete(clock, now, self.settings)
                logger.info("Campaign for %s completed cycle %s", state.player_id, state.cycle)
            self._save(state, clock, now)
        return transitions

    def _transition(self, player_id: str, name: str, transition: Callable[..., PhaseClock]) -> PhaseClock:
        state, clock, now = self._synced(player_id)
        try:
            new_clock = transition(clock, now)
        except InvalidStateTransition:
            logger.warning("Rejected %s for %s (status %s)", name, player_id, clock.status.value)
            raise
        synced = phases.advance_phase(state, new_clock, now, self.settings)
        self._save(synced, new_clock, now)
        self.store.append_event(now, name, {"status": new_clock.status.value}, player_id)
        self._track(name, "track_system_event", name, source=player_id)
        return new_clock

    def pause_campaign(self, player_id: str) -> PhaseClock:
        return self._transition(player_id, "pause", phases.pause)

    def resume_campaign(self, player_id: str) -> PhaseClock:
        return self._transition(player_id, "resume", phases.resume)

    def withdraw_campaign(self, player_id: str) -> PhaseClock:
        return self._transition(
            player_id, "withdraw", lambda clock, now: phases.withdraw(clock, now, self.settings)
        )

    def complete_campaign(self, player_id: str) -> PhaseClock:
        return self._transition(
            player_id, "complete", lambda clock, now: phases.complete(clock, now, self.settings)
        )

    def advance_early(self, player_id: str) -> CampaignPhaseState:
        state, clock, now = self._synced(player_id)
        objectives = phases.PhaseObjectives.from_state(state)
        new_clock = phases.advance_early(clock, now, objectives, self.settings)
        advanced = phases.advance_phase(state, new_clock, now, self.settings)
        self._track(
            "early_advance",
            "track_phase_transition",
            player_id,
            state.cycle,
            state.phase.value,
            advanced.phase.value,
        )
        self.store.append_event(
            now, "early_advance", {"from": state.phase.value, "to": advanced.phase.value}, player_id
        )
        return self._save(advanced, new_clock, now)

    def perform_action(self, player_id: str, action: str) -> CampaignPhaseState:
        """Record a phase-gated action such as ``declare_candidacy``."""

        state, clock, now = self._synced(player_id)
        phases.require_action(state, clock, action)
        return self._save(phases.record_action(state, action, now), clock, now)

    def raise_funds(self, player_id: str, amount: float) -> Tuple[CampaignPhaseState, float]:
        state, clock, now = self._synced(player_id)
        phases.require_action(state, clock, "raise_funds")
        state, credited = phases.raise_funds(state, amount, self.settings)
        state = phases.record_action(state, "raise_funds", now)
        self._track("raise_funds", "track_spend", player_id, "fundraising", credited, True)
        return self._save(state, clock, now), credited

    def status(self, player_id: str) -> Dict[str, Any]:
        state, clock, now = self._synced(player_id)
        return {
            "player_id": player_id,
            "cycle": state.cycle,
            "phase": state.phase.value,
            "status": clock.status.value,
            "phase_started_at": state.phase_started_at.isoformat(),
            "phase_ends_at": state.phase_ends_at.isoformat(),
            "completion_percent": round(phases.cycle_completion(clock, now, self.settings), 2),
            "phase_hours_remaining": round(phases.phase_time_remaining(clock, now, self.settings), 4),
            "funds_raised": state.funds_raised,
            "funds_available": state.available_funds,
            "reputation": state.reputation,
            "can_restart": phases.can_restart(clock),
            "allowed_actions": list(phases.PHASE_GATED_ACTIONS[state.phase]),
        }

    # Polling -----------------------------------------------------------
    def _polling_view(self, state: CampaignPhaseState, now: datetime) -> CampaignPhaseState:
        """State as voters see it: live endorsement count and scandal drag."""

        endorsements = endorsement_engine.active_endorsements(
            self.store.list_endorsements(state.player_id), now
        )
        open_scandals = self.store.list_scandals(state.player_id, include_resolved=False)
        penalty = scandal_engine.total_penalty(open_scandals, now, self.settings)
        return replace(
            state,
            endorsements_acquired=len(endorsements),
            active_scandals=len(open_scandals),
            reputation=max(0.0, state.reputation - penalty),
        )

    def generate_poll(self, player_id: str, *, force: bool = False) -> Optional[PollingSnapshot]:
        """Take a polling snapshot if one is due (or ``force`` is set)."""

        with track_duration("generate_poll", {"player_id": player_id}, collector=self._telemetry):
            state, clock, now = self._synced(player_id)
            previous = self.store.latest_snapshot(player_id)
            if not force and not polling_engine.is_poll_due(previous, now, self.settings):
                return None
            snapshot = polling_engine.generate_snapshot(
                self._polling_view(state, now), previous, now, self.settings
            )
            self.store.record_snapshot(snapshot)
            self._save(state, clock, now)
        offline_hours = None
        if previous is not None:
            offline_hours = (now - previous.timestamp).total_seconds() / 3600.0
        self._track(
            "polling",
            "track_polling",
            player_id,
            snapshot.final_support,
            snapshot.margin_of_error,
            offline_hours,
        )
        return snapshot

    def polling_trend(self, player_id: str, window: int = 3) -> polling_engine.TrendSummary:
        snapshots = self.store.list_snapshots(player_id)
        return polling_engine.analyze_trend(snapshots, window, self.settings)

    # Endorsements ------------------------------------------------------
    def acquire_endorsement(
        self, player_id: str, source: EndorsementSource, tier: EndorsementTier
    ) -> EndorsementRecord:
        state, clock, now = self._synced(player_id)
        phases.require_action(state, clock, "acquire_endorsement")
        record = endorsement_engine.acquire_endorsement(
            player_id, source, tier, self.store.list_endorsements(player_id), now, self.settings
        )
        self.store.save_endorsement(record)
        state = replace(state, endorsements_acquired=state.endorsements_acquired + 1)
        self._save(phases.record_action(state, "acquire_endorsement", now), clock, now)
        self._track("endorsement", "track_endorsement", player_id, source.value, record.influence_bonus)
        return record

    def endorsement_portfolio(self, player_id: str) -> endorsement_engine.EndorsementPortfolio:
        return endorsement_engine.build_portfolio(self.store.list_endorsements(player_id), self.now())

    def endorsement_recommendations(self, player_id: str, limit: int = 3) -> List[EndorsementSource]:
        state, _ = self.store.require_campaign(player_id)
        return endorsement_engine.recommend_endorsements(
            self.endorsement_portfolio(player_id), state.phase, limit
        )

    def sweep_endorsements(self) -> int:
        """Delete expired endorsements for every campaign."""

        now = self.now()
        removed = 0
        for state, _ in list(self.store.all_campaigns()):
            _, expired = endorsement_engine.sweep_expired(
                self.store.list_endorsements(state.player_id), now
            )
            removed += self.store.delete_endorsements(record.id for record in expired)
        if removed:
            logger.info("Swept %s expired endorsements", removed)
        return removed

    # Scandals ----------------------------------------------------------
    def _scandal_for(self, player_id: str, scandal_id: str) -> ScandalRecord:
        scandal = self.store.get_scandal(scandal_id)
        if scandal is None or scandal.player_id != player_id:
            raise RecordNotFound(f"Scandal {scandal_id} not found for {player_id}")
        return scandal

    def trigger_scandal(
        self, player_id: str, category: Optional[ScandalCategory] = None
    ) -> ScandalRecord:
        state, clock, now = self._synced(player_id)
        sequence = len(self.store.list_scandals(player_id))
        scandal = scandal_engine.generate_scandal(
            state, now, trigger=category, sequence=sequence, settings=self.settings
        )
        self.store.save_scandal(scandal)
        self._save(replace(state, active_scandals=state.active_scandals + 1), clock, now)
        self._track(
            "scandal",
            "track_scandal",
            player_id,
            "generated",
            scandal.severity,
            {"category": scandal.category.value},
        )
        return scandal

    def check_scandal_risk(self, player_id: str) -> Optional[ScandalRecord]:
        """Roll the periodic scandal check for the current polling interval."""

        state, clock, now = self._synced(player_id)
        if clock.status != CampaignStatus.RUNNING or state.phase == phases.TERMINAL_PHASE:
            return None
        check_index = polling_engine.interval_index(now, self.settings)
        if not scandal_engine.roll_scandal_risk(state, check_index, self.settings):
            return None
        return self.trigger_scandal(player_id)

    def mitigate_scandal(
        self, player_id: str, scandal_id: str, action: MitigationAction
    ) -> SpendResult:
        state, clock, now = self._synced(player_id)
        phases.require_action(state, clock, "mitigate_scandal")
        scandal = self._scandal_for(player_id, scandal_id)
        updated, state, result = scandal_engine.mitigate_scandal(scandal, action, state, self.settings)
        self._track("mitigation", "track_spend", player_id, "mitigation", result.cost, result.success)
        if not result.success:
            logger.warning("Player %s cannot afford %s", player_id, action.value)
            return result
        self.store.save_scandal(updated)
        self._save(phases.record_action(state, "mitigate_scandal", now), clock, now)
        self._track(
            "scandal",
            "track_scandal",
            player_id,
            "mitigated",
            updated.recovery_rate_per_hour,
            {"action": action.value},
        )
        return result

    def contain_scandal(self, player_id: str, scandal_id: str) -> ScandalRecord:
        state, clock, now = self._synced(player_id)
        phases.require_action(state, clock, "contain_scandal")
        scandal = scandal_engine.contain_scandal(self._scandal_for(player_id, scandal_id), now)
        self.store.save_scandal(scandal)
        self._save(phases.record_action(state, "contain_scandal", now), clock, now)
        self.store.append_event(now, "scandal_contained", {"scandal_id": scandal.id}, player_id)
        self._track(
            "scandal",
            "track_scandal",
            player_id,
            "contained",
            scandal_engine.calculate_impact(scandal, now, self.settings),
            {"category": scandal.category.value},
        )
        return scandal

    def resolve_scandal(self, player_id: str, scandal_id: str) -> ScandalRecord:
        state, clock, now = self._synced(player_id)
        scandal = scandal_engine.resolve_scandal(
            self._scandal_for(player_id, scandal_id), now, self.settings
        )
        self.store.save_scandal(scandal)
        self._save(replace(state, active_scandals=max(0, state.active_scandals - 1)), clock, now)
        self._track("scandal", "track_scandal", player_id, "resolved", 0.0)
        return scandal

    def scandal_penalty(self, player_id: str) -> float:
        open_scandals = self.store.list_scandals(player_id, include_resolved=False)
        return scandal_engine.total_penalty(open_scandals, self.now(), self.settings)

    def sweep_scandals(self) -> int:
        """Auto-resolve faded scandals for every campaign."""

        resolved_total = 0
        for stored_state, _ in list(self.store.all_campaigns()):
            state, clock, now = self._synced(stored_state.player_id)
            open_scandals = self.store.list_scandals(state.player_id, include_resolved=False)
            _, resolved = scandal_engine.sweep_scandals(open_scandals, now, self.settings)
            for scandal in resolved:
                self.store.save_scandal(scandal)
            if resolved:
                state = replace(state, active_scandals=max(0, state.active_scandals - len(resolved)))
                resolved_total += len(resolved)
            self._save(state, clock, now)
        return resolved_total

    # Opposition research and ads ---------------------------------------
    def _require_target(self, player_id: str, target_id: str) -> None:
        """Opposition targets must have a campaign on record."""

        if target_id and target_id != player_id:
            self.store.require_campaign(target_id)

    def commission_research(
        self, player_id: str, target_id: str, research_type: ResearchType, amount: float
    ) -> Tuple[Optional[OppositionResearch], SpendResult]:
        state, clock, now = self._synced(player_id)
        phases.require_action(state, clock, "commission_research")
        self._require_target(player_id, target_id)
        research, state, result = opposition_engine.commission_research(
            state,
            target_id,
            research_type,
            amount,
            now,
            self.store.list_research(player_id),
            self.settings,
        )
        self._track("research", "track_spend", player_id, "research", amount, result.success)
        if research is None:
            return None, result
        self.store.save_research(research)
        self._save(phases.record_action(state, "commission_research", now), clock, now)
        return research, result

    def complete_due_research(self) -> List[OppositionResearch]:
        now = self.now()
        finished: List[OppositionResearch] = []
        for research in self.store.due_research(now):
            completed = opposition_engine.complete_research(research, now, self.settings)
            self.store.save_research(completed)
            finished.append(completed)
            quality = completed.discovery.quality_score if completed.discovery else 0.0
            self._track(
                "research",
                "track_opposition",
                completed.player_id,
                "research_" + completed.status.value,
                quality,
                {"target_id": completed.target_id},
            )
        return finished

    def launch_negative_ad(
        self,
        player_id: str,
        target_id: str,
        amount: float,
        *,
        research_id: Optional[str] = None,
        extreme: bool = False,
    ) -> Tuple[Optional[NegativeAd], SpendResult]:
        state, clock, now = self._synced(player_id)
        phases.require_action(state, clock, "launch_negative_ad")
        self._require_target(player_id, target_id)
        research = None
        if research_id is not None:
            research = self.store.get_research(research_id)
            if research is None or research.player_id != player_id:
                raise RecordNotFound(f"Research {research_id} not found for {player_id}")
        ad, state, result = opposition_engine.launch_negative_ad(
            state,
            target_id,
            amount,
            now,
            self.store.list_negative_ads(player_id),
            research,
            extreme,
            self.settings,
        )
        self._track("negative_ad", "track_spend", player_id, "negative_ad", amount, result.success)
        if ad is None:
            return None, result
        self.store.save_negative_ad(ad)
        state = phases.adjust_reputation(state, ad.attacker_impact)
        self._save(phases.record_action(state, "launch_negative_ad", now), clock, now)
        self._apply_reputation(target_id, ad.target_impact, now)
        self._track(
            "negative_ad",
            "track_opposition",
            player_id,
            "ad_backfired" if ad.backfired else "ad_launched",
            ad.effectiveness,
            {"target_id": target_id},
        )
        return ad, result

    def _apply_reputation(self, player_id: str, delta: float, now: datetime) -> None:
        record = self.store.get_campaign(player_id)
        if record is None:
            return
        state, clock = record
        self.store.update_campaign(phases.adjust_reputation(state, delta), clock, now)

    def counter_negative_ad(
        self, player_id: str, ad_id: str, amount: float
    ) -> Tuple[Optional[CounterAd], SpendResult]:
        ad = self.store.get_negative_ad(ad_id)
        if ad is None:
            raise RecordNotFound(f"Negative ad {ad_id} not found")
        state, clock, now = self._synced(player_id)
        phases.require_action(state, clock, "counter_negative_ad")
        existing = self.store.list_counter_ads(ad_id)
        counter, state, result = opposition_engine.counter_negative_ad(
            ad, state, amount, now, existing, self.settings
        )
        self._track("counter_ad", "track_spend", player_id, "counter_ad", amount, result.success)
        if counter is None:
            return None, result
        _, impact_before = opposition_engine.effective_ad_impact(ad, existing, self.settings)
        _, impact_after = opposition_engine.effective_ad_impact(ad, existing + [counter], self.settings)
        self.store.save_counter_ad(counter)
        # Target impact is signed; refund the share of the attack that was neutralised.
        state = phases.adjust_reputation(state, impact_after - impact_before)
        self._save(phases.record_action(state, "counter_negative_ad", now), clock, now)
        return counter, result

    # Balance and fairness ----------------------------------------------
    def balance_adjustment(self, player_id: str) -> balance_engine.BalanceAdjustment:
        adjustment = balance_engine.compute_balance_adjustment(
            player_id, self.store.latest_pollings(), self.settings
        )
        self._track(
            "balance",
            "track_balance",
            player_id,
            adjustment.adjusted_polling,
            adjustment.cost_multiplier,
            adjustment.underdog_buff,
        )
        return adjustment

    def action_cost(self, player_id: str, base_cost: float) -> float:
        """Cost of an action after any frontrunner penalty."""

        try:
            adjustment = self.balance_adjustment(player_id)
        except RecordNotFound:
            return base_cost
        return balance_engine.adjusted_cost(base_cost, adjustment)

    def fair_probability(self, player_id: str, base_probability: float) -> float:
        return balance_engine.fair_probability(
            base_probability, self.balance_adjustment(player_id), self.settings
        )

    def compute_influence(
        self,
        player_id: str,
        inputs: InfluenceInputs,
        *,
        online_value: Optional[float] = None,
    ) -> InfluenceBreakdown:
        """Compute baseline influence, audit any fairness clamps and store the result."""

        now = self.now()
        snapshot = self.store.latest_influence(player_id)
        state_record = self.store.get_campaign(player_id)
        seed = None
        if state_record is not None:
            seed = f"{state_record[0].seed}:{now.isoformat()}"
        breakdown = fairness_engine.compute_influence_baseline(inputs, snapshot, seed, self.settings)

        events = []
        floor_event = fairness_engine.floor_audit_event(
            player_id, breakdown.soft_capped, breakdown.floored, now
        )
        if floor_event is not None:
            events.append(floor_event)
        if online_value is not None:
            report = fairness_engine.analyze_divergence(online_value, breakdown.total, self.settings)
            events.extend(fairness_engine.divergence_audit_events(player_id, report, now))
        for event in events:
            self._track("audit", "track_audit_event", event)

        self.store.record_influence(
            player_id, InfluenceSnapshot(total=breakdown.total, level=inputs.level, taken_at=now)
        )
        return breakdown


__all__ = ["CampaignService"]
