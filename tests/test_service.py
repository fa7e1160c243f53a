"""Integration tests for CampaignService against a temporary database."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from campaign_trail import opposition
from campaign_trail.exceptions import (
    InvalidStateTransition,
    RecordNotFound,
    StaleRecordError,
    ValidationError,
)
from campaign_trail.fairness import InfluenceInputs
from campaign_trail.models import (
    CampaignPhase,
    CampaignStatus,
    EndorsementSource,
    EndorsementTier,
    MitigationAction,
    ResearchStatus,
    ResearchType,
    ScandalCategory,
    ScandalStatus,
)
from campaign_trail.service import CampaignService
from campaign_trail.telemetry import TelemetryCollector

START = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture()
def clock():
    return FakeClock(START)


@pytest.fixture()
def telemetry(tmp_path):
    return TelemetryCollector(tmp_path / "telemetry.db")


@pytest.fixture()
def service(tmp_path, clock, telemetry):
    return CampaignService(tmp_path / "campaigns.db", clock=clock, telemetry=telemetry)


def test_start_campaign_and_status(service):
    state = service.start_campaign("alice")
    assert state.cycle == 1
    assert state.phase == CampaignPhase.ANNOUNCEMENT
    assert state.version == 1

    status = service.status("alice")
    assert status["phase"] == "announcement"
    assert status["status"] == "running"
    assert status["completion_percent"] == 0.0
    assert status["phase_hours_remaining"] == pytest.approx(4.0)
    assert "declare_candidacy" in status["allowed_actions"]
    assert status["can_restart"] is False

    with pytest.raises(InvalidStateTransition):
        service.start_campaign("alice")


def test_unknown_player(service):
    with pytest.raises(RecordNotFound):
        service.status("ghost")


def test_phase_gating(service):
    service.start_campaign("alice")
    declared = service.perform_action("alice", "declare_candidacy")
    assert declared.candidacy_declared
    assert declared.actions[-1].action == "declare_candidacy"

    with pytest.raises(InvalidStateTransition):
        service.perform_action("alice", "conduct_rally")
    with pytest.raises(InvalidStateTransition):
        service.commission_research("alice", "bob", ResearchType.FINANCIAL, 50_000)


def test_phase_advances_on_the_clock(service, clock):
    service.start_campaign("alice")
    clock.advance(hours=5)
    state = service.advance_phase("alice")
    assert state.phase == CampaignPhase.FUNDRAISING

    events = service.store.export_events("alice")
    transitions = [e for e in events if e["action"] == "phase_transition"]
    assert transitions[0]["payload"] == {"from": "announcement", "to": "fundraising", "cycle": 1}

    # Advancing again at the same instant changes nothing.
    again = service.advance_phase("alice")
    assert again.phase == CampaignPhase.FUNDRAISING
    assert len([e for e in service.store.export_events("alice") if e["action"] == "phase_transition"]) == 1


def test_raise_funds_applies_spend_pressure(service):
    started = service.start_campaign("alice")
    state, credited = service.raise_funds("alice", 100_000)
    expected = 100_000 * (1 - 0.5 * started.spend_pressure_index)
    assert credited == pytest.approx(expected)
    assert state.funds_raised == pytest.approx(expected)


def test_early_advance(service):
    service.start_campaign("alice")
    with pytest.raises(InvalidStateTransition):
        service.advance_early("alice")
    service.perform_action("alice", "declare_candidacy")
    state = service.advance_early("alice")
    assert state.phase == CampaignPhase.FUNDRAISING
    with pytest.raises(InvalidStateTransition):
        service.advance_early("alice")


def test_polls_follow_schedule(service, clock, telemetry):
    service.start_campaign("alice")
    first = service.generate_poll("alice")
    assert first is not None
    assert first.base_support == pytest.approx(30.0)

    clock.advance(minutes=10)
    assert service.generate_poll("alice") is None
    forced = service.generate_poll("alice", force=True)
    assert forced is not None

    clock.advance(minutes=25)
    assert service.generate_poll("alice") is not None
    assert len(service.store.list_snapshots("alice")) == 3
    assert service.polling_trend("alice").peak >= service.polling_trend("alice").low

    telemetry.flush()
    assert telemetry.get_polling_summary()["alice"]["snapshots"] == 3
    assert "generate_poll" in telemetry.get_performance_summary()


def test_endorsements_and_sweep(service, clock):
    service.start_campaign("alice")
    first = service.acquire_endorsement("alice", EndorsementSource.UNION, EndorsementTier.STATE)
    second = service.acquire_endorsement("alice", EndorsementSource.UNION, EndorsementTier.STATE)
    service.acquire_endorsement("alice", EndorsementSource.GRASSROOTS, EndorsementTier.STATE)
    assert (first.influence_bonus, second.influence_bonus) == (5.0, 4.0)

    state, _ = service.get_campaign("alice")
    assert state.endorsements_acquired == 3
    portfolio = service.endorsement_portfolio("alice")
    assert portfolio.category_counts["union"] == 2
    recommendations = service.endorsement_recommendations("alice")
    assert all(isinstance(source, EndorsementSource) for source in recommendations)

    clock.advance(hours=2)
    assert service.sweep_endorsements() >= 1
    remaining = service.store.list_endorsements("alice")
    assert all(record.source != EndorsementSource.GRASSROOTS for record in remaining)


def test_scandal_lifecycle(service, clock):
    service.start_campaign("alice")
    scandal = service.trigger_scandal("alice", ScandalCategory.LEGAL)
    assert scandal.category == ScandalCategory.LEGAL
    assert service.get_campaign("alice")[0].active_scandals == 1
    assert service.scandal_penalty("alice") == pytest.approx(scandal.reputation_hit)

    refused = service.mitigate_scandal("alice", scandal.id, MitigationAction.PR_FIRM)
    assert refused.success is False

    service.raise_funds("alice", 200_000)
    accepted = service.mitigate_scandal("alice", scandal.id, MitigationAction.PR_FIRM)
    assert accepted.success
    assert service.store.get_scandal(scandal.id).mitigations == (MitigationAction.PR_FIRM,)

    with pytest.raises(InvalidStateTransition):
        service.resolve_scandal("alice", scandal.id)
    with pytest.raises(RecordNotFound):
        service.resolve_scandal("bob", scandal.id)

    clock.advance(hours=60)
    assert service.sweep_scandals() == 1
    assert service.store.get_scandal(scandal.id).status == ScandalStatus.RESOLVED
    assert service.get_campaign("alice")[0].active_scandals == 0
    assert service.scandal_penalty("alice") == 0.0


def test_contain_scandal_is_gated_and_recorded(service, clock, telemetry):
    service.start_campaign("alice")
    scandal = service.trigger_scandal("alice", ScandalCategory.LEGAL)
    contained = service.contain_scandal("alice", scandal.id)
    assert contained.status == ScandalStatus.CONTAINED
    assert service.store.get_scandal(scandal.id).contained_at == START
    assert service.get_campaign("alice")[0].actions[-1].action == "contain_scandal"
    events = [e for e in service.store.export_events("alice") if e["action"] == "scandal_contained"]
    assert [e["payload"]["scandal_id"] for e in events] == [scandal.id]
    with pytest.raises(InvalidStateTransition):
        service.contain_scandal("alice", scandal.id)

    second = service.trigger_scandal("alice", ScandalCategory.GAFFE)
    service.pause_campaign("alice")
    with pytest.raises(InvalidStateTransition):
        service.contain_scandal("alice", second.id)
    assert service.store.get_scandal(second.id).status == ScandalStatus.DISCOVERED

    telemetry.flush()
    assert telemetry.get_metric_counts()["scandal"]["contained"] == 1


def test_scandal_lowers_polling(service, clock):
    service.start_campaign("alice")
    clean = service.generate_poll("alice")
    service.trigger_scandal("alice", ScandalCategory.ETHICS)
    clock.advance(minutes=25)
    tainted = service.generate_poll("alice")
    assert tainted.base_support < clean.base_support


def test_opposition_research_ads_and_counters(service, clock, monkeypatch):
    monkeypatch.setattr(opposition, "backfire_probability", lambda *args, **kwargs: 0.0)
    service.start_campaign("alice")
    service.start_campaign("bob")
    clock.advance(hours=5)
    service.raise_funds("alice", 1_000_000)
    service.raise_funds("bob", 1_000_000)

    research, result = service.commission_research("alice", "bob", ResearchType.FINANCIAL, 50_000)
    assert result.success
    assert service.complete_due_research() == []
    clock.advance(hours=1)
    finished = service.complete_due_research()
    assert [r.id for r in finished] == [research.id]
    assert finished[0].status in (ResearchStatus.COMPLETE, ResearchStatus.FAILED)

    alice_before = service.get_campaign("alice")[0].reputation
    bob_before = service.get_campaign("bob")[0].reputation
    ad, result = service.launch_negative_ad("alice", "bob", 25_000)
    assert result.success
    assert service.store.get_negative_ad(ad.id) == ad
    assert service.get_campaign("alice")[0].reputation == pytest.approx(alice_before + ad.attacker_impact)
    bob_after_ad = service.get_campaign("bob")[0].reputation
    assert bob_after_ad == pytest.approx(bob_before + ad.target_impact)

    counter, result = service.counter_negative_ad("bob", ad.id, 100_000)
    assert result.success
    bob_after_counter = service.get_campaign("bob")[0].reputation
    assert bob_after_counter == pytest.approx(bob_after_ad - ad.target_impact * counter.reduction, abs=1e-3)

    with pytest.raises(RecordNotFound):
        service.counter_negative_ad("bob", "missing", 10_000)
    with pytest.raises(RecordNotFound):
        service.launch_negative_ad("bob", "alice", 25_000, research_id=research.id)


def test_backfired_ad_cannot_be_countered(service, clock, monkeypatch):
    monkeypatch.setattr(opposition, "backfire_probability", lambda *args, **kwargs: 1.0)
    service.start_campaign("alice")
    service.start_campaign("bob")
    clock.advance(hours=5)
    service.raise_funds("alice", 1_000_000)
    service.raise_funds("bob", 1_000_000)

    ad, result = service.launch_negative_ad("alice", "bob", 25_000)
    assert result.success and ad.backfired
    bob_before = service.get_campaign("bob")[0]
    with pytest.raises(ValidationError):
        service.counter_negative_ad("bob", ad.id, 100_000)
    bob_after = service.get_campaign("bob")[0]
    assert bob_after.reputation == pytest.approx(bob_before.reputation)
    assert bob_after.funds_spent == bob_before.funds_spent
    assert service.store.list_counter_ads(ad.id) == []


def test_opposition_needs_an_existing_target(service, clock):
    service.start_campaign("alice")
    clock.advance(hours=5)
    service.raise_funds("alice", 1_000_000)
    before = service.get_campaign("alice")[0]

    with pytest.raises(RecordNotFound):
        service.launch_negative_ad("alice", "ghost", 25_000)
    with pytest.raises(RecordNotFound):
        service.commission_research("alice", "ghost", ResearchType.FINANCIAL, 50_000)

    after = service.get_campaign("alice")[0]
    assert after.funds_spent == before.funds_spent
    assert service.store.list_negative_ads("alice") == []
    assert service.store.list_research("alice") == []


def test_pause_and_resume_freeze_the_clock(service, clock):
    service.start_campaign("alice")
    clock.advance(hours=1)
    paused = service.pause_campaign("alice")
    assert paused.status == CampaignStatus.PAUSED
    with pytest.raises(InvalidStateTransition):
        service.perform_action("alice", "declare_candidacy")
    with pytest.raises(InvalidStateTransition):
        service.pause_campaign("alice")

    clock.advance(hours=10)
    assert service.status("alice")["phase"] == "announcement"
    service.resume_campaign("alice")
    status = service.status("alice")
    assert status["status"] == "running"
    assert status["phase"] == "announcement"
    assert status["phase_hours_remaining"] == pytest.approx(3.0)


def test_withdraw_and_rollover(service, clock):
    service.start_campaign("alice")
    service.trigger_scandal("alice", ScandalCategory.GAFFE)
    withdrawn = service.withdraw_campaign("alice")
    assert withdrawn.status == CampaignStatus.WITHDRAWN
    with pytest.raises(InvalidStateTransition):
        service.withdraw_campaign("alice")

    clock.advance(hours=1)
    next_cycle = service.start_campaign("alice")
    assert next_cycle.cycle == 2
    assert next_cycle.phase == CampaignPhase.ANNOUNCEMENT
    assert next_cycle.active_scandals == 1
    assert [s.cycle for s in service.store.campaign_history("alice")] == [1]
    assert service.status("alice")["status"] == "running"


def test_complete_requires_results_phase(service, clock):
    service.start_campaign("alice")
    with pytest.raises(InvalidStateTransition):
        service.complete_campaign("alice")

    clock.advance(hours=27)
    completed = service.complete_campaign("alice")
    assert completed.status == CampaignStatus.COMPLETED
    assert service.status("alice")["phase"] == "results"
    with pytest.raises(InvalidStateTransition):
        service.complete_campaign("alice")
    with pytest.raises(InvalidStateTransition):
        service.withdraw_campaign("alice")


def test_advance_all_completes_finished_campaigns(service, clock):
    service.start_campaign("alice")
    service.start_campaign("bob")
    clock.advance(hours=27)
    assert service.advance_all() == 2

    status = service.status("alice")
    assert status["phase"] == "results"
    assert status["status"] == "completed"
    assert status["completion_percent"] == 100.0
    assert status["can_restart"] is True
    assert service.advance_all() == 0


def test_balance_and_costs(service):
    service.start_campaign("alice")
    service.start_campaign("bob")
    service.generate_poll("alice")
    service.generate_poll("bob")

    adjustment = service.balance_adjustment("alice")
    assert adjustment.leader_id in {"alice", "bob"}
    assert service.action_cost("alice", 1_000) >= 1_000
    assert service.action_cost("carol", 1_000) == 1_000
    assert 0.01 <= service.fair_probability("bob", 0.5) <= 0.99


def test_compute_influence_audits_clamps(service, telemetry):
    service.start_campaign("alice")
    breakdown = service.compute_influence(
        "alice", InfluenceInputs(donation=10_000, level=3), online_value=100.0
    )
    assert breakdown.total >= 30
    events = telemetry.get_audit_events(player_id="alice")
    assert {e["event_type"] for e in events} == {"fairness_floor", "fairness_divergence"}
    assert service.store.latest_influence("alice").total == breakdown.total

    follow_up = service.compute_influence("alice", InfluenceInputs(donation=0, level=1))
    assert follow_up.floor == pytest.approx(max(5.0, breakdown.total * 0.85), abs=1e-3)


def test_concurrent_stale_write_is_rejected(service):
    service.start_campaign("alice")
    stale_state, stale_clock = service.get_campaign("alice")
    service.raise_funds("alice", 10_000)
    with pytest.raises(StaleRecordError):
        service.store.update_campaign(stale_state, stale_clock, START)


class BrokenTelemetry:
    def __getattr__(self, name):
        raise RuntimeError("telemetry offline")


def test_telemetry_failures_do_not_break_actions(tmp_path, clock):
    service = CampaignService(tmp_path / "campaigns.db", clock=clock, telemetry=BrokenTelemetry())
    state = service.start_campaign("alice")
    assert state.cycle == 1
    service.raise_funds("alice", 1_000)
