"""Run a full scripted campaign cycle against a simulated clock."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import DEFAULT_STATE_DB
from ..exceptions import CampaignError
from ..models import (
    CampaignPhase,
    CampaignStatus,
    EndorsementTier,
    MitigationAction,
    ResearchStatus,
    ResearchType,
)
from ..service import CampaignService
from ..telemetry import TelemetryCollector

logger = logging.getLogger(__name__)

DEFAULT_PLAYERS = ["alice", "bob", "carol"]


class SimulatedClock:
    """Manually advanced clock handed to the service."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += timedelta(minutes=minutes)


@dataclass
class PlayerPlan:
    player_id: str
    donation_per_tick: float = 80000.0
    research_budget: float = 60000.0
    ad_budget: float = 40000.0
    counter_budget: float = 25000.0
    research_id: Optional[str] = None
    ad_launched: bool = False
    endorsements: int = 0
    notes: List[str] = field(default_factory=list)


def _act(plan: PlayerPlan, service: CampaignService, rival: str) -> None:
    """One tick of scripted behaviour for ``plan.player_id``."""

    state, clock = service.get_campaign(plan.player_id)
    if clock.status != CampaignStatus.RUNNING:
        return
    phase = state.phase

    if phase == CampaignPhase.ANNOUNCEMENT and not state.candidacy_declared:
        service.perform_action(plan.player_id, "declare_candidacy")
    if phase != CampaignPhase.RESULTS:
        service.raise_funds(plan.player_id, plan.donation_per_tick)

    if phase in (CampaignPhase.FUNDRAISING, CampaignPhase.ACTIVE) and plan.endorsements < 2:
        recommended = service.endorsement_recommendations(plan.player_id, limit=1)
        if recommended:
            tier = list(EndorsementTier)[plan.endorsements % len(EndorsementTier)]
            service.acquire_endorsement(plan.player_id, recommended[0], tier)
            plan.endorsements += 1

    if phase == CampaignPhase.FUNDRAISING and plan.research_id is None:
        research_type = list(ResearchType)[len(plan.player_id) % len(ResearchType)]
        research, result = service.commission_research(
            plan.player_id, rival, research_type, plan.research_budget
        )
        if research is not None:
            plan.research_id = research.id
        else:
            plan.notes.append(result.message)

    if phase == CampaignPhase.ACTIVE:
        if not state.debate_submitted:
            service.perform_action(plan.player_id, "submit_debate_performance")
        if not plan.ad_launched and plan.research_id is not None:
            research = service.store.get_research(plan.research_id)
            if research is not None and research.status != ResearchStatus.PENDING:
                usable = research.id if research.status == ResearchStatus.COMPLETE else None
                ad, _ = service.launch_negative_ad(
                    plan.player_id, rival, plan.ad_budget, research_id=usable
                )
                plan.ad_launched = True
                if ad is not None and not ad.backfired:
                    _respond(service, ad.id, rival, plan.counter_budget)

    for scandal in service.store.list_scandals(plan.player_id, include_resolved=False):
        if not scandal.mitigations:
            service.mitigate_scandal(plan.player_id, scandal.id, MitigationAction.PRESS_CONFERENCE)


def _respond(service: CampaignService, ad_id: str, target: str, amount: float) -> None:
    try:
        service.counter_negative_ad(target, ad_id, amount)
    except CampaignError as exc:
        logger.info("Counter-ad by %s skipped: %s", target, exc)


def run_simulation(
    *,
    base_db: Path,
    players: List[str],
    start: Optional[datetime] = None,
    output_dir: Optional[Path] = None,
) -> Dict[str, Any]:
    """Play every player through one complete cycle and summarise the outcome."""

    sim_db = base_db.with_suffix(".campaign_sim.db")
    if sim_db.exists():
        sim_db.unlink()
    telemetry_path = sim_db.with_suffix(".telemetry.db")
    if telemetry_path.exists():
        telemetry_path.unlink()
    telemetry = TelemetryCollector(telemetry_path)
    clock = SimulatedClock(start or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc))
    service = CampaignService(sim_db, clock=clock, telemetry=telemetry)

    plans = [PlayerPlan(player_id=player) for player in players]
    for plan in plans:
        service.start_campaign(plan.player_id)

    step = service.settings.polling.interval_minutes
    total_minutes = sum(service.settings.phases.durations_real_hours.values()) * 60
    timeline: List[Dict[str, Any]] = []
    ticks = int(total_minutes // step) + 2
    for tick in range(ticks):
        service.advance_all()
        for idx, plan in enumerate(plans):
            rival = plans[(idx + 1) % len(plans)].player_id
            try:
                _act(plan, service, rival)
            except CampaignError as exc:
                plan.notes.append(str(exc))
            if service.store.get_campaign(plan.player_id)[1].status == CampaignStatus.RUNNING:
                service.generate_poll(plan.player_id)
                service.check_scandal_risk(plan.player_id)
        service.complete_due_research()
        service.sweep_endorsements()
        service.sweep_scandals()
        timeline.append(
            {
                "tick": tick,
                "timestamp": clock().isoformat(),
                "phases": {
                    plan.player_id: service.get_campaign(plan.player_id)[0].phase.value
                    for plan in plans
                },
            }
        )
        clock.advance(step)
    service.advance_all()
    telemetry.flush()

    standings = {}
    for plan in plans:
        state, phase_clock = service.get_campaign(plan.player_id)
        snapshot = service.store.latest_snapshot(plan.player_id)
        trend = service.polling_trend(plan.player_id)
        standings[plan.player_id] = {
            "status": phase_clock.status.value,
            "phase": state.phase.value,
            "final_support": snapshot.final_support if snapshot else None,
            "trend": trend.direction.value,
            "momentum": trend.momentum_class.value,
            "reputation": round(state.reputation, 2),
            "funds_raised": round(state.funds_raised, 2),
            "funds_spent": round(state.funds_spent, 2),
            "endorsements": state.endorsements_acquired,
            "scandals": len(service.store.list_scandals(plan.player_id)),
            "notes": plan.notes,
        }

    result = {
        "players": players,
        "ticks": ticks,
        "timeline": timeline,
        "standings": standings,
        "telemetry": telemetry.generate_report(hours=24),
    }

    if output_dir is not None:
        output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        output_path = output_dir / f"campaign_simulation_{timestamp}.json"
        output_path.write_text(json.dumps(result, indent=2, default=str), encoding="utf-8")
        result["output_path"] = str(output_path)

    return result


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Simulate one full campaign cycle.")
    parser.add_argument(
        "--db",
        type=Path,
        default=DEFAULT_STATE_DB,
        help=f"Base database path for simulation state (default: {DEFAULT_STATE_DB}).",
    )
    parser.add_argument(
        "--players",
        nargs="+",
        default=DEFAULT_PLAYERS,
        help="Player ids to simulate (at least two).",
    )
    parser.add_argument("--output-dir", type=Path, help="Write the JSON result here.")
    args = parser.parse_args(argv)
    if len(args.players) < 2:
        parser.error("at least two players are needed for opposition activity")
    return args


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    result = run_simulation(base_db=args.db, players=args.players, output_dir=args.output_dir)
    print(json.dumps(result["standings"], indent=2, default=str))


if __name__ == "__main__":
    main()
