"""Background jobs that keep campaigns moving while nobody is acting."""

from __future__ import annotations

import logging
import os
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .models import CampaignStatus
from .service import CampaignService
from .telemetry import get_telemetry

logger = logging.getLogger(__name__)


def _env_minutes(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default
    return max(1, value)


class CampaignScheduler:
    """Registers the periodic campaign jobs on an APScheduler instance.

    Polling runs on the configured polling interval. Phase advancement,
    scandal checks and sweeps default to shorter cadences and may be tuned with
    ``CAMPAIGN_TRAIL_*_MINUTES`` environment variables.
    """

    def __init__(self, service: CampaignService, *, scheduler: Optional[BackgroundScheduler] = None) -> None:
        self.service = service
        self.scheduler = scheduler or BackgroundScheduler()
        self._telemetry = get_telemetry()
        self.phase_minutes = _env_minutes("CAMPAIGN_TRAIL_PHASE_MINUTES", 5)
        self.poll_minutes = _env_minutes(
            "CAMPAIGN_TRAIL_POLL_MINUTES", service.settings.polling.interval_minutes
        )
        self.sweep_minutes = _env_minutes("CAMPAIGN_TRAIL_SWEEP_MINUTES", 15)
        self.research_minutes = _env_minutes("CAMPAIGN_TRAIL_RESEARCH_MINUTES", 10)

    def start(self) -> None:
        self.scheduler.add_job(
            self._guard("advance_phases", self.service.advance_all),
            "interval",
            minutes=self.phase_minutes,
            id="advance_phases",
        )
        self.scheduler.add_job(
            self._guard("polling", self._poll_all),
            "interval",
            minutes=self.poll_minutes,
            id="polling",
        )
        self.scheduler.add_job(
            self._guard("scandal_checks", self._check_scandals),
            "interval",
            minutes=self.poll_minutes,
            id="scandal_checks",
        )
        self.scheduler.add_job(
            self._guard("sweeps", self._sweep),
            "interval",
            minutes=self.sweep_minutes,
            id="sweeps",
        )
        self.scheduler.add_job(
            self._guard("research", self.service.complete_due_research),
            "interval",
            minutes=self.research_minutes,
            id="research",
        )
        self.scheduler.start()
        logger.info(
            "Campaign scheduler started (phases %sm, polling %sm, sweeps %sm)",
            self.phase_minutes,
            self.poll_minutes,
            self.sweep_minutes,
        )
        try:
            self._telemetry.track_system_event("scheduler_started", source="scheduler")
        except Exception:
            logger.debug("Telemetry tracking for scheduler_started failed", exc_info=True)

    def shutdown(self) -> None:
        self.scheduler.shutdown(wait=False)
        try:
            self._telemetry.track_system_event("scheduler_stopped", source="scheduler")
        except Exception:
            logger.debug("Telemetry tracking for scheduler_stopped failed", exc_info=True)

    def _guard(self, name: str, job: Callable[[], object]) -> Callable[[], None]:
        """Wrap a job so one failure is logged and reported but never kills the scheduler."""

        def run() -> None:
            try:
                job()
            except Exception as exc:
                logger.exception("Scheduled job %s failed", name)
                try:
                    self._telemetry.track_error(type(exc).__name__, operation=name, error_details=str(exc))
                except Exception:
                    logger.debug("Telemetry tracking for %s failure failed", name, exc_info=True)

        run.__name__ = f"campaign_{name}"
        return run

    def _running_players(self):
        for state, clock in self.service.store.all_campaigns():
            if clock.status == CampaignStatus.RUNNING:
                yield state.player_id

    def _poll_all(self) -> int:
        taken = 0
        for player_id in list(self._running_players()):
            if self.service.generate_poll(player_id) is not None:
                taken += 1
        return taken

    def _check_scandals(self) -> int:
        triggered = 0
        for player_id in list(self._running_players()):
            if self.service.check_scandal_risk(player_id) is not None:
                triggered += 1
        return triggered

    def _sweep(self) -> None:
        self.service.sweep_endorsements()
        self.service.sweep_scandals()


__all__ = ["CampaignScheduler", "BackgroundScheduler", "get_telemetry"]
