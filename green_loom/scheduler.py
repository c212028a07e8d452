"""Background clock that completes due deployments and records daily snapshots."""
from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .service import DeploymentService
from .telemetry import get_telemetry

logger = logging.getLogger(__name__)


class ResolutionScheduler:
    """Wraps APScheduler to drive :class:`DeploymentService` on a timer."""

    def __init__(self, service: DeploymentService, interval_seconds: Optional[int] = None) -> None:
        self.service = service
        self.interval_seconds = interval_seconds or service.settings.scheduler_interval_seconds
        self.scheduler = BackgroundScheduler(timezone="UTC")

    def start(self) -> None:
        self.scheduler.add_job(
            self._complete_due,
            "interval",
            seconds=self.interval_seconds,
            id="complete_due",
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self._daily_snapshot,
            "cron",
            hour=self.service.settings.snapshot_hour,
            minute=0,
            id="daily_snapshot",
        )
        self.scheduler.start()
        get_telemetry().track_system_event("scheduler_started", source="resolution_scheduler")
        logger.info(
            "Resolution scheduler started (every %ss, snapshot at %02d:00 UTC)",
            self.interval_seconds,
            self.service.settings.snapshot_hour,
        )

    def shutdown(self) -> None:
        self.scheduler.shutdown(wait=False)
        get_telemetry().track_system_event("scheduler_stopped", source="resolution_scheduler")

    def _complete_due(self) -> None:
        try:
            completed = self.service.complete_due()
        except Exception as exc:
            logger.exception("Completing due deployments failed")
            get_telemetry().track_error(
                type(exc).__name__, operation="complete_due", error_details=str(exc)
            )
            return
        if completed:
            logger.info("Completed %d deployments", len(completed))

    def _daily_snapshot(self) -> None:
        try:
            self.service.record_daily_snapshot()
        except Exception as exc:
            logger.exception("Recording daily snapshot failed")
            get_telemetry().track_error(
                type(exc).__name__, operation="daily_snapshot", error_details=str(exc)
            )


__all__ = ["ResolutionScheduler", "BackgroundScheduler"]
