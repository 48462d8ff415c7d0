"""APScheduler integration for per-alert evaluation loops.

Each enabled alert gets its own interval job (``alert-eval:<id>``) on an
AsyncIOScheduler. Jobs never overlap for the same alert (max_instances=1) and
missed runs are coalesced. A stop request sets a flag that the next tick
checks before doing any work, then removes the job.
"""

import contextlib
import logging
import sqlite3
from datetime import UTC, datetime

from apscheduler.jobstores.base import JobLookupError  # type: ignore[import-untyped]
from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from traceguard.alerting.loop import AlertLoopDeps, CycleOutcome, CycleStatus, run_evaluation_cycle
from traceguard.config import get_settings
from traceguard.observability.metrics import SCHEDULED_ALERTS
from traceguard.storage.store import list_enabled_alert_ids

logger = logging.getLogger(__name__)

JOB_ID_PREFIX = "alert-eval:"


def job_id(alert_id: str) -> str:
    return f"{JOB_ID_PREFIX}{alert_id}"


class AlertEvaluationScheduler:
    """Owns the APScheduler instance, the shared loop dependencies and the stop flags."""

    def __init__(self, deps: AlertLoopDeps, interval_seconds: int) -> None:
        self.deps = deps
        self.interval_seconds = interval_seconds
        self.scheduler = AsyncIOScheduler()
        self._stop_requested: set[str] = set()

    async def _evaluation_job(self, alert_id: str) -> CycleOutcome | None:
        """One tick of an alert loop. Never raises into the scheduler."""
        if alert_id in self._stop_requested:
            logger.info("Stop requested for alert %s, not evaluating", alert_id)
            self._remove_job(alert_id)
            return CycleOutcome(alert_id=alert_id, status=CycleStatus.STOPPED)

        try:
            outcome = await run_evaluation_cycle(alert_id, self.deps)
        except Exception:
            logger.exception("Evaluation cycle failed for alert %s", alert_id)
            return None

        if outcome.status is CycleStatus.NOT_FOUND:
            self._remove_job(alert_id)
        return outcome

    def _refresh_gauge(self) -> None:
        SCHEDULED_ALERTS.set(sum(1 for job in self.scheduler.get_jobs() if job.id.startswith(JOB_ID_PREFIX)))

    def _remove_job(self, alert_id: str) -> None:
        with contextlib.suppress(JobLookupError):
            self.scheduler.remove_job(job_id(alert_id))
        self._refresh_gauge()

    def schedule(self, alert_id: str) -> None:
        """Start (or restart) the evaluation loop for an alert."""
        self._stop_requested.discard(alert_id)
        self.scheduler.add_job(
            self._evaluation_job,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            args=[alert_id],
            id=job_id(alert_id),
            name=f"Alert evaluation {alert_id}",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._refresh_gauge()
        logger.info("Scheduled evaluation loop for alert %s every %ds", alert_id, self.interval_seconds)

    def stop(self, alert_id: str) -> bool:
        """Signal an alert loop to stop. Returns False if no loop was scheduled."""
        self._stop_requested.add(alert_id)
        scheduled = self.scheduler.get_job(job_id(alert_id)) is not None
        self._remove_job(alert_id)
        logger.info("Stopped evaluation loop for alert %s", alert_id)
        return scheduled

    def trigger(self, alert_id: str) -> bool:
        """Run the alert's next tick immediately. Returns False if no loop is scheduled."""
        job = self.scheduler.get_job(job_id(alert_id))
        if job is None:
            return False
        job.modify(next_run_time=datetime.now(UTC))
        logger.info("Triggered immediate evaluation for alert %s", alert_id)
        return True

    def is_scheduled(self, alert_id: str) -> bool:
        return self.scheduler.get_job(job_id(alert_id)) is not None


_scheduler: AlertEvaluationScheduler | None = None


def get_scheduler() -> AlertEvaluationScheduler | None:
    return _scheduler


def start_scheduler(conn: sqlite3.Connection, deps: AlertLoopDeps | None = None) -> None:
    """Start one evaluation loop per enabled alert, unless the scheduler is disabled."""
    global _scheduler  # noqa: PLW0603

    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("Alert scheduler disabled (SCHEDULER_ENABLED is false)")
        return

    _scheduler = AlertEvaluationScheduler(
        deps or AlertLoopDeps.from_connection(conn),
        settings.evaluation_interval_seconds,
    )
    for alert_id in list_enabled_alert_ids(conn):
        _scheduler.schedule(alert_id)
    _scheduler.scheduler.start()
    logger.info("Alert scheduler started with %d loop(s)", len(_scheduler.scheduler.get_jobs()))


def stop_scheduler() -> None:
    """Gracefully shut down the scheduler if it is running."""
    global _scheduler  # noqa: PLW0603

    if _scheduler is not None:
        with contextlib.suppress(Exception):
            _scheduler.scheduler.shutdown(wait=False)
        SCHEDULED_ALERTS.set(0)
        logger.info("Alert scheduler stopped")
        _scheduler = None


def schedule_alert(alert_id: str) -> bool:
    """Start the loop for a newly enabled alert. Returns False if the scheduler is not running."""
    if _scheduler is None:
        return False
    _scheduler.schedule(alert_id)
    return True


def stop_evaluation(alert_id: str) -> bool:
    if _scheduler is None:
        return False
    return _scheduler.stop(alert_id)


def trigger_evaluation(alert_id: str) -> bool:
    if _scheduler is None:
        return False
    return _scheduler.trigger(alert_id)
