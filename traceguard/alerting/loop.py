"""One evaluation cycle of a per-alert loop, and the root-cause investigation it triggers.

A cycle is: load alert -> evaluate (retried on transient failures) -> skip if
the window had no samples -> transition via the state writer -> dispatch a
notification if the transition asks for one -> record history -> on entry into
FIRING, analyze the alert window and correlate it with code changes.

Nothing here raises for an expected outcome; every cycle ends in a
CycleOutcome whose status says what happened.
"""

import asyncio
import logging
import sqlite3
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TypeVar

from pydantic import BaseModel

from traceguard.alerting.dispatcher import NotificationDispatcher
from traceguard.alerting.evaluator import evaluate_alert
from traceguard.alerting.models import (
    Alert,
    AlertEvaluationResult,
    AlertState,
    AlertStateTransition,
)
from traceguard.alerting.state_machine import AlertStateWriter, SqliteAlertStateWriter
from traceguard.alerting.window import MetricSource, SqliteMetricSource
from traceguard.config import get_settings
from traceguard.errors import AlertNotFoundError, StateConflictError, TransientDependencyError
from traceguard.observability.metrics import (
    EVALUATION_DURATION,
    EVALUATIONS_TOTAL,
    INVESTIGATION_DURATION,
    INVESTIGATIONS_TOTAL,
)
from traceguard.rca.analyzer import SpanSource, SqliteSpanSource, analyze_traces
from traceguard.rca.correlation import ChangeSource, SqliteChangeSource, correlate_code_changes
from traceguard.rca.models import (
    CodeCorrelationInput,
    CodeCorrelationOutput,
    TraceAnalysisInput,
    TraceAnalysisOutput,
)
from traceguard.rca.search import CodeSearcher, HttpCodeSearcher, is_code_search_configured
from traceguard.storage.store import attach_investigation, get_alert, save_alert_history, save_investigation

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CycleStatus(StrEnum):
    EVALUATED = "evaluated"
    NO_DATA = "no_data"
    SKIPPED = "skipped"  # Transient failure after retries; state untouched
    DISABLED = "disabled"
    STOPPED = "stopped"
    NOT_FOUND = "not_found"


class CycleOutcome(BaseModel):
    """What one evaluation cycle did."""

    alert_id: str
    status: CycleStatus
    evaluation: AlertEvaluationResult | None = None
    transition: AlertStateTransition | None = None
    notified: bool = False
    history_id: int | None = None
    investigation_id: int | None = None
    detail: str | None = None


class InvestigationResult(BaseModel):
    investigation_id: int
    alert_id: str
    window_start: datetime
    window_end: datetime
    trace_analysis: TraceAnalysisOutput
    code_correlation: CodeCorrelationOutput | None


class AlertLoopDeps:
    """Collaborators of the evaluation cycle. One instance is shared by all alert loops."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        metric_source: MetricSource,
        writer: AlertStateWriter,
        dispatcher: NotificationDispatcher,
        span_source: SpanSource,
        change_source: ChangeSource,
        searcher: CodeSearcher | None,
    ) -> None:
        self.conn = conn
        self.metric_source = metric_source
        self.writer = writer
        self.dispatcher = dispatcher
        self.span_source = span_source
        self.change_source = change_source
        self.searcher = searcher

    @classmethod
    def from_connection(cls, conn: sqlite3.Connection) -> "AlertLoopDeps":
        """Wire the SQLite-backed sources; code search is used only when configured."""
        return cls(
            conn=conn,
            metric_source=SqliteMetricSource(conn),
            writer=SqliteAlertStateWriter(conn),
            dispatcher=NotificationDispatcher(),
            span_source=SqliteSpanSource(conn),
            change_source=SqliteChangeSource(conn),
            searcher=HttpCodeSearcher() if is_code_search_configured() else None,
        )


async def _with_retry(operation: Callable[[], Awaitable[T]], description: str) -> T:
    """Run a read-only step, retrying TransientDependencyError with exponential backoff."""
    settings = get_settings()
    attempts = max(settings.activity_max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientDependencyError as exc:
            if attempt >= attempts:
                raise
            wait = settings.activity_backoff_seconds * 2 ** (attempt - 1)
            logger.warning(
                "%s failed (%s), retrying in %.1fs (%d/%d)",
                description,
                exc,
                wait,
                attempt,
                attempts - 1,
            )
            await asyncio.sleep(wait)
    raise RuntimeError("Unreachable")  # pragma: no cover


# ---------------------------------------------------------------------------
# Investigation
# ---------------------------------------------------------------------------


async def run_investigation(
    alert: Alert,
    deps: AlertLoopDeps,
    window_start: datetime,
    window_end: datetime,
    alert_value: float,
    trigger: str = "manual",
    lookback_days: int | None = None,
) -> InvestigationResult:
    """Analyze an alert window, correlate it with recent code changes and save the result.

    A failed trace analysis raises. A failed code correlation is logged and the
    investigation is saved without it.

    Raises:
        TransientDependencyError: If the span query keeps failing after retries.
    """
    start = time.monotonic()
    lookback_days = lookback_days or get_settings().default_lookback_days

    try:
        analysis = await _with_retry(
            lambda: analyze_traces(
                TraceAnalysisInput(
                    project_id=alert.project_id,
                    alert_type=alert.type,
                    alert_value=alert_value,
                    threshold=alert.threshold,
                    window_start=window_start,
                    window_end=window_end,
                ),
                deps.span_source,
            ),
            f"Trace analysis for alert {alert.id}",
        )
    except Exception:
        INVESTIGATIONS_TOTAL.labels(trigger=trigger, status="error").inc()
        INVESTIGATION_DURATION.observe(time.monotonic() - start)
        raise

    correlation: CodeCorrelationOutput | None = None
    try:
        correlation = await correlate_code_changes(
            CodeCorrelationInput(
                project_id=alert.project_id,
                trace_analysis=analysis,
                alert_triggered_at=window_end,
                lookback_days=lookback_days,
            ),
            deps.change_source,
            deps.searcher,
        )
    except Exception:
        logger.exception("Code correlation failed for alert %s, saving trace analysis only", alert.id)

    investigation_id = await asyncio.to_thread(
        save_investigation,
        deps.conn,
        alert_id=alert.id,
        project_id=alert.project_id,
        window_start=window_start,
        window_end=window_end,
        trace_analysis=analysis.model_dump_json(),
        code_correlation=correlation.model_dump_json() if correlation is not None else None,
    )

    duration = time.monotonic() - start
    INVESTIGATIONS_TOTAL.labels(trigger=trigger, status="success" if correlation is not None else "partial").inc()
    INVESTIGATION_DURATION.observe(duration)
    logger.info("Investigation %d for alert %s saved in %.2fs", investigation_id, alert.id, duration)

    return InvestigationResult(
        investigation_id=investigation_id,
        alert_id=alert.id,
        window_start=window_start,
        window_end=window_end,
        trace_analysis=analysis,
        code_correlation=correlation,
    )


async def _investigate_firing(
    alert: Alert,
    evaluation: AlertEvaluationResult,
    deps: AlertLoopDeps,
    now: datetime,
    history_id: int | None,
) -> int | None:
    """Investigation on entry into FIRING. Failures never affect the alert state."""
    window_start = now - timedelta(minutes=alert.window_mins)
    try:
        result = await run_investigation(
            alert,
            deps,
            window_start=window_start,
            window_end=now,
            alert_value=evaluation.current_value,
            trigger="alert",
        )
    except Exception:
        logger.exception("Root-cause investigation failed for alert %s", alert.id)
        return None

    if history_id is not None:
        await asyncio.to_thread(attach_investigation, deps.conn, history_id, result.investigation_id)
    return result.investigation_id


# ---------------------------------------------------------------------------
# Evaluation cycle
# ---------------------------------------------------------------------------


async def _run_cycle(alert_id: str, deps: AlertLoopDeps, now: datetime) -> CycleOutcome:
    record = await asyncio.to_thread(get_alert, deps.conn, alert_id)
    if record is None:
        logger.warning("Alert %s not found, nothing to evaluate", alert_id)
        return CycleOutcome(alert_id=alert_id, status=CycleStatus.NOT_FOUND)

    alert = Alert.from_record(record)

    if not alert.enabled:
        transition = await deps.writer.transition(alert_id, False, now)
        return CycleOutcome(alert_id=alert_id, status=CycleStatus.DISABLED, transition=transition)

    try:
        evaluation = await _with_retry(
            lambda: evaluate_alert(alert, deps.metric_source, now),
            f"Evaluation of alert {alert_id}",
        )
    except TransientDependencyError as exc:
        logger.warning("Skipping cycle for alert %s: %s", alert_id, exc)
        return CycleOutcome(alert_id=alert_id, status=CycleStatus.SKIPPED, detail=str(exc))

    if evaluation.sample_count == 0:
        logger.info("No samples in window for alert %s, skipping transition", alert_id)
        return CycleOutcome(alert_id=alert_id, status=CycleStatus.NO_DATA, evaluation=evaluation)

    async def _notify(transition: AlertStateTransition) -> bool:
        return await deps.dispatcher.dispatch(
            alert_id,
            transition.new_state,
            evaluation.current_value,
            evaluation.threshold,
            transition.dedup_key,
        )

    try:
        transition, notified = await deps.writer.transition_and_notify(
            alert_id, evaluation.condition_met, now, _notify
        )
    except StateConflictError as exc:
        logger.warning("Skipping cycle for alert %s: %s", alert_id, exc)
        return CycleOutcome(alert_id=alert_id, status=CycleStatus.SKIPPED, evaluation=evaluation, detail=str(exc))
    except AlertNotFoundError:
        logger.warning("Alert %s deleted during evaluation", alert_id)
        return CycleOutcome(alert_id=alert_id, status=CycleStatus.NOT_FOUND, evaluation=evaluation)

    history_id = None
    if transition.new_state is not transition.previous_state or notified:
        history_id = await asyncio.to_thread(
            save_alert_history,
            deps.conn,
            alert_id=alert_id,
            previous_state=transition.previous_state.value,
            state=transition.new_state.value,
            value=evaluation.current_value,
            threshold=evaluation.threshold,
            sample_count=evaluation.sample_count,
            notified=notified,
            created_at=now,
        )

    investigation_id = None
    if transition.new_state is AlertState.FIRING and transition.previous_state is not AlertState.FIRING:
        investigation_id = await _investigate_firing(alert, evaluation, deps, now, history_id)

    return CycleOutcome(
        alert_id=alert_id,
        status=CycleStatus.EVALUATED,
        evaluation=evaluation,
        transition=transition,
        notified=notified,
        history_id=history_id,
        investigation_id=investigation_id,
    )


async def run_evaluation_cycle(alert_id: str, deps: AlertLoopDeps, now: datetime | None = None) -> CycleOutcome:
    """Run one evaluation cycle for an alert and record its outcome metrics."""
    start = time.monotonic()
    outcome = await _run_cycle(alert_id, deps, now or datetime.now(UTC))
    EVALUATIONS_TOTAL.labels(status=outcome.status.value).inc()
    EVALUATION_DURATION.observe(time.monotonic() - start)
    return outcome
