"""Tests for the evaluation cycle and alert-triggered investigations."""

import asyncio
import json
import sqlite3
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from traceguard.alerting.loop import AlertLoopDeps, CycleStatus, run_evaluation_cycle, run_investigation
from traceguard.alerting.models import Alert, AlertState, MetricResult
from traceguard.alerting.state_machine import SqliteAlertStateWriter
from traceguard.alerting.window import SqliteMetricSource
from traceguard.errors import StateConflictError, TransientDependencyError
from traceguard.rca.analyzer import SqliteSpanSource
from traceguard.rca.correlation import SqliteChangeSource
from traceguard.storage.models import SpanRecord
from traceguard.storage.store import (
    get_alert,
    get_alert_history,
    get_investigations,
    save_alert,
    save_spans,
    save_trace,
    to_db_time,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _use_mock_settings(mock_settings: Any) -> None:
    """Automatically use mock settings for all tests in this module."""


def _save(conn: sqlite3.Connection, **overrides: Any) -> None:
    fields: dict[str, Any] = {
        "alert_id": "a1",
        "project_id": "p1",
        "name": "Error rate",
        "alert_type": "ERROR_RATE",
        "operator": "GREATER_THAN",
        "threshold": 5.0,
        "pending_mins": 0,
        "cooldown_mins": 10,
    }
    fields.update(overrides)
    save_alert(conn, **fields)


def _save_spans(conn: sqlite3.Connection, total: int, errors: int) -> None:
    """Spans spread over the last four minutes, the first ``errors`` of them failing."""
    save_trace(conn, trace_id="t1", project_id="p1", name="chat", timestamp=NOW - timedelta(minutes=4))
    spans = []
    for i in range(total):
        start = NOW - timedelta(minutes=4) + timedelta(seconds=i * 5)
        spans.append(
            SpanRecord(
                id=f"s{i:03d}",
                trace_id="t1",
                trace_name="chat",
                name="llm-call",
                level="ERROR" if i < errors else "DEFAULT",
                status_message="Upstream timeout" if i < errors else None,
                model="gpt-4o",
                start_time=start,
                end_time=start + timedelta(milliseconds=120),
                prompt_tokens=10,
                completion_tokens=20,
                total_cost=0.001,
                output=None,
            )
        )
    save_spans(conn, spans)


def _deps(conn: sqlite3.Connection, *, dispatch_ok: bool = True, **overrides: Any) -> AlertLoopDeps:
    dispatcher = AsyncMock()
    dispatcher.dispatch.return_value = dispatch_ok
    fields: dict[str, Any] = {
        "conn": conn,
        "metric_source": SqliteMetricSource(conn),
        "writer": SqliteAlertStateWriter(conn),
        "dispatcher": dispatcher,
        "span_source": SqliteSpanSource(conn),
        "change_source": SqliteChangeSource(conn),
        "searcher": None,
    }
    fields.update(overrides)
    return AlertLoopDeps(**fields)


def _metric(value: float, sample_count: int) -> AsyncMock:
    source = AsyncMock()
    source.get_metric.return_value = MetricResult(
        value=value,
        sample_count=sample_count,
        window_start=NOW - timedelta(minutes=5),
        window_end=NOW,
    )
    return source


class TestRunEvaluationCycle:
    async def test_unknown_alert(self, conn: sqlite3.Connection) -> None:
        outcome = await run_evaluation_cycle("missing", _deps(conn), NOW)
        assert outcome.status is CycleStatus.NOT_FOUND

    async def test_disabled_alert_forced_inactive(self, conn: sqlite3.Connection) -> None:
        _save(conn, enabled=False, state="FIRING", state_changed_at=NOW - timedelta(hours=1))
        deps = _deps(conn, metric_source=_metric(50.0, 100))

        outcome = await run_evaluation_cycle("a1", deps, NOW)

        assert outcome.status is CycleStatus.DISABLED
        assert outcome.transition is not None
        assert outcome.transition.new_state is AlertState.INACTIVE
        deps.metric_source.get_metric.assert_not_awaited()
        deps.dispatcher.dispatch.assert_not_awaited()
        record = get_alert(conn, "a1")
        assert record is not None
        assert record["state"] == "INACTIVE"

    async def test_metric_failure_skips_without_state_change(self, conn: sqlite3.Connection) -> None:
        _save(conn, state="PENDING", state_changed_at=NOW - timedelta(minutes=1))
        source = AsyncMock()
        source.get_metric.side_effect = RuntimeError("database is locked")

        outcome = await run_evaluation_cycle("a1", _deps(conn, metric_source=source), NOW)

        assert outcome.status is CycleStatus.SKIPPED
        assert "database is locked" in (outcome.detail or "")
        assert source.get_metric.await_count == 3
        record = get_alert(conn, "a1")
        assert record is not None
        assert record["state"] == "PENDING"
        assert record["last_evaluated_at"] is None
        assert get_alert_history(conn, "a1") == []

    async def test_metric_recovers_on_retry(self, conn: sqlite3.Connection) -> None:
        _save(conn)
        source = _metric(20.0, 100)
        good = source.get_metric.return_value
        source.get_metric.side_effect = [RuntimeError("busy"), good]

        outcome = await run_evaluation_cycle("a1", _deps(conn, metric_source=source), NOW)

        assert outcome.status is CycleStatus.EVALUATED
        assert outcome.transition is not None
        assert outcome.transition.new_state is AlertState.PENDING

    async def test_no_samples_skips_transition(self, conn: sqlite3.Connection) -> None:
        _save(conn, state="FIRING", state_changed_at=NOW - timedelta(minutes=10))

        outcome = await run_evaluation_cycle("a1", _deps(conn), NOW)

        assert outcome.status is CycleStatus.NO_DATA
        assert outcome.evaluation is not None
        assert outcome.evaluation.sample_count == 0
        record = get_alert(conn, "a1")
        assert record is not None
        assert record["state"] == "FIRING"
        assert record["last_evaluated_at"] is None

    async def test_inactive_to_pending_records_history(self, conn: sqlite3.Connection) -> None:
        _save(conn, pending_mins=3)
        _save_spans(conn, total=20, errors=4)
        deps = _deps(conn)

        outcome = await run_evaluation_cycle("a1", deps, NOW)

        assert outcome.status is CycleStatus.EVALUATED
        assert outcome.evaluation is not None
        assert outcome.evaluation.current_value == pytest.approx(20.0)
        assert outcome.notified is False
        assert outcome.investigation_id is None
        deps.dispatcher.dispatch.assert_not_awaited()
        [history] = get_alert_history(conn, "a1")
        assert (history["previous_state"], history["state"]) == ("INACTIVE", "PENDING")
        assert history["sample_count"] == 20

    async def test_unchanged_state_without_notification_records_nothing(self, conn: sqlite3.Connection) -> None:
        _save(conn, pending_mins=3)
        deps = _deps(conn, metric_source=_metric(1.0, 100))

        outcome = await run_evaluation_cycle("a1", deps, NOW)

        assert outcome.status is CycleStatus.EVALUATED
        assert outcome.history_id is None
        assert get_alert_history(conn, "a1") == []

    async def test_firing_notifies_and_investigates(self, conn: sqlite3.Connection) -> None:
        _save(conn, state="PENDING", state_changed_at=NOW - timedelta(minutes=5))
        _save_spans(conn, total=30, errors=10)
        deps = _deps(conn)

        outcome = await run_evaluation_cycle("a1", deps, NOW)

        assert outcome.status is CycleStatus.EVALUATED
        assert outcome.transition is not None
        assert outcome.transition.new_state is AlertState.FIRING
        assert outcome.notified is True
        deps.dispatcher.dispatch.assert_awaited_once()
        alert_id, state, value, threshold, dedup_key = deps.dispatcher.dispatch.await_args.args
        assert (alert_id, state, threshold) == ("a1", AlertState.FIRING, 5.0)
        assert value == pytest.approx(100 / 3)
        assert dedup_key == outcome.transition.dedup_key

        record = get_alert(conn, "a1")
        assert record is not None
        assert record["state"] == "FIRING"
        assert record["last_triggered_at"] is not None

        assert outcome.investigation_id is not None
        [history] = get_alert_history(conn, "a1")
        assert history["notified"] is True
        assert history["investigation_id"] == outcome.investigation_id

        [investigation] = get_investigations(conn, "a1")
        analysis = json.loads(investigation["trace_analysis"])
        assert analysis["summary"]["error_count"] == 10
        assert analysis["error_patterns"][0]["message"] == "Upstream timeout"
        correlation = json.loads(investigation["code_correlation"])
        assert correlation["has_repository"] is False

    async def test_failed_dispatch_leaves_cooldown_untouched(self, conn: sqlite3.Connection) -> None:
        _save(conn, state="FIRING", state_changed_at=NOW - timedelta(hours=1))
        deps = _deps(conn, dispatch_ok=False, metric_source=_metric(0.0, 100))

        outcome = await run_evaluation_cycle("a1", deps, NOW)

        assert outcome.transition is not None
        assert outcome.transition.new_state is AlertState.RESOLVED
        assert outcome.notified is False
        deps.dispatcher.dispatch.assert_awaited_once()
        record = get_alert(conn, "a1")
        assert record is not None
        assert record["state"] == "RESOLVED"
        assert record["last_triggered_at"] is None
        [history] = get_alert_history(conn, "a1")
        assert history["notified"] is False

    async def test_investigation_failure_keeps_firing(self, conn: sqlite3.Connection) -> None:
        _save(conn, state="PENDING", state_changed_at=NOW - timedelta(minutes=5))
        spans = AsyncMock()
        spans.query_spans.side_effect = RuntimeError("span store down")
        deps = _deps(conn, metric_source=_metric(20.0, 100), span_source=spans)

        outcome = await run_evaluation_cycle("a1", deps, NOW)

        assert outcome.status is CycleStatus.EVALUATED
        assert outcome.transition is not None
        assert outcome.transition.new_state is AlertState.FIRING
        assert outcome.investigation_id is None
        assert get_investigations(conn, "a1") == []

    async def test_state_conflict_skips(self, conn: sqlite3.Connection) -> None:
        _save(conn)
        writer = AsyncMock()
        writer.transition_and_notify.side_effect = StateConflictError("a1")
        deps = _deps(conn, metric_source=_metric(20.0, 100), writer=writer)

        outcome = await run_evaluation_cycle("a1", deps, NOW)

        assert outcome.status is CycleStatus.SKIPPED
        deps.dispatcher.dispatch.assert_not_awaited()

    async def test_overlapping_cycles_notify_once_per_cooldown(self, conn: sqlite3.Connection) -> None:
        _save(
            conn,
            state="FIRING",
            state_changed_at=NOW - timedelta(hours=1),
            last_triggered_at=NOW - timedelta(minutes=20),
        )

        async def slow_dispatch(*_args: object) -> bool:
            await asyncio.sleep(0.05)
            return True

        deps = _deps(conn, metric_source=_metric(20.0, 100))
        deps.dispatcher.dispatch.side_effect = slow_dispatch

        first, second = await asyncio.gather(
            run_evaluation_cycle("a1", deps, NOW),
            run_evaluation_cycle("a1", deps, NOW),
        )

        assert [first.notified, second.notified].count(True) == 1
        deps.dispatcher.dispatch.assert_awaited_once()
        record = get_alert(conn, "a1")
        assert record is not None
        assert record["state"] == "FIRING"
        assert record["last_triggered_at"] == to_db_time(NOW)


@pytest.fixture
def alert(conn: sqlite3.Connection) -> Alert:
    """Stored alert with ten spans in its window, half of them failing."""
    _save(conn)
    _save_spans(conn, total=10, errors=5)
    record = get_alert(conn, "a1")
    assert record is not None
    return Alert.from_record(record)


class TestRunInvestigation:
    async def test_saves_analysis_and_correlation(self, conn: sqlite3.Connection, alert: Alert) -> None:
        result = await run_investigation(alert, _deps(conn), NOW - timedelta(minutes=5), NOW, alert_value=50.0)

        assert result.trace_analysis.summary.total_spans == 10
        assert result.code_correlation is not None
        assert result.code_correlation.has_repository is False
        [stored] = get_investigations(conn, "a1")
        assert stored["id"] == result.investigation_id

    async def test_correlation_failure_saves_partial(self, conn: sqlite3.Connection, alert: Alert) -> None:
        changes = AsyncMock()
        changes.get_repository.side_effect = RuntimeError("metadata unavailable")
        deps = _deps(conn, change_source=changes)

        result = await run_investigation(alert, deps, NOW - timedelta(minutes=5), NOW, alert_value=50.0)

        assert result.code_correlation is None
        [stored] = get_investigations(conn, "a1")
        assert stored["code_correlation"] is None
        assert json.loads(stored["trace_analysis"])["summary"]["error_count"] == 5

    async def test_analysis_failure_raises(self, conn: sqlite3.Connection, alert: Alert) -> None:
        spans = AsyncMock()
        spans.query_spans.side_effect = RuntimeError("span store down")
        deps = _deps(conn, span_source=spans)

        with pytest.raises(TransientDependencyError):
            await run_investigation(alert, deps, NOW - timedelta(minutes=5), NOW, alert_value=50.0)

        assert spans.query_spans.await_count == 3
        assert get_investigations(conn, "a1") == []
