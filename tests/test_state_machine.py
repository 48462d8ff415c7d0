"""Tests for the alert state machine and the SQLite state writer."""

import asyncio
import sqlite3
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from traceguard.alerting.models import Alert, AlertOperator, AlertSeverity, AlertState, AlertType
from traceguard.alerting.state_machine import (
    SqliteAlertStateWriter,
    compute_transition,
    cooldown_elapsed,
    pending_elapsed,
)
from traceguard.errors import AlertNotFoundError, StateConflictError
from traceguard.storage.store import get_alert, save_alert, set_alert_enabled, to_db_time

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _alert(**overrides: Any) -> Alert:
    fields: dict[str, Any] = {
        "id": "a1",
        "project_id": "p1",
        "name": "Error rate",
        "type": AlertType.ERROR_RATE,
        "operator": AlertOperator.GREATER_THAN,
        "threshold": 5.0,
    }
    fields.update(overrides)
    return Alert(**fields)


def _save(conn: sqlite3.Connection, **overrides: Any) -> None:
    fields: dict[str, Any] = {
        "alert_id": "a1",
        "project_id": "p1",
        "name": "Error rate",
        "alert_type": "ERROR_RATE",
        "operator": "GREATER_THAN",
        "threshold": 5.0,
    }
    fields.update(overrides)
    save_alert(conn, **fields)


# ---------------------------------------------------------------------------
# Severity defaults
# ---------------------------------------------------------------------------


class TestSeverityDefaults:
    @pytest.mark.parametrize(
        ("severity", "pending", "cooldown"),
        [
            (AlertSeverity.CRITICAL, 1, 5),
            (AlertSeverity.HIGH, 2, 15),
            (AlertSeverity.MEDIUM, 3, 30),
            (AlertSeverity.LOW, 5, 60),
        ],
    )
    def test_defaults_by_severity(self, severity: AlertSeverity, pending: int, cooldown: int) -> None:
        alert = _alert(severity=severity)
        assert alert.effective_pending_mins == pending
        assert alert.effective_cooldown_mins == cooldown

    def test_overrides_win(self) -> None:
        alert = _alert(severity=AlertSeverity.LOW, pending_mins=0, cooldown_mins=10)
        assert alert.effective_pending_mins == 0
        assert alert.effective_cooldown_mins == 10


# ---------------------------------------------------------------------------
# Pure transition function
# ---------------------------------------------------------------------------


class TestComputeTransition:
    def test_inactive_stays_inactive(self) -> None:
        decision = compute_transition(_alert(), False, NOW)
        assert decision.new_state is AlertState.INACTIVE
        assert decision.should_notify is False

    def test_inactive_to_pending(self) -> None:
        decision = compute_transition(_alert(), True, NOW)
        assert decision.new_state is AlertState.PENDING
        assert decision.should_notify is False

    def test_pending_to_inactive_when_cleared(self) -> None:
        alert = _alert(state=AlertState.PENDING, state_changed_at=NOW - timedelta(minutes=10))
        assert compute_transition(alert, False, NOW).new_state is AlertState.INACTIVE

    def test_pending_holds_until_duration_elapsed(self) -> None:
        alert = _alert(state=AlertState.PENDING, state_changed_at=NOW - timedelta(minutes=2), pending_mins=3)
        decision = compute_transition(alert, True, NOW)
        assert decision.new_state is AlertState.PENDING
        assert decision.should_notify is False

    def test_pending_fires_at_exact_duration(self) -> None:
        alert = _alert(state=AlertState.PENDING, state_changed_at=NOW - timedelta(minutes=3), pending_mins=3)
        decision = compute_transition(alert, True, NOW)
        assert decision.new_state is AlertState.FIRING
        assert decision.should_notify is True

    def test_pending_with_null_changed_at_fires(self) -> None:
        alert = _alert(state=AlertState.PENDING, state_changed_at=None)
        assert compute_transition(alert, True, NOW).new_state is AlertState.FIRING

    def test_firing_entry_respects_cooldown(self) -> None:
        alert = _alert(
            state=AlertState.PENDING,
            state_changed_at=NOW - timedelta(minutes=5),
            last_triggered_at=NOW - timedelta(minutes=1),
            cooldown_mins=10,
        )
        decision = compute_transition(alert, True, NOW)
        assert decision.new_state is AlertState.FIRING
        assert decision.should_notify is False

    def test_firing_renotifies_after_cooldown(self) -> None:
        alert = _alert(state=AlertState.FIRING, last_triggered_at=NOW - timedelta(minutes=30), cooldown_mins=30)
        decision = compute_transition(alert, True, NOW)
        assert decision.new_state is AlertState.FIRING
        assert decision.should_notify is True

    def test_firing_within_cooldown_is_silent(self) -> None:
        alert = _alert(state=AlertState.FIRING, last_triggered_at=NOW - timedelta(minutes=29), cooldown_mins=30)
        assert compute_transition(alert, True, NOW).should_notify is False

    def test_firing_to_resolved_notifies(self) -> None:
        alert = _alert(state=AlertState.FIRING, last_triggered_at=NOW)
        decision = compute_transition(alert, False, NOW)
        assert decision.new_state is AlertState.RESOLVED
        assert decision.should_notify is True

    @pytest.mark.parametrize("condition_met", [True, False])
    def test_resolved_settles_to_inactive(self, condition_met: bool) -> None:
        alert = _alert(state=AlertState.RESOLVED, state_changed_at=NOW - timedelta(minutes=1))
        decision = compute_transition(alert, condition_met, NOW)
        assert decision.new_state is AlertState.INACTIVE
        assert decision.should_notify is False

    @pytest.mark.parametrize("state", list(AlertState))
    def test_disabled_forces_inactive(self, state: AlertState) -> None:
        alert = _alert(state=state, enabled=False, state_changed_at=NOW - timedelta(days=1))
        decision = compute_transition(alert, True, NOW)
        assert decision.new_state is AlertState.INACTIVE
        assert decision.should_notify is False

    def test_null_timestamps(self) -> None:
        alert = _alert()
        assert cooldown_elapsed(alert, NOW) is True
        assert pending_elapsed(alert, NOW) is True


# ---------------------------------------------------------------------------
# SQLite writer
# ---------------------------------------------------------------------------


class TestSqliteAlertStateWriter:
    async def test_unknown_alert(self, conn: sqlite3.Connection) -> None:
        writer = SqliteAlertStateWriter(conn)
        with pytest.raises(AlertNotFoundError):
            await writer.transition("missing", True, NOW)

    async def test_transition_persists_and_stamps_changed_at(self, conn: sqlite3.Connection) -> None:
        _save(conn)
        writer = SqliteAlertStateWriter(conn)

        transition = await writer.transition("a1", True, NOW)

        assert transition.previous_state is AlertState.INACTIVE
        assert transition.new_state is AlertState.PENDING
        assert transition.changed_at == NOW
        record = get_alert(conn, "a1")
        assert record is not None
        assert record["state"] == "PENDING"
        assert record["state_changed_at"] == to_db_time(NOW)
        assert record["last_evaluated_at"] == to_db_time(NOW)

    async def test_unchanged_state_keeps_changed_at(self, conn: sqlite3.Connection) -> None:
        _save(conn, state="PENDING", state_changed_at=NOW - timedelta(minutes=1), pending_mins=5)
        writer = SqliteAlertStateWriter(conn)

        transition = await writer.transition("a1", True, NOW)

        assert transition.new_state is AlertState.PENDING
        record = get_alert(conn, "a1")
        assert record is not None
        assert record["state_changed_at"] == to_db_time(NOW - timedelta(minutes=1))
        assert record["last_evaluated_at"] == to_db_time(NOW)

    async def test_transition_never_writes_last_triggered(self, conn: sqlite3.Connection) -> None:
        _save(conn, state="PENDING", state_changed_at=NOW - timedelta(minutes=10))
        writer = SqliteAlertStateWriter(conn)

        transition = await writer.transition("a1", True, NOW)

        assert transition.new_state is AlertState.FIRING
        assert transition.should_notify is True
        record = get_alert(conn, "a1")
        assert record is not None
        assert record["last_triggered_at"] is None

        await writer.record_notification("a1", NOW)
        record = get_alert(conn, "a1")
        assert record is not None
        assert record["last_triggered_at"] == to_db_time(NOW)

    async def test_concurrent_ticks_apply_one_transition_each(self, conn: sqlite3.Connection) -> None:
        _save(conn)
        writer = SqliteAlertStateWriter(conn)

        first, second = await asyncio.gather(
            writer.transition("a1", True, NOW),
            writer.transition("a1", True, NOW),
        )

        # Serialized: the second tick sees PENDING and stays there
        assert first.new_state is AlertState.PENDING
        assert second.previous_state is AlertState.PENDING
        assert second.new_state is AlertState.PENDING

    async def test_transition_and_notify_holds_lock_through_delivery(self, conn: sqlite3.Connection) -> None:
        _save(conn, state="FIRING", state_changed_at=NOW - timedelta(hours=1), cooldown_mins=10)
        writer = SqliteAlertStateWriter(conn)
        delivered: list[str] = []

        async def notify(transition: Any) -> bool:
            await asyncio.sleep(0.05)
            delivered.append(transition.dedup_key)
            return True

        (first, first_sent), (second, second_sent) = await asyncio.gather(
            writer.transition_and_notify("a1", True, NOW, notify),
            writer.transition_and_notify("a1", True, NOW, notify),
        )

        assert first.should_notify is True
        assert first_sent is True
        assert second.should_notify is False
        assert second_sent is False
        assert len(delivered) == 1
        record = get_alert(conn, "a1")
        assert record is not None
        assert record["last_triggered_at"] == to_db_time(NOW)

    async def test_transition_and_notify_failed_delivery_keeps_cooldown_open(self, conn: sqlite3.Connection) -> None:
        _save(conn, state="FIRING", state_changed_at=NOW - timedelta(hours=1))
        writer = SqliteAlertStateWriter(conn)

        async def notify(_transition: Any) -> bool:
            return False

        transition, sent = await writer.transition_and_notify("a1", False, NOW, notify)

        assert transition.new_state is AlertState.RESOLVED
        assert sent is False
        record = get_alert(conn, "a1")
        assert record is not None
        assert record["last_triggered_at"] is None

    async def test_conflicting_external_write_raises(self, conn: sqlite3.Connection) -> None:
        _save(conn)
        original = conn.execute

        def racing_execute(sql: str, *args: Any) -> Any:
            # Another process flips the row between our read and our compare-and-set
            if "AND state_changed_at IS ?" in sql:
                original(
                    "UPDATE alerts SET state = 'FIRING', state_changed_at = ? WHERE id = 'a1'",
                    (to_db_time(NOW),),
                )
            return original(sql, *args)

        wrapped = _ConnProxy(conn, racing_execute)
        writer = SqliteAlertStateWriter(wrapped)  # type: ignore[arg-type]

        with pytest.raises(StateConflictError):
            await writer.transition("a1", True, NOW)

    async def test_disable_mid_pending_forces_inactive(self, conn: sqlite3.Connection) -> None:
        _save(conn, pending_mins=5)
        writer = SqliteAlertStateWriter(conn)

        pending = await writer.transition("a1", True, NOW)
        assert pending.new_state is AlertState.PENDING

        set_alert_enabled(conn, "a1", False)
        disabled = await writer.transition("a1", True, NOW + timedelta(seconds=30))

        assert disabled.new_state is AlertState.INACTIVE
        assert disabled.should_notify is False

    async def test_cooldown_limits_notifications_across_ticks(self, conn: sqlite3.Connection) -> None:
        """cooldown=10, ticks 2 minutes apart, condition always met: notify at most every 10 minutes."""
        _save(conn, pending_mins=0, cooldown_mins=10)
        writer = SqliteAlertStateWriter(conn)

        notified_at: list[datetime] = []
        for tick in range(16):
            now = NOW + timedelta(minutes=2 * tick)
            transition = await writer.transition("a1", True, now)
            if transition.should_notify:
                notified_at.append(now)
                await writer.record_notification("a1", now)

        assert notified_at
        gaps = [b - a for a, b in zip(notified_at, notified_at[1:], strict=False)]
        assert all(gap >= timedelta(minutes=10) for gap in gaps)
        # FIRING from the second tick, then every 10 minutes within the 30-minute run
        assert notified_at == [NOW + timedelta(minutes=m) for m in (2, 12, 22)]


class _ConnProxy:
    """Delegates to a real connection but routes execute() through a hook."""

    def __init__(self, conn: sqlite3.Connection, execute: Any) -> None:
        self._conn = conn
        self.execute = execute

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)
