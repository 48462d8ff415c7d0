"""Alert lifecycle state machine and the single authority that writes alert state.

compute_transition() is a pure function of the alert row, the tick's condition
and the clock. SqliteAlertStateWriter is the only code path that mutates
alerts.state: it serializes transitions per alert id and applies each one as a
single compare-and-set UPDATE, so duplicate or concurrent ticks for the same
alert cannot produce divergent writes.

Transition table:

    INACTIVE  + met       -> PENDING
    INACTIVE  + not met   -> INACTIVE
    PENDING   + not met   -> INACTIVE
    PENDING   + met       -> PENDING, or FIRING once pending duration elapsed
                             (notify if cooldown elapsed)
    FIRING    + met       -> FIRING (re-notify once cooldown elapsed)
    FIRING    + not met   -> RESOLVED (notify)
    RESOLVED  + any       -> INACTIVE

A disabled alert is forced to INACTIVE regardless of elapsed time.
"""

import asyncio
import logging
import sqlite3
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol

from pydantic import BaseModel

from traceguard.alerting.models import Alert, AlertState, AlertStateTransition
from traceguard.errors import AlertNotFoundError, StateConflictError
from traceguard.observability.metrics import STATE_TRANSITIONS_TOTAL
from traceguard.storage.store import compare_and_set_alert_state, get_alert, set_last_triggered, to_db_time

logger = logging.getLogger(__name__)


class TransitionDecision(BaseModel):
    new_state: AlertState
    should_notify: bool


def cooldown_elapsed(alert: Alert, now: datetime) -> bool:
    """True if no notification was ever sent or the cooldown has passed since the last one."""
    if alert.last_triggered_at is None:
        return True
    return now - alert.last_triggered_at >= timedelta(minutes=alert.effective_cooldown_mins)


def pending_elapsed(alert: Alert, now: datetime) -> bool:
    """True if the alert has been in its current state for at least the pending duration."""
    if alert.state_changed_at is None:
        return True
    return now - alert.state_changed_at >= timedelta(minutes=alert.effective_pending_mins)


def compute_transition(alert: Alert, condition_met: bool, now: datetime) -> TransitionDecision:
    """Compute exactly one transition for this tick. Pure; never touches storage."""
    if not alert.enabled:
        return TransitionDecision(new_state=AlertState.INACTIVE, should_notify=False)

    state = alert.state

    if state is AlertState.INACTIVE:
        new_state = AlertState.PENDING if condition_met else AlertState.INACTIVE
        return TransitionDecision(new_state=new_state, should_notify=False)

    if state is AlertState.PENDING:
        if not condition_met:
            return TransitionDecision(new_state=AlertState.INACTIVE, should_notify=False)
        if pending_elapsed(alert, now):
            return TransitionDecision(new_state=AlertState.FIRING, should_notify=cooldown_elapsed(alert, now))
        return TransitionDecision(new_state=AlertState.PENDING, should_notify=False)

    if state is AlertState.FIRING:
        if condition_met:
            return TransitionDecision(new_state=AlertState.FIRING, should_notify=cooldown_elapsed(alert, now))
        return TransitionDecision(new_state=AlertState.RESOLVED, should_notify=True)

    # RESOLVED is a transient marker; always settle back to INACTIVE
    return TransitionDecision(new_state=AlertState.INACTIVE, should_notify=False)


class AlertStateWriter(Protocol):
    """The single write path for alert state."""

    async def transition(
        self,
        alert_id: str,
        condition_met: bool,
        now: datetime | None = None,
    ) -> AlertStateTransition: ...

    async def record_notification(self, alert_id: str, notified_at: datetime) -> None: ...

    async def transition_and_notify(
        self,
        alert_id: str,
        condition_met: bool,
        now: datetime,
        notify: Callable[[AlertStateTransition], Awaitable[bool]],
    ) -> tuple[AlertStateTransition, bool]: ...


class SqliteAlertStateWriter:
    """AlertStateWriter over the SQLite store.

    Transitions for one alert id are serialized with a per-key asyncio.Lock and
    guarded by a compare-and-set on (state, state_changed_at), which also covers
    writers in other processes sharing the same database file.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def transition(
        self,
        alert_id: str,
        condition_met: bool,
        now: datetime | None = None,
    ) -> AlertStateTransition:
        """Apply this tick's transition atomically.

        Raises:
            AlertNotFoundError: If the alert does not exist.
            StateConflictError: If the row changed between read and write.
        """
        now = now or datetime.now(UTC)
        async with self._locks[alert_id]:
            return await asyncio.to_thread(self._apply_transition, alert_id, condition_met, now)

    async def record_notification(self, alert_id: str, notified_at: datetime) -> None:
        """Stamp last_triggered_at after a notification was actually delivered."""
        async with self._locks[alert_id]:
            await asyncio.to_thread(set_last_triggered, self._conn, alert_id, notified_at)

    async def transition_and_notify(
        self,
        alert_id: str,
        condition_met: bool,
        now: datetime,
        notify: Callable[[AlertStateTransition], Awaitable[bool]],
    ) -> tuple[AlertStateTransition, bool]:
        """Apply this tick's transition and deliver its notification under one lock.

        last_triggered_at is stamped before the lock is released, so an
        overlapping tick for the same alert sees the cooldown and does not
        notify a second time.

        Returns:
            The applied transition and whether a notification was delivered.
        """
        async with self._locks[alert_id]:
            transition = await asyncio.to_thread(self._apply_transition, alert_id, condition_met, now)
            if not transition.should_notify:
                return transition, False
            notified = await notify(transition)
            if notified:
                await asyncio.to_thread(set_last_triggered, self._conn, alert_id, now)
            return transition, notified

    def _apply_transition(self, alert_id: str, condition_met: bool, now: datetime) -> AlertStateTransition:
        record = get_alert(self._conn, alert_id)
        if record is None:
            raise AlertNotFoundError(alert_id)

        alert = Alert.from_record(record)
        decision = compute_transition(alert, condition_met, now)
        changed = decision.new_state is not alert.state

        applied = compare_and_set_alert_state(
            self._conn,
            alert_id,
            expected_state=record["state"],
            expected_changed_at=record["state_changed_at"],
            new_state=decision.new_state.value,
            new_changed_at=to_db_time(now) if changed else record["state_changed_at"],
            evaluated_at=to_db_time(now),
        )
        if not applied:
            raise StateConflictError(alert_id)

        if changed:
            STATE_TRANSITIONS_TOTAL.labels(from_state=alert.state.value, to_state=decision.new_state.value).inc()

        logger.info(
            "Alert %s: %s -> %s (notify: %s)",
            alert_id,
            alert.state.value,
            decision.new_state.value,
            decision.should_notify,
        )

        return AlertStateTransition(
            alert_id=alert_id,
            previous_state=alert.state,
            new_state=decision.new_state,
            should_notify=decision.should_notify,
            changed_at=now,
        )
