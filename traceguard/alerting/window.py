"""Trailing-window metric computation over stored spans.

The window is ``[now - window_mins, now)``. Error rate is expressed as a
percentage (0-100); latency percentiles are in milliseconds and use the
nearest-rank method so repeated runs over the same spans give identical values.
"""

import asyncio
import math
import sqlite3
from datetime import datetime, timedelta
from typing import Protocol

from traceguard.alerting.models import LATENCY_PERCENTILES, AlertType, MetricResult
from traceguard.storage.store import count_spans_by_level, list_span_latencies


def percentile(sorted_values: list[float], p: float) -> float:
    """Nearest-rank percentile of an ascending list. Returns 0 for an empty list."""
    if not sorted_values:
        return 0.0
    n = len(sorted_values)
    idx = math.ceil((p / 100) * n) - 1
    return sorted_values[min(max(idx, 0), n - 1)]


def get_metric(
    conn: sqlite3.Connection,
    project_id: str,
    alert_type: AlertType,
    window_mins: int,
    now: datetime,
) -> MetricResult:
    """Compute the metric an alert type watches over the trailing window."""
    window_start = now - timedelta(minutes=window_mins)

    if alert_type is AlertType.ERROR_RATE:
        total, errors = count_spans_by_level(conn, project_id, window_start, now)
        value = (errors / total) * 100 if total > 0 else 0.0
        return MetricResult(value=value, sample_count=total, window_start=window_start, window_end=now)

    latencies = list_span_latencies(conn, project_id, window_start, now)
    value = percentile(latencies, LATENCY_PERCENTILES[alert_type])
    return MetricResult(value=value, sample_count=len(latencies), window_start=window_start, window_end=now)


class MetricSource(Protocol):
    async def get_metric(
        self,
        project_id: str,
        alert_type: AlertType,
        window_mins: int,
        now: datetime,
    ) -> MetricResult: ...


class SqliteMetricSource:
    """MetricSource backed by the span store; queries run in a worker thread."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def get_metric(
        self,
        project_id: str,
        alert_type: AlertType,
        window_mins: int,
        now: datetime,
    ) -> MetricResult:
        return await asyncio.to_thread(get_metric, self._conn, project_id, alert_type, window_mins, now)
