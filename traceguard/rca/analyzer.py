"""Trace window analysis for alert investigations.

Summarizes the spans of an alert window into error/latency statistics, error
patterns, affected endpoints and models, a 5-minute time distribution and the
anomalies found in it. Read-only: every statistic is recomputed per call and
nothing is cached or persisted here.
"""

import asyncio
import logging
import sqlite3
from datetime import UTC, datetime
from typing import Protocol

from traceguard.alerting.window import percentile
from traceguard.config import get_settings
from traceguard.errors import TransientDependencyError
from traceguard.observability.metrics import DEPENDENCY_FAILURES
from traceguard.rca.anomalies import calculate_time_distribution, detect_anomalies
from traceguard.rca.models import (
    AffectedEndpoint,
    AffectedModel,
    TraceAnalysisInput,
    TraceAnalysisOutput,
    TraceAnalysisSummary,
)
from traceguard.rca.patterns import MAX_SAMPLE_IDS, extract_error_patterns
from traceguard.storage.models import SpanRecord
from traceguard.storage.store import query_spans_in_window

logger = logging.getLogger(__name__)

MAX_ENDPOINTS = 20
MAX_MODELS = 10


class SpanSource(Protocol):
    async def query_spans(
        self,
        project_id: str,
        window_start: datetime,
        window_end: datetime,
        limit: int,
    ) -> list[SpanRecord]: ...


class SqliteSpanSource:
    """SpanSource backed by the span store; queries run in a worker thread."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def query_spans(
        self,
        project_id: str,
        window_start: datetime,
        window_end: datetime,
        limit: int,
    ) -> list[SpanRecord]:
        return await asyncio.to_thread(query_spans_in_window, self._conn, project_id, window_start, window_end, limit)


def _latency_ms(span: SpanRecord) -> float | None:
    if span["end_time"] is None:
        return None
    return (span["end_time"] - span["start_time"]).total_seconds() * 1000


def calculate_summary(spans: list[SpanRecord]) -> TraceAnalysisSummary:
    """Overall counts and latency percentiles. Unterminated spans are left out of latency stats."""
    latencies = sorted(lat for s in spans if (lat := _latency_ms(s)) is not None)
    error_count = sum(1 for s in spans if s["level"] == "ERROR")

    return TraceAnalysisSummary(
        total_traces=len({s["trace_id"] for s in spans}),
        total_spans=len(spans),
        error_count=error_count,
        error_rate=error_count / len(spans) if spans else 0.0,
        latency_p50=percentile(latencies, 50),
        latency_p95=percentile(latencies, 95),
        latency_p99=percentile(latencies, 99),
        mean_latency=sum(latencies) / len(latencies) if latencies else 0.0,
    )


def group_by_endpoint(spans: list[SpanRecord]) -> list[AffectedEndpoint]:
    """Per span-name statistics, ranked by error count (top 20)."""
    totals: dict[str, int] = {}
    errors: dict[str, int] = {}
    latencies: dict[str, list[float]] = {}
    trace_ids: dict[str, list[str]] = {}

    for span in spans:
        name = span["name"]
        totals[name] = totals.get(name, 0) + 1
        errors.setdefault(name, 0)
        if span["level"] == "ERROR":
            errors[name] += 1
        lat = _latency_ms(span)
        if lat is not None:
            latencies.setdefault(name, []).append(lat)
        samples = trace_ids.setdefault(name, [])
        if len(samples) < MAX_SAMPLE_IDS and span["trace_id"] not in samples:
            samples.append(span["trace_id"])

    endpoints = [
        AffectedEndpoint(
            name=name,
            error_count=errors[name],
            total_count=total,
            error_rate=errors[name] / total if total > 0 else 0.0,
            latency_p95=percentile(sorted(latencies.get(name, [])), 95),
            sample_trace_ids=trace_ids[name],
        )
        for name, total in totals.items()
    ]
    endpoints.sort(key=lambda e: e.error_count, reverse=True)
    return endpoints[:MAX_ENDPOINTS]


def group_by_model(spans: list[SpanRecord]) -> list[AffectedModel]:
    """Per LLM model statistics, ranked by error count (top 10). Spans without a model are skipped."""
    errors: dict[str, int] = {}
    latencies: dict[str, list[float]] = {}
    tokens: dict[str, list[int]] = {}
    costs: dict[str, float] = {}

    for span in spans:
        model = span["model"]
        if not model:
            continue
        errors.setdefault(model, 0)
        if span["level"] == "ERROR":
            errors[model] += 1
        lat = _latency_ms(span)
        if lat is not None:
            latencies.setdefault(model, []).append(lat)
        token_count = (span["prompt_tokens"] or 0) + (span["completion_tokens"] or 0)
        if token_count > 0:
            tokens.setdefault(model, []).append(token_count)
        costs[model] = costs.get(model, 0.0) + (span["total_cost"] or 0.0)

    models = []
    for model, error_count in errors.items():
        model_latencies = latencies.get(model, [])
        model_tokens = tokens.get(model, [])
        models.append(
            AffectedModel(
                model=model,
                error_count=error_count,
                avg_latency=sum(model_latencies) / len(model_latencies) if model_latencies else 0.0,
                avg_tokens=sum(model_tokens) / len(model_tokens) if model_tokens else 0.0,
                total_cost=costs[model],
            )
        )
    models.sort(key=lambda m: m.error_count, reverse=True)
    return models[:MAX_MODELS]


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=UTC) if dt.tzinfo is None else dt.astimezone(UTC)


async def analyze_traces(
    analysis_input: TraceAnalysisInput,
    span_source: SpanSource,
    limit: int | None = None,
    timeout: float | None = None,
) -> TraceAnalysisOutput:
    """Analyze the spans of an alert window.

    Loads at most ``limit`` of the most recent spans in the window; a larger
    window is truncated to the newest spans rather than rejected.

    Raises:
        TransientDependencyError: If the span query fails or times out.
    """
    settings = get_settings()
    limit = limit or settings.max_spans_to_analyze
    timeout = timeout if timeout is not None else settings.span_query_timeout_seconds
    window_start = _as_utc(analysis_input.window_start)
    window_end = _as_utc(analysis_input.window_end)

    logger.info(
        "Analyzing traces for project %s: %s = %.2f (threshold %s), window %s to %s",
        analysis_input.project_id,
        analysis_input.alert_type.value,
        analysis_input.alert_value,
        analysis_input.threshold,
        window_start.isoformat(),
        window_end.isoformat(),
    )

    try:
        spans = await asyncio.wait_for(
            span_source.query_spans(analysis_input.project_id, window_start, window_end, limit),
            timeout=timeout,
        )
    except TimeoutError as exc:
        DEPENDENCY_FAILURES.labels(dependency="spans", reason="timeout").inc()
        raise TransientDependencyError("spans", f"timed out after {timeout}s") from exc
    except Exception as exc:
        DEPENDENCY_FAILURES.labels(dependency="spans", reason="error").inc()
        raise TransientDependencyError("spans", str(exc)) from exc

    if len(spans) >= limit:
        logger.info("Span cap of %d reached, analyzing the most recent spans only", limit)

    summary = calculate_summary(spans)
    error_patterns = extract_error_patterns(spans)
    time_distribution = calculate_time_distribution(spans, window_start, window_end)
    anomalies = detect_anomalies(analysis_input.alert_type, time_distribution)

    logger.info(
        "Analysis complete: %d spans, %d errors, %d patterns, %d anomalies",
        summary.total_spans,
        summary.error_count,
        len(error_patterns),
        len(anomalies),
    )

    return TraceAnalysisOutput(
        summary=summary,
        error_patterns=error_patterns,
        affected_endpoints=group_by_endpoint(spans),
        affected_models=group_by_model(spans),
        time_distribution=time_distribution,
        anomalies=anomalies,
    )
