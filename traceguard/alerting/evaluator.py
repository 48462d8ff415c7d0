"""Alert condition evaluation: a read-only decision over the alert's metric window.

Never writes anything, so it is safe to retry or to call redundantly. A slow or
failing metric source raises TransientDependencyError instead of reporting the
condition as not met.
"""

import asyncio
import logging
from datetime import UTC, datetime

from traceguard.alerting.models import Alert, AlertEvaluationResult, AlertOperator, MetricResult
from traceguard.alerting.window import MetricSource
from traceguard.config import get_settings
from traceguard.errors import TransientDependencyError
from traceguard.observability.metrics import DEPENDENCY_FAILURES

logger = logging.getLogger(__name__)


def is_condition_met(value: float, threshold: float, operator: AlertOperator, sample_count: int) -> bool:
    """Compare a metric value to the threshold. No samples or equality never trigger."""
    if sample_count == 0:
        return False
    if operator is AlertOperator.GREATER_THAN:
        return value > threshold
    return value < threshold


async def read_metric(
    alert: Alert,
    metric_source: MetricSource,
    now: datetime,
    timeout: float | None = None,
) -> MetricResult:
    """Read the alert's windowed metric within a bounded time.

    Raises:
        TransientDependencyError: If the metric read fails or times out.
    """
    if timeout is None:
        timeout = get_settings().metric_timeout_seconds

    try:
        return await asyncio.wait_for(
            metric_source.get_metric(alert.project_id, alert.type, alert.window_mins, now),
            timeout=timeout,
        )
    except TimeoutError as exc:
        DEPENDENCY_FAILURES.labels(dependency="metric", reason="timeout").inc()
        raise TransientDependencyError("metric", f"timed out after {timeout}s") from exc
    except Exception as exc:
        DEPENDENCY_FAILURES.labels(dependency="metric", reason="error").inc()
        raise TransientDependencyError("metric", str(exc)) from exc


async def evaluate_alert(
    alert: Alert,
    metric_source: MetricSource,
    now: datetime | None = None,
    timeout: float | None = None,
) -> AlertEvaluationResult:
    """Evaluate one alert's condition against its trailing metric window.

    Args:
        alert: The alert rule to evaluate.
        metric_source: Where the windowed metric is read from.
        now: Evaluation time. Defaults to the current UTC time.
        timeout: Seconds allowed for the metric read. Defaults to settings.

    Returns:
        The evaluation result. Disabled alerts short-circuit to a no-sample
        result with ``skipped_reason="disabled"``.

    Raises:
        TransientDependencyError: If the metric read fails or times out.
    """
    if not alert.enabled:
        logger.debug("Alert %s disabled, skipping metric read", alert.id)
        return AlertEvaluationResult(
            alert_id=alert.id,
            condition_met=False,
            current_value=0.0,
            threshold=alert.threshold,
            sample_count=0,
            skipped_reason="disabled",
        )

    now = now or datetime.now(UTC)
    metric = await read_metric(alert, metric_source, now, timeout)

    condition_met = is_condition_met(metric.value, alert.threshold, alert.operator, metric.sample_count)

    logger.info(
        "Alert %s (%s): value=%.2f threshold=%s samples=%d condition=%s",
        alert.id,
        alert.name,
        metric.value,
        alert.threshold,
        metric.sample_count,
        "MET" if condition_met else "NOT MET",
    )

    return AlertEvaluationResult(
        alert_id=alert.id,
        condition_met=condition_met,
        current_value=metric.value,
        threshold=alert.threshold,
        sample_count=metric.sample_count,
    )
