"""Time-bucketed span distribution and anomaly detection.

The alert window is split into fixed 5-minute buckets aligned to the epoch.
Every bucket in the window is present, including empty ones, because a gap in
traffic is itself a signal. Each bucket is then compared against the
window-wide average to flag error bursts, latency spikes and throughput drops.
"""

from datetime import UTC, datetime, timedelta

from pydantic import BaseModel

from traceguard.alerting.models import AlertType
from traceguard.rca.models import (
    AnomalySeverity,
    AnomalyType,
    DetectedAnomaly,
    TimeDistributionBucket,
)
from traceguard.storage.models import SpanRecord

TIME_BUCKET_MINUTES = 5
MAX_ANOMALIES = 10


class AnomalyThresholds(BaseModel):
    """Multipliers and floors used when comparing a bucket to the window average."""

    error_burst_multiplier: float = 3.0
    high_error_burst_multiplier: float = 5.0
    min_errors_for_burst: int = 5
    latency_spike_multiplier: float = 2.0
    high_latency_spike_multiplier: float = 3.0
    min_latency_for_spike: float = 100.0  # ms
    throughput_drop_fraction: float = 0.5
    high_throughput_drop_fraction: float = 0.25
    min_baseline_throughput: float = 10.0


DEFAULT_THRESHOLDS = AnomalyThresholds()


def _bucket_floor(dt: datetime, bucket: timedelta) -> datetime:
    epoch_seconds = dt.timestamp()
    size = bucket.total_seconds()
    return datetime.fromtimestamp((epoch_seconds // size) * size, tz=UTC)


def calculate_time_distribution(
    spans: list[SpanRecord],
    window_start: datetime,
    window_end: datetime,
) -> list[TimeDistributionBucket]:
    """Count spans, errors and mean latency per 5-minute bucket across the whole window."""
    bucket_size = timedelta(minutes=TIME_BUCKET_MINUTES)
    counts: dict[datetime, list[int]] = {}  # bucket -> [errors, total]
    latencies: dict[datetime, list[float]] = {}

    bucket_start = _bucket_floor(window_start, bucket_size)
    while bucket_start <= window_end:
        counts[bucket_start] = [0, 0]
        latencies[bucket_start] = []
        bucket_start += bucket_size

    for span in spans:
        key = _bucket_floor(span["start_time"], bucket_size)
        bucket_counts = counts.get(key)
        if bucket_counts is None:
            continue
        bucket_counts[1] += 1
        if span["level"] == "ERROR":
            bucket_counts[0] += 1
        if span["end_time"] is not None:
            latencies[key].append((span["end_time"] - span["start_time"]).total_seconds() * 1000)

    return [
        TimeDistributionBucket(
            bucket=key,
            error_count=errors,
            span_count=total,
            avg_latency=sum(latencies[key]) / len(latencies[key]) if latencies[key] else 0.0,
        )
        for key, (errors, total) in sorted(counts.items())
    ]


def detect_anomalies(
    alert_type: AlertType,
    distribution: list[TimeDistributionBucket],
    thresholds: AnomalyThresholds = DEFAULT_THRESHOLDS,
) -> list[DetectedAnomaly]:
    """Flag buckets that deviate from the window average. High severity first, top 10."""
    if not distribution:
        return []

    n = len(distribution)
    avg_errors = sum(b.error_count for b in distribution) / n
    avg_latency = sum(b.avg_latency for b in distribution) / n
    avg_throughput = sum(b.span_count for b in distribution) / n

    anomalies: list[DetectedAnomaly] = []

    for bucket in distribution:
        if (
            bucket.error_count > thresholds.min_errors_for_burst
            and bucket.error_count > avg_errors * thresholds.error_burst_multiplier
        ):
            ratio = bucket.error_count / avg_errors if avg_errors > 0 else 0.0
            high = bucket.error_count > avg_errors * thresholds.high_error_burst_multiplier
            anomalies.append(
                DetectedAnomaly(
                    type=AnomalyType.ERROR_BURST,
                    timestamp=bucket.bucket,
                    description=(
                        f"{bucket.error_count} errors in {TIME_BUCKET_MINUTES} minutes ({ratio:.1f}x average)"
                    ),
                    severity=AnomalySeverity.HIGH if high else AnomalySeverity.MEDIUM,
                )
            )

        if (
            alert_type.is_latency
            and bucket.avg_latency > avg_latency * thresholds.latency_spike_multiplier
            and bucket.avg_latency > thresholds.min_latency_for_spike
        ):
            ratio = bucket.avg_latency / avg_latency if avg_latency > 0 else 0.0
            high = bucket.avg_latency > avg_latency * thresholds.high_latency_spike_multiplier
            anomalies.append(
                DetectedAnomaly(
                    type=AnomalyType.LATENCY_SPIKE,
                    timestamp=bucket.bucket,
                    description=f"Latency spiked to {bucket.avg_latency:.0f}ms ({ratio:.1f}x average)",
                    severity=AnomalySeverity.HIGH if high else AnomalySeverity.MEDIUM,
                )
            )

        if (
            avg_throughput > thresholds.min_baseline_throughput
            and bucket.span_count < avg_throughput * thresholds.throughput_drop_fraction
        ):
            share = (bucket.span_count / avg_throughput) * 100
            high = bucket.span_count < avg_throughput * thresholds.high_throughput_drop_fraction
            anomalies.append(
                DetectedAnomaly(
                    type=AnomalyType.THROUGHPUT_DROP,
                    timestamp=bucket.bucket,
                    description=f"Throughput dropped to {bucket.span_count} spans ({share:.0f}% of average)",
                    severity=AnomalySeverity.HIGH if high else AnomalySeverity.MEDIUM,
                )
            )

    anomalies.sort(key=lambda a: 0 if a.severity is AnomalySeverity.HIGH else 1)
    return anomalies[:MAX_ANOMALIES]
