"""Prometheus metric definitions for TraceGuard self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

EVALUATION_DURATION_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
INVESTIGATION_DURATION_BUCKETS = (0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0)
REQUEST_DURATION_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)

# ---------------------------------------------------------------------------
# Alert evaluation metrics
# ---------------------------------------------------------------------------

EVALUATIONS_TOTAL = Counter(
    "traceguard_alert_evaluations_total",
    "Total number of alert evaluation cycles by outcome",
    labelnames=["status"],
)

EVALUATION_DURATION = Histogram(
    "traceguard_alert_evaluation_duration_seconds",
    "Duration of a single alert evaluation cycle in seconds",
    buckets=EVALUATION_DURATION_BUCKETS,
)

STATE_TRANSITIONS_TOTAL = Counter(
    "traceguard_alert_state_transitions_total",
    "Total number of alert state changes",
    labelnames=["from_state", "to_state"],
)

NOTIFICATIONS_TOTAL = Counter(
    "traceguard_notifications_total",
    "Total number of notification dispatch attempts",
    labelnames=["state", "status"],
)

DEPENDENCY_FAILURES = Counter(
    "traceguard_dependency_failures_total",
    "Failures or timeouts of external dependency calls",
    labelnames=["dependency", "reason"],
)

SCHEDULED_ALERTS = Gauge(
    "traceguard_scheduled_alert_loops",
    "Number of per-alert evaluation loops currently scheduled",
)

# ---------------------------------------------------------------------------
# Root-cause investigation metrics
# ---------------------------------------------------------------------------

INVESTIGATIONS_TOTAL = Counter(
    "traceguard_investigations_total",
    "Total number of root-cause investigations",
    labelnames=["trigger", "status"],
)

INVESTIGATION_DURATION = Histogram(
    "traceguard_investigation_duration_seconds",
    "Time taken to analyze traces and correlate code changes in seconds",
    buckets=INVESTIGATION_DURATION_BUCKETS,
)

# ---------------------------------------------------------------------------
# HTTP API / health metrics
# ---------------------------------------------------------------------------

REQUESTS_TOTAL = Counter(
    "traceguard_requests_total",
    "Total number of API requests",
    labelnames=["endpoint", "status"],
)

REQUEST_DURATION = Histogram(
    "traceguard_request_duration_seconds",
    "End-to-end API request duration in seconds",
    labelnames=["endpoint"],
    buckets=REQUEST_DURATION_BUCKETS,
)

COMPONENT_HEALTHY = Gauge(
    "traceguard_component_healthy",
    "Whether a dependency component is healthy (1=healthy, 0=unhealthy)",
    labelnames=["component"],
)

APP_INFO = Info(
    "traceguard",
    "TraceGuard build information",
)
