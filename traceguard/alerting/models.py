"""Pydantic models and enums for alert rules, evaluation results and transitions.

Records that cross the workflow boundary (evaluation result, state transition,
cycle outcome) are plain pydantic models with no behaviour so they can be
serialised with ``model_dump(mode="json")``.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from traceguard.storage.models import AlertRecord
from traceguard.storage.store import from_db_time


class AlertType(StrEnum):
    ERROR_RATE = "ERROR_RATE"
    LATENCY_P50 = "LATENCY_P50"
    LATENCY_P95 = "LATENCY_P95"
    LATENCY_P99 = "LATENCY_P99"

    @property
    def is_latency(self) -> bool:
        return self is not AlertType.ERROR_RATE


class AlertOperator(StrEnum):
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"


class AlertSeverity(StrEnum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class AlertState(StrEnum):
    INACTIVE = "INACTIVE"
    PENDING = "PENDING"
    FIRING = "FIRING"
    RESOLVED = "RESOLVED"


class SeverityDefaults(BaseModel):
    pending_mins: int
    cooldown_mins: int


SEVERITY_DEFAULTS: dict[AlertSeverity, SeverityDefaults] = {
    AlertSeverity.CRITICAL: SeverityDefaults(pending_mins=1, cooldown_mins=5),
    AlertSeverity.HIGH: SeverityDefaults(pending_mins=2, cooldown_mins=15),
    AlertSeverity.MEDIUM: SeverityDefaults(pending_mins=3, cooldown_mins=30),
    AlertSeverity.LOW: SeverityDefaults(pending_mins=5, cooldown_mins=60),
}
FALLBACK_DEFAULTS = SeverityDefaults(pending_mins=3, cooldown_mins=30)

# Percentile requested by each latency alert type
LATENCY_PERCENTILES: dict[AlertType, int] = {
    AlertType.LATENCY_P50: 50,
    AlertType.LATENCY_P95: 95,
    AlertType.LATENCY_P99: 99,
}


class Alert(BaseModel):
    """An alert rule together with its current lifecycle state."""

    id: str
    project_id: str
    name: str
    type: AlertType
    operator: AlertOperator
    threshold: float
    window_mins: int = Field(default=5, ge=1, le=60)
    severity: AlertSeverity = AlertSeverity.MEDIUM
    pending_mins: int | None = Field(default=None, ge=0, le=30)
    cooldown_mins: int | None = Field(default=None, ge=1, le=1440)
    enabled: bool = True
    state: AlertState = AlertState.INACTIVE
    state_changed_at: datetime | None = None
    last_triggered_at: datetime | None = None

    @property
    def effective_pending_mins(self) -> int:
        """Pending duration, falling back to the severity default when unset."""
        if self.pending_mins is not None:
            return self.pending_mins
        return SEVERITY_DEFAULTS.get(self.severity, FALLBACK_DEFAULTS).pending_mins

    @property
    def effective_cooldown_mins(self) -> int:
        """Cooldown between notifications, falling back to the severity default when unset."""
        if self.cooldown_mins is not None:
            return self.cooldown_mins
        return SEVERITY_DEFAULTS.get(self.severity, FALLBACK_DEFAULTS).cooldown_mins

    @classmethod
    def from_record(cls, record: AlertRecord) -> "Alert":
        return cls(
            id=record["id"],
            project_id=record["project_id"],
            name=record["name"],
            type=AlertType(record["type"]),
            operator=AlertOperator(record["operator"]),
            threshold=record["threshold"],
            window_mins=record["window_mins"],
            severity=AlertSeverity(record["severity"]),
            pending_mins=record["pending_mins"],
            cooldown_mins=record["cooldown_mins"],
            enabled=record["enabled"],
            state=AlertState(record["state"]),
            state_changed_at=from_db_time(record["state_changed_at"]) if record["state_changed_at"] else None,
            last_triggered_at=from_db_time(record["last_triggered_at"]) if record["last_triggered_at"] else None,
        )


class MetricResult(BaseModel):
    """Scalar metric computed over a trailing window."""

    value: float
    sample_count: int
    window_start: datetime
    window_end: datetime


class AlertEvaluationResult(BaseModel):
    alert_id: str
    condition_met: bool
    current_value: float
    threshold: float
    sample_count: int
    # Set when the metric was not read at all, e.g. "disabled"
    skipped_reason: str | None = None


class AlertStateTransition(BaseModel):
    alert_id: str
    previous_state: AlertState
    new_state: AlertState
    should_notify: bool
    changed_at: datetime

    @property
    def dedup_key(self) -> str:
        """Stable key for this notification so retried dispatches can be deduplicated downstream."""
        return f"{self.alert_id}:{self.new_state}:{self.changed_at.isoformat()}"
