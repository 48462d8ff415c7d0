"""TypedDict models for store records."""

from datetime import datetime
from typing import TypedDict


class AlertRecord(TypedDict):
    id: str
    project_id: str
    name: str
    type: str  # ERROR_RATE | LATENCY_P50 | LATENCY_P95 | LATENCY_P99
    operator: str  # GREATER_THAN | LESS_THAN
    threshold: float
    window_mins: int
    severity: str  # CRITICAL | HIGH | MEDIUM | LOW
    pending_mins: int | None
    cooldown_mins: int | None
    enabled: bool
    state: str  # INACTIVE | PENDING | FIRING | RESOLVED
    state_changed_at: str | None  # ISO 8601
    last_triggered_at: str | None  # ISO 8601
    last_evaluated_at: str | None  # ISO 8601


class SpanRecord(TypedDict):
    id: str
    trace_id: str
    trace_name: str
    name: str
    level: str  # DEBUG | DEFAULT | WARNING | ERROR
    status_message: str | None
    model: str | None
    start_time: datetime
    end_time: datetime | None
    prompt_tokens: int | None
    completion_tokens: int | None
    total_cost: float | None
    output: object  # Decoded JSON, may embed a stack trace


class RepositoryRecord(TypedDict):
    id: str
    project_id: str
    full_name: str


class CommitRecord(TypedDict):
    sha: str
    repo_id: str
    message: str
    author: str
    author_email: str | None
    timestamp: datetime


class PullRequestRecord(TypedDict):
    number: int
    repo_id: str
    title: str
    author: str
    merged_at: datetime


class AlertHistoryRecord(TypedDict):
    id: int
    alert_id: str
    created_at: str  # ISO 8601
    previous_state: str
    state: str
    value: float
    threshold: float
    sample_count: int
    notified: bool
    investigation_id: int | None


class InvestigationRecord(TypedDict):
    id: int
    alert_id: str
    project_id: str
    created_at: str  # ISO 8601
    window_start: str  # ISO 8601
    window_end: str  # ISO 8601
    trace_analysis: str  # JSON-serialized TraceAnalysisOutput
    code_correlation: str | None  # JSON-serialized CodeCorrelationOutput
