"""Pydantic models for trace analysis and code correlation.

These records cross the workflow boundary and are stored as JSON on the
investigation record. They carry no behaviour.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from traceguard.alerting.models import AlertType

# ---------------------------------------------------------------------------
# Trace analysis
# ---------------------------------------------------------------------------


class TraceAnalysisInput(BaseModel):
    """Input for a trace analysis run over an alert window."""

    project_id: str
    alert_type: AlertType
    alert_value: float
    threshold: float
    window_start: datetime
    window_end: datetime


class TraceAnalysisSummary(BaseModel):
    total_traces: int = Field(ge=0)
    total_spans: int = Field(ge=0)
    error_count: int = Field(ge=0)
    error_rate: float = Field(ge=0, le=1)
    latency_p50: float = Field(ge=0)
    latency_p95: float = Field(ge=0)
    latency_p99: float = Field(ge=0)
    mean_latency: float = Field(ge=0)


class ErrorPattern(BaseModel):
    """Error messages grouped by their normalized text."""

    message: str
    count: int = Field(gt=0)
    percentage: float = Field(ge=0, le=100)
    sample_span_ids: list[str] = Field(max_length=3)
    stack_trace: str | None = Field(default=None, max_length=500)


class AffectedEndpoint(BaseModel):
    name: str
    error_count: int = Field(ge=0)
    total_count: int = Field(ge=0)
    error_rate: float = Field(ge=0, le=1)
    latency_p95: float = Field(ge=0)
    sample_trace_ids: list[str] = Field(max_length=3)


class AffectedModel(BaseModel):
    model: str
    error_count: int = Field(ge=0)
    avg_latency: float = Field(ge=0)
    avg_tokens: float = Field(ge=0)
    total_cost: float = Field(ge=0)


class TimeDistributionBucket(BaseModel):
    bucket: datetime  # Bucket start
    error_count: int = Field(ge=0)
    span_count: int = Field(ge=0)
    avg_latency: float = Field(ge=0)


class AnomalyType(StrEnum):
    ERROR_BURST = "error_burst"
    LATENCY_SPIKE = "latency_spike"
    THROUGHPUT_DROP = "throughput_drop"


class AnomalySeverity(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"


class DetectedAnomaly(BaseModel):
    type: AnomalyType
    timestamp: datetime
    description: str
    severity: AnomalySeverity


class TraceAnalysisOutput(BaseModel):
    summary: TraceAnalysisSummary
    error_patterns: list[ErrorPattern] = Field(default_factory=list, max_length=10)
    affected_endpoints: list[AffectedEndpoint] = Field(default_factory=list, max_length=20)
    affected_models: list[AffectedModel] = Field(default_factory=list, max_length=10)
    time_distribution: list[TimeDistributionBucket] = Field(default_factory=list)
    anomalies: list[DetectedAnomaly] = Field(default_factory=list, max_length=10)


# ---------------------------------------------------------------------------
# Code correlation
# ---------------------------------------------------------------------------


class CorrelationSignals(BaseModel):
    """Per-signal scores, each in [0, 1], kept for ranking transparency."""

    temporal: float = Field(ge=0, le=1)
    semantic: float = Field(ge=0, le=1)
    path_match: float = Field(ge=0, le=1)


class CorrelatedCommit(BaseModel):
    sha: str
    message: str = Field(max_length=200)
    author: str
    author_email: str | None
    timestamp: datetime
    score: float = Field(ge=0, le=1)
    signals: CorrelationSignals
    files_changed: list[str] = Field(max_length=10)


class CorrelatedPR(BaseModel):
    number: int = Field(gt=0)
    title: str = Field(max_length=200)
    author: str
    merged_at: datetime
    score: float = Field(ge=0, le=1)
    signals: CorrelationSignals
    files_changed: list[str] = Field(max_length=10)


class RelevantCodeChunk(BaseModel):
    file_path: str
    content: str
    start_line: int = Field(gt=0)
    end_line: int = Field(gt=0)
    similarity: float = Field(ge=0, le=1)


class CodeCorrelationInput(BaseModel):
    project_id: str
    trace_analysis: TraceAnalysisOutput
    alert_triggered_at: datetime
    lookback_days: int = Field(default=7, gt=0)


class CodeCorrelationOutput(BaseModel):
    suspected_commits: list[CorrelatedCommit] = Field(default_factory=list, max_length=10)
    suspected_prs: list[CorrelatedPR] = Field(default_factory=list, max_length=5)
    relevant_code_chunks: list[RelevantCodeChunk] = Field(default_factory=list, max_length=20)
    has_repository: bool
    search_query: str = ""
    commits_analyzed: int = Field(default=0, ge=0)
    prs_analyzed: int = Field(default=0, ge=0)
