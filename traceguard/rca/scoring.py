"""Correlation scoring between code changes and an alert.

Three independent signals, each in [0, 1]:
- temporal: exponential decay of the change's age at alert time
- semantic: similarity of vector-search chunks that live in changed files
- path_match: overlap between changed files and stack-trace file paths

and one weighted-sum combiner. All functions here are pure.
"""

import math
import re
from collections.abc import Iterable
from datetime import datetime, timedelta

from pydantic import BaseModel

from traceguard.config import get_settings
from traceguard.rca.models import AffectedEndpoint, CorrelationSignals, ErrorPattern, RelevantCodeChunk

# --- Constants ---

MIN_CORRELATION_SCORE = 0.3
MIN_CHUNK_SIMILARITY = 0.5
MAX_COMMITS_TO_ANALYZE = 100
MAX_PRS_TO_ANALYZE = 50
MAX_SUSPECTED_COMMITS = 10
MAX_SUSPECTED_PRS = 5
MAX_RELEVANT_CHUNKS = 20
MAX_CHUNK_CONTENT_LENGTH = 500
MAX_SEARCH_QUERY_LENGTH = 2000
MAX_FILES_PER_CHANGE = 10
MAX_TITLE_LENGTH = 200

QUERY_PATTERN_COUNT = 5
QUERY_ENDPOINT_COUNT = 5
QUERY_FRAMES_PER_TRACE = 3
DOMINANT_PATTERN_PERCENTAGE = 50.0
PARTIAL_PATH_PENALTY = 0.9


# --- Weights ---


class CorrelationWeights(BaseModel):
    """Signal weights for the combined score. Normalized to sum to 1 before use."""

    temporal: float = 0.3
    semantic: float = 0.4
    path_match: float = 0.3

    @classmethod
    def from_settings(cls) -> "CorrelationWeights":
        settings = get_settings()
        return cls(
            temporal=settings.correlation_weight_temporal,
            semantic=settings.correlation_weight_semantic,
            path_match=settings.correlation_weight_path,
        ).normalized()

    def normalized(self) -> "CorrelationWeights":
        total = self.temporal + self.semantic + self.path_match
        if total <= 0:
            return CorrelationWeights()
        return CorrelationWeights(
            temporal=self.temporal / total,
            semantic=self.semantic / total,
            path_match=self.path_match / total,
        )


# --- Path helpers ---

_PYTHON_FRAME = re.compile(r'File "([^"]+)", line \d+')
_JS_CALL_FRAME = re.compile(r"at\s+\S+\s+\(([^()\s]+?):\d+:\d+\)")
_JS_BARE_FRAME = re.compile(r"at\s+([^\s():]+):\d+:\d+")
_GENERIC_FRAME = re.compile(r"([A-Za-z0-9_\-./]+\.[A-Za-z]{1,5}):\d+")
_FRAME_PATTERNS = (_PYTHON_FRAME, _JS_CALL_FRAME, _JS_BARE_FRAME, _GENERIC_FRAME)

_EXCLUDED_PATH_MARKERS = (
    "node_modules",
    "<anonymous>",
    "internal/",
    "node:",
    "site-packages",
    "dist-packages",
    "/lib/python",
    "<frozen",
    "<string>",
)

_STACK_FRAME_LINE = re.compile(r"^\s*(?:at\s|File\s\")")
_FUNCTION_NAME = re.compile(r"at\s+([A-Za-z_$][\w$]*(?:\.[A-Za-z_$][\w$]*)*)")
_GENERIC_FUNCTION_NAMES = frozenset({"Object", "Array", "Function", "Promise", "async", "Module", "new"})
_PLACEHOLDER = re.compile(r"<[^>]+>")
_LONG_NUMBER = re.compile(r"\d{10,}")
_WHITESPACE = re.compile(r"\s+")
_ENDPOINT_SEPARATORS = re.compile(r"[/\-_.\s]")


def normalize_path(path: str) -> str:
    """Lowercase, forward slashes, no leading ``./``, ``/app/`` or ``/``."""
    normalized = path.replace("\\", "/").strip()
    if normalized.startswith("./"):
        normalized = normalized[2:]
    if normalized.startswith("/app/"):
        normalized = normalized[len("/app/") :]
    return normalized.lstrip("/").lower()


def _is_project_path(path: str) -> bool:
    if "." not in path.rsplit("/", 1)[-1]:
        return False
    return not any(marker in path for marker in _EXCLUDED_PATH_MARKERS)


def paths_match(a: str, b: str) -> bool:
    """Equal, or one is a suffix of the other on a directory boundary.

    Both arguments must already be normalized.
    """
    if a == b:
        return True
    longer, shorter = (a, b) if len(a) > len(b) else (b, a)
    return bool(shorter) and longer.endswith("/" + shorter)


def extract_paths_from_stack_traces(stack_traces: Iterable[str | None]) -> set[str]:
    """Collect normalized project file paths from Python, JS/TS and generic ``file.ext:line`` frames.

    Dependency and standard-library frames are dropped. Best effort: unrecognized
    frame formats are ignored.
    """
    paths: set[str] = set()
    for stack in stack_traces:
        if not stack:
            continue
        for pattern in _FRAME_PATTERNS:
            for match in pattern.finditer(stack):
                path = match.group(1)
                if _is_project_path(path):
                    paths.add(normalize_path(path))
    return paths


# --- Signals ---


def calculate_temporal_score(
    change_time: datetime,
    alert_time: datetime,
    half_life_hours: float = 24.0,
    lookback: timedelta | None = None,
) -> float:
    """Exponential decay of the change's age, halving every ``half_life_hours``.

    Changes after the alert clamp to 1.0. Changes at or beyond the lookback
    boundary score 0.
    """
    age = alert_time - change_time
    if age <= timedelta(0):
        return 1.0
    if lookback is not None and age >= lookback:
        return 0.0
    age_hours = age.total_seconds() / 3600
    return math.exp(-math.log(2) * age_hours / half_life_hours)


def calculate_semantic_score(files_changed: list[str], chunks: list[RelevantCodeChunk]) -> float:
    """Best chunk similarity among chunks located in one of the changed files.

    A suffix match (``src/auth/login.ts`` vs ``auth/login.ts``) counts with a
    small penalty. 0 when nothing matches.
    """
    if not files_changed or not chunks:
        return 0.0

    chunk_similarity: dict[str, float] = {}
    for chunk in chunks:
        path = normalize_path(chunk.file_path)
        chunk_similarity[path] = max(chunk_similarity.get(path, 0.0), chunk.similarity)

    best = 0.0
    for changed in files_changed:
        changed_path = normalize_path(changed)
        exact = chunk_similarity.get(changed_path)
        if exact is not None:
            best = max(best, exact)
            continue
        for chunk_path, similarity in chunk_similarity.items():
            if paths_match(changed_path, chunk_path):
                best = max(best, similarity * PARTIAL_PATH_PENALTY)
    return min(best, 1.0)


def calculate_path_match_score(files_changed: list[str], stack_paths: set[str]) -> float:
    """Jaccard overlap of changed files and stack-trace paths, suffix-aware.

    Equal sets score 1.0; either side empty scores 0. Several stack paths that
    share a suffix with one changed file (or the reverse) still count as a
    single match, so the score stays within [0, 1].
    """
    changed = {normalize_path(f) for f in files_changed}
    if not changed or not stack_paths:
        return 0.0

    matched_changed = sum(1 for c in changed if any(paths_match(trace_path, c) for trace_path in stack_paths))
    matched_stack = sum(1 for trace_path in stack_paths if any(paths_match(trace_path, c) for c in changed))
    matched = min(matched_changed, matched_stack)
    union = len(changed) + len(stack_paths) - matched
    return min(matched / union, 1.0) if union > 0 else 0.0


def calculate_combined_score(signals: CorrelationSignals, weights: CorrelationWeights) -> float:
    w = weights.normalized()
    score = signals.temporal * w.temporal + signals.semantic * w.semantic + signals.path_match * w.path_match
    return max(0.0, min(score, 1.0))


# --- Query building ---


def _clean_message(message: str) -> str:
    cleaned = _PLACEHOLDER.sub("", message)
    cleaned = _LONG_NUMBER.sub("", cleaned)
    return _WHITESPACE.sub(" ", cleaned).strip()


def _leading_frames(stack_trace: str) -> list[str]:
    frames = [line.strip() for line in stack_trace.splitlines() if _STACK_FRAME_LINE.match(line)]
    return frames[:QUERY_FRAMES_PER_TRACE]


def _function_names(stack_trace: str) -> list[str]:
    return [
        name
        for name in _FUNCTION_NAME.findall(stack_trace)
        if len(name) > 2 and name not in _GENERIC_FUNCTION_NAMES
    ]


def build_search_query(
    error_patterns: list[ErrorPattern],
    endpoints: list[AffectedEndpoint],
    max_length: int = MAX_SEARCH_QUERY_LENGTH,
) -> str:
    """Build the free-text vector-search query for an investigation.

    Uses the top 5 error messages (a pattern holding the majority of errors is
    repeated), the leading stack frames and function names of those patterns,
    and the name terms of the top 5 erroring endpoints. Duplicate terms are
    dropped; the result is capped at ``max_length`` characters.
    """
    parts: list[str] = []
    for pattern in error_patterns[:QUERY_PATTERN_COUNT]:
        cleaned = _clean_message(pattern.message)
        if len(cleaned) > 3:
            parts.append(cleaned)
        if pattern.stack_trace:
            parts.extend(_leading_frames(pattern.stack_trace))
            parts.extend(_function_names(pattern.stack_trace)[:QUERY_FRAMES_PER_TRACE])

    erroring = [e for e in endpoints if e.error_count > 0][:QUERY_ENDPOINT_COUNT]
    for endpoint in erroring:
        parts.extend(term for term in _ENDPOINT_SEPARATORS.split(endpoint.name) if len(term) > 2)

    unique = list(dict.fromkeys(parts))
    if error_patterns and error_patterns[0].percentage >= DOMINANT_PATTERN_PERCENTAGE:
        dominant = _clean_message(error_patterns[0].message)
        if len(dominant) > 3:
            unique.insert(1, dominant)

    return " ".join(unique)[:max_length].strip()
