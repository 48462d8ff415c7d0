"""Error-message normalization and clustering.

Messages that differ only in volatile tokens (UUIDs, timestamps, line numbers,
IP addresses) collapse to the same normalized text and are counted together.
"""

import re

from traceguard.rca.models import ErrorPattern
from traceguard.storage.models import SpanRecord

MAX_MESSAGE_LENGTH = 200
MAX_STACK_TRACE_LENGTH = 500
MAX_SAMPLE_IDS = 3
MAX_ERROR_PATTERNS = 10

_UUID_PATTERN = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
_TIMESTAMP_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")
_LINE_PATTERN = re.compile(r"line \d+", re.IGNORECASE)
_LINE_COL_PATTERN = re.compile(r":\d+:\d+")
_IPV4_PATTERN = re.compile(r"\d+\.\d+\.\d+\.\d+")


def normalize_error_message(message: str) -> str:
    """Replace volatile tokens with placeholders and truncate to 200 chars."""
    normalized = _UUID_PATTERN.sub("<UUID>", message)
    normalized = _TIMESTAMP_PATTERN.sub("<TIMESTAMP>", normalized)
    normalized = _LINE_PATTERN.sub("line <N>", normalized)
    normalized = _LINE_COL_PATTERN.sub(":<LINE>:<COL>", normalized)
    normalized = _IPV4_PATTERN.sub("<IP>", normalized)
    return normalized[:MAX_MESSAGE_LENGTH]


def extract_stack_trace(output: object) -> str | None:
    """Pull a stack trace out of a span's structured output, if one is embedded.

    Looks at ``stack``, ``stackTrace`` and ``error.stack``. Returns the first
    500 characters, or None when the output has no string stack.
    """
    if not isinstance(output, dict):
        return None

    stack = output.get("stack") or output.get("stackTrace")
    if stack is None:
        error = output.get("error")
        if isinstance(error, dict):
            stack = error.get("stack")

    if isinstance(stack, str):
        return stack[:MAX_STACK_TRACE_LENGTH]
    return None


class _PatternGroup:
    __slots__ = ("count", "sample_span_ids", "stack_trace")

    def __init__(self, span_id: str, stack_trace: str | None) -> None:
        self.count = 1
        self.sample_span_ids = [span_id]
        self.stack_trace = stack_trace


def extract_error_patterns(spans: list[SpanRecord]) -> list[ErrorPattern]:
    """Group ERROR spans by normalized status message, largest groups first (top 10)."""
    groups: dict[str, _PatternGroup] = {}
    error_spans = [s for s in spans if s["level"] == "ERROR" and s["status_message"]]

    for span in error_spans:
        normalized = normalize_error_message(span["status_message"] or "")
        group = groups.get(normalized)
        if group is None:
            groups[normalized] = _PatternGroup(span["id"], extract_stack_trace(span["output"]))
            continue
        group.count += 1
        if len(group.sample_span_ids) < MAX_SAMPLE_IDS:
            group.sample_span_ids.append(span["id"])
        if group.stack_trace is None:
            group.stack_trace = extract_stack_trace(span["output"])

    total_errors = len(error_spans) or 1
    patterns = [
        ErrorPattern(
            message=message,
            count=group.count,
            percentage=(group.count / total_errors) * 100,
            sample_span_ids=group.sample_span_ids,
            stack_trace=group.stack_trace,
        )
        for message, group in groups.items()
    ]
    patterns.sort(key=lambda p: p.count, reverse=True)
    return patterns[:MAX_ERROR_PATTERNS]
