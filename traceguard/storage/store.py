"""SQLite-based store: connection management, schema init, and CRUD.

Holds the alert rules and state, the ingested traces and spans, the linked
repository metadata (commits and merged pull requests with their changed
files), alert history and saved investigations.

All database operations use parameterized queries to prevent SQL injection.
Connections are created with check_same_thread=False so callers can hand them
to asyncio.to_thread. The schema is auto-created via CREATE TABLE IF NOT
EXISTS (idempotent). Timestamps are stored as fixed-width ISO 8601 UTC text so
that string comparison matches chronological order.
"""

import json
import logging
import sqlite3
from datetime import UTC, datetime

from traceguard.config import get_settings
from traceguard.storage.models import (
    AlertHistoryRecord,
    AlertRecord,
    CommitRecord,
    InvestigationRecord,
    PullRequestRecord,
    RepositoryRecord,
    SpanRecord,
)

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS alerts (
    id                TEXT PRIMARY KEY,
    project_id        TEXT NOT NULL,
    name              TEXT NOT NULL,
    type              TEXT NOT NULL,
    operator          TEXT NOT NULL,
    threshold         REAL NOT NULL,
    window_mins       INTEGER NOT NULL DEFAULT 5,
    severity          TEXT NOT NULL DEFAULT 'MEDIUM',
    pending_mins      INTEGER,
    cooldown_mins     INTEGER,
    enabled           INTEGER NOT NULL DEFAULT 1,
    state             TEXT NOT NULL DEFAULT 'INACTIVE',
    state_changed_at  TEXT,
    last_triggered_at TEXT,
    last_evaluated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_alerts_enabled ON alerts(enabled, severity);

CREATE TABLE IF NOT EXISTS traces (
    id         TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    name       TEXT NOT NULL,
    timestamp  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_traces_project ON traces(project_id);

CREATE TABLE IF NOT EXISTS spans (
    id                TEXT PRIMARY KEY,
    trace_id          TEXT NOT NULL REFERENCES traces(id),
    name              TEXT NOT NULL,
    level             TEXT NOT NULL DEFAULT 'DEFAULT',
    status_message    TEXT,
    model             TEXT,
    start_time        TEXT NOT NULL,
    end_time          TEXT,
    prompt_tokens     INTEGER,
    completion_tokens INTEGER,
    total_cost        REAL,
    output            TEXT
);
CREATE INDEX IF NOT EXISTS idx_spans_trace_start ON spans(trace_id, start_time);
CREATE INDEX IF NOT EXISTS idx_spans_start ON spans(start_time);

CREATE TABLE IF NOT EXISTS repositories (
    id         TEXT PRIMARY KEY,
    project_id TEXT NOT NULL UNIQUE,
    full_name  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS commits (
    sha          TEXT NOT NULL,
    repo_id      TEXT NOT NULL REFERENCES repositories(id),
    message      TEXT NOT NULL,
    author       TEXT NOT NULL,
    author_email TEXT,
    timestamp    TEXT NOT NULL,
    PRIMARY KEY (repo_id, sha)
);
CREATE INDEX IF NOT EXISTS idx_commits_time ON commits(repo_id, timestamp);

CREATE TABLE IF NOT EXISTS commit_files (
    repo_id   TEXT NOT NULL,
    sha       TEXT NOT NULL,
    file_path TEXT NOT NULL,
    PRIMARY KEY (repo_id, sha, file_path)
);

CREATE TABLE IF NOT EXISTS pull_requests (
    number    INTEGER NOT NULL,
    repo_id   TEXT NOT NULL REFERENCES repositories(id),
    title     TEXT NOT NULL,
    author    TEXT NOT NULL,
    merged_at TEXT,
    PRIMARY KEY (repo_id, number)
);
CREATE INDEX IF NOT EXISTS idx_prs_merged ON pull_requests(repo_id, merged_at);

CREATE TABLE IF NOT EXISTS pull_request_files (
    repo_id   TEXT NOT NULL,
    number    INTEGER NOT NULL,
    file_path TEXT NOT NULL,
    PRIMARY KEY (repo_id, number, file_path)
);

CREATE TABLE IF NOT EXISTS investigations (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    alert_id         TEXT NOT NULL,
    project_id       TEXT NOT NULL,
    created_at       TEXT NOT NULL,
    window_start     TEXT NOT NULL,
    window_end       TEXT NOT NULL,
    trace_analysis   TEXT NOT NULL,
    code_correlation TEXT
);
CREATE INDEX IF NOT EXISTS idx_investigations_alert ON investigations(alert_id, created_at);

CREATE TABLE IF NOT EXISTS alert_history (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    alert_id         TEXT NOT NULL,
    created_at       TEXT NOT NULL,
    previous_state   TEXT NOT NULL,
    state            TEXT NOT NULL,
    value            REAL NOT NULL,
    threshold        REAL NOT NULL,
    sample_count     INTEGER NOT NULL DEFAULT 0,
    notified         INTEGER NOT NULL DEFAULT 0,
    investigation_id INTEGER REFERENCES investigations(id)
);
CREATE INDEX IF NOT EXISTS idx_history_alert ON alert_history(alert_id, created_at);
"""


def to_db_time(dt: datetime) -> str:
    """Format a datetime as fixed-width ISO 8601 UTC text. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_time(value: str) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime."""
    dt = datetime.fromisoformat(value)
    return dt.replace(tzinfo=UTC) if dt.tzinfo is None else dt


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode for concurrent reads.

    Args:
        db_path: Explicit path to the database file. If None, reads from settings.
                 Pass ":memory:" for in-memory databases (tests).

    Returns:
        A new sqlite3.Connection with row_factory set to sqlite3.Row.

    Raises:
        ValueError: If the database is not configured (empty db path).
    """
    if db_path is None:
        db_path = get_settings().database_path
    if not db_path:
        msg = "Database not configured (DATABASE_PATH is empty)"
        raise ValueError(msg)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Create tables and indexes if they don't exist (idempotent)."""
    conn.executescript(_SCHEMA_SQL)


def get_initialized_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Get a connection with schema already initialized. Convenience wrapper."""
    conn = get_connection(db_path)
    init_schema(conn)
    return conn


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


def save_alert(
    conn: sqlite3.Connection,
    *,
    alert_id: str,
    project_id: str,
    name: str,
    alert_type: str,
    operator: str,
    threshold: float,
    window_mins: int = 5,
    severity: str = "MEDIUM",
    pending_mins: int | None = None,
    cooldown_mins: int | None = None,
    enabled: bool = True,
    state: str = "INACTIVE",
    state_changed_at: datetime | None = None,
    last_triggered_at: datetime | None = None,
) -> None:
    """Insert or replace an alert rule. Used by the management layer and tests."""
    conn.execute(
        """INSERT OR REPLACE INTO alerts
           (id, project_id, name, type, operator, threshold, window_mins, severity,
            pending_mins, cooldown_mins, enabled, state, state_changed_at, last_triggered_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            alert_id,
            project_id,
            name,
            alert_type,
            operator,
            threshold,
            window_mins,
            severity,
            pending_mins,
            cooldown_mins,
            int(enabled),
            state,
            to_db_time(state_changed_at) if state_changed_at else None,
            to_db_time(last_triggered_at) if last_triggered_at else None,
        ),
    )
    conn.commit()


def set_alert_enabled(conn: sqlite3.Connection, alert_id: str, enabled: bool) -> None:
    """Enable or disable an alert rule. State is left for the state writer to reconcile."""
    conn.execute("UPDATE alerts SET enabled = ? WHERE id = ?", (int(enabled), alert_id))
    conn.commit()


def get_alert(conn: sqlite3.Connection, alert_id: str) -> AlertRecord | None:
    row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
    if row is None:
        return None
    return _row_to_alert(row)


def list_enabled_alert_ids(conn: sqlite3.Connection, project_id: str | None = None) -> list[str]:
    """Return ids of all enabled alerts, optionally scoped to one project."""
    if project_id:
        rows = conn.execute(
            "SELECT id FROM alerts WHERE enabled = 1 AND project_id = ? ORDER BY id", (project_id,)
        ).fetchall()
    else:
        rows = conn.execute("SELECT id FROM alerts WHERE enabled = 1 ORDER BY id").fetchall()
    return [r["id"] for r in rows]


def compare_and_set_alert_state(
    conn: sqlite3.Connection,
    alert_id: str,
    *,
    expected_state: str,
    expected_changed_at: str | None,
    new_state: str,
    new_changed_at: str | None,
    evaluated_at: str,
) -> bool:
    """Apply a state transition only if nobody else changed the row since it was read.

    Returns:
        True if the row was updated, False if the expected state no longer matches.
    """
    cursor = conn.execute(
        """UPDATE alerts
           SET state = ?, state_changed_at = ?, last_evaluated_at = ?
           WHERE id = ? AND state = ? AND state_changed_at IS ?""",
        (new_state, new_changed_at, evaluated_at, alert_id, expected_state, expected_changed_at),
    )
    conn.commit()
    return cursor.rowcount == 1


def set_last_triggered(conn: sqlite3.Connection, alert_id: str, triggered_at: datetime) -> None:
    """Record the time of the last successfully dispatched notification."""
    conn.execute(
        "UPDATE alerts SET last_triggered_at = ? WHERE id = ?",
        (to_db_time(triggered_at), alert_id),
    )
    conn.commit()


def _row_to_alert(row: sqlite3.Row) -> AlertRecord:
    return AlertRecord(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        type=row["type"],
        operator=row["operator"],
        threshold=row["threshold"],
        window_mins=row["window_mins"],
        severity=row["severity"],
        pending_mins=row["pending_mins"],
        cooldown_mins=row["cooldown_mins"],
        enabled=bool(row["enabled"]),
        state=row["state"],
        state_changed_at=row["state_changed_at"],
        last_triggered_at=row["last_triggered_at"],
        last_evaluated_at=row["last_evaluated_at"],
    )


# ---------------------------------------------------------------------------
# Traces and spans
# ---------------------------------------------------------------------------


def save_trace(
    conn: sqlite3.Connection,
    *,
    trace_id: str,
    project_id: str,
    name: str,
    timestamp: datetime,
) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO traces (id, project_id, name, timestamp) VALUES (?, ?, ?, ?)",
        (trace_id, project_id, name, to_db_time(timestamp)),
    )
    conn.commit()


def save_spans(conn: sqlite3.Connection, spans: list[SpanRecord]) -> None:
    """Bulk-insert spans. The trace_name field is ignored (it lives on the trace)."""
    for s in spans:
        conn.execute(
            """INSERT OR REPLACE INTO spans
               (id, trace_id, name, level, status_message, model, start_time, end_time,
                prompt_tokens, completion_tokens, total_cost, output)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                s["id"],
                s["trace_id"],
                s["name"],
                s["level"],
                s["status_message"],
                s["model"],
                to_db_time(s["start_time"]),
                to_db_time(s["end_time"]) if s["end_time"] else None,
                s["prompt_tokens"],
                s["completion_tokens"],
                s["total_cost"],
                json.dumps(s["output"]) if s["output"] is not None else None,
            ),
        )
    conn.commit()


def count_spans_by_level(
    conn: sqlite3.Connection,
    project_id: str,
    window_start: datetime,
    window_end: datetime,
) -> tuple[int, int]:
    """Count (total, error) spans with start_time in [window_start, window_end)."""
    row = conn.execute(
        """SELECT COUNT(*) AS total,
                  COALESCE(SUM(CASE WHEN s.level = 'ERROR' THEN 1 ELSE 0 END), 0) AS errors
           FROM spans s
           JOIN traces t ON s.trace_id = t.id
           WHERE t.project_id = ? AND s.start_time >= ? AND s.start_time < ?""",
        (project_id, to_db_time(window_start), to_db_time(window_end)),
    ).fetchone()
    return int(row["total"]), int(row["errors"])


def list_span_latencies(
    conn: sqlite3.Connection,
    project_id: str,
    window_start: datetime,
    window_end: datetime,
) -> list[float]:
    """Latencies (ms) of terminated spans with start_time in [window_start, window_end), ascending."""
    rows = conn.execute(
        """SELECT s.start_time, s.end_time
           FROM spans s
           JOIN traces t ON s.trace_id = t.id
           WHERE t.project_id = ? AND s.start_time >= ? AND s.start_time < ?
             AND s.end_time IS NOT NULL""",
        (project_id, to_db_time(window_start), to_db_time(window_end)),
    ).fetchall()
    latencies = [
        (from_db_time(r["end_time"]) - from_db_time(r["start_time"])).total_seconds() * 1000 for r in rows
    ]
    return sorted(latencies)


def query_spans_in_window(
    conn: sqlite3.Connection,
    project_id: str,
    window_start: datetime,
    window_end: datetime,
    limit: int,
) -> list[SpanRecord]:
    """Spans with start_time in [window_start, window_end], most recent first, capped at limit."""
    rows = conn.execute(
        """SELECT s.*, t.name AS trace_name
           FROM spans s
           JOIN traces t ON s.trace_id = t.id
           WHERE t.project_id = ? AND s.start_time >= ? AND s.start_time <= ?
           ORDER BY s.start_time DESC
           LIMIT ?""",
        (project_id, to_db_time(window_start), to_db_time(window_end), limit),
    ).fetchall()
    return [_row_to_span(r) for r in rows]


def _row_to_span(row: sqlite3.Row) -> SpanRecord:
    output: object = None
    if row["output"]:
        try:
            output = json.loads(row["output"])
        except json.JSONDecodeError:
            output = row["output"]
    return SpanRecord(
        id=row["id"],
        trace_id=row["trace_id"],
        trace_name=row["trace_name"],
        name=row["name"],
        level=row["level"],
        status_message=row["status_message"],
        model=row["model"],
        start_time=from_db_time(row["start_time"]),
        end_time=from_db_time(row["end_time"]) if row["end_time"] else None,
        prompt_tokens=row["prompt_tokens"],
        completion_tokens=row["completion_tokens"],
        total_cost=row["total_cost"],
        output=output,
    )


# ---------------------------------------------------------------------------
# Repositories, commits and pull requests
# ---------------------------------------------------------------------------


def save_repository(conn: sqlite3.Connection, *, repo_id: str, project_id: str, full_name: str) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO repositories (id, project_id, full_name) VALUES (?, ?, ?)",
        (repo_id, project_id, full_name),
    )
    conn.commit()


def get_repository_for_project(conn: sqlite3.Connection, project_id: str) -> RepositoryRecord | None:
    row = conn.execute("SELECT * FROM repositories WHERE project_id = ?", (project_id,)).fetchone()
    if row is None:
        return None
    return RepositoryRecord(id=row["id"], project_id=row["project_id"], full_name=row["full_name"])


def save_commit(
    conn: sqlite3.Connection,
    *,
    repo_id: str,
    sha: str,
    message: str,
    author: str,
    timestamp: datetime,
    files: list[str],
    author_email: str | None = None,
) -> None:
    """Store a commit together with its changed-file list."""
    conn.execute(
        """INSERT OR REPLACE INTO commits (sha, repo_id, message, author, author_email, timestamp)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (sha, repo_id, message, author, author_email, to_db_time(timestamp)),
    )
    conn.executemany(
        "INSERT OR IGNORE INTO commit_files (repo_id, sha, file_path) VALUES (?, ?, ?)",
        [(repo_id, sha, f) for f in files],
    )
    conn.commit()


def list_commits(
    conn: sqlite3.Connection,
    repo_id: str,
    since: datetime,
    until: datetime,
    limit: int,
) -> list[CommitRecord]:
    """Commits with timestamp in [since, until], most recent first."""
    rows = conn.execute(
        """SELECT * FROM commits
           WHERE repo_id = ? AND timestamp >= ? AND timestamp <= ?
           ORDER BY timestamp DESC LIMIT ?""",
        (repo_id, to_db_time(since), to_db_time(until), limit),
    ).fetchall()
    return [
        CommitRecord(
            sha=r["sha"],
            repo_id=r["repo_id"],
            message=r["message"],
            author=r["author"],
            author_email=r["author_email"],
            timestamp=from_db_time(r["timestamp"]),
        )
        for r in rows
    ]


def get_commit_files(conn: sqlite3.Connection, repo_id: str, sha: str) -> list[str]:
    rows = conn.execute(
        "SELECT file_path FROM commit_files WHERE repo_id = ? AND sha = ? ORDER BY file_path",
        (repo_id, sha),
    ).fetchall()
    return [r["file_path"] for r in rows]


def save_pull_request(
    conn: sqlite3.Connection,
    *,
    repo_id: str,
    number: int,
    title: str,
    author: str,
    merged_at: datetime | None,
    files: list[str],
) -> None:
    """Store a pull request together with its changed-file list. Unmerged PRs have merged_at None."""
    conn.execute(
        """INSERT OR REPLACE INTO pull_requests (number, repo_id, title, author, merged_at)
           VALUES (?, ?, ?, ?, ?)""",
        (number, repo_id, title, author, to_db_time(merged_at) if merged_at else None),
    )
    conn.executemany(
        "INSERT OR IGNORE INTO pull_request_files (repo_id, number, file_path) VALUES (?, ?, ?)",
        [(repo_id, number, f) for f in files],
    )
    conn.commit()


def list_merged_pull_requests(
    conn: sqlite3.Connection,
    repo_id: str,
    since: datetime,
    until: datetime,
    limit: int,
) -> list[PullRequestRecord]:
    """Pull requests merged in [since, until], most recently merged first."""
    rows = conn.execute(
        """SELECT * FROM pull_requests
           WHERE repo_id = ? AND merged_at IS NOT NULL AND merged_at >= ? AND merged_at <= ?
           ORDER BY merged_at DESC LIMIT ?""",
        (repo_id, to_db_time(since), to_db_time(until), limit),
    ).fetchall()
    return [
        PullRequestRecord(
            number=r["number"],
            repo_id=r["repo_id"],
            title=r["title"],
            author=r["author"],
            merged_at=from_db_time(r["merged_at"]),
        )
        for r in rows
    ]


def get_pull_request_files(conn: sqlite3.Connection, repo_id: str, number: int) -> list[str]:
    rows = conn.execute(
        "SELECT file_path FROM pull_request_files WHERE repo_id = ? AND number = ? ORDER BY file_path",
        (repo_id, number),
    ).fetchall()
    return [r["file_path"] for r in rows]


# ---------------------------------------------------------------------------
# Alert history and investigations
# ---------------------------------------------------------------------------


def save_alert_history(
    conn: sqlite3.Connection,
    *,
    alert_id: str,
    previous_state: str,
    state: str,
    value: float,
    threshold: float,
    sample_count: int,
    notified: bool,
    created_at: datetime | None = None,
) -> int:
    """Record one state transition of an alert. Returns the new row ID."""
    cursor = conn.execute(
        """INSERT INTO alert_history
           (alert_id, created_at, previous_state, state, value, threshold, sample_count, notified)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            alert_id,
            to_db_time(created_at or datetime.now(UTC)),
            previous_state,
            state,
            value,
            threshold,
            sample_count,
            int(notified),
        ),
    )
    conn.commit()
    return cursor.lastrowid or 0


def attach_investigation(conn: sqlite3.Connection, history_id: int, investigation_id: int) -> None:
    conn.execute(
        "UPDATE alert_history SET investigation_id = ? WHERE id = ?",
        (investigation_id, history_id),
    )
    conn.commit()


def get_alert_history(conn: sqlite3.Connection, alert_id: str, limit: int = 20) -> list[AlertHistoryRecord]:
    """Most recent transitions for an alert, newest first."""
    rows = conn.execute(
        "SELECT * FROM alert_history WHERE alert_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
        (alert_id, limit),
    ).fetchall()
    return [
        AlertHistoryRecord(
            id=r["id"],
            alert_id=r["alert_id"],
            created_at=r["created_at"],
            previous_state=r["previous_state"],
            state=r["state"],
            value=r["value"],
            threshold=r["threshold"],
            sample_count=r["sample_count"],
            notified=bool(r["notified"]),
            investigation_id=r["investigation_id"],
        )
        for r in rows
    ]


def save_investigation(
    conn: sqlite3.Connection,
    *,
    alert_id: str,
    project_id: str,
    window_start: datetime,
    window_end: datetime,
    trace_analysis: str,
    code_correlation: str | None,
    created_at: datetime | None = None,
) -> int:
    """Save a root-cause investigation (JSON payloads). Returns the new row ID."""
    cursor = conn.execute(
        """INSERT INTO investigations
           (alert_id, project_id, created_at, window_start, window_end, trace_analysis, code_correlation)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            alert_id,
            project_id,
            to_db_time(created_at or datetime.now(UTC)),
            to_db_time(window_start),
            to_db_time(window_end),
            trace_analysis,
            code_correlation,
        ),
    )
    conn.commit()
    return cursor.lastrowid or 0


def get_investigations(conn: sqlite3.Connection, alert_id: str, limit: int = 10) -> list[InvestigationRecord]:
    """Most recent investigations for an alert, newest first."""
    rows = conn.execute(
        "SELECT * FROM investigations WHERE alert_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
        (alert_id, limit),
    ).fetchall()
    return [_row_to_investigation(r) for r in rows]


def _row_to_investigation(row: sqlite3.Row) -> InvestigationRecord:
    return InvestigationRecord(
        id=row["id"],
        alert_id=row["alert_id"],
        project_id=row["project_id"],
        created_at=row["created_at"],
        window_start=row["window_start"],
        window_end=row["window_end"],
        trace_analysis=row["trace_analysis"],
        code_correlation=row["code_correlation"],
    )
