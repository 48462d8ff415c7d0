"""Correlate an alert with recent code changes in the project's linked repository.

Ranks commits and merged pull requests from the lookback window by a weighted
combination of temporal proximity, semantic similarity (vector search over
indexed code chunks) and stack-trace path overlap. Read-only.
"""

import asyncio
import logging
import sqlite3
from datetime import UTC, datetime, timedelta
from typing import Protocol

from traceguard.config import get_settings
from traceguard.observability.metrics import DEPENDENCY_FAILURES
from traceguard.rca.models import (
    CodeCorrelationInput,
    CodeCorrelationOutput,
    CorrelatedCommit,
    CorrelatedPR,
    CorrelationSignals,
    RelevantCodeChunk,
)
from traceguard.rca.scoring import (
    MAX_COMMITS_TO_ANALYZE,
    MAX_FILES_PER_CHANGE,
    MAX_PRS_TO_ANALYZE,
    MAX_RELEVANT_CHUNKS,
    MAX_SUSPECTED_COMMITS,
    MAX_SUSPECTED_PRS,
    MAX_TITLE_LENGTH,
    MIN_CHUNK_SIMILARITY,
    MIN_CORRELATION_SCORE,
    CorrelationWeights,
    build_search_query,
    calculate_combined_score,
    calculate_path_match_score,
    calculate_semantic_score,
    calculate_temporal_score,
    extract_paths_from_stack_traces,
)
from traceguard.rca.search import CodeSearcher
from traceguard.storage.models import CommitRecord, PullRequestRecord, RepositoryRecord
from traceguard.storage.store import (
    get_commit_files,
    get_pull_request_files,
    get_repository_for_project,
    list_commits,
    list_merged_pull_requests,
)

logger = logging.getLogger(__name__)


class ChangeSource(Protocol):
    """Read access to a project's repository metadata."""

    async def get_repository(self, project_id: str) -> RepositoryRecord | None: ...

    async def list_commits(
        self, repo_id: str, since: datetime, until: datetime, limit: int
    ) -> list[CommitRecord]: ...

    async def list_merged_prs(
        self, repo_id: str, since: datetime, until: datetime, limit: int
    ) -> list[PullRequestRecord]: ...

    async def get_commit_files(self, repo_id: str, sha: str) -> list[str]: ...

    async def get_pr_files(self, repo_id: str, number: int) -> list[str]: ...


class SqliteChangeSource:
    """ChangeSource backed by the repository tables of the store."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def get_repository(self, project_id: str) -> RepositoryRecord | None:
        return await asyncio.to_thread(get_repository_for_project, self._conn, project_id)

    async def list_commits(self, repo_id: str, since: datetime, until: datetime, limit: int) -> list[CommitRecord]:
        return await asyncio.to_thread(list_commits, self._conn, repo_id, since, until, limit)

    async def list_merged_prs(
        self, repo_id: str, since: datetime, until: datetime, limit: int
    ) -> list[PullRequestRecord]:
        return await asyncio.to_thread(list_merged_pull_requests, self._conn, repo_id, since, until, limit)

    async def get_commit_files(self, repo_id: str, sha: str) -> list[str]:
        return await asyncio.to_thread(get_commit_files, self._conn, repo_id, sha)

    async def get_pr_files(self, repo_id: str, number: int) -> list[str]:
        return await asyncio.to_thread(get_pull_request_files, self._conn, repo_id, number)


def create_empty_correlation_output(has_repository: bool) -> CodeCorrelationOutput:
    return CodeCorrelationOutput(has_repository=has_repository)


class _Scorer:
    """Signal computation shared by commit and PR ranking."""

    def __init__(
        self,
        alert_time: datetime,
        lookback: timedelta,
        chunks: list[RelevantCodeChunk],
        stack_paths: set[str],
        weights: CorrelationWeights,
        half_life_hours: float,
    ) -> None:
        self.alert_time = alert_time
        self.lookback = lookback
        self.chunks = chunks
        self.stack_paths = stack_paths
        self.weights = weights
        self.half_life_hours = half_life_hours

    def score(self, changed_at: datetime, files: list[str]) -> tuple[float, CorrelationSignals]:
        signals = CorrelationSignals(
            temporal=calculate_temporal_score(changed_at, self.alert_time, self.half_life_hours, self.lookback),
            semantic=calculate_semantic_score(files, self.chunks),
            path_match=calculate_path_match_score(files, self.stack_paths),
        )
        return calculate_combined_score(signals, self.weights), signals


async def score_commits(
    commits: list[CommitRecord],
    change_source: ChangeSource,
    scorer: _Scorer,
) -> list[CorrelatedCommit]:
    """Score commits, keep those at or above MIN_CORRELATION_SCORE, best first (top 10).

    A commit whose changed files cannot be loaded is skipped.
    """
    scored: list[CorrelatedCommit] = []
    for commit in commits:
        try:
            files = await change_source.get_commit_files(commit["repo_id"], commit["sha"])
        except Exception:
            logger.warning("Could not load changed files for commit %s, skipping", commit["sha"], exc_info=True)
            continue

        score, signals = scorer.score(commit["timestamp"], files)
        if score < MIN_CORRELATION_SCORE:
            continue
        scored.append(
            CorrelatedCommit(
                sha=commit["sha"],
                message=commit["message"][:MAX_TITLE_LENGTH],
                author=commit["author"],
                author_email=commit["author_email"],
                timestamp=commit["timestamp"],
                score=score,
                signals=signals,
                files_changed=files[:MAX_FILES_PER_CHANGE],
            )
        )

    scored.sort(key=lambda c: c.score, reverse=True)
    return scored[:MAX_SUSPECTED_COMMITS]


async def score_prs(
    prs: list[PullRequestRecord],
    change_source: ChangeSource,
    scorer: _Scorer,
) -> list[CorrelatedPR]:
    """Score merged pull requests the same way as commits, using merged_at (top 5)."""
    scored: list[CorrelatedPR] = []
    for pr in prs:
        try:
            files = await change_source.get_pr_files(pr["repo_id"], pr["number"])
        except Exception:
            logger.warning("Could not load changed files for PR #%d, skipping", pr["number"], exc_info=True)
            continue

        score, signals = scorer.score(pr["merged_at"], files)
        if score < MIN_CORRELATION_SCORE:
            continue
        scored.append(
            CorrelatedPR(
                number=pr["number"],
                title=pr["title"][:MAX_TITLE_LENGTH],
                author=pr["author"],
                merged_at=pr["merged_at"],
                score=score,
                signals=signals,
                files_changed=files[:MAX_FILES_PER_CHANGE],
            )
        )

    scored.sort(key=lambda p: p.score, reverse=True)
    return scored[:MAX_SUSPECTED_PRS]


async def _search_chunks(
    searcher: CodeSearcher | None,
    project_id: str,
    query: str,
    timeout: float,
) -> list[RelevantCodeChunk]:
    """Vector search for the query. Any failure degrades to no chunks."""
    if searcher is None or not query:
        return []
    try:
        chunks = await asyncio.wait_for(
            searcher.search_code(project_id, query, MAX_RELEVANT_CHUNKS, MIN_CHUNK_SIMILARITY),
            timeout=timeout,
        )
    except TimeoutError:
        DEPENDENCY_FAILURES.labels(dependency="search", reason="timeout").inc()
        logger.warning("Code search timed out after %ss for project %s, continuing without it", timeout, project_id)
        return []
    except Exception:
        DEPENDENCY_FAILURES.labels(dependency="search", reason="error").inc()
        logger.warning("Code search failed for project %s, continuing without it", project_id, exc_info=True)
        return []
    return chunks[:MAX_RELEVANT_CHUNKS]


async def correlate_code_changes(
    correlation_input: CodeCorrelationInput,
    change_source: ChangeSource,
    searcher: CodeSearcher | None,
    weights: CorrelationWeights | None = None,
) -> CodeCorrelationOutput:
    """Rank the commits and merged PRs most likely to have caused an alert.

    Args:
        correlation_input: Trace analysis output, alert trigger time and lookback.
        change_source: Repository, commit and PR metadata.
        searcher: Semantic code search, or None to rank on temporal and path signals only.
        weights: Signal weights. Defaults to the configured weights.

    Returns:
        The ranked suspects. A project without a linked repository gets an
        empty result with ``has_repository=False``.
    """
    settings = get_settings()
    project_id = correlation_input.project_id
    analysis = correlation_input.trace_analysis
    alert_time = correlation_input.alert_triggered_at
    if alert_time.tzinfo is None:
        alert_time = alert_time.replace(tzinfo=UTC)
    lookback = timedelta(days=correlation_input.lookback_days)
    since = alert_time - lookback

    repo = await change_source.get_repository(project_id)
    if repo is None:
        logger.info("No repository linked to project %s, skipping code correlation", project_id)
        return create_empty_correlation_output(has_repository=False)

    search_query = build_search_query(analysis.error_patterns, analysis.affected_endpoints)
    logger.info(
        "Correlating project %s against %s since %s, query: %.100s",
        project_id,
        repo["full_name"],
        since.isoformat(),
        search_query,
    )

    chunks = await _search_chunks(searcher, project_id, search_query, settings.search_timeout_seconds)
    stack_paths = extract_paths_from_stack_traces(p.stack_trace for p in analysis.error_patterns)
    logger.debug("Found %d code chunk(s) and %d stack path(s)", len(chunks), len(stack_paths))

    scorer = _Scorer(
        alert_time=alert_time,
        lookback=lookback,
        chunks=chunks,
        stack_paths=stack_paths,
        weights=weights or CorrelationWeights.from_settings(),
        half_life_hours=settings.temporal_half_life_hours,
    )

    commits = await change_source.list_commits(repo["id"], since, alert_time, MAX_COMMITS_TO_ANALYZE)
    suspected_commits = await score_commits(commits, change_source, scorer)

    prs = await change_source.list_merged_prs(repo["id"], since, alert_time, MAX_PRS_TO_ANALYZE)
    suspected_prs = await score_prs(prs, change_source, scorer)

    logger.info(
        "Correlation complete for project %s: %d/%d commits, %d/%d PRs",
        project_id,
        len(suspected_commits),
        len(commits),
        len(suspected_prs),
        len(prs),
    )

    return CodeCorrelationOutput(
        suspected_commits=suspected_commits,
        suspected_prs=suspected_prs,
        relevant_code_chunks=chunks,
        has_repository=True,
        search_query=search_query,
        commits_analyzed=len(commits),
        prs_analyzed=len(prs),
    )
