"""Client for the semantic code-search service.

The service owns embeddings and the vector index over a project's code chunks.
This module only sends a free-text query and maps the ranked chunks it gets
back.
"""

import logging
from typing import Protocol, TypedDict

import httpx

from traceguard.config import get_settings
from traceguard.rca.models import RelevantCodeChunk
from traceguard.rca.scoring import MAX_CHUNK_CONTENT_LENGTH

logger = logging.getLogger(__name__)


class CodeSearcher(Protocol):
    async def search_code(
        self,
        project_id: str,
        query: str,
        top_k: int,
        min_similarity: float,
    ) -> list[RelevantCodeChunk]: ...


# --- Search API response types ---


class SearchChunk(TypedDict, total=False):
    filePath: str
    content: str
    startLine: int
    endLine: int
    similarity: float


class SearchResponse(TypedDict, total=False):
    chunks: list[SearchChunk]


def is_code_search_configured() -> bool:
    """Check whether a code search service URL is configured."""
    return bool(get_settings().code_search_url)


def _search_headers() -> dict[str, str]:
    headers = {"Accept": "application/json"}
    token = get_settings().code_search_token
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _to_chunk(raw: SearchChunk) -> RelevantCodeChunk | None:
    """Map one response chunk, or None when it is missing required fields."""
    file_path = raw.get("filePath")
    start_line = raw.get("startLine")
    if not file_path or start_line is None:
        return None
    end_line = raw.get("endLine") or start_line
    return RelevantCodeChunk(
        file_path=file_path,
        content=raw.get("content", "")[:MAX_CHUNK_CONTENT_LENGTH],
        start_line=start_line,
        end_line=max(end_line, start_line),
        similarity=min(max(raw.get("similarity", 0.0), 0.0), 1.0),
    )


class HttpCodeSearcher:
    """CodeSearcher that POSTs to ``{code_search_url}/search``.

    Errors (HTTP failures, timeouts, an unconfigured URL) propagate; the
    caller decides whether a failed search is fatal.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._timeout = timeout

    async def search_code(
        self,
        project_id: str,
        query: str,
        top_k: int,
        min_similarity: float,
    ) -> list[RelevantCodeChunk]:
        settings = get_settings()
        if not settings.code_search_url:
            msg = "Code search not configured (CODE_SEARCH_URL is empty)"
            raise RuntimeError(msg)

        timeout = self._timeout if self._timeout is not None else settings.search_timeout_seconds
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                f"{settings.code_search_url}/search",
                json={
                    "projectId": project_id,
                    "query": query,
                    "topK": top_k,
                    "minSimilarity": min_similarity,
                },
                headers=_search_headers(),
            )
            _ = response.raise_for_status()
            data: SearchResponse = response.json()

        chunks = [c for raw in data.get("chunks", []) if (c := _to_chunk(raw)) is not None]
        chunks = [c for c in chunks if c.similarity >= min_similarity]
        chunks.sort(key=lambda c: c.similarity, reverse=True)
        logger.debug("Code search for project %s returned %d chunk(s)", project_id, len(chunks))
        return chunks[:top_k]
