"""Semantic search over indexed emails and CRM contacts."""

from __future__ import annotations

import logging
from typing import Any

from advisor.errors import ToolError
from advisor.models import SourceKind, ToolContext
from advisor.rag.pipeline import RagPipeline
from advisor.tools.base import Tool, ToolName

LOGGER = logging.getLogger(__name__)

_MAX_LIMIT = 20


class SearchRagTool(Tool):
    """Vector search first; substring match over the same scope when nothing scores high enough."""

    name = ToolName.SEARCH_RAG
    description = (
        "Search through emails and CRM data using semantic search. "
        "Use this to find relevant information about clients or past communications."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Natural language search query"},
            "sources": {
                "type": "array",
                "items": {"type": "string", "enum": ["email", "contact", "all"]},
                "description": "Which sources to search (default: all)",
            },
            "limit": {"type": "integer", "description": "Maximum number of results (default: 5)"},
        },
        "required": ["query"],
        "additionalProperties": False,
    }

    def __init__(self, pipeline: RagPipeline) -> None:
        self._pipeline = pipeline

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        query = kwargs["query"].strip()
        if not query:
            raise ToolError("query must not be empty")
        sources = _parse_sources(kwargs.get("sources"))
        limit = max(1, min(int(kwargs.get("limit", 5)), _MAX_LIMIT))

        results = await self._pipeline.search(context.user_id, query, sources=sources, limit=limit)
        mode = "semantic"
        if not results:
            results = self._pipeline.lexical_search(context.user_id, query, sources=sources, limit=limit)
            mode = "keyword"
            LOGGER.debug("Semantic search empty for user %s; keyword fallback found %d", context.user_id, len(results))

        return {
            "query": query,
            "mode": mode,
            "count": len(results),
            "results": [result.to_dict() for result in results],
        }


def _parse_sources(raw: list[Any] | None) -> list[SourceKind] | None:
    if not raw or "all" in raw:
        return None
    try:
        return [SourceKind(str(value)) for value in raw]
    except ValueError as exc:
        raise ToolError(f"Unknown source in {raw!r}; use email, contact or all") from exc
