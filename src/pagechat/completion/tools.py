from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable

from pagechat.errors import ToolExecutionError

logger = logging.getLogger(__name__)


class WebSearchError(ToolExecutionError):
    pass


def web_search(*, query: str, max_results: int = 5) -> dict[str, Any]:
    query = (query or "").strip()
    if not query:
        raise WebSearchError("query is required")

    api_key = os.environ.get("TAVILY_API_KEY")
    if not api_key:
        raise WebSearchError("TAVILY_API_KEY is not set")

    try:
        from tavily import TavilyClient  # type: ignore[import-not-found]
    except Exception as e:  # pragma: no cover
        raise WebSearchError(
            "tavily-python is not installed. Install with: `pip install pagechat[search]`."
        ) from e

    max_results = max(1, min(10, int(max_results or 5)))
    client = TavilyClient(api_key=api_key)
    try:
        resp = client.search(query=query, max_results=max_results)
    except Exception as e:
        raise WebSearchError(f"Web search failed: {e}") from e
    results = resp.get("results") if isinstance(resp, dict) else None
    if not isinstance(results, list):
        results = []

    sources = [
        {
            "url": str(r.get("url") or ""),
            "title": str(r.get("title") or ""),
            "snippet": str(r.get("content") or "")[:300],
        }
        for r in results
        if isinstance(r, dict)
    ]
    return {"query": query, "results": sources, "sources": sources}


WEB_SEARCH_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "web_search",
        "description": "Search the web for current information.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query to use."},
                "max_results": {
                    "type": "integer",
                    "description": "Number of results to return (1-10)",
                    "default": 5,
                },
            },
            "required": ["query"],
        },
    },
}


class ToolExecutor:
    """Runs function calls requested by the legacy wire format.

    Failures never escape: they come back as an `{"error": ...}` payload so the
    follow-up request can still be made.
    """

    def __init__(self):
        self._tools: dict[str, tuple[dict[str, Any], Callable[..., dict[str, Any]]]] = {}

    def register(self, schema: dict[str, Any], implementation: Callable[..., dict[str, Any]]) -> None:
        name = schema["function"]["name"]
        self._tools[name] = (schema, implementation)

    @property
    def schemas(self) -> list[dict[str, Any]]:
        return [schema for schema, _ in self._tools.values()]

    def has_tools(self) -> bool:
        return bool(self._tools)

    def execute(self, name: str, raw_arguments: str | dict | None) -> dict[str, Any]:
        entry = self._tools.get(name)
        if entry is None:
            logger.warning(f"Model requested unsupported tool {name}")
            return {"error": f"Unsupported tool: {name}"}

        if isinstance(raw_arguments, dict):
            args = raw_arguments
        else:
            try:
                args = json.loads(raw_arguments or "{}")
            except json.JSONDecodeError as e:
                return {"error": f"Failed to parse tool arguments for {name}: {e}"}
            if not isinstance(args, dict):
                return {"error": f"Tool arguments for {name} must be an object"}

        _, implementation = entry
        try:
            return implementation(**args)
        except ToolExecutionError as e:
            logger.warning(f"Tool {name} failed: {e}")
            return {"error": str(e)}
        except TypeError as e:
            return {"error": f"Invalid arguments for {name}: {e}"}
        except Exception as e:
            logger.exception(f"Tool {name} raised unexpectedly")
            return {"error": f"Tool {name} failed: {e}"}


def default_tool_executor() -> ToolExecutor:
    executor = ToolExecutor()
    executor.register(WEB_SEARCH_TOOL, web_search)
    return executor
