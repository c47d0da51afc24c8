"""Web search tool (DuckDuckGo Instant Answer API or Brave Search API)."""

import json
import re
from typing import Any

import httpx

from switchboard.config import WebSearchToolConfig
from switchboard.exceptions import ToolIOError
from switchboard.logging import get_logger
from switchboard.tools.registry import Tool, ToolKind, ToolResult

log = get_logger(__name__)

DUCKDUCKGO_URL = "https://api.duckduckgo.com/"
BRAVE_URL = "https://api.search.brave.com/res/v1/web/search"
MAX_RESPONSE_BYTES = 2 * 1024 * 1024
MAX_RESULTS = 5


def _clean_text(value: str, max_chars: int = 500) -> str:
    """Normalize whitespace and bound output size."""
    cleaned = re.sub(r"\s+", " ", (value or "")).strip()
    if len(cleaned) <= max_chars:
        return cleaned
    return cleaned[:max_chars].rstrip() + "... [truncated]"


def _topic_info(topic: Any) -> tuple[str, str] | None:
    """Extract (text, url) from a DuckDuckGo related topic, descending into groups."""
    if not isinstance(topic, dict):
        return None
    if "Topics" in topic:
        nested = topic.get("Topics") or []
        return _topic_info(nested[0]) if nested else None
    text = str(topic.get("Text", "") or "").strip()
    url = str(topic.get("FirstURL", "") or "").strip()
    if text and url:
        return text, url
    return None


def format_duckduckgo_results(payload: dict[str, Any], query: str) -> str:
    lines = [f"Search results for '{query}':", ""]
    heading = str(payload.get("Heading", "") or "").strip()
    abstract = str(payload.get("AbstractText", "") or "").strip()
    abstract_url = str(payload.get("AbstractURL", "") or "").strip()
    topics = payload.get("RelatedTopics") or []

    if heading:
        lines.extend([f"## {heading}", ""])
    if abstract:
        lines.append(_clean_text(abstract, max_chars=2000))
        if abstract_url:
            lines.extend([f"Source: {abstract_url}", ""])

    related = [info for info in (_topic_info(topic) for topic in topics) if info][:MAX_RESULTS]
    if related:
        lines.extend(["### Related Information:", ""])
        for idx, (text, url) in enumerate(related, start=1):
            lines.append(f"{idx}. {_clean_text(text)}")
            lines.append(f"   {url}")
            lines.append("")

    if not abstract and not related:
        lines.append("No detailed results found. Try different keywords.")
    return "\n".join(lines).strip()


def format_brave_results(payload: dict[str, Any], query: str) -> str:
    lines = [f"Search results for '{query}':", ""]
    web_block = payload.get("web") if isinstance(payload.get("web"), dict) else {}
    results = [item for item in (web_block.get("results") or []) if isinstance(item, dict)]
    if not results:
        lines.append("No search results found. Try different keywords.")
        return "\n".join(lines)

    lines.extend(["### Top Results:", ""])
    for idx, item in enumerate(results[:MAX_RESULTS], start=1):
        title = _clean_text(str(item.get("title", "") or "Untitled"), max_chars=180)
        desc = _clean_text(str(item.get("description", "") or ""))
        lines.append(f"{idx}. {title}")
        if desc:
            lines.append(f"   {desc}")
        lines.append(f"   {str(item.get('url', '') or '-').strip()}")
        lines.append("")
    return "\n".join(lines).strip()


class WebSearchTool(Tool):
    """Search the web."""

    name = "search_web"
    kind = ToolKind.SEARCH_WEB
    description = (
        "Search the web for current information. "
        "Returns a short list of results with titles, links and snippets."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Search query text (max 500 characters)",
            },
        },
        "required": ["query"],
    }

    def __init__(self, config: WebSearchToolConfig | None = None, client: httpx.AsyncClient | None = None):
        self.config = config or WebSearchToolConfig()
        self.client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": "switchboard/0.1 (Web Search Tool)"},
        )

    async def _fetch(self, url: str, params: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        try:
            response = await self.client.get(url, params=params, headers=headers, timeout=self.config.timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ToolIOError(self.name, f"Search failed with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ToolIOError(self.name, f"Failed to send search request: {e}") from e

        body = response.content
        if len(body) > MAX_RESPONSE_BYTES:
            raise ToolIOError(self.name, "Search response too large")
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ToolIOError(self.name, f"Failed to parse search results: {e}") from e
        if not isinstance(payload, dict):
            raise ToolIOError(self.name, "Failed to parse search results")
        return payload

    async def execute(self, query: str, **kwargs: Any) -> ToolResult:
        """Run the search against the configured engine."""
        q = (query or "").strip()
        provider = self.config.provider
        log.info("Web search", provider=provider, query=q)

        if provider == "brave":
            if not self.config.api_key:
                raise ToolIOError(self.name, "Brave search requires tools.web_search.api_key")
            payload = await self._fetch(
                BRAVE_URL,
                params={"q": q},
                headers={"Accept": "application/json", "X-Subscription-Token": self.config.api_key},
            )
            return ToolResult(success=True, content=format_brave_results(payload, q))

        payload = await self._fetch(
            DUCKDUCKGO_URL,
            params={"q": q, "format": "json", "no_html": "1"},
            headers={"Accept": "application/json"},
        )
        return ToolResult(success=True, content=format_duckduckgo_results(payload, q))

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()
