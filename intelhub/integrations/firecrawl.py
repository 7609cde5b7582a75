"""
Firecrawl adapter: web search, page scraping and site maps.

Scraped content is truncated and result lists are capped so a single tool
result cannot flood the agent's context.
"""

import logging
from typing import Any

import httpx

from intelhub.core.errors import UpstreamToolError
from intelhub.core.tools import AgentTool

logger = logging.getLogger(__name__)

MAX_CONTENT_CHARS = 8000
MAX_SEARCH_RESULTS = 5
MAX_MAP_LINKS = 50


def _truncate(text: str | None, limit: int = MAX_CONTENT_CHARS) -> str:
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + "\n...[truncated]"


class FirecrawlClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str,
        base_url: str = "https://api.firecrawl.dev",
    ):
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, tool: str, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._http.post(
                f"{self._base_url}{path}", json=body, headers=self._headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UpstreamToolError(
                tool, f"Firecrawl returned {e.response.status_code}: {e.response.text[:300]}"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamToolError(tool, f"Firecrawl request failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamToolError(tool, f"Firecrawl returned invalid JSON: {e}") from e
        if isinstance(data, dict) and data.get("success") is False:
            raise UpstreamToolError(tool, data.get("error") or "Firecrawl request failed")
        return data

    async def scrape(self, url: str) -> dict[str, Any]:
        data = await self._post(
            "scrape_website",
            "/v1/scrape",
            {"url": url, "formats": ["markdown"], "onlyMainContent": True},
        )
        page = data.get("data") or {}
        metadata = page.get("metadata") or {}
        return {
            "url": url,
            "title": metadata.get("title"),
            "content": _truncate(page.get("markdown")),
        }

    async def search(self, query: str, limit: int = MAX_SEARCH_RESULTS) -> dict[str, Any]:
        limit = max(1, min(int(limit), MAX_SEARCH_RESULTS))
        data = await self._post(
            "web_search", "/v1/search", {"query": query, "limit": limit}
        )
        return {
            "query": query,
            "results": [
                {
                    "url": item.get("url"),
                    "title": item.get("title"),
                    "description": item.get("description"),
                }
                for item in (data.get("data") or [])[:limit]
            ],
        }

    async def map_site(self, url: str, search: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"url": url}
        if search:
            body["search"] = search
        data = await self._post("map_website", "/v1/map", body)
        links = data.get("links") or []
        return {"url": url, "total": len(links), "links": links[:MAX_MAP_LINKS]}

    async def _scrape_tool(self, tool_input: dict, context: dict) -> dict:
        return await self.scrape(tool_input["url"])

    async def _search_tool(self, tool_input: dict, context: dict) -> dict:
        return await self.search(
            tool_input["query"], tool_input.get("limit", MAX_SEARCH_RESULTS)
        )

    async def _map_tool(self, tool_input: dict, context: dict) -> dict:
        return await self.map_site(tool_input["url"], tool_input.get("search"))

    def tools(self) -> list[AgentTool]:
        return [
            AgentTool(
                name="web_search",
                description=(
                    "Search the public web. Returns at most "
                    f"{MAX_SEARCH_RESULTS} results with url, title and description."
                ),
                handler=self._search_tool,
                input_schema={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string"},
                        "limit": {
                            "type": "integer",
                            "minimum": 1,
                            "maximum": MAX_SEARCH_RESULTS,
                        },
                    },
                    "required": ["query"],
                },
            ),
            AgentTool(
                name="scrape_website",
                description=(
                    "Fetch a web page as markdown. Content is truncated to "
                    f"{MAX_CONTENT_CHARS} characters."
                ),
                handler=self._scrape_tool,
                input_schema={
                    "type": "object",
                    "properties": {"url": {"type": "string"}},
                    "required": ["url"],
                },
            ),
            AgentTool(
                name="map_website",
                description=(
                    "List the URLs of a website, optionally filtered by a search "
                    f"term. Returns at most {MAX_MAP_LINKS} links."
                ),
                handler=self._map_tool,
                input_schema={
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "search": {"type": "string"},
                    },
                    "required": ["url"],
                },
            ),
        ]
