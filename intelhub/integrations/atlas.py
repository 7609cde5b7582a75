"""ATLAS knowledge-base adapter (semantic search over past customers and projects)."""

import logging
from typing import Any

import httpx

from intelhub.core.errors import UpstreamToolError
from intelhub.core.tools import AgentTool

logger = logging.getLogger(__name__)

MAX_RESULTS = 10


class AtlasClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        endpoint: str,
        api_key: str | None = None,
    ):
        self._http = http_client
        self._endpoint = endpoint
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"

    async def query(self, query: str, limit: int = 5) -> dict[str, Any]:
        if not query or not query.strip():
            raise UpstreamToolError("query_atlas", "query must not be empty")
        try:
            response = await self._http.post(
                self._endpoint,
                json={"query": query, "limit": max(1, min(int(limit), MAX_RESULTS))},
                headers=self._headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamToolError("query_atlas", f"ATLAS query failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamToolError("query_atlas", f"ATLAS returned invalid JSON: {e}") from e
        results = data.get("results", []) if isinstance(data, dict) else data
        return {"query": query, "results": results[:MAX_RESULTS]}

    async def _query_tool(self, tool_input: dict, context: dict) -> dict:
        return await self.query(tool_input.get("query", ""), tool_input.get("limit", 5))

    def tools(self) -> list[AgentTool]:
        return [
            AgentTool(
                name="query_atlas",
                description=(
                    "Semantic search over the internal ATLAS knowledge base of past "
                    "customers, projects and notes. Returns at most "
                    f"{MAX_RESULTS} matches."
                ),
                handler=self._query_tool,
                input_schema={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string"},
                        "limit": {"type": "integer", "minimum": 1, "maximum": MAX_RESULTS},
                    },
                    "required": ["query"],
                },
            )
        ]
