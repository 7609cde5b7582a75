"""
Tool registry for the research agent.

A tool is a named async adapter ``(input, context) -> result`` with its own
timeout budget. Adapters are constructed once and shared read-only by every
job; they raise on failure and the agent engine narrates the error back to
the model.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from intelhub.config import settings
from intelhub.core.errors import UpstreamToolError

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any], dict[str, Any]], Awaitable[Any]]


@dataclass
class AgentTool:
    name: str
    description: str
    handler: ToolHandler
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    timeout_s: float | None = None

    def definition(self) -> dict[str, Any]:
        """OpenAI-style function definition sent to the model."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class ToolRegistry:
    def __init__(
        self, tools: list[AgentTool] | None = None, default_timeout_s: float = 30.0
    ):
        self.default_timeout_s = default_timeout_s
        self._tools: dict[str, AgentTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: AgentTool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> AgentTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(
        self, name: str, tool_input: dict[str, Any], context: dict[str, Any]
    ) -> Any:
        """
        Run one tool under its timeout.

        Raises:
            KeyError: If no tool is registered under ``name``
            UpstreamToolError: If the tool times out
        """
        tool = self._tools[name]
        timeout = tool.timeout_s or self.default_timeout_s
        try:
            return await asyncio.wait_for(
                tool.handler(tool_input, context), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise UpstreamToolError(name, f"timed out after {timeout}s") from e


def build_tool_registry(http_client: httpx.AsyncClient) -> ToolRegistry:
    """Register every adapter whose credentials are configured."""
    from intelhub.integrations.atlas import AtlasClient
    from intelhub.integrations.firecrawl import FirecrawlClient
    from intelhub.integrations.hubspot import HubSpotClient

    registry = ToolRegistry(default_timeout_s=settings.tool_timeout_s)

    if settings.hubspot_access_token:
        hubspot = HubSpotClient(
            http_client,
            access_token=settings.hubspot_access_token,
            base_url=settings.hubspot_base_url,
        )
        for tool in hubspot.tools():
            registry.register(tool)

    if settings.atlas_endpoint:
        atlas = AtlasClient(
            http_client,
            endpoint=settings.atlas_endpoint,
            api_key=settings.atlas_api_key or None,
        )
        for tool in atlas.tools():
            registry.register(tool)

    if settings.firecrawl_api_key:
        firecrawl = FirecrawlClient(
            http_client,
            api_key=settings.firecrawl_api_key,
            base_url=settings.firecrawl_base_url,
        )
        for tool in firecrawl.tools():
            registry.register(tool)

    if not len(registry):
        logger.warning("No tool adapters configured; the agent will run without tools")
    else:
        logger.info(f"Registered agent tools: {', '.join(registry.names())}")

    return registry
