"""Tests for the tool registry and registry construction from settings."""

import asyncio

import httpx
import pytest

from intelhub.core.errors import UpstreamToolError
from intelhub.core.tools import AgentTool, ToolRegistry, build_tool_registry


async def _echo(tool_input, context):
    return {"input": tool_input, "entity": context.get("entity_id")}


async def _slow(tool_input, context):
    await asyncio.sleep(1)


@pytest.mark.asyncio
async def test_execute_passes_input_and_context():
    registry = ToolRegistry([AgentTool(name="echo", description="Echo", handler=_echo)])
    result = await registry.execute("echo", {"q": "acme"}, {"entity_id": "123"})
    assert result == {"input": {"q": "acme"}, "entity": "123"}


@pytest.mark.asyncio
async def test_execute_times_out_with_upstream_error():
    registry = ToolRegistry(
        [AgentTool(name="slow", description="Slow", handler=_slow, timeout_s=0.01)]
    )
    with pytest.raises(UpstreamToolError, match="slow: timed out after 0.01s"):
        await registry.execute("slow", {}, {})


@pytest.mark.asyncio
async def test_execute_unknown_tool_raises_key_error():
    with pytest.raises(KeyError):
        await ToolRegistry().execute("missing", {}, {})


def test_duplicate_registration_rejected():
    tool = AgentTool(name="echo", description="Echo", handler=_echo)
    registry = ToolRegistry([tool])
    with pytest.raises(ValueError, match="already registered"):
        registry.register(tool)


def test_definitions_use_function_schema():
    registry = ToolRegistry([AgentTool(name="echo", description="Echo", handler=_echo)])
    assert "echo" in registry
    assert registry.definitions() == [
        {
            "type": "function",
            "function": {
                "name": "echo",
                "description": "Echo",
                "parameters": {"type": "object", "properties": {}},
            },
        }
    ]


@pytest.mark.asyncio
async def test_build_registry_only_registers_configured_adapters(monkeypatch):
    monkeypatch.setattr("intelhub.config.settings.hubspot_access_token", "")
    monkeypatch.setattr("intelhub.config.settings.atlas_endpoint", "https://atlas.test/query")
    monkeypatch.setattr("intelhub.config.settings.firecrawl_api_key", "fc-key")

    async with httpx.AsyncClient() as http_client:
        registry = build_tool_registry(http_client)

    assert sorted(registry.names()) == [
        "map_website",
        "query_atlas",
        "scrape_website",
        "web_search",
    ]


@pytest.mark.asyncio
async def test_build_registry_with_nothing_configured(monkeypatch):
    for attr in ("hubspot_access_token", "atlas_endpoint", "firecrawl_api_key"):
        monkeypatch.setattr(f"intelhub.config.settings.{attr}", "")

    async with httpx.AsyncClient() as http_client:
        assert len(build_tool_registry(http_client)) == 0
