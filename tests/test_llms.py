"""Tests for intelhub.core.llms.ModelClient."""

import json
import time
from unittest.mock import MagicMock, patch

import pytest

from intelhub.core.errors import ModelServiceError
from intelhub.core.llms import (
    ModelClient,
    ModelResponse,
    ToolCallRequest,
    normalize_model_name,
    qualify_model_name,
)


def _make_completion_response(content: str | None = "Hello", tool_calls=None) -> MagicMock:
    """Build a minimal litellm-style response mock."""
    message = MagicMock()
    message.content = content
    message.tool_calls = tool_calls

    choice = MagicMock()
    choice.message = message

    response = MagicMock()
    response.choices = [choice]
    response.usage.prompt_tokens = 10
    response.usage.completion_tokens = 5
    return response


def _tool_call(name: str, arguments: str, call_id: str = "call_1") -> MagicMock:
    tc = MagicMock()
    tc.id = call_id
    tc.function.name = name
    tc.function.arguments = arguments
    return tc


@pytest.fixture()
def mock_completion():
    with patch("intelhub.core.llms.completion") as m:
        m.return_value = _make_completion_response()
        yield m


@pytest.mark.asyncio
async def test_text_response(mock_completion):
    client = ModelClient(model="claude-sonnet-4-5")
    response = await client.complete([{"role": "user", "content": "hi"}])

    assert response.content == "Hello"
    assert response.tool_calls == []
    assert response.stats == {"prompt_tokens": 10, "completion_tokens": 5}

    kwargs = mock_completion.call_args.kwargs
    assert kwargs["model"] == "anthropic/claude-sonnet-4-5"
    assert "tools" not in kwargs


@pytest.mark.asyncio
async def test_tool_calls_parsed_and_tools_forwarded(mock_completion):
    mock_completion.return_value = _make_completion_response(
        content=None,
        tool_calls=[
            _tool_call("hubspot_search_deals", '{"query": "acme", "limit": 5}'),
            _tool_call("firecrawl_scrape", "{'url': 'https://acme.test'", call_id="call_2"),
        ],
    )
    tools = [{"type": "function", "function": {"name": "hubspot_search_deals"}}]

    response = await ModelClient(model="gpt-5-mini").complete([], tools=tools)

    assert mock_completion.call_args.kwargs["tools"] == tools
    assert response.content is None
    assert response.tool_calls[0] == ToolCallRequest(
        id="call_1", name="hubspot_search_deals", arguments={"query": "acme", "limit": 5}
    )
    # Malformed JSON arguments are repaired
    assert response.tool_calls[1].arguments == {"url": "https://acme.test"}


@pytest.mark.asyncio
async def test_empty_response_raises(mock_completion):
    mock_completion.return_value = _make_completion_response(content=None)
    with pytest.raises(ModelServiceError, match="No content or tool calls"):
        await ModelClient(model="gpt-5").complete([])


@pytest.mark.asyncio
async def test_provider_error_wrapped(mock_completion):
    mock_completion.side_effect = ConnectionError("connection reset")
    with pytest.raises(ModelServiceError, match="Error calling LLM: connection reset"):
        await ModelClient(model="gpt-5").complete([])


@pytest.mark.asyncio
async def test_timeout_raises_model_service_error(mock_completion):
    mock_completion.side_effect = lambda **kwargs: time.sleep(0.3)
    with pytest.raises(ModelServiceError, match="timed out"):
        await ModelClient(model="gpt-5", timeout_s=0.01).complete([])


@pytest.mark.asyncio
async def test_no_provider_configured_raises(monkeypatch, mock_completion):
    for attr in ("openai_api_key", "anthropic_api_key", "gemini_api_key"):
        monkeypatch.setattr(f"intelhub.config.settings.{attr}", "")
    monkeypatch.setattr("intelhub.config.settings.intelligence_model", "")

    with pytest.raises(ModelServiceError, match="No LLM API key configured"):
        await ModelClient().complete([])
    mock_completion.assert_not_called()


def test_model_names():
    assert normalize_model_name("gpt-5-2025-08-07") == "gpt-5"
    assert normalize_model_name("custom-2025-08-07") == "custom-2025-08-07"
    assert qualify_model_name("gemini-2.5-pro") == "gemini/gemini-2.5-pro"
    assert qualify_model_name("openrouter/meta/llama") == "openrouter/meta/llama"
    with pytest.raises(ValueError, match="Unsupported model"):
        qualify_model_name("llama-3")


def test_assistant_message_carries_tool_calls():
    response = ModelResponse(
        content=None,
        tool_calls=[ToolCallRequest(id="c1", name="web_search", arguments={"q": "acme"})],
    )
    message = response.as_message()
    assert message["role"] == "assistant"
    call = message["tool_calls"][0]
    assert call["id"] == "c1"
    assert call["function"]["name"] == "web_search"
    assert json.loads(call["function"]["arguments"]) == {"q": "acme"}
