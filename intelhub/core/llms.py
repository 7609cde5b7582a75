import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import json_repair
from litellm import RateLimitError, completion
from opentelemetry import trace
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential_jitter,
    before_sleep_log,
)

from intelhub.config import settings
from intelhub.core.errors import ModelServiceError
from intelhub.core.model_resolver import TaskType, resolve_model

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SUPPORTED_LLM_MODELS = [
    {"provider": "openai", "model_name": "gpt-5"},
    {"provider": "openai", "model_name": "gpt-5-mini"},
    {"provider": "openai", "model_name": "gpt-4.1"},
    {"provider": "anthropic", "model_name": "claude-sonnet-4-5"},
    {"provider": "anthropic", "model_name": "claude-haiku-4-5"},
    {"provider": "gemini", "model_name": "gemini-2.5-pro"},
    {"provider": "gemini", "model_name": "gemini-2.5-flash"},
]
SUPPORTED_LLM_MODEL_NAMES = {item["model_name"] for item in SUPPORTED_LLM_MODELS}
LLM_PROVIDER_BY_MODEL = {
    item["model_name"]: item["provider"] for item in SUPPORTED_LLM_MODELS
}

# Pattern to strip date suffixes like "-2025-08-07" from versioned model names
_DATE_SUFFIX_RE = re.compile(r"-\d{4}-\d{2}-\d{2}$")

_MAX_TOKENS = 8000


def normalize_model_name(model_name: str) -> str:
    """Strip a date-version suffix (e.g. '-2025-08-07') from a model name."""
    base = _DATE_SUFFIX_RE.sub("", model_name)
    if base in SUPPORTED_LLM_MODEL_NAMES:
        return base
    return model_name


def qualify_model_name(model_name: str) -> str:
    """Return the litellm ``provider/model`` form for a supported model."""
    if "/" in model_name:
        return model_name
    name = normalize_model_name(model_name)
    if name not in SUPPORTED_LLM_MODEL_NAMES:
        raise ValueError(f"Unsupported model: {name}")
    return f"{LLM_PROVIDER_BY_MODEL[name]}/{name}"


def try_json_parsing(json_data: str):
    res = json_repair.loads(json_data)
    if not res:
        raise ValueError(f"Failed to parse JSON: {json_data}")
    return res


@dataclass
class ToolCallRequest:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class ModelResponse:
    content: str | None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)

    def as_message(self) -> dict[str, Any]:
        """The assistant turn to append to the conversation."""
        message: dict[str, Any] = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {
                        "name": tc.name,
                        "arguments": json.dumps(tc.arguments),
                    },
                }
                for tc in self.tool_calls
            ]
        return message


def _parse_tool_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    parsed = json_repair.loads(raw)
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _parse_response(response) -> ModelResponse:
    if not getattr(response, "choices", None):
        raise ModelServiceError("Malformed model response: no choices")
    message = response.choices[0].message

    tool_calls = []
    for tc in getattr(message, "tool_calls", None) or []:
        tool_calls.append(
            ToolCallRequest(
                id=tc.id,
                name=tc.function.name,
                arguments=_parse_tool_arguments(tc.function.arguments),
            )
        )

    content = message.content
    if content is None and not tool_calls:
        raise ModelServiceError("No content or tool calls received from LLM")

    usage = getattr(response, "usage", None)
    stats = {
        "prompt_tokens": getattr(usage, "prompt_tokens", None),
        "completion_tokens": getattr(usage, "completion_tokens", None),
    }
    return ModelResponse(
        content=content.strip() if content else content,
        tool_calls=tool_calls,
        stats=stats,
    )


class ModelClient:
    """
    Tool-calling chat client over litellm.

    Constructed once and passed to the agent engine, so tests can hand the
    engine a fake with the same ``complete`` signature.
    """

    def __init__(
        self,
        model: str | None = None,
        task: TaskType = TaskType.ENTITY_RESEARCH,
        timeout_s: float | None = None,
        request_kwargs: dict | None = None,
    ):
        self._model = model
        self.task = task
        self.timeout_s = timeout_s if timeout_s is not None else settings.model_timeout_s
        self.request_kwargs = request_kwargs or {}

    @property
    def model(self) -> str:
        return qualify_model_name(self._model or resolve_model(self.task))

    @retry(
        retry=retry_if_exception_type(RateLimitError),
        wait=wait_exponential_jitter(initial=1, max=30, jitter=3),
        stop=(stop_after_attempt(5) | stop_after_delay(120)),
        reraise=True,
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
    async def _completion(self, **completion_kwargs):
        return await asyncio.wait_for(
            asyncio.to_thread(completion, **completion_kwargs),
            timeout=self.timeout_s,
        )

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelResponse:
        """
        Send the conversation and return the model's next turn.

        Args:
            messages: Full conversation so far, system prompt included
            tools: OpenAI-style function definitions the model may call

        Returns:
            ModelResponse with text content and/or tool call requests

        Raises:
            ModelServiceError: On timeout, provider error, or a malformed response
        """
        try:
            model = self.model
        except (RuntimeError, ValueError) as e:
            raise ModelServiceError(str(e)) from e

        completion_kwargs: dict = {
            "model": model,
            "messages": messages,
            "max_tokens": _MAX_TOKENS,
        }
        if tools:
            completion_kwargs["tools"] = tools

        with tracer.start_as_current_span("llm.completion") as span:
            span.set_attribute("llm.model", model)
            span.set_attribute("llm.message_count", len(messages))
            try:
                response = await self._completion(
                    **completion_kwargs, **self.request_kwargs
                )
            except asyncio.TimeoutError as e:
                raise ModelServiceError(
                    f"Model call timed out after {self.timeout_s}s"
                ) from e
            except ModelServiceError:
                raise
            except Exception as e:
                raise ModelServiceError(f"Error calling LLM: {str(e)}") from e

            parsed = _parse_response(response)
            span.set_attribute("llm.tool_call_count", len(parsed.tool_calls))
            return parsed
