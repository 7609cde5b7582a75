"""
Tool-calling agent engine.

The loop is an explicit state machine::

    CALL_MODEL -> EXECUTE_TOOLS -> CALL_MODEL ... -> FINAL_ANSWER -> DONE
                                \\-> REQUEST_FINAL (after finish_analysis)

and every run ends in exactly one of four outcomes: ``completed`` (a final
answer matched the entity's schema), ``budget_exhausted`` (iteration cap hit
first), ``cancelled`` (the cancellation token fired between steps) or
``failed`` (the model service failed). Tool errors are not fatal; they are
fed back to the model as error-marked tool results.

Cancellation is cooperative. The token is checked before every model call
and before every tool dispatch; a call already in flight runs to completion.
"""

import asyncio
import inspect
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import json_repair
from opentelemetry import trace
from pydantic import ValidationError as PydanticValidationError

from intelhub.core.errors import ModelServiceError
from intelhub.core.llms import ModelClient, ModelResponse
from intelhub.core.prompts import (
    FINAL_OUTPUT_REQUEST,
    FINISH_TOOL_NAME,
    INVALID_OUTPUT_FEEDBACK,
    build_system_prompt,
)
from intelhub.core.tools import ToolRegistry
from intelhub.models.pydantic_models.intelligence import validate_intelligence

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_PREVIEW_CHARS = 500


class AgentEventType(str, Enum):
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    RESPONSE = "response"
    ERROR = "error"
    COMPLETE = "complete"


class AgentOutcome(str, Enum):
    COMPLETED = "completed"
    BUDGET_EXHAUSTED = "budget_exhausted"
    CANCELLED = "cancelled"
    FAILED = "failed"


class _State(Enum):
    CALL_MODEL = "call_model"
    EXECUTE_TOOLS = "execute_tools"
    REQUEST_FINAL = "request_final"
    FINAL_ANSWER = "final_answer"
    DONE = "done"


@dataclass
class AgentEvent:
    type: AgentEventType
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class AgentResult:
    outcome: AgentOutcome
    iterations: int
    tool_calls: int
    duration_ms: int
    output: dict[str, Any] | None = None
    error: str | None = None
    # Best-effort payload when the run ended without a final answer
    partial: dict[str, Any] | None = None

    @property
    def success(self) -> bool:
        return self.outcome == AgentOutcome.COMPLETED

    def stats(self) -> dict[str, Any]:
        return {
            "iterations": self.iterations,
            "tool_calls": self.tool_calls,
            "duration_ms": self.duration_ms,
            "outcome": self.outcome.value,
        }


class CancellationToken(Protocol):
    async def is_cancelled(self) -> bool: ...


class LocalCancellationToken:
    """In-memory token, set by the owner of the run."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    async def is_cancelled(self) -> bool:
        return self._event.is_set()


EmitCallback = Callable[[AgentEvent], Awaitable[None] | None]


@dataclass
class AgentConfig:
    name: str
    entity_type: str
    system_prompt: str | None = None
    finish_tool_name: str = FINISH_TOOL_NAME
    # Consecutive schema-invalid final answers tolerated before failing the run
    max_invalid_outputs: int = 3

    def __post_init__(self):
        if self.system_prompt is None:
            self.system_prompt = build_system_prompt(self.entity_type)


def parse_output(text: str | None) -> dict[str, Any] | None:
    """Pull a JSON object out of model text (fenced block first, then raw)."""
    if not text:
        return None
    match = _JSON_BLOCK_RE.search(text)
    if match:
        candidate = match.group(1)
    else:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            return None
        candidate = text[start : end + 1]
    parsed = json_repair.loads(candidate)
    return parsed if isinstance(parsed, dict) and parsed else None


def _preview(text: str) -> str:
    if len(text) <= _PREVIEW_CHARS:
        return text
    return text[:_PREVIEW_CHARS] + "..."


class _Run:
    """Mutable bookkeeping for a single ``AgentEngine.run`` call."""

    def __init__(self, max_iterations: int | None):
        self.max_iterations = max_iterations
        self.iterations = 0
        self.tool_calls = 0
        self.invalid_outputs = 0
        self.finish_requested = False
        self.last_text: str | None = None
        self.pending: ModelResponse | None = None
        self.started = time.monotonic()

    @property
    def budget_left(self) -> bool:
        return self.max_iterations is None or self.iterations < self.max_iterations

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class AgentEngine:
    """
    Drives one research agent against one entity.

    The model client and tool registry are injected; the engine holds no
    per-run state, so one instance can serve concurrent runs.
    """

    def __init__(self, config: AgentConfig, model_client: ModelClient, tools: ToolRegistry):
        self.config = config
        self.model_client = model_client
        self.tools = tools

    def tool_definitions(self) -> list[dict[str, Any]]:
        definitions = self.tools.definitions()
        definitions.append(
            {
                "type": "function",
                "function": {
                    "name": self.config.finish_tool_name,
                    "description": (
                        "Call this when you have gathered enough information and "
                        "are ready to provide your final analysis."
                    ),
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "summary": {
                                "type": "string",
                                "description": "Brief summary of what you investigated and key findings",
                            }
                        },
                        "required": ["summary"],
                    },
                },
            }
        )
        return definitions

    async def run(
        self,
        user_message: str,
        context: dict[str, Any] | None = None,
        emit: EmitCallback | None = None,
        cancel_token: CancellationToken | None = None,
        max_iterations: int | None = None,
    ) -> AgentResult:
        """
        Run the agent until it finishes, runs out of budget, is cancelled or fails.

        Args:
            user_message: Opening request, including the entity context
            context: Passed through to every tool handler
            emit: Receives each AgentEvent in order; may be sync or async
            cancel_token: Checked before every model call and tool dispatch
            max_iterations: Model-call budget; None runs to natural completion

        Returns:
            AgentResult describing the outcome
        """
        context = context or {}
        run = _Run(max_iterations)
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": self.config.system_prompt},
            {"role": "user", "content": user_message},
        ]
        tool_definitions = self.tool_definitions()

        async def send(event_type: AgentEventType, **data):
            if emit is None:
                return
            outcome = emit(AgentEvent(type=event_type, data=data))
            if inspect.isawaitable(outcome):
                await outcome

        async def cancelled() -> bool:
            return cancel_token is not None and await cancel_token.is_cancelled()

        await send(
            AgentEventType.THINKING, message=f"Starting {self.config.name} agent..."
        )

        state = _State.CALL_MODEL
        with tracer.start_as_current_span("agent.run") as span:
            span.set_attribute("agent.name", self.config.name)
            span.set_attribute("agent.entity_type", self.config.entity_type)

            while state != _State.DONE:
                if state in (_State.CALL_MODEL, _State.REQUEST_FINAL):
                    if await cancelled():
                        return await self._cancelled(run, send)
                    if not run.budget_left:
                        return await self._budget_exhausted(run, send)

                    run.iterations += 1
                    await send(
                        AgentEventType.THINKING,
                        message=f"Iteration {run.iterations}: Agent is analyzing...",
                        iteration=run.iterations,
                    )
                    try:
                        response = await self.model_client.complete(
                            messages, tools=tool_definitions
                        )
                    except ModelServiceError as e:
                        return await self._failed(run, send, str(e))

                    messages.append(response.as_message())
                    if response.content:
                        run.last_text = response.content

                    if response.tool_calls:
                        if response.content:
                            await send(
                                AgentEventType.THINKING,
                                message="Agent reasoning",
                                text=_preview(response.content),
                            )
                        run.pending = response
                        state = _State.EXECUTE_TOOLS
                    else:
                        run.pending = response
                        state = _State.FINAL_ANSWER

                elif state == _State.EXECUTE_TOOLS:
                    for tool_call in run.pending.tool_calls:
                        if await cancelled():
                            return await self._cancelled(run, send)
                        content = await self._execute_tool(
                            tool_call.name, tool_call.arguments, context, run, send
                        )
                        messages.append(
                            {
                                "role": "tool",
                                "tool_call_id": tool_call.id,
                                "content": content,
                            }
                        )
                    if run.finish_requested:
                        messages.append({"role": "user", "content": FINAL_OUTPUT_REQUEST})
                        state = _State.REQUEST_FINAL
                    else:
                        state = _State.CALL_MODEL

                elif state == _State.FINAL_ANSWER:
                    text = run.pending.content
                    output, error = self._validate_output(text)
                    if output is not None:
                        await send(
                            AgentEventType.RESPONSE,
                            message="Agent produced final analysis",
                            text=_preview(text or ""),
                        )
                        result = AgentResult(
                            outcome=AgentOutcome.COMPLETED,
                            iterations=run.iterations,
                            tool_calls=run.tool_calls,
                            duration_ms=run.elapsed_ms,
                            output=output,
                        )
                        await send(
                            AgentEventType.COMPLETE,
                            message="Analysis complete",
                            iterations=result.iterations,
                            tool_calls=result.tool_calls,
                            output=output,
                        )
                        span.set_attribute("agent.outcome", result.outcome.value)
                        return result

                    run.invalid_outputs += 1
                    logger.info(
                        f"{self.config.name}: rejected final answer "
                        f"({run.invalid_outputs}/{self.config.max_invalid_outputs}): {error}"
                    )
                    if run.invalid_outputs >= self.config.max_invalid_outputs:
                        return await self._failed(
                            run, send, f"Model returned an invalid final answer: {error}"
                        )
                    messages.append(
                        {
                            "role": "user",
                            "content": INVALID_OUTPUT_FEEDBACK.format(error=error),
                        }
                    )
                    state = _State.REQUEST_FINAL if run.finish_requested else _State.CALL_MODEL

        raise AssertionError("agent loop exited without an outcome")

    # -----------------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------------

    async def _execute_tool(
        self,
        name: str,
        tool_input: dict[str, Any],
        context: dict[str, Any],
        run: _Run,
        send,
    ) -> str:
        """Execute one tool call and return the tool message content."""
        if name == self.config.finish_tool_name:
            run.finish_requested = True
            await send(
                AgentEventType.TOOL_CALL,
                tool=name,
                input=tool_input,
                status="complete",
            )
            return json.dumps(
                {"success": True, "message": "Analysis complete. Provide your final report."}
            )

        if name not in self.tools:
            error = f"Unknown tool: {name}"
            await send(
                AgentEventType.TOOL_RESULT,
                tool=name,
                input=tool_input,
                error=error,
                status="error",
            )
            return json.dumps({"success": False, "error": error})

        await send(
            AgentEventType.TOOL_CALL, tool=name, input=tool_input, status="executing"
        )
        run.tool_calls += 1
        started = time.monotonic()
        with tracer.start_as_current_span("agent.tool") as span:
            span.set_attribute("tool.name", name)
            try:
                result = await self.tools.execute(name, tool_input, context)
                payload = {"success": True, "result": result}
            except Exception as e:
                logger.warning(f"Tool {name} failed: {e}")
                span.set_attribute("tool.error", str(e))
                payload = {"success": False, "error": str(e)}

        duration_ms = int((time.monotonic() - started) * 1000)
        await send(
            AgentEventType.TOOL_RESULT,
            tool=name,
            input=tool_input,
            result=payload.get("result"),
            error=payload.get("error"),
            duration_ms=duration_ms,
            duration=f"{duration_ms}ms",
            status="complete" if payload["success"] else "error",
        )
        return json.dumps(payload, default=str)

    def _validate_output(self, text: str | None) -> tuple[dict[str, Any] | None, str | None]:
        parsed = parse_output(text)
        if parsed is None:
            return None, "no JSON object found in the response"
        try:
            validated = validate_intelligence(self.config.entity_type, parsed)
        except PydanticValidationError as e:
            return None, "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
        return validated.model_dump(mode="json"), None

    async def _budget_exhausted(self, run: _Run, send) -> AgentResult:
        message = f"Agent reached maximum iterations ({run.max_iterations})"
        await send(
            AgentEventType.ERROR,
            message=message,
            error=message,
            iterations=run.iterations,
            tool_calls=run.tool_calls,
        )
        return AgentResult(
            outcome=AgentOutcome.BUDGET_EXHAUSTED,
            iterations=run.iterations,
            tool_calls=run.tool_calls,
            duration_ms=run.elapsed_ms,
            error=message,
            partial={
                "partial": True,
                "last_response": run.last_text,
                "tool_calls": run.tool_calls,
            },
        )

    async def _cancelled(self, run: _Run, send) -> AgentResult:
        message = "Analysis cancelled"
        await send(AgentEventType.ERROR, message=message, error=message, cancelled=True)
        return AgentResult(
            outcome=AgentOutcome.CANCELLED,
            iterations=run.iterations,
            tool_calls=run.tool_calls,
            duration_ms=run.elapsed_ms,
            error=message,
        )

    async def _failed(self, run: _Run, send, error: str) -> AgentResult:
        logger.error(f"{self.config.name} agent failed at iteration {run.iterations}: {error}")
        await send(
            AgentEventType.ERROR,
            message=f"Agent error: {error}",
            error=error,
            iteration=run.iterations,
        )
        return AgentResult(
            outcome=AgentOutcome.FAILED,
            iterations=run.iterations,
            tool_calls=run.tool_calls,
            duration_ms=run.elapsed_ms,
            error=error,
        )
