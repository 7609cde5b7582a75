"""
Progress streaming for agent runs.

Agent events are mapped to ``{step, message, status, data}`` progress
payloads. Streaming callers get them as Server-Sent Events through a
``ProgressChannel``; buffered callers collect them in a ``ProgressLog``.
Both see the same payloads in the same order.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

from intelhub.core.agent_engine import AgentEvent, AgentEventType

logger = logging.getLogger(__name__)

SSE_MEDIA_TYPE = "text/event-stream"


def _format_sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def format_progress(event: AgentEvent) -> dict[str, Any]:
    """Map an agent event to the progress payload clients render."""
    data = event.data
    tool = data.get("tool")

    if event.type == AgentEventType.THINKING:
        return {
            "step": "agent-thinking",
            "message": data.get("message", "Agent is thinking..."),
            "status": "info",
            "data": data,
        }
    if event.type == AgentEventType.TOOL_CALL:
        return {
            "step": f"tool-call-{tool}",
            "message": f"Calling tool: {tool}",
            "status": "loading",
            "data": {"tool": tool, "input": data.get("input")},
        }
    if event.type == AgentEventType.TOOL_RESULT:
        failed = data.get("status") == "error"
        return {
            "step": f"tool-result-{tool}",
            "message": f"{tool} failed: {data.get('error')}" if failed else f"{tool} complete",
            "status": "error" if failed else "complete",
            "data": {
                "tool": tool,
                "result": data.get("result"),
                "error": data.get("error"),
                "duration": data.get("duration"),
            },
        }
    if event.type == AgentEventType.RESPONSE:
        return {
            "step": "agent-response",
            "message": data.get("message", "Agent reasoning..."),
            "status": "info",
            "data": {"text": data.get("text")},
        }
    if event.type == AgentEventType.ERROR:
        return {
            "step": "agent-error",
            "message": data.get("message") or f"Error: {data.get('error')}",
            "status": "error",
            "data": data,
        }
    return {
        "step": "agent-complete",
        "message": "Analysis complete",
        "status": "complete",
        "data": {
            "iterations": data.get("iterations"),
            "tool_calls": data.get("tool_calls"),
        },
    }


def to_log_entry(event: AgentEvent) -> dict[str, Any]:
    """Progress payload plus timestamp, as stored on the job's audit log."""
    return {**format_progress(event), "timestamp": event.timestamp.isoformat()}


class ProgressLog:
    """Collects progress payloads for one buffered (non-streaming) run."""

    def __init__(self):
        self.entries: list[dict[str, Any]] = []

    def __call__(self, event: AgentEvent) -> None:
        self.entries.append(to_log_entry(event))


class ProgressChannel:
    """
    One-shot ordered SSE channel between an agent run and one HTTP response.

    The producer calls the channel with each agent event, then exactly one of
    ``complete`` or ``error``. The consumer iterates ``frames()``; iteration
    ends right after the terminal frame. Anything sent after the terminal
    frame is dropped.
    """

    def __init__(self):
        self._queue: asyncio.Queue[tuple[str, Any] | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def __call__(self, event: AgentEvent) -> None:
        if self._closed:
            return
        await self._queue.put(("progress", format_progress(event)))

    async def _terminate(self, event: str, payload: dict[str, Any]) -> None:
        if self._closed:
            logger.debug(f"Dropping '{event}' frame on a closed progress channel")
            return
        self._closed = True
        await self._queue.put((event, payload))
        await self._queue.put(None)

    async def complete(self, payload: dict[str, Any]) -> None:
        await self._terminate("complete", payload)

    async def error(self, message: str, data: dict[str, Any] | None = None) -> None:
        payload = {
            "step": "error",
            "message": message,
            "status": "error",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if data:
            payload["data"] = data
        await self._terminate("error", payload)

    async def frames(self):
        while True:
            item = await self._queue.get()
            if item is None:
                return
            event, payload = item
            yield _format_sse(event, payload)
