"""Turn events and the sinks that carry them to the caller.

The orchestrator emits TurnEvents in order; a sink decides where they go.
CollectingSink keeps them in a list (blocking calls, tests). EventChannel
is an asyncio.Queue that an SSE response drains while the turn runs.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    TEXT_DELTA = "text_delta"
    TOOL_STARTED = "tool_started"
    TOOL_FINISHED = "tool_finished"
    DONE = "done"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({EventType.DONE, EventType.ERROR})


@dataclass
class TurnEvent:
    """A single event in a turn's output stream."""

    type: EventType
    text: str = ""
    tool_name: str = ""
    invocation_id: str = ""
    success: bool | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type.value}
        if self.text:
            result["text"] = self.text
        if self.tool_name:
            result["toolName"] = self.tool_name
        if self.invocation_id:
            result["invocationId"] = self.invocation_id
        if self.success is not None:
            result["success"] = self.success
        result.update(self.data)
        return result


def encode_sse(event: TurnEvent) -> str:
    """Render an event as one SSE frame."""
    return f"data: {json.dumps(event.to_dict(), default=str)}\n\n"


class EventSink(Protocol):
    async def emit(self, event: TurnEvent) -> None: ...


class CollectingSink:
    """Keeps every event in order."""

    def __init__(self) -> None:
        self.events: list[TurnEvent] = []

    async def emit(self, event: TurnEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[TurnEvent]:
        return [e for e in self.events if e.type == event_type]

    @property
    def text(self) -> str:
        return "".join(e.text for e in self.of_type(EventType.TEXT_DELTA))


class EventChannel:
    """Queue-backed sink that is also an async iterator of events.

    Iteration ends after the terminal event. Once the consumer disconnects,
    emits are dropped so the producing turn can run to completion unheard.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[TurnEvent] = asyncio.Queue()
        self._closed = False
        self.disconnected = False
        self.dropped = 0

    async def emit(self, event: TurnEvent) -> None:
        if self.disconnected or self._closed:
            self.dropped += 1
            return
        if event.is_terminal:
            self._closed = True
        await self._queue.put(event)

    @property
    def closed(self) -> bool:
        """True once the terminal event has been queued."""
        return self._closed

    def disconnect(self) -> None:
        if not self.disconnected:
            logger.info("Stream consumer disconnected; remaining events will be dropped")
        self.disconnected = True

    async def __aiter__(self) -> AsyncIterator[TurnEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.is_terminal:
                return
