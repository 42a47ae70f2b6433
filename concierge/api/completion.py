"""Completion client -- direct httpx calls to the Anthropic Messages API.

Two variants share one payload builder: complete() for a blocking call and
stream() for SSE streaming, which forwards text deltas to a callback as
they arrive and returns the same CompletionResponse when the message ends.
Usage is priced per call from Settings.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from concierge.chat.costs import calculate_cost
from concierge.chat.schemas import (
    ContentBlock,
    ModelUsage,
    TextBlock,
    ToolInvocation,
    ToolUseBlock,
)
from concierge.config import Settings
from concierge.errors import CompletionError

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
_RETRY_STATUSES = (429, 500, 529)
_MAX_RETRY_DELAY = 30.0

_block_adapter: TypeAdapter[ContentBlock] = TypeAdapter(ContentBlock)

TextHandler = Callable[[str], Awaitable[None]]


@dataclass
class CompletionResponse:
    """Parsed response from the Messages API."""

    content: list[ContentBlock]
    stop_reason: str  # end_turn, max_tokens, tool_use, stop_sequence
    usage: ModelUsage = field(default_factory=ModelUsage)

    @property
    def tool_invocations(self) -> list[ToolInvocation]:
        return [ToolInvocation.from_block(b) for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock) and b.text)

    @property
    def wants_tools(self) -> bool:
        return self.stop_reason == "tool_use" and any(
            isinstance(b, ToolUseBlock) for b in self.content
        )


@dataclass
class SSEEvent:
    """A single event from the streaming API response."""

    type: str  # message_start, text_block_start, text_delta, tool_start, tool_input_delta, block_stop, done, message_stop, error
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    stop_reason: str = ""
    block_index: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


def _parse_sse_event(data: dict[str, Any]) -> SSEEvent | None:
    """Parse an Anthropic SSE event dict into an SSEEvent.

    Pings are skipped. stop_reason and output usage arrive in message_delta;
    input usage arrives in message_start. In-stream errors (HTTP 200 with an
    error body) become "error" events.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return SSEEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "message_start":
        usage = data.get("message", {}).get("usage", {}) or {}
        return SSEEvent(
            type="message_start",
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
        )

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return SSEEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        return SSEEvent(type="text_block_start", block_index=block_index)

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return SSEEvent(type="text_delta", text=delta.get("text", ""), block_index=block_index)
        if delta.get("type") == "input_json_delta":
            return SSEEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return SSEEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        usage = data.get("usage", {}) or {}
        return SSEEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason", "") or "",
            output_tokens=usage.get("output_tokens", 0),
        )

    if event_type == "message_stop":
        return SSEEvent(type="message_stop")

    return None


def _parse_content(raw_blocks: list[dict[str, Any]]) -> list[ContentBlock]:
    """Convert raw API blocks, skipping block types the chat does not use."""
    blocks: list[ContentBlock] = []
    for raw in raw_blocks:
        try:
            blocks.append(_block_adapter.validate_python(raw))
        except ValidationError:
            logger.debug("Skipping unsupported content block: %s", raw.get("type"))
    return blocks


class CompletionClient:
    """Wraps single Messages API calls, blocking or streaming."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http

    @property
    def model(self) -> str:
        return self._settings.model

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning("ANTHROPIC_API_KEY is not set -- completion calls will fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=20, max_keepalive_connections=10)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info("Completion client initialized (model: %s)", settings.model)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _build_payload(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str,
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        """Shared by complete() and stream() to avoid divergence."""
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "messages": messages,
        }
        if system_prompt:
            payload["system"] = system_prompt
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
        return payload

    def _price(self, input_tokens: int, output_tokens: int) -> ModelUsage:
        return ModelUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=calculate_cost(
                input_tokens,
                output_tokens,
                self._settings.input_cost_per_mtok,
                self._settings.output_cost_per_mtok,
            ),
        )

    def _partial_usage(self, input_tokens: int, output_tokens: int) -> ModelUsage | None:
        if not (input_tokens or output_tokens):
            return None
        return self._price(input_tokens, output_tokens)

    async def complete(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str,
        tools: list[dict[str, Any]] | None = None,
    ) -> CompletionResponse:
        """Call the Messages API, retrying once on 429/500/529 or timeout.

        Raises CompletionError on persistent errors.
        """
        if not self._http:
            raise CompletionError("httpx client not initialized -- call start() first")

        payload = self._build_payload(messages, system_prompt, tools)

        last_error: CompletionError | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/v1/messages", json=payload)

                if response.status_code == 200:
                    data = response.json()
                    usage = data.get("usage") or {}
                    result = CompletionResponse(
                        content=_parse_content(data.get("content", [])),
                        stop_reason=data.get("stop_reason") or "end_turn",
                        usage=self._price(
                            usage.get("input_tokens", 0),
                            usage.get("output_tokens", 0),
                        ),
                    )
                    logger.info(
                        "Completion finished: stop=%s in=%d out=%d cost=$%.6f",
                        result.stop_reason,
                        result.usage.input_tokens,
                        result.usage.output_tokens,
                        result.usage.cost,
                    )
                    return result

                error_type, error_msg = _error_details(response)

                if response.status_code in _RETRY_STATUSES and attempt == 0:
                    retry_after = _retry_delay(response)
                    logger.warning(
                        "API error %d (%s), retrying in %.1fs: %s",
                        response.status_code,
                        error_type,
                        retry_after,
                        error_msg,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = CompletionError(
                    f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}",
                    status_code=response.status_code,
                )
                break

            except httpx.TimeoutException as e:
                last_error = CompletionError(f"API request timed out: {e}")
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = CompletionError(f"HTTP error: {e}")
                break  # Don't retry connection errors

        raise last_error or CompletionError("API call failed with unknown error")

    async def stream(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str,
        tools: list[dict[str, Any]] | None = None,
        on_text: TextHandler | None = None,
    ) -> CompletionResponse:
        """Streaming call. Text deltas go to on_text as they arrive.

        Tool input JSON fragments are reassembled per content block index.
        Raises CompletionError on HTTP or in-stream errors, carrying any usage
        the provider reported before the failure. Streams are not retried.
        """
        if not self._http:
            raise CompletionError("httpx client not initialized -- call start() first")

        payload = self._build_payload(messages, system_prompt, tools, stream=True)

        blocks: dict[int, ContentBlock] = {}
        accumulators: dict[int, dict[str, Any]] = {}
        stop_reason = ""
        input_tokens = 0
        output_tokens = 0

        try:
            async with self._http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode(errors="replace")[:500]
                    raise CompletionError(
                        f"Anthropic API error ({response.status_code}): {body}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed SSE line: %r", line[:200])
                        continue
                    event = _parse_sse_event(data)
                    if event is None:
                        continue

                    if event.type == "error":
                        raise CompletionError(
                            f"Stream error: {event.text}",
                            usage=self._partial_usage(input_tokens, output_tokens),
                        )

                    if event.type == "message_start":
                        input_tokens = event.input_tokens
                        output_tokens = event.output_tokens

                    elif event.type == "text_block_start":
                        accumulators[event.block_index] = {"type": "text", "parts": []}

                    elif event.type == "text_delta":
                        acc = accumulators.setdefault(
                            event.block_index, {"type": "text", "parts": []}
                        )
                        acc["parts"].append(event.text)
                        if on_text and event.text:
                            await on_text(event.text)

                    elif event.type == "tool_start":
                        accumulators[event.block_index] = {
                            "type": "tool_use",
                            "id": event.tool_id,
                            "name": event.tool_name,
                            "parts": [],
                        }

                    elif event.type == "tool_input_delta":
                        acc = accumulators.get(event.block_index)
                        if acc:
                            acc["parts"].append(event.text)

                    elif event.type == "block_stop":
                        acc = accumulators.pop(event.block_index, None)
                        if acc:
                            blocks[event.block_index] = _finish_block(acc)

                    elif event.type == "done":
                        stop_reason = event.stop_reason or stop_reason
                        output_tokens = event.output_tokens or output_tokens

        except httpx.HTTPError as e:
            raise CompletionError(
                f"HTTP error: {e}",
                usage=self._partial_usage(input_tokens, output_tokens),
            ) from e

        # Blocks that never received a stop event still count
        for index, acc in accumulators.items():
            blocks[index] = _finish_block(acc)

        result = CompletionResponse(
            content=[blocks[i] for i in sorted(blocks)],
            stop_reason=stop_reason or "end_turn",
            usage=self._price(input_tokens, output_tokens),
        )
        logger.info(
            "Streaming completion finished: stop=%s in=%d out=%d cost=$%.6f",
            result.stop_reason,
            input_tokens,
            output_tokens,
            result.usage.cost,
        )
        return result


def _finish_block(acc: dict[str, Any]) -> ContentBlock:
    if acc["type"] == "text":
        return TextBlock(text="".join(acc["parts"]))
    input_json = "".join(acc["parts"])
    try:
        tool_input = json.loads(input_json) if input_json else {}
    except json.JSONDecodeError:
        logger.warning("Malformed tool input JSON for %s: %r", acc["name"], input_json[:200])
        tool_input = {}
    if not isinstance(tool_input, dict):
        tool_input = {}
    return ToolUseBlock(id=acc["id"], name=acc["name"], input=tool_input)


def _error_details(response: httpx.Response) -> tuple[str, str]:
    try:
        error_data = response.json()
        error = error_data.get("error", {})
        return error.get("type", "unknown"), error.get("message", "unknown error")
    except ValueError:
        return "http_error", f"HTTP {response.status_code}: {response.text[:500]}"


def _retry_delay(response: httpx.Response) -> float:
    """Seconds to wait before retrying; HTTP-date retry-after values fall back to 1s."""
    try:
        delay = float(response.headers.get("retry-after", "1"))
    except ValueError:
        delay = 1.0
    return min(max(delay, 0.0), _MAX_RETRY_DELAY)
