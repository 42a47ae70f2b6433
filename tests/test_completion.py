"""Tests for CompletionClient against an httpx.MockTransport."""

import json

import httpx
import pytest

from concierge.api import completion
from concierge.api.completion import CompletionClient, _parse_sse_event
from concierge.chat.schemas import TextBlock, ToolUseBlock
from concierge.errors import CompletionError
from tests.conftest import make_settings

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client(handler) -> CompletionClient:
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="https://api.anthropic.com",
    )
    return CompletionClient(make_settings(), http=http)


def _sse(*events: dict) -> bytes:
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events).encode()


def _message_body(content: list[dict], stop_reason: str = "end_turn", input_tokens=1000, output_tokens=500) -> dict:
    return {
        "id": "msg_1",
        "type": "message",
        "role": "assistant",
        "content": content,
        "stop_reason": stop_reason,
        "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
    }


USER_MESSAGES = [{"role": "user", "content": "hi"}]


# ---------------------------------------------------------------------------
# complete()
# ---------------------------------------------------------------------------


class TestComplete:
    @pytest.mark.asyncio
    async def test_parses_content_and_prices_usage(self):
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json=_message_body(
                    [
                        {"type": "text", "text": "Creating it."},
                        {"type": "tool_use", "id": "toolu_1", "name": "createTask", "input": {"title": "x"}},
                    ],
                    stop_reason="tool_use",
                ),
            )

        client = _client(handler)
        tools = [{"name": "createTask", "description": "d", "input_schema": {"type": "object"}}]
        response = await client.complete(USER_MESSAGES, "be helpful", tools)

        assert response.stop_reason == "tool_use"
        assert response.wants_tools is True
        assert response.text == "Creating it."
        assert [i.tool_name for i in response.tool_invocations] == ["createTask"]
        assert response.usage.input_tokens == 1000
        assert response.usage.cost == pytest.approx(1000 / 1e6 * 3.0 + 500 / 1e6 * 15.0)

        payload = seen[0]
        assert payload["model"] == "claude-sonnet-4-5-20250929"
        assert payload["system"] == "be helpful"
        assert payload["tools"] == tools
        assert "stream" not in payload
        await client.close()

    @pytest.mark.asyncio
    async def test_omits_tools_when_none(self):
        seen: list[dict] = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=_message_body([{"type": "text", "text": "ok"}]))

        client = _client(handler)
        await client.complete(USER_MESSAGES, "sys")
        assert "tools" not in seen[0]

    @pytest.mark.asyncio
    async def test_retries_once_on_overload(self):
        attempts = 0

        def handler(request):
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                return httpx.Response(
                    529,
                    headers={"retry-after": "0"},
                    json={"type": "error", "error": {"type": "overloaded_error", "message": "busy"}},
                )
            return httpx.Response(200, json=_message_body([{"type": "text", "text": "ok"}]))

        response = await _client(handler).complete(USER_MESSAGES, "sys")
        assert attempts == 2
        assert response.text == "ok"

    @pytest.mark.asyncio
    async def test_http_date_retry_after_falls_back_to_one_second(self, monkeypatch):
        delays: list[float] = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        monkeypatch.setattr(completion.asyncio, "sleep", fake_sleep)
        attempts = 0

        def handler(request):
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                return httpx.Response(
                    429,
                    headers={"retry-after": "Wed, 21 Oct 2026 07:28:00 GMT"},
                    json={"type": "error", "error": {"type": "rate_limit_error", "message": "slow"}},
                )
            return httpx.Response(200, json=_message_body([{"type": "text", "text": "ok"}]))

        response = await _client(handler).complete(USER_MESSAGES, "sys")
        assert response.text == "ok"
        assert attempts == 2
        assert delays == [1.0]

    @pytest.mark.asyncio
    async def test_retry_after_is_capped(self, monkeypatch):
        delays: list[float] = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        monkeypatch.setattr(completion.asyncio, "sleep", fake_sleep)
        responses = iter([
            httpx.Response(500, headers={"retry-after": "600"}, text="oops"),
            httpx.Response(200, json=_message_body([{"type": "text", "text": "ok"}])),
        ])

        await _client(lambda request: next(responses)).complete(USER_MESSAGES, "sys")
        assert delays == [30.0]

    @pytest.mark.asyncio
    async def test_persistent_error_raises(self):
        def handler(request):
            return httpx.Response(
                400,
                json={"type": "error", "error": {"type": "invalid_request_error", "message": "bad"}},
            )

        with pytest.raises(CompletionError) as exc_info:
            await _client(handler).complete(USER_MESSAGES, "sys")
        assert exc_info.value.status_code == 400
        assert "invalid_request_error" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connection_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(CompletionError):
            await _client(handler).complete(USER_MESSAGES, "sys")

    @pytest.mark.asyncio
    async def test_requires_start(self):
        client = CompletionClient(make_settings())
        with pytest.raises(CompletionError):
            await client.complete(USER_MESSAGES, "sys")


# ---------------------------------------------------------------------------
# stream()
# ---------------------------------------------------------------------------


class TestStream:
    @pytest.mark.asyncio
    async def test_forwards_text_and_reassembles_tool_input(self):
        body = _sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 200, "output_tokens": 1}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "ping"},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Let me "}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "check."}},
            {"type": "content_block_stop", "index": 0},
            {
                "type": "content_block_start",
                "index": 1,
                "content_block": {"type": "tool_use", "id": "toolu_9", "name": "searchContacts", "input": {}},
            },
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"que'}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": 'ry": "bob"}'}},
            {"type": "content_block_stop", "index": 1},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 40}},
            {"type": "message_stop"},
        )

        def handler(request):
            assert json.loads(request.content)["stream"] is True
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        deltas: list[str] = []

        async def on_text(text: str) -> None:
            deltas.append(text)

        response = await _client(handler).stream(USER_MESSAGES, "sys", on_text=on_text)

        assert deltas == ["Let me ", "check."]
        assert response.stop_reason == "tool_use"
        assert response.content == [
            TextBlock(text="Let me check."),
            ToolUseBlock(id="toolu_9", name="searchContacts", input={"query": "bob"}),
        ]
        assert response.usage.input_tokens == 200
        assert response.usage.output_tokens == 40
        assert response.usage.cost == pytest.approx(200 / 1e6 * 3.0 + 40 / 1e6 * 15.0)

    @pytest.mark.asyncio
    async def test_in_stream_error_raises(self):
        body = _sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 5}}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        )

        def handler(request):
            return httpx.Response(200, content=body)

        with pytest.raises(CompletionError, match="overloaded_error"):
            await _client(handler).stream(USER_MESSAGES, "sys")

    @pytest.mark.asyncio
    async def test_aborted_stream_keeps_billed_usage(self):
        body = _sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 100000, "output_tokens": 1}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Partial"}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        )

        def handler(request):
            return httpx.Response(200, content=body)

        with pytest.raises(CompletionError) as exc_info:
            await _client(handler).stream(USER_MESSAGES, "sys")

        usage = exc_info.value.usage
        assert usage is not None
        assert usage.input_tokens == 100000
        assert usage.output_tokens == 1
        assert usage.cost == pytest.approx(100000 / 1e6 * 3.0 + 1 / 1e6 * 15.0)

    @pytest.mark.asyncio
    async def test_error_before_message_start_has_no_usage(self):
        body = _sse({"type": "error", "error": {"type": "api_error", "message": "boom"}})

        def handler(request):
            return httpx.Response(200, content=body)

        with pytest.raises(CompletionError) as exc_info:
            await _client(handler).stream(USER_MESSAGES, "sys")
        assert exc_info.value.usage is None

    @pytest.mark.asyncio
    async def test_rate_limit_is_not_retried(self):
        attempts = 0

        def handler(request):
            nonlocal attempts
            attempts += 1
            return httpx.Response(429, headers={"retry-after": "0"}, text="slow down")

        with pytest.raises(CompletionError) as exc_info:
            await _client(handler).stream(USER_MESSAGES, "sys")
        assert exc_info.value.status_code == 429
        assert attempts == 1

    @pytest.mark.asyncio
    async def test_http_error_status_raises(self):
        def handler(request):
            return httpx.Response(500, text="upstream broke")

        with pytest.raises(CompletionError) as exc_info:
            await _client(handler).stream(USER_MESSAGES, "sys")
        assert exc_info.value.status_code == 500


class TestParseSseEvent:
    def test_ping_skipped(self):
        assert _parse_sse_event({"type": "ping"}) is None

    def test_message_delta_carries_stop_reason_and_usage(self):
        event = _parse_sse_event(
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 12}}
        )
        assert event.type == "done"
        assert event.stop_reason == "end_turn"
        assert event.output_tokens == 12

    def test_unknown_delta_ignored(self):
        assert _parse_sse_event({"type": "content_block_delta", "delta": {"type": "thinking_delta"}}) is None
