"""REST API for the Concierge assistant.

Endpoints:
  POST /chat          - Send message, get response
  POST /chat/stream   - Send message, stream events over SSE
  GET  /chat/history  - Stored conversation for the caller
  POST /chat/clear    - Clear the caller's conversation
  GET  /chat/tools    - Tools the assistant can call
  GET  /health        - Health check (DB connectivity)

The caller is identified by the X-User-Id header, set by the gateway in
front of this service after authentication.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from pydantic import ValidationError
from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from concierge.api.runner import TurnOrchestrator
from concierge.api.streaming import EventChannel, encode_sse
from concierge.api.tools import ToolRegistry
from concierge.chat.schemas import ChatRequest
from concierge.config import Settings
from concierge.errors import CostLimitExceeded, InputError, TurnFailedError
from concierge.storage.database import Database

logger = logging.getLogger(__name__)

USER_HEADER = "x-user-id"


def create_app(
    orchestrator: TurnOrchestrator,
    registry: ToolRegistry,
    database: Database,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    def _user_id(request: Request) -> str | None:
        user_id = request.headers.get(USER_HEADER, "").strip()
        return user_id or None

    def _unauthenticated() -> JSONResponse:
        return JSONResponse({"error": "Missing X-User-Id header"}, status_code=401)

    async def _parse_chat_request(request: Request) -> ChatRequest | JSONResponse:
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not body.get("message"):
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)
        try:
            return ChatRequest.model_validate(body)
        except ValidationError as e:
            return JSONResponse({"error": "Invalid request", "details": str(e)}, status_code=400)

    def _limit_response(e: CostLimitExceeded) -> JSONResponse:
        return JSONResponse(
            {"error": str(e), "spent": round(e.spent, 4), "limit": e.limit},
            status_code=429,
        )

    async def chat(request: Request) -> Response:
        """POST /chat - Send a message, get a response."""
        user_id = _user_id(request)
        if user_id is None:
            return _unauthenticated()
        parsed = await _parse_chat_request(request)
        if isinstance(parsed, JSONResponse):
            return parsed

        try:
            await orchestrator.check_budget(user_id)
            result = await orchestrator.run_turn(user_id, parsed)
            return JSONResponse(result.model_dump(mode="json", by_alias=True))
        except InputError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except CostLimitExceeded as e:
            return _limit_response(e)
        except TurnFailedError as e:
            body: dict[str, Any] = {"error": "Failed to process chat message", "details": str(e)}
            if e.cost is not None:
                body["cost"] = e.cost.model_dump(mode="json", by_alias=True)
            return JSONResponse(body, status_code=500)
        except Exception as e:
            logger.error("Chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def chat_stream(request: Request) -> Response:
        """POST /chat/stream - SSE streaming chat."""
        user_id = _user_id(request)
        if user_id is None:
            return _unauthenticated()
        parsed = await _parse_chat_request(request)
        if isinstance(parsed, JSONResponse):
            return parsed

        try:
            await orchestrator.check_budget(user_id)
            channel = orchestrator.stream_turn(user_id, parsed)
        except InputError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except CostLimitExceeded as e:
            return _limit_response(e)

        return StreamingResponse(
            _event_generator(channel),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def history(request: Request) -> JSONResponse:
        """GET /chat/history - Stored messages for the caller."""
        user_id = _user_id(request)
        if user_id is None:
            return _unauthenticated()
        try:
            messages = await orchestrator.history(user_id)
            return JSONResponse({
                "messages": [m.model_dump(mode="json") for m in messages],
                "count": len(messages),
            })
        except Exception as e:
            logger.error("History error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def clear(request: Request) -> JSONResponse:
        """POST /chat/clear - Drop the caller's conversation."""
        user_id = _user_id(request)
        if user_id is None:
            return _unauthenticated()
        try:
            removed = await orchestrator.clear(user_id)
            return JSONResponse({"status": "cleared", "removed": removed})
        except Exception as e:
            logger.error("Clear error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def tools(request: Request) -> JSONResponse:
        """GET /chat/tools - Tool definitions offered to the model."""
        definitions = registry.tool_definitions()
        return JSONResponse({"tools": definitions, "count": len(definitions)})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy", "model": settings.model})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/history", history),
        Route("/chat/clear", clear, methods=["POST"]),
        Route("/chat/tools", tools),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)


async def _event_generator(channel: EventChannel) -> AsyncIterator[str]:
    """Drain the channel as SSE frames; mark it disconnected if the client goes away."""
    try:
        async for event in channel:
            yield encode_sse(event)
    finally:
        if not channel.closed:
            channel.disconnect()
