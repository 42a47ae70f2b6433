"""Shared fixtures: scripted completion client, in-memory stores, fake services.

DB-backed tests run against a throwaway SQLite file via aiosqlite; nothing
here needs network access or a running Postgres.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from datetime import datetime
from typing import Any

import pytest
import pytest_asyncio

from concierge.api.completion import CompletionResponse
from concierge.api.tools import ToolRegistry, build_tool_registry
from concierge.chat.costs import calculate_cost
from concierge.chat.schemas import CostEntry, ModelUsage, TextBlock, ToolUseBlock
from concierge.config import Settings
from concierge.errors import ToolFailure
from concierge.services.schemas import ContactRecord, EventRecord, GatewayReceipt, TaskRecord
from concierge.storage.database import Database

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from the developer's .env and Twilio credentials."""
    values: dict[str, Any] = {
        "_env_file": None,
        "ANTHROPIC_API_KEY": "test-key",
        "TWILIO_ACCOUNT_SID": "",
        "TWILIO_AUTH_TOKEN": "",
        "TWILIO_PHONE_NUMBER": "",
        "turn_timeout": 5.0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


# ---------------------------------------------------------------------------
# Completion client
# ---------------------------------------------------------------------------


def make_response(
    text: str = "",
    tool_uses: list[dict[str, Any]] | None = None,
    stop_reason: str | None = None,
    input_tokens: int = 100,
    output_tokens: int = 50,
) -> CompletionResponse:
    """Build a CompletionResponse priced at $3 / $15 per million tokens."""
    content: list[Any] = []
    if text:
        content.append(TextBlock(text=text))
    for tu in tool_uses or []:
        content.append(
            ToolUseBlock(
                id=tu.get("id", f"toolu_{uuid.uuid4().hex[:12]}"),
                name=tu["name"],
                input=tu.get("input", {}),
            )
        )
    if stop_reason is None:
        stop_reason = "tool_use" if tool_uses else "end_turn"
    return CompletionResponse(
        content=content,
        stop_reason=stop_reason,
        usage=ModelUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=calculate_cost(input_tokens, output_tokens, 3.0, 15.0),
        ),
    )


class FakeCompletionClient:
    """Returns scripted responses in order and records every call.

    A scripted item that is an exception is raised instead of returned.
    """

    model = "claude-test"

    def __init__(self, responses: list[Any] | None = None, delay: float = 0.0) -> None:
        self.responses = list(responses or [])
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def complete(self, messages, system_prompt, tools=None) -> CompletionResponse:
        return await self._next(messages, system_prompt, tools, streaming=False)

    async def stream(self, messages, system_prompt, tools=None, on_text=None) -> CompletionResponse:
        response = await self._next(messages, system_prompt, tools, streaming=True)
        if on_text:
            for block in response.content:
                if isinstance(block, TextBlock) and block.text:
                    await on_text(block.text)
        return response

    async def _next(self, messages, system_prompt, tools, streaming: bool) -> CompletionResponse:
        self.calls.append({
            "messages": copy.deepcopy(messages),
            "system": system_prompt,
            "tools": tools,
            "streaming": streaming,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.responses:
            raise AssertionError("FakeCompletionClient ran out of scripted responses")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


# ---------------------------------------------------------------------------
# Conversation store / cost sink
# ---------------------------------------------------------------------------


class InMemoryConversationStore:
    def __init__(self) -> None:
        self.blobs: dict[str, dict[str, Any]] = {}
        self.put_count = 0
        self.fail_gets = False
        self.fail_puts = False

    async def get(self, user_id: str) -> dict[str, Any] | None:
        if self.fail_gets:
            raise ConnectionError("store unavailable")
        blob = self.blobs.get(user_id)
        return copy.deepcopy(blob) if blob is not None else None

    async def put(self, user_id: str, blob: dict[str, Any]) -> None:
        if self.fail_puts:
            raise ConnectionError("store unavailable")
        self.put_count += 1
        self.blobs[user_id] = copy.deepcopy(blob)


class RecordingCostSink:
    def __init__(self) -> None:
        self.entries: list[tuple[str, CostEntry]] = []
        self.fail = False

    async def record(self, user_id: str, entry: CostEntry) -> CostEntry:
        if self.fail:
            raise ConnectionError("cost sink unavailable")
        self.entries.append((user_id, entry))
        return entry

    async def daily_total(self, user_id: str, provider: str) -> float:
        return sum(e.amount for uid, e in self.entries if uid == user_id and e.provider == provider)

    def of_provider(self, provider: str) -> list[CostEntry]:
        return [e for _, e in self.entries if e.provider == provider]


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def cost_sink() -> RecordingCostSink:
    return RecordingCostSink()


# ---------------------------------------------------------------------------
# Fake domain services
# ---------------------------------------------------------------------------


class FakeTaskService:
    def __init__(self) -> None:
        self.created: list[dict[str, Any]] = []

    async def create(self, user_id, title, description="", priority=3, due_date=None) -> TaskRecord:
        self.created.append({
            "user_id": user_id,
            "title": title,
            "description": description,
            "priority": priority,
            "due_date": due_date,
        })
        return TaskRecord(
            id=f"task-{len(self.created)}",
            title=title,
            description=description,
            priority=priority,
            status="pending",
            due_date=due_date,
        )


class FakeCalendarService:
    def __init__(self) -> None:
        self.events: list[EventRecord] = []

    async def create_event(self, user_id, title, start_time: datetime, end_time=None, description="", location=None):
        event = EventRecord(
            id=f"event-{len(self.events) + 1}",
            title=title,
            description=description,
            start_time=start_time,
            end_time=end_time,
            location=location,
        )
        self.events.append(event)
        return event


class FakeContactDirectory:
    def __init__(self, contacts: list[ContactRecord] | None = None) -> None:
        self.contacts = contacts or [
            ContactRecord(id="c-1", name="Bob Smith", phone="+15551234567", email="bob@example.com"),
            ContactRecord(id="c-2", name="Alice Jones", phone="+15557654321"),
        ]

    async def search(self, user_id, query, limit=10):
        q = query.lower()
        hits = [c for c in self.contacts if q in c.name.lower() or q in (c.phone or "")]
        return hits[:limit]

    async def find_by_phone(self, user_id, phone):
        return next((c for c in self.contacts if c.phone == phone), None)


class FakeGateway:
    def __init__(self, configured: bool = True, price: float | None = 0.0075) -> None:
        self.configured = configured
        self.price = price
        self.fail_with: str | None = None
        self.sms: list[tuple[str, str]] = []
        self.calls: list[tuple[str, str | None]] = []

    def is_configured(self) -> bool:
        return self.configured

    async def send_sms(self, to, body) -> GatewayReceipt:
        if self.fail_with:
            raise ToolFailure(self.fail_with)
        self.sms.append((to, body))
        return GatewayReceipt(
            sid=f"SM{len(self.sms):03d}",
            status="queued",
            to=to,
            from_number="+15550000000",
            price=self.price,
            price_unit="usd",
        )

    async def place_call(self, to, message=None) -> GatewayReceipt:
        if self.fail_with:
            raise ToolFailure(self.fail_with)
        self.calls.append((to, message))
        return GatewayReceipt(sid=f"CA{len(self.calls):03d}", status="queued", to=to, from_number="+15550000000")


class FakeMessageLog:
    def __init__(self) -> None:
        self.stored: list[dict[str, Any]] = []

    async def store_outbound(self, user_id, channel, body, receipt) -> str:
        self.stored.append({"user_id": user_id, "channel": channel, "body": body, "sid": receipt.sid})
        return f"msg-{len(self.stored)}"


class FakeServices:
    def __init__(self) -> None:
        self.tasks = FakeTaskService()
        self.calendar = FakeCalendarService()
        self.contacts = FakeContactDirectory()
        self.gateway = FakeGateway()
        self.message_log = FakeMessageLog()


@pytest.fixture
def services() -> FakeServices:
    return FakeServices()


@pytest.fixture
def registry(services: FakeServices, cost_sink: RecordingCostSink) -> ToolRegistry:
    return build_tool_registry(
        tasks=services.tasks,
        calendar=services.calendar,
        contacts=services.contacts,
        gateway=services.gateway,
        message_log=services.message_log,
        cost_sink=cost_sink,
    )


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db(tmp_path):
    """Function-scoped SQLite database with all tables created."""
    database = Database(make_settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'concierge.db'}"))
    await database.connect()
    yield database
    await database.disconnect()
