"""Tool registry and the assistant's action tools.

Provides:
- ToolName: the closed set of tools the model may call
- ToolRegistry: validates input, dispatches, and converts every outcome
  (including unknown names and handler errors) into a ToolResult
- 5 tool closures over the domain services:
  - searchContacts: look up the user's contacts
  - createTask: add a task with a priority and optional due date
  - scheduleEvent: put an event on the calendar
  - sendSMS: text a phone number through Twilio
  - makeCall: place a voice call that speaks a message

Handlers run once per invocation; nothing here retries a side effect.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from concierge.chat.costs import CostSink
from concierge.chat.schemas import CostEntry, ToolResult
from concierge.errors import ToolFailure
from concierge.services import (
    PRIORITY_LEVELS,
    CalendarService,
    ContactDirectory,
    MessageLog,
    TaskService,
    TwilioGateway,
)

logger = logging.getLogger(__name__)


class ToolName(StrEnum):
    SEARCH_CONTACTS = "searchContacts"
    CREATE_TASK = "createTask"
    SCHEDULE_EVENT = "scheduleEvent"
    SEND_SMS = "sendSMS"
    MAKE_CALL = "makeCall"


ToolHandler = Callable[[str, Any], Awaitable[dict[str, Any]]]


# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------


_PHONE_PATTERN = r"^\+[1-9]\d{6,14}$"


class _ToolInput(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# Offset-less ISO timestamps are taken as UTC
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class SearchContactsInput(_ToolInput):
    query: str = Field(min_length=1, max_length=200)
    limit: int = Field(10, ge=1, le=50)


class CreateTaskInput(_ToolInput):
    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    due_date: UtcDatetime | None = None


class ScheduleEventInput(_ToolInput):
    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    start_time: UtcDatetime
    end_time: UtcDatetime | None = None
    location: str | None = None

    @model_validator(mode="after")
    def _check_order(self) -> ScheduleEventInput:
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("endTime must not be before startTime")
        return self


class SendSmsInput(_ToolInput):
    to: str = Field(pattern=_PHONE_PATTERN)
    message: str = Field(min_length=1, max_length=1600)


class MakeCallInput(_ToolInput):
    to: str = Field(pattern=_PHONE_PATTERN)
    message: str | None = Field(None, max_length=1000)


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RegisteredTool:
    name: ToolName
    handler: ToolHandler
    input_model: type[BaseModel]
    schema: dict[str, Any]

    def definition(self) -> dict[str, Any]:
        return {
            "name": self.name.value,
            "description": self.schema.get("description", ""),
            "input_schema": {k: v for k, v in self.schema.items() if k != "description"},
        }


class ToolRegistry:
    """Fixed map from ToolName to handler. dispatch() never raises."""

    def __init__(self) -> None:
        self._tools: dict[ToolName, RegisteredTool] = {}

    def register(
        self,
        name: ToolName,
        handler: ToolHandler,
        input_model: type[BaseModel],
        schema: dict[str, Any],
    ) -> None:
        self._tools[name] = RegisteredTool(name, handler, input_model, schema)

    def names(self) -> list[str]:
        return [name.value for name in self._tools]

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [tool.definition() for tool in self._tools.values()]

    async def dispatch(
        self,
        tool_name: str,
        tool_input: dict[str, Any] | None,
        user_id: str,
        invocation_id: str = "",
    ) -> ToolResult:
        """Validate and run one tool call, returning its ToolResult."""
        started = time.monotonic()
        result = await self._run(tool_name, tool_input, user_id, invocation_id)
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Tool %s for user %s: %s (%dms)",
            tool_name,
            user_id,
            "ok" if result.success else f"failed: {result.error_message}",
            result.duration_ms,
        )
        return result

    async def _run(
        self,
        tool_name: str,
        tool_input: dict[str, Any] | None,
        user_id: str,
        invocation_id: str,
    ) -> ToolResult:
        try:
            tool = self._tools.get(ToolName(tool_name))
        except ValueError:
            tool = None
        if tool is None:
            return ToolResult.failed(invocation_id, tool_name, f"Unknown tool: {tool_name}")

        try:
            params = tool.input_model.model_validate(tool_input or {})
        except ValidationError as e:
            return ToolResult.failed(invocation_id, tool_name, f"Invalid input for {tool_name}: {_describe(e)}")

        try:
            payload = await tool.handler(user_id, params)
        except ToolFailure as e:
            return ToolResult.failed(invocation_id, tool_name, str(e))
        except Exception as e:
            logger.exception("Tool dispatch error for %s", tool_name)
            return ToolResult.failed(invocation_id, tool_name, f"Tool error: {e}")

        return ToolResult.ok(invocation_id, tool_name, payload)


def _describe(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


# ---------------------------------------------------------------------------
# Tool closures
# ---------------------------------------------------------------------------


def create_concierge_tools(
    tasks: TaskService,
    calendar: CalendarService,
    contacts: ContactDirectory,
    gateway: TwilioGateway,
    message_log: MessageLog,
    cost_sink: CostSink,
) -> dict[ToolName, ToolHandler]:
    """Create tool closures with the domain services captured.

    Each closure takes (user_id, validated input) and returns a success
    payload containing ids and a human-readable "message". Failures are
    raised as ToolFailure and turned into failed results by the registry.
    """

    async def search_contacts(user_id: str, params: SearchContactsInput) -> dict[str, Any]:
        found = await contacts.search(user_id, params.query, limit=params.limit)
        return {
            "results": [c.model_dump(exclude_none=True) for c in found],
            "count": len(found),
            "message": f'Found {len(found)} contact(s) matching "{params.query}"',
        }

    async def create_task(user_id: str, params: CreateTaskInput) -> dict[str, Any]:
        task = await tasks.create(
            user_id,
            params.title,
            description=params.description,
            priority=PRIORITY_LEVELS[params.priority],
            due_date=params.due_date,
        )
        return {
            "taskId": task.id,
            "task": {
                "id": task.id,
                "title": task.title,
                "description": task.description,
                "priority": params.priority,
                "dueDate": task.due_date.isoformat() if task.due_date else None,
                "status": task.status,
            },
            "message": f'Task "{task.title}" created with {params.priority} priority',
        }

    async def schedule_event(user_id: str, params: ScheduleEventInput) -> dict[str, Any]:
        try:
            event = await calendar.create_event(
                user_id,
                params.title,
                params.start_time,
                end_time=params.end_time,
                description=params.description,
                location=params.location,
            )
        except ValueError as e:
            raise ToolFailure(str(e)) from e
        return {
            "eventId": event.id,
            "event": {
                "id": event.id,
                "title": event.title,
                "description": event.description,
                "startTime": event.start_time.isoformat(),
                "endTime": event.end_time.isoformat() if event.end_time else None,
                "location": event.location,
            },
            "message": f'Event "{event.title}" scheduled for {event.start_time.isoformat()}',
        }

    async def _display_name(user_id: str, phone: str) -> str:
        try:
            contact = await contacts.find_by_phone(user_id, phone)
        except Exception as e:
            logger.warning("Contact lookup for %s failed: %s", phone, e)
            return phone
        return contact.name if contact else phone

    async def _log_outbound(user_id: str, channel: str, body: str, receipt: Any) -> str | None:
        # The provider has already accepted the message at this point
        try:
            return await message_log.store_outbound(user_id, channel, body, receipt)
        except Exception as e:
            logger.error("Failed to store outbound %s %s: %s", channel, receipt.sid, e)
            return None

    async def send_sms(user_id: str, params: SendSmsInput) -> dict[str, Any]:
        if not gateway.is_configured():
            raise ToolFailure("Twilio service not initialized. SMS features are disabled.")

        receipt = await gateway.send_sms(params.to, params.message)
        stored_id = await _log_outbound(user_id, "sms", params.message, receipt)
        name = await _display_name(user_id, params.to)

        if receipt.price:
            entry = CostEntry(
                provider="twilio",
                type="sms",
                amount=receipt.price,
                currency=(receipt.price_unit or "USD").upper(),
                metadata={
                    "twilioSid": receipt.sid,
                    "direction": "outbound",
                    "to": params.to,
                    "from": receipt.from_number,
                    "messageId": stored_id,
                },
            )
            try:
                await cost_sink.record(user_id, entry)
            except Exception as e:
                logger.error("Failed to record SMS cost for %s: %s", receipt.sid, e)

        return {
            "messageId": receipt.sid,
            "to": params.to,
            "contact": name,
            "status": receipt.status,
            "message": f"SMS sent to {name}",
            "cost": f"${receipt.price:.4f}" if receipt.price else "pending",
        }

    async def make_call(user_id: str, params: MakeCallInput) -> dict[str, Any]:
        if not gateway.is_configured():
            raise ToolFailure("Twilio service not initialized. Voice features are disabled.")

        receipt = await gateway.place_call(params.to, params.message)
        await _log_outbound(user_id, "call", params.message or "", receipt)
        name = await _display_name(user_id, params.to)
        return {
            "callId": receipt.sid,
            "to": params.to,
            "contact": name,
            "status": receipt.status,
            "message": f"Calling {name}",
        }

    return {
        ToolName.SEARCH_CONTACTS: search_contacts,
        ToolName.CREATE_TASK: create_task,
        ToolName.SCHEDULE_EVENT: schedule_event,
        ToolName.SEND_SMS: send_sms,
        ToolName.MAKE_CALL: make_call,
    }


# ---------------------------------------------------------------------------
# JSON schemas for Anthropic tool definitions
# ---------------------------------------------------------------------------

_SEARCH_CONTACTS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Search for contacts by name, phone number, email or company. Returns matching contact information.",
    "properties": {
        "query": {"type": "string", "description": "Search query (name, phone, or email)"},
        "limit": {
            "type": "integer",
            "description": "Maximum number of results to return (default: 10)",
            "default": 10,
        },
    },
    "required": ["query"],
}

_CREATE_TASK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Create a new task with title, description, priority, and optional due date.",
    "properties": {
        "title": {"type": "string", "description": "Task title"},
        "description": {"type": "string", "description": "Task description (optional)"},
        "priority": {
            "type": "string",
            "enum": ["low", "medium", "high", "urgent"],
            "description": "Task priority",
        },
        "dueDate": {"type": "string", "description": "Due date in ISO 8601 format (optional)"},
    },
    "required": ["title", "priority"],
}

_SCHEDULE_EVENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Schedule a calendar event with a title, start time and optional end time and location.",
    "properties": {
        "title": {"type": "string", "description": "Event title"},
        "description": {"type": "string", "description": "Event description (optional)"},
        "startTime": {"type": "string", "description": "Start time in ISO 8601 format"},
        "endTime": {"type": "string", "description": "End time in ISO 8601 format (optional)"},
        "location": {"type": "string", "description": "Event location (optional)"},
    },
    "required": ["title", "startTime"],
}

_SEND_SMS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Send an SMS message to a phone number.",
    "properties": {
        "to": {"type": "string", "description": "Phone number to send to (E.164 format)"},
        "message": {"type": "string", "description": "Message content"},
    },
    "required": ["to", "message"],
}

_MAKE_CALL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Place a phone call to a phone number and speak a message when it is answered.",
    "properties": {
        "to": {"type": "string", "description": "Phone number to call (E.164 format)"},
        "message": {"type": "string", "description": "Message to say when the call is answered (optional)"},
    },
    "required": ["to"],
}

_TOOL_SPECS: dict[ToolName, tuple[type[BaseModel], dict[str, Any]]] = {
    ToolName.SEARCH_CONTACTS: (SearchContactsInput, _SEARCH_CONTACTS_SCHEMA),
    ToolName.CREATE_TASK: (CreateTaskInput, _CREATE_TASK_SCHEMA),
    ToolName.SCHEDULE_EVENT: (ScheduleEventInput, _SCHEDULE_EVENT_SCHEMA),
    ToolName.SEND_SMS: (SendSmsInput, _SEND_SMS_SCHEMA),
    ToolName.MAKE_CALL: (MakeCallInput, _MAKE_CALL_SCHEMA),
}


def register_concierge_tools(registry: ToolRegistry, handlers: dict[ToolName, ToolHandler]) -> None:
    """Register one handler per ToolName with its input model and schema."""
    missing = set(ToolName) - set(handlers)
    if missing:
        raise ValueError(f"Missing tool handlers: {sorted(missing)}")
    for name in ToolName:
        input_model, schema = _TOOL_SPECS[name]
        registry.register(name, handlers[name], input_model, schema)


def build_tool_registry(
    tasks: TaskService,
    calendar: CalendarService,
    contacts: ContactDirectory,
    gateway: TwilioGateway,
    message_log: MessageLog,
    cost_sink: CostSink,
) -> ToolRegistry:
    registry = ToolRegistry()
    handlers = create_concierge_tools(tasks, calendar, contacts, gateway, message_log, cost_sink)
    register_concierge_tools(registry, handlers)
    return registry
