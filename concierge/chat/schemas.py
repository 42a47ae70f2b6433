"""Pydantic DTOs for the chat pipeline.

Content blocks mirror the Anthropic Messages API wire format (snake_case);
caller-facing models (requests, responses, cost records) serialize with
camelCase aliases.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"  # sent to the API as "user"


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """A tool invocation request emitted by the model."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[TextBlock | ToolUseBlock | ToolResultBlock, Field(discriminator="type")]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Message(BaseModel):
    """One dialogue entry.

    Blocks are role-consistent: tool_use only inside assistant messages,
    tool_result only inside (and exclusively inside) tool_result messages.
    """

    role: Role
    content: str | list[ContentBlock]
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def _check_role_consistency(self) -> Message:
        if isinstance(self.content, str):
            if self.role == Role.TOOL_RESULT:
                raise ValueError("tool_result messages must carry tool_result blocks")
            return self
        for block in self.content:
            if block.type == "tool_use" and self.role != Role.ASSISTANT:
                raise ValueError(f"tool_use block in a {self.role} message")
            if (block.type == "tool_result") != (self.role == Role.TOOL_RESULT):
                raise ValueError(f"{block.type} block in a {self.role} message")
        return self

    @property
    def text(self) -> str:
        """Concatenated text content."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    def tool_uses(self) -> list[ToolUseBlock]:
        if isinstance(self.content, str):
            return []
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def to_api(self) -> dict[str, Any]:
        """Render in Messages API format."""
        role = Role.USER if self.role == Role.TOOL_RESULT else self.role
        if isinstance(self.content, str):
            return {"role": role.value, "content": self.content}
        return {"role": role.value, "content": [b.model_dump() for b in self.content]}


class ToolInvocation(_CamelModel):
    invocation_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_block(cls, block: ToolUseBlock) -> ToolInvocation:
        return cls(invocation_id=block.id, tool_name=block.name, input=block.input)

    def to_block(self) -> ToolUseBlock:
        return ToolUseBlock(id=self.invocation_id, name=self.tool_name, input=self.input)


class ToolResult(_CamelModel):
    """Outcome of one tool invocation, fed back to the model."""

    invocation_id: str
    tool_name: str
    success: bool
    payload: dict[str, Any] | None = None
    error_message: str | None = None
    duration_ms: int | None = None

    @classmethod
    def ok(cls, invocation_id: str, tool_name: str, payload: dict[str, Any]) -> ToolResult:
        return cls(invocation_id=invocation_id, tool_name=tool_name, success=True, payload=payload)

    @classmethod
    def failed(cls, invocation_id: str, tool_name: str, error: str) -> ToolResult:
        return cls(invocation_id=invocation_id, tool_name=tool_name, success=False, error_message=error)

    def to_block(self) -> ToolResultBlock:
        if self.success:
            content = json.dumps({"success": True, **(self.payload or {})}, default=str)
        else:
            content = json.dumps({"success": False, "error": self.error_message}, default=str)
        return ToolResultBlock(tool_use_id=self.invocation_id, content=content, is_error=not self.success)


class ModelUsage(_CamelModel):
    """Token usage and cost of a single completion call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0


class TurnCostRecord(_CamelModel):
    """Usage summed across every completion call in one turn."""

    model_call_count: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: float = 0.0
    currency: str = "USD"

    def add(self, usage: ModelUsage) -> None:
        self.model_call_count += 1
        self.total_input_tokens += usage.input_tokens
        self.total_output_tokens += usage.output_tokens
        self.total_cost += usage.cost


class CostEntry(_CamelModel):
    """A row for the cost-tracking sink."""

    provider: str
    type: str
    amount: float
    currency: str = "USD"
    metadata: dict[str, Any] = Field(default_factory=dict)
    id: str | None = None
    created_at: datetime | None = None


class ChatRequest(_CamelModel):
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    use_tools: bool = True


class ToolCallSummary(_CamelModel):
    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    result: ToolResult


class ChatResponse(_CamelModel):
    response: str
    tools_used: bool = False
    tool_results: list[ToolCallSummary] = Field(default_factory=list)
    cost: TurnCostRecord
    message_count: int
    history_saved: bool = True
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
