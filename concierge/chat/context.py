"""Conversation context -- the ordered dialogue for one user.

The context lives in the Conversation Store as a JSON blob of the form
{"messages": [...], "metadata": {...}}. A turn loads it, works on a copy,
and hands a snapshot back to the store once the turn has an answer.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import ValidationError

from concierge.chat.schemas import (
    ContentBlock,
    Message,
    Role,
    TextBlock,
    ToolResult,
    ToolUseBlock,
)
from concierge.errors import ContextStoreError

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 50


class ConversationStore(Protocol):
    """Durable blob storage keyed by user identity."""

    async def get(self, user_id: str) -> dict[str, Any] | None: ...

    async def put(self, user_id: str, blob: dict[str, Any]) -> None: ...


class ConversationContext:
    """Ordered messages plus a free-form metadata map."""

    def __init__(
        self,
        messages: Iterable[Message] | None = None,
        metadata: dict[str, Any] | None = None,
        max_messages: int = DEFAULT_MAX_MESSAGES,
    ) -> None:
        self._messages: list[Message] = list(messages or [])
        self.metadata: dict[str, Any] = dict(metadata or {})
        self.max_messages = max_messages

    # ------------------------------------------------------------------
    # Loading / persistence
    # ------------------------------------------------------------------

    @classmethod
    async def load(
        cls,
        store: ConversationStore,
        user_id: str,
        max_messages: int = DEFAULT_MAX_MESSAGES,
    ) -> ConversationContext:
        """Fetch and decode the user's context.

        Missing or corrupt data yields an empty context. Raises
        ContextStoreError when the store itself cannot be read.
        """
        try:
            blob = await store.get(user_id)
        except Exception as e:
            logger.error("Conversation store read failed for user %s: %s", user_id, e)
            raise ContextStoreError(f"Conversation store unavailable: {e}") from e

        if not blob:
            return cls(max_messages=max_messages)

        try:
            return cls.from_snapshot(blob, max_messages=max_messages)
        except (ValidationError, TypeError, ValueError) as e:
            logger.warning("Discarding corrupt conversation for user %s: %s", user_id, e)
            return cls(max_messages=max_messages)

    @classmethod
    def from_snapshot(
        cls,
        blob: dict[str, Any],
        max_messages: int = DEFAULT_MAX_MESSAGES,
    ) -> ConversationContext:
        if not isinstance(blob, dict):
            raise TypeError(f"expected a dict, got {type(blob).__name__}")
        raw_messages = blob.get("messages") or []
        if not isinstance(raw_messages, list):
            raise TypeError("'messages' must be a list")
        messages = [Message.model_validate(_upgrade_legacy(m)) for m in raw_messages]
        metadata = blob.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise TypeError("'metadata' must be a dict")
        return cls(messages, metadata, max_messages=max_messages)

    def snapshot(self) -> dict[str, Any]:
        """Serializable form handed to the Conversation Store."""
        return {
            "messages": [m.model_dump(mode="json") for m in self._messages],
            "metadata": dict(self.metadata),
        }

    def copy(self) -> ConversationContext:
        return ConversationContext(
            (m.model_copy(deep=True) for m in self._messages),
            dict(self.metadata),
            max_messages=self.max_messages,
        )

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append_user(self, text: str) -> Message:
        """Start a new exchange; older history beyond max_messages is dropped here."""
        message = Message(role=Role.USER, content=text)
        self._messages.append(message)
        self._trim()
        return message

    def append_assistant(self, content: str | Sequence[ContentBlock]) -> Message:
        if not isinstance(content, str):
            content = list(content)
        message = Message(role=Role.ASSISTANT, content=content)
        self._messages.append(message)
        return message

    def append_tool_exchange(
        self,
        assistant_content: Sequence[ContentBlock],
        results: Sequence[ToolResult],
    ) -> None:
        """Append the assistant's tool requests followed by their results.

        Results must pair one-to-one, in order, with the tool_use blocks.
        """
        requested = [b.id for b in assistant_content if isinstance(b, ToolUseBlock)]
        answered = [r.invocation_id for r in results]
        if not requested or requested != answered:
            raise ValueError(
                f"tool results {answered} do not match invocations {requested}"
            )
        self._messages.append(Message(role=Role.ASSISTANT, content=list(assistant_content)))
        self._messages.append(
            Message(role=Role.TOOL_RESULT, content=[r.to_block() for r in results])
        )

    def clear(self) -> int:
        """Drop all messages and metadata. Returns how many messages were removed."""
        removed = len(self._messages)
        self._messages = []
        self.metadata = {}
        return removed

    def set_metadata(self, key: str, value: Any) -> None:
        self.metadata[key] = value

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return self.metadata.get(key, default)

    def touch(self) -> None:
        self.metadata["lastActiveAt"] = datetime.now(UTC).isoformat()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def messages(self) -> list[Message]:
        """All messages in order, including historical tool exchanges."""
        return list(self._messages)

    def api_messages(self) -> list[dict[str, Any]]:
        return [m.to_api() for m in self._messages]

    def __len__(self) -> int:
        return len(self._messages)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _trim(self) -> None:
        """Keep the newest max_messages, starting on a plain user message.

        Tool exchanges are dropped whole: no tool_result outlives its tool_use.
        """
        if len(self._messages) <= self.max_messages:
            return
        kept = self._messages[-self.max_messages:]
        start = 0
        while start < len(kept) and not _is_plain_user(kept[start]):
            start += 1
        self._messages = kept[start:]


def _is_plain_user(message: Message) -> bool:
    if message.role != Role.USER:
        return False
    if isinstance(message.content, str):
        return True
    return all(isinstance(b, TextBlock) for b in message.content)


def _upgrade_legacy(raw: Any) -> Any:
    """Older blobs stored tool results as role "user"; map them to tool_result."""
    if not isinstance(raw, dict) or raw.get("role") != "user":
        return raw
    content = raw.get("content")
    if isinstance(content, list) and content and all(
        isinstance(b, dict) and b.get("type") == "tool_result" for b in content
    ):
        return {**raw, "role": Role.TOOL_RESULT.value}
    return raw
