"""System prompt assembly and user input screening."""

from __future__ import annotations

import logging
import re
from typing import Any

from concierge.errors import InputError

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 4000

# Common prompt-injection phrasings, rejected outright
_BLOCKED_PATTERNS = [
    re.compile(r"ignore\s+previous\s+instructions?", re.IGNORECASE),
    re.compile(r"system:", re.IGNORECASE),
    re.compile(r"\{\{.*\}\}"),
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"\[INST\]", re.IGNORECASE),
    re.compile(r"disregard\s+all\s+previous", re.IGNORECASE),
    re.compile(r"forget\s+everything", re.IGNORECASE),
    re.compile(r"new\s+instructions?:", re.IGNORECASE),
]


def sanitize_prompt(value: Any, max_length: int = MAX_PROMPT_LENGTH) -> str:
    """Validate and normalize caller-supplied text.

    Raises InputError for non-string input, blank input, or an injection
    pattern. Over-long input is truncated to max_length.
    """
    if not isinstance(value, str):
        raise InputError("Message must be a string")
    text = value.strip()
    if not text:
        raise InputError("Message is required")

    for pattern in _BLOCKED_PATTERNS:
        if pattern.search(text):
            logger.warning(
                "Blocked prompt injection attempt (pattern=%s): %r",
                pattern.pattern,
                text[:100],
            )
            raise InputError("Invalid input detected")

    if len(text) > max_length:
        logger.warning("Truncating input from %d to %d chars", len(text), max_length)
        text = text[:max_length]
    return text


def _hint(hints: dict[str, Any], key: str, default: str) -> str:
    value = hints.get(key)
    if not isinstance(value, str) or not value.strip():
        return default
    try:
        return sanitize_prompt(value, max_length=200)
    except InputError:
        logger.warning("Ignoring unsafe context hint %r", key)
        return default


def build_system_prompt(hints: dict[str, Any] | None = None, app_name: str = "Concierge") -> str:
    """Build the assistant's system prompt from caller context hints.

    Recognized hints: ``page`` (current UI page) and ``userName``.
    Unsafe hint values fall back to defaults instead of failing the turn.
    """
    hints = hints or {}
    page = _hint(hints, "page", f"{app_name} Command Center")
    user_name = _hint(hints, "userName", "User")

    return f"""You are the {app_name} AI Assistant - an intelligent, proactive assistant for a personal command center.

CURRENT CONTEXT:
- User: {user_name}
- Current Page: {page}

AVAILABLE CAPABILITIES (via function calling):
1. **searchContacts** - Search and retrieve contact information
2. **createTask** - Create tasks with priorities and due dates
3. **scheduleEvent** - Schedule calendar events
4. **sendSMS** - Send SMS messages
5. **makeCall** - Place phone calls

YOUR ROLE:
- Provide context-aware assistance and execute actions with the tools when asked
- Maintain conversation context across messages
- Be conversational, friendly and concise; use markdown for clarity

RESPONSE GUIDELINES:
- When using tools, explain what you are doing and report the outcome
- If a tool fails, tell the user plainly and suggest what to do next
- If uncertain, ask a clarifying question
- Always respect user privacy and data security"""
