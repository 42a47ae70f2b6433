"""Exception types shared across the chat pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from concierge.chat.schemas import ModelUsage, TurnCostRecord


class ConciergeError(Exception):
    """Base class for all Concierge errors."""


class InputError(ConciergeError):
    """Caller sent a missing or malformed message. Raised before any model call."""


class CompletionError(ConciergeError):
    """The completion service could not be reached or returned an error."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        usage: ModelUsage | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        # Tokens the provider reported before the call broke off
        self.usage = usage


class ContextStoreError(ConciergeError):
    """The Conversation Store could not be read."""


class ToolFailure(ConciergeError):
    """A tool handler could not perform its side effect.

    Converted into a failed ToolResult by the registry; never escapes a turn.
    """


class CostLimitExceeded(ConciergeError):
    """The user's daily spend limit has been reached."""

    def __init__(self, spent: float, limit: float) -> None:
        super().__init__(f"Daily cost limit reached (${spent:.2f} of ${limit:.2f})")
        self.spent = spent
        self.limit = limit


class TurnFailedError(ConciergeError):
    """A turn ended in the FAILED state.

    Carries the partial cost record so callers can report what was billed.
    """

    def __init__(self, message: str, cost: TurnCostRecord | None = None) -> None:
        super().__init__(message)
        self.cost = cost
