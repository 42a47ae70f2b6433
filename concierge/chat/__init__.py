"""Chat module -- conversation state, costs and prompts for the assistant.

Public API: ConversationContext, CostAggregator, UserLocks, prompt helpers,
and the schema types from schemas.py.
"""

from concierge.chat.context import ConversationContext, ConversationStore
from concierge.chat.costs import CostAggregator, CostSink, calculate_cost
from concierge.chat.locks import UserLocks
from concierge.chat.prompts import build_system_prompt, sanitize_prompt
from concierge.chat.schemas import (
    ChatRequest,
    ChatResponse,
    ContentBlock,
    CostEntry,
    Message,
    ModelUsage,
    Role,
    TextBlock,
    ToolCallSummary,
    ToolInvocation,
    ToolResult,
    ToolResultBlock,
    ToolUseBlock,
    TurnCostRecord,
)

__all__ = [
    "ConversationContext",
    "ConversationStore",
    "CostAggregator",
    "CostSink",
    "UserLocks",
    "build_system_prompt",
    "calculate_cost",
    "sanitize_prompt",
    # Messages
    "ContentBlock",
    "Message",
    "Role",
    "TextBlock",
    "ToolResultBlock",
    "ToolUseBlock",
    # Tools
    "ToolCallSummary",
    "ToolInvocation",
    "ToolResult",
    # Costs
    "CostEntry",
    "ModelUsage",
    "TurnCostRecord",
    # Requests
    "ChatRequest",
    "ChatResponse",
]
