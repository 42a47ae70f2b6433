"""Per-turn cost aggregation.

Every completion call made during a turn (including tool-use follow-ups)
is recorded here; the turn finalizes exactly one cost row at the end,
whether it succeeded or failed.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from concierge.chat.schemas import CostEntry, ModelUsage, TurnCostRecord

logger = logging.getLogger(__name__)


class CostSink(Protocol):
    """Cost-tracking collaborator."""

    async def record(self, user_id: str, entry: CostEntry) -> CostEntry: ...

    async def daily_total(self, user_id: str, provider: str) -> float: ...


def calculate_cost(
    input_tokens: int,
    output_tokens: int,
    input_cost_per_mtok: float,
    output_cost_per_mtok: float,
) -> float:
    """USD cost for a call given per-million-token prices."""
    return (input_tokens / 1_000_000) * input_cost_per_mtok + (
        output_tokens / 1_000_000
    ) * output_cost_per_mtok


class CostAggregator:
    """Accumulates usage for one turn and writes a single cost record."""

    PROVIDER = "anthropic"
    SERVICE_TYPE = "ai"

    def __init__(self, model: str, currency: str = "USD") -> None:
        self._model = model
        self._turn = TurnCostRecord(currency=currency)
        self._finalized = False

    @property
    def total(self) -> TurnCostRecord:
        return self._turn

    def record(self, usage: ModelUsage) -> None:
        self._turn.add(usage)

    async def finalize(
        self,
        sink: CostSink,
        user_id: str,
        *,
        context: str,
        tools_used: bool,
        message_count: int,
        outcome: str = "done",
    ) -> CostEntry | None:
        """Persist the turn's cost. Sink errors are logged, not raised.

        Only the first call writes; later calls return None.
        """
        if self._finalized:
            return None
        self._finalized = True

        total = self._turn
        metadata: dict[str, Any] = {
            "model": self._model,
            "inputTokens": total.total_input_tokens,
            "outputTokens": total.total_output_tokens,
            "totalTokens": total.total_input_tokens + total.total_output_tokens,
            "modelCalls": total.model_call_count,
            "context": context,
            "toolsUsed": tools_used,
            "messageCount": message_count,
            "outcome": outcome,
        }
        entry = CostEntry(
            provider=self.PROVIDER,
            type=self.SERVICE_TYPE,
            amount=total.total_cost,
            currency=total.currency,
            metadata=metadata,
        )
        try:
            stored = await sink.record(user_id, entry)
        except Exception as e:
            logger.error(
                "Failed to record turn cost $%.6f for user %s: %s",
                total.total_cost,
                user_id,
                e,
            )
            return None

        logger.info(
            "Turn cost recorded: $%.6f (%d calls, %d in / %d out tokens) for user %s",
            total.total_cost,
            total.model_call_count,
            total.total_input_tokens,
            total.total_output_tokens,
            user_id,
        )
        return stored
