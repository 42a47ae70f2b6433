"""Turn orchestrator -- runs one user message through the tool-use loop.

A turn moves through TurnState:

    START -> MODEL_CALL -> (TOOL_ROUND -> MODEL_CALL)* -> TEXT_FINAL -> DONE
                      \\-> FAILED

The turn holds the user's lock from start to finish, works on a copy of
the stored conversation, and only writes it back once it has an answer.
Every model call is priced into one CostAggregator, which writes a single
cost record whether the turn succeeds or fails.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from concierge.api.completion import CompletionClient, CompletionResponse
from concierge.api.streaming import CollectingSink, EventChannel, EventSink, EventType, TurnEvent
from concierge.api.tools import ToolRegistry
from concierge.chat.context import ConversationContext, ConversationStore
from concierge.chat.costs import CostAggregator, CostSink
from concierge.chat.locks import UserLocks
from concierge.chat.prompts import build_system_prompt, sanitize_prompt
from concierge.chat.schemas import (
    ChatRequest,
    ChatResponse,
    Message,
    ToolCallSummary,
    ToolInvocation,
    ToolResult,
    TurnCostRecord,
)
from concierge.config import Settings
from concierge.errors import CompletionError, ContextStoreError, CostLimitExceeded, TurnFailedError

logger = logging.getLogger(__name__)

EMPTY_RESPONSE = "Sorry, I could not generate a response."
ROUND_CAP_NOTE = (
    "I wasn't able to fully complete this request within the allowed number of steps. "
    "Some actions may not have been carried out; please check and ask me to continue if needed."
)


class TurnState(StrEnum):
    START = "start"
    MODEL_CALL = "model_call"
    TOOL_ROUND = "tool_round"
    TEXT_FINAL = "text_final"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TurnOutcome:
    """Result of a completed turn."""

    response: str
    tool_calls: list[ToolCallSummary]
    cost: TurnCostRecord
    message_count: int
    history_saved: bool


@dataclass
class _Turn:
    """Mutable state for one turn in flight."""

    user_id: str
    sink: EventSink
    costs: CostAggregator
    streaming: bool
    draft: ConversationContext | None = None
    state: TurnState = TurnState.START
    rounds: int = 0
    tool_calls: list[ToolCallSummary] = field(default_factory=list)

    @property
    def cost_context(self) -> str:
        return "chat-stream" if self.streaming else "chat"

    def transition(self, state: TurnState) -> None:
        logger.debug("Turn for %s: %s -> %s", self.user_id, self.state, state)
        self.state = state


class TurnOrchestrator:
    """Drives turns through the model/tool cycle.

    Turns for different users run concurrently; turns, history reads and
    clears for the same user are serialized by UserLocks.
    """

    def __init__(
        self,
        settings: Settings,
        client: CompletionClient,
        registry: ToolRegistry,
        store: ConversationStore,
        cost_sink: CostSink,
        locks: UserLocks | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._registry = registry
        self._store = store
        self._cost_sink = cost_sink
        self._locks = locks or UserLocks()
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_turn(self, user_id: str, request: ChatRequest) -> ChatResponse:
        """Blocking turn. Raises InputError or TurnFailedError."""
        outcome = await self.execute(user_id, request, CollectingSink())
        return ChatResponse(
            response=outcome.response,
            tools_used=bool(outcome.tool_calls),
            tool_results=outcome.tool_calls,
            cost=outcome.cost,
            message_count=outcome.message_count,
            history_saved=outcome.history_saved,
        )

    def stream_turn(self, user_id: str, request: ChatRequest) -> EventChannel:
        """Start a streaming turn and return the channel carrying its events.

        Input is checked before the turn starts, so InputError is raised here.
        The turn runs as a background task that finishes even if the caller
        stops reading.
        """
        sanitize_prompt(request.message, self._settings.max_prompt_length)
        channel = EventChannel()
        self._spawn(self._stream_worker(user_id, request, channel))
        return channel

    async def execute(
        self,
        user_id: str,
        request: ChatRequest,
        sink: EventSink,
        streaming: bool = False,
    ) -> TurnOutcome:
        """Run one turn, emitting events to sink.

        Returns the outcome on DONE; raises TurnFailedError on FAILED after
        emitting exactly one error event.
        """
        message = sanitize_prompt(request.message, self._settings.max_prompt_length)
        turn = _Turn(
            user_id=user_id,
            sink=sink,
            costs=CostAggregator(self._client.model, self._settings.currency),
            streaming=streaming,
        )

        async with self._locks.hold(user_id):
            try:
                stored = await ConversationContext.load(
                    self._store, user_id, self._settings.history_max_messages
                )
            except ContextStoreError as e:
                raise await self._fail(turn, str(e), 0) from e
            turn.draft = stored.copy()
            turn.draft.append_user(message)
            system_prompt = build_system_prompt(request.context, self._settings.app_name)
            tools = self._registry.tool_definitions() if request.use_tools else None

            try:
                async with asyncio.timeout(self._settings.turn_timeout):
                    text = await self._cycle(turn, system_prompt, tools)
            except TimeoutError as e:
                timeout = self._settings.turn_timeout
                raise await self._fail(turn, f"Turn timed out after {timeout:g}s", len(stored)) from e
            except CompletionError as e:
                raise await self._fail(turn, f"Completion service error: {e}", len(stored)) from e
            except Exception as e:
                logger.exception("Unexpected error in turn for user %s", user_id)
                raise await self._fail(turn, f"Internal error: {e}", len(stored)) from e

            return await self._finish(turn, text)

    async def history(self, user_id: str) -> list[Message]:
        async with self._locks.hold(user_id):
            context = await ConversationContext.load(
                self._store, user_id, self._settings.history_max_messages
            )
            return context.messages()

    async def clear(self, user_id: str) -> int:
        """Empty the user's conversation. Returns the number of messages removed."""
        async with self._locks.hold(user_id):
            context = await ConversationContext.load(
                self._store, user_id, self._settings.history_max_messages
            )
            removed = context.clear()
            await self._store.put(user_id, context.snapshot())
        logger.info("Cleared %d messages for user %s", removed, user_id)
        return removed

    async def check_budget(self, user_id: str) -> None:
        """Raise CostLimitExceeded once today's model spend reaches the limit."""
        limit = self._settings.daily_cost_limit
        if limit <= 0:
            return
        try:
            spent = await self._cost_sink.daily_total(user_id, CostAggregator.PROVIDER)
        except Exception as e:
            logger.warning("Could not read daily cost for user %s: %s", user_id, e)
            return
        if spent >= limit:
            logger.warning("User %s reached daily cost limit ($%.4f of $%.2f)", user_id, spent, limit)
            raise CostLimitExceeded(spent, limit)

    async def drain(self) -> None:
        """Wait for background streaming turns to finish."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Turn phases
    # ------------------------------------------------------------------

    async def _cycle(
        self,
        turn: _Turn,
        system_prompt: str,
        tools: list[dict[str, Any]] | None,
    ) -> str:
        """MODEL_CALL / TOOL_ROUND loop. Returns the final answer text."""
        assert turn.draft is not None
        max_rounds = self._settings.max_tool_rounds

        while True:
            turn.transition(TurnState.MODEL_CALL)
            try:
                response = await self._call_model(turn, system_prompt, tools)
            except CompletionError as e:
                if e.usage is not None:
                    turn.costs.record(e.usage)
                raise
            turn.costs.record(response.usage)

            if not response.wants_tools:
                turn.transition(TurnState.TEXT_FINAL)
                if response.text:
                    return response.text
                await self._emit_text(turn, EMPTY_RESPONSE)
                return EMPTY_RESPONSE

            if turn.rounds >= max_rounds:
                logger.warning(
                    "Tool round cap (%d) reached for user %s; %d requested call(s) not executed",
                    max_rounds,
                    turn.user_id,
                    len(response.tool_invocations),
                )
                turn.transition(TurnState.TEXT_FINAL)
                note = f"\n\n{ROUND_CAP_NOTE}" if response.text else ROUND_CAP_NOTE
                await self._emit_text(turn, note)
                return f"{response.text}{note}"

            turn.transition(TurnState.TOOL_ROUND)
            turn.rounds += 1
            results = await self._run_tools(turn, response.tool_invocations)
            turn.draft.append_tool_exchange(response.content, results)

    async def _call_model(
        self,
        turn: _Turn,
        system_prompt: str,
        tools: list[dict[str, Any]] | None,
    ) -> CompletionResponse:
        assert turn.draft is not None
        messages = turn.draft.api_messages()
        if not turn.streaming:
            return await self._client.complete(messages, system_prompt, tools)

        async def on_text(text: str) -> None:
            await turn.sink.emit(TurnEvent(EventType.TEXT_DELTA, text=text))

        return await self._client.stream(messages, system_prompt, tools, on_text=on_text)

    async def _run_tools(self, turn: _Turn, invocations: list[ToolInvocation]) -> list[ToolResult]:
        """Dispatch every invocation in emitted order, one at a time."""
        results: list[ToolResult] = []
        for invocation in invocations:
            await turn.sink.emit(
                TurnEvent(
                    EventType.TOOL_STARTED,
                    tool_name=invocation.tool_name,
                    invocation_id=invocation.invocation_id,
                    data={"input": invocation.input},
                )
            )

            # Shielded: a started side effect runs to completion even if the turn times out
            task = self._spawn(self._dispatch(invocation, turn.user_id))
            result = await asyncio.shield(task)

            results.append(result)
            turn.tool_calls.append(
                ToolCallSummary(tool_name=invocation.tool_name, tool_input=invocation.input, result=result)
            )
            await turn.sink.emit(
                TurnEvent(
                    EventType.TOOL_FINISHED,
                    tool_name=invocation.tool_name,
                    invocation_id=invocation.invocation_id,
                    success=result.success,
                    data={"result": result.model_dump(mode="json", by_alias=True, exclude_none=True)},
                )
            )
        return results

    async def _dispatch(self, invocation: ToolInvocation, user_id: str) -> ToolResult:
        try:
            return await self._registry.dispatch(
                invocation.tool_name,
                invocation.input,
                user_id,
                invocation_id=invocation.invocation_id,
            )
        except Exception as e:
            logger.exception("Tool registry raised for %s", invocation.tool_name)
            return ToolResult.failed(invocation.invocation_id, invocation.tool_name, f"Tool error: {e}")

    async def _finish(self, turn: _Turn, text: str) -> TurnOutcome:
        """TEXT_FINAL -> DONE: commit the draft, persist, price, report."""
        draft = turn.draft
        assert draft is not None
        draft.append_assistant(text)
        draft.touch()

        history_saved = True
        try:
            await self._store.put(turn.user_id, draft.snapshot())
        except Exception as e:
            history_saved = False
            logger.error("Failed to save conversation for user %s: %s", turn.user_id, e)

        message_count = len(draft)
        await turn.costs.finalize(
            self._cost_sink,
            turn.user_id,
            context=turn.cost_context,
            tools_used=bool(turn.tool_calls),
            message_count=message_count,
        )

        turn.transition(TurnState.DONE)
        cost = turn.costs.total.model_copy()
        await turn.sink.emit(
            TurnEvent(
                EventType.DONE,
                data={
                    "response": text,
                    "toolsUsed": bool(turn.tool_calls),
                    "cost": cost.model_dump(mode="json", by_alias=True),
                    "messageCount": message_count,
                    "historySaved": history_saved,
                },
            )
        )
        logger.info(
            "Turn done for user %s: %d model call(s), %d tool round(s), $%.6f",
            turn.user_id,
            cost.model_call_count,
            turn.rounds,
            cost.total_cost,
        )
        return TurnOutcome(
            response=text,
            tool_calls=turn.tool_calls,
            cost=cost,
            message_count=message_count,
            history_saved=history_saved,
        )

    async def _fail(self, turn: _Turn, message: str, stored_count: int) -> TurnFailedError:
        """FAILED: price what was spent and report once. The stored context is left alone."""
        failed_in = turn.state
        turn.transition(TurnState.FAILED)
        logger.error("Turn failed for user %s during %s: %s", turn.user_id, failed_in, message)

        await turn.costs.finalize(
            self._cost_sink,
            turn.user_id,
            context=turn.cost_context,
            tools_used=bool(turn.tool_calls),
            message_count=stored_count,
            outcome="failed",
        )
        cost = turn.costs.total.model_copy()
        await turn.sink.emit(
            TurnEvent(
                EventType.ERROR,
                text=message,
                data={"cost": cost.model_dump(mode="json", by_alias=True)},
            )
        )
        return TurnFailedError(message, cost=cost)

    async def _emit_text(self, turn: _Turn, text: str) -> None:
        if turn.streaming:
            await turn.sink.emit(TurnEvent(EventType.TEXT_DELTA, text=text))

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _stream_worker(self, user_id: str, request: ChatRequest, channel: EventChannel) -> None:
        try:
            await self.execute(user_id, request, channel, streaming=True)
        except TurnFailedError as e:
            logger.debug("Streaming turn for user %s ended in failure: %s", user_id, e)
        except Exception as e:
            logger.exception("Streaming turn for user %s crashed", user_id)
            await channel.emit(TurnEvent(EventType.ERROR, text=f"Internal error: {e}"))
        if channel.disconnected:
            logger.info(
                "Streaming turn for user %s completed after disconnect (%d event(s) dropped)",
                user_id,
                channel.dropped,
            )
