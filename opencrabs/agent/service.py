"""Agent service -- the tool loop controller.

One send_message() call drives the provider through as many
request/response cycles as the model needs:

    Start -> AwaitProviderResponse -> Done
                    |                   ^
                    v                   |
              ExecuteTools -> CheckInjectedMessage

Every context append is persisted before the loop goes on to depend on
it.  Usage is accumulated for billing while context_tokens tracks only
the most recent call.  Tool failures and denials are folded back into
the conversation; provider, persistence and protocol errors abort the
call.

At most one loop runs per session at a time (keyed asyncio.Lock).
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from opencrabs.agent.approval import ApprovalCallback, ApprovalGate, SudoCallback
from opencrabs.agent.context import ContextCompactor, ConversationContext, estimate_tokens, extract_text
from opencrabs.agent.errors import OpenCrabsError, TurnCancelledError
from opencrabs.agent.models import (
    AgentResponse,
    LLMRequest,
    LLMResponse,
    Message,
    StopReason,
    TokenUsage,
)
from opencrabs.agent.provider import Provider
from opencrabs.agent.queue import MessageQueueCallback, MessageQueueInjector
from opencrabs.agent.stream import StreamEvent, StreamReconstructor
from opencrabs.agent.tools import ToolExecutionContext, ToolRegistry
from opencrabs.agent.usage import UsageAccountant
from opencrabs.config import Settings
from opencrabs.events import (
    CompactionSummary,
    Compacting,
    IntermediateText,
    ProgressCallback,
    ProgressNotifier,
    Thinking,
    TokenCount,
    ToolCompleted,
    ToolStarted,
)

if TYPE_CHECKING:
    from opencrabs.storage.sessions import SessionStore, StoredMessage

logger = logging.getLogger(__name__)


class AgentService:
    """Runs conversational turns with an internal tool loop.

    Each callback is an independent, optional capability:
      - progress: (session_id, event) -> None, synchronous, must not block
      - approval: async (ToolApprovalInfo) -> bool, may wait on a human
      - sudo: async (command) -> credential | None
      - message queue: async () -> message | None, must return immediately
    """

    def __init__(
        self,
        provider: Provider,
        store: SessionStore,
        settings: Settings,
        *,
        tools: ToolRegistry | None = None,
        progress_callback: ProgressCallback | None = None,
        approval_callback: ApprovalCallback | None = None,
        sudo_callback: SudoCallback | None = None,
        message_queue_callback: MessageQueueCallback | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._settings = settings
        self._tools = tools or ToolRegistry()
        self._notifier = ProgressNotifier(progress_callback)
        self._gate = ApprovalGate(
            auto_approve=settings.auto_approve_tools,
            approval_callback=approval_callback,
            sudo_callback=sudo_callback,
        )
        self._message_queue = message_queue_callback
        self._compactor = ContextCompactor(settings)
        self._session_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def max_tool_iterations(self) -> int:
        """Configured iteration cap (0 = unlimited, bounded by the safety ceiling)."""
        return self._settings.max_tool_iterations

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send_message(
        self,
        session_id: str,
        text: str,
        model: str | None = None,
        *,
        message_queue: MessageQueueCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AgentResponse:
        """Process one user message through the full tool loop.

        message_queue overrides the service-level queue capability for
        this call.  cancel_event is checked before every provider call
        and every tool; in-flight tool executions and writes complete
        before TurnCancelledError is raised.
        """
        lock = self._lock_for(session_id)
        if lock.locked():
            logger.info("Session %s busy, waiting for the active turn to finish", session_id)
        async with lock:
            return await self._run_loop(session_id, text, model, message_queue, cancel_event)

    async def stream_complete(self, session_id: str, request: LLMRequest) -> tuple[LLMResponse, str | None]:
        """Run one streamed provider call and reconstruct the full response.

        Emits StreamingChunk / ReasoningChunk progress events as data
        arrives.  Returns (response, reasoning).
        """
        reconstructor = StreamReconstructor(session_id, self._notifier)
        events: AsyncIterator[StreamEvent] = self._provider.stream(request)
        try:
            return await reconstructor.reconstruct(events)
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    # ------------------------------------------------------------------
    # Tool loop
    # ------------------------------------------------------------------

    async def _run_loop(
        self,
        session_id: str,
        text: str,
        model: str | None,
        message_queue: MessageQueueCallback | None,
        cancel_event: asyncio.Event | None,
    ) -> AgentResponse:
        session = await self._store.get_session(session_id)
        model = model or session.model or self._provider.default_model()
        context = await self._store.load_context(session_id)

        await self._append(context, Message.user(text))

        accountant = UsageAccountant(self._provider.calculate_cost)
        injector = MessageQueueInjector(message_queue or self._message_queue)
        tools = self._tools.definitions()
        cap = self._settings.effective_iteration_cap
        iterations = 0
        compaction_attempted = False

        try:
            while True:
                self._check_cancelled(cancel_event, session_id)

                if not compaction_attempted:
                    compaction_attempted = await self._maybe_compact(
                        context, model, accountant.context_tokens or session.last_context_tokens
                    )

                request = context.to_request(
                    model,
                    tools=tools,
                    system=self._settings.system_prompt,
                    max_tokens=self._settings.max_tokens,
                )
                self._notifier.notify(session_id, Thinking())
                response, reasoning = await self._call_provider(session_id, request)

                response_model = response.model or model
                call_cost = accountant.record(response_model, response.usage)
                self._notifier.notify(session_id, TokenCount(tokens=accountant.context_tokens))

                stored = await self._append(
                    context,
                    Message.assistant(response.content),
                    usage=response.usage,
                    cost=call_cost,
                    model=response_model,
                )

                if response.stop_reason != StopReason.TOOL_USE or not response.tool_uses:
                    await self._close_dangling_tool_calls(context, response)
                    break

                intermediate = extract_text(response)
                if intermediate:
                    self._notifier.notify(session_id, IntermediateText(text=intermediate, reasoning=reasoning))

                await self._execute_tools(session_id, context, response, accountant.context_tokens, cancel_event)
                iterations += 1

                if iterations >= cap:
                    logger.warning(
                        "Tool loop reached iteration cap (%d) for session %s; finishing with last response",
                        cap,
                        session_id,
                    )
                    break

                injected = await injector.poll()
                if injected is not None:
                    logger.info("Injecting queued user message into session %s", session_id)
                    await self._append(context, Message.user(injected))
        except (OpenCrabsError, asyncio.CancelledError):
            await self._record_partial_usage(session_id, accountant)
            raise

        usage = accountant.total
        await self._store.record_usage(session_id, usage, accountant.cost, accountant.context_tokens)

        logger.info(
            "Turn complete for session %s: %d provider call(s), %d tool iteration(s), "
            "tokens in/out=%d/%d, context=%d, cost=$%.4f",
            session_id,
            accountant.calls,
            iterations,
            usage.input_tokens,
            usage.output_tokens,
            accountant.context_tokens,
            accountant.cost,
        )

        return AgentResponse(
            message_id=stored.id,
            content=extract_text(response),
            stop_reason=response.stop_reason,
            usage=usage,
            context_tokens=accountant.context_tokens,
            cost=accountant.cost,
            model=response.model or model,
        )

    async def _call_provider(self, session_id: str, request: LLMRequest) -> tuple[LLMResponse, str | None]:
        if self._settings.streaming_enabled:
            return await self.stream_complete(session_id, request)
        return await self._provider.complete(request), None

    async def _execute_tools(
        self,
        session_id: str,
        context: ConversationContext,
        response: LLMResponse,
        context_tokens: int,
        cancel_event: asyncio.Event | None,
    ) -> None:
        """Approve and run every tool call of one response, in block order.

        Each call gets exactly one tool-result message, so a cancellation
        mid-batch still leaves a valid, fully persisted history.
        """
        appended_tokens = 0
        cancelled = False

        for call in response.tool_uses:
            if not cancelled and cancel_event is not None and cancel_event.is_set():
                cancelled = True

            if cancelled:
                result_text, is_error = f"Tool '{call.name}' was not executed: turn cancelled", True
            else:
                tool = self._tools.get(call.name)
                decision = await self._gate.decide(session_id, tool, call)
                if decision.approved:
                    self._notifier.notify(session_id, ToolStarted(tool_name=call.name, tool_input=call.input))
                    exec_context = ToolExecutionContext(
                        session_id=session_id,
                        workspace_dir=self._settings.workspace_dir,
                        sudo_password=decision.sudo_password,
                    )
                    start_time = time.monotonic()
                    result = await self._tools.execute(call.name, call.input, exec_context)
                    logger.debug(
                        "Tool %s finished in %d ms (success=%s)",
                        call.name,
                        int((time.monotonic() - start_time) * 1000),
                        result.success,
                    )
                    self._notifier.notify(
                        session_id,
                        ToolCompleted(
                            tool_name=call.name,
                            tool_input=call.input,
                            success=result.success,
                            summary=result.summary,
                        ),
                    )
                    result_text, is_error = result.message, not result.success
                else:
                    result_text, is_error = f"Tool '{call.name}' was not executed: {decision.reason}", True

            await self._append(context, Message.tool_result(call.id, result_text, is_error=is_error))
            appended_tokens += estimate_tokens(result_text)
            self._notifier.notify(session_id, TokenCount(tokens=context_tokens + appended_tokens))

        if cancelled:
            raise TurnCancelledError(f"Turn cancelled for session {session_id}")

    async def _close_dangling_tool_calls(self, context: ConversationContext, response: LLMResponse) -> None:
        """Answer tool calls in a final response so the stored history stays valid."""
        stop = response.stop_reason.value if response.stop_reason else "unknown"
        for call in response.tool_uses:
            logger.warning("Tool call %s left unexecuted (stop reason: %s)", call.name, stop)
            await self._append(
                context,
                Message.tool_result(
                    call.id,
                    f"Tool '{call.name}' was not executed: response ended with stop reason {stop}",
                    is_error=True,
                ),
            )

    async def _maybe_compact(self, context: ConversationContext, model: str, context_tokens: int) -> bool:
        """Compact history if the context window is filling up.

        Returns True once compaction has been attempted, whatever the
        outcome, so a failing summarizer is not retried every iteration.
        """
        window = self._provider.context_window(model)
        if not self._compactor.should_compact(context_tokens, window):
            return False

        session_id = context.session_id
        self._notifier.notify(session_id, Compacting())
        try:
            result = await self._compactor.compact(context, self._provider, model)
        except Exception as e:
            logger.error("Compaction failed for session %s: %s -- continuing uncompacted", session_id, e)
            return True
        if result is None:
            return True

        summary, through_seq = result
        await self._store.save_summary(session_id, summary, through_seq)
        self._notifier.notify(session_id, CompactionSummary(summary=summary))
        return True

    async def _record_partial_usage(self, session_id: str, accountant: UsageAccountant) -> None:
        """Bill the provider calls an aborted turn already made.

        A failure here is logged; the error that aborted the turn is the
        one the caller sees.
        """
        if not accountant.calls:
            return
        try:
            await asyncio.shield(
                self._store.record_usage(session_id, accountant.total, accountant.cost, accountant.context_tokens)
            )
        except OpenCrabsError as e:
            logger.error("Could not record usage of aborted turn for session %s: %s", session_id, e)
            return
        logger.info(
            "Recorded usage of aborted turn for session %s: %d provider call(s), tokens in/out=%d/%d",
            session_id,
            accountant.calls,
            accountant.total.input_tokens,
            accountant.total.output_tokens,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _append(
        self,
        context: ConversationContext,
        message: Message,
        *,
        usage: TokenUsage | None = None,
        cost: float | None = None,
        model: str | None = None,
    ) -> StoredMessage:
        """Persist a message, then add it to the in-memory context.

        The write is shielded: if the task is cancelled mid-write, the
        write still completes.
        """
        stored = await asyncio.shield(
            self._store.append_message(context.session_id, message, usage=usage, cost=cost, model=model)
        )
        context.append(message, stored.seq)
        return stored

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None, session_id: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise TurnCancelledError(f"Turn cancelled for session {session_id}")

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock
