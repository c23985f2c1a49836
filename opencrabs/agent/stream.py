"""Stream events and the reconstructor that turns them into a response.

A provider stream is a finite, ordered sequence of typed events:

    MessageStart -> (ContentBlockStart -> ContentBlockDelta* -> ContentBlockStop)*
                 -> MessageDelta -> MessageStop

StreamReconstructor keeps an explicit index -> buffer map, emits a
StreamingChunk progress event for every text delta as it arrives and,
at MessageStop, assembles the finalized blocks in index order.

Thinking blocks are display-only: their deltas become ReasoningChunk
events and never enter the content-block buffer.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, assert_never

from opencrabs.agent.errors import StreamProtocolError, StreamTruncatedError
from opencrabs.agent.models import (
    ContentBlock,
    LLMResponse,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolUseBlock,
)
from opencrabs.events import ProgressNotifier, ReasoningChunk, StreamingChunk

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Stream event types (closed union)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ThinkingShell:
    """Block shell for provider thinking content."""


BlockShell = TextBlock | ToolUseBlock | ThinkingShell


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class InputJsonDelta:
    partial_json: str


@dataclass(frozen=True)
class ThinkingDelta:
    thinking: str


Delta = TextDelta | InputJsonDelta | ThinkingDelta


@dataclass(frozen=True)
class MessageStart:
    id: str
    model: str
    role: str = "assistant"
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class ContentBlockStart:
    index: int
    block: BlockShell


@dataclass(frozen=True)
class ContentBlockDelta:
    index: int
    delta: Delta


@dataclass(frozen=True)
class ContentBlockStop:
    index: int


@dataclass(frozen=True)
class MessageDelta:
    stop_reason: StopReason | None
    stop_sequence: str | None = None
    usage: TokenUsage | None = None


@dataclass(frozen=True)
class MessageStop:
    pass


StreamEvent = (
    MessageStart
    | ContentBlockStart
    | ContentBlockDelta
    | ContentBlockStop
    | MessageDelta
    | MessageStop
)


# ---------------------------------------------------------------------------
# Reconstruction
# ---------------------------------------------------------------------------


@dataclass
class _BlockBuffer:
    """Accumulating buffer for one open content block."""

    kind: str  # "text" or "tool_use"
    parts: list[str] = field(default_factory=list)
    tool_id: str = ""
    tool_name: str = ""

    def finalize(self) -> ContentBlock:
        joined = "".join(self.parts)
        if self.kind == "text":
            return TextBlock(text=joined)
        return ToolUseBlock(id=self.tool_id, name=self.tool_name, input=_parse_tool_input(joined, self.tool_name))


def _parse_tool_input(raw: str, tool_name: str) -> dict[str, Any]:
    """Parse reassembled tool input JSON.

    Invalid JSON fails only this block: the tool gets an empty input and
    a warning is logged.  Empty input (no-argument tools) is {}.
    """
    if not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Invalid tool input JSON for %s (%s); using empty input", tool_name, e)
        return {}
    if not isinstance(value, dict):
        logger.warning(
            "Tool input for %s is %s, not an object; using empty input",
            tool_name,
            type(value).__name__,
        )
        return {}
    return value


class StreamReconstructor:
    """Rebuilds one LLMResponse from a provider event stream."""

    def __init__(self, session_id: str, notifier: ProgressNotifier | None = None) -> None:
        self._session_id = session_id
        self._notifier = notifier or ProgressNotifier()
        self._open: dict[int, _BlockBuffer] = {}
        self._thinking: set[int] = set()
        self._used: set[int] = set()
        self._finished: dict[int, ContentBlock] = {}
        self._reasoning: list[str] = []
        self._message: MessageStart | None = None
        self._stop_reason: StopReason | None = None
        self._delta_usage: TokenUsage | None = None
        self._response: LLMResponse | None = None

    @property
    def reasoning(self) -> str | None:
        return "".join(self._reasoning) or None

    async def reconstruct(
        self, events: AsyncIterator[StreamEvent]
    ) -> tuple[LLMResponse, str | None]:
        """Consume the whole stream; return (response, reasoning)."""
        async for event in events:
            self.feed(event)
        if self._response is None:
            raise StreamTruncatedError(
                f"Stream ended without message_stop ({len(self._open)} block(s) still open)"
            )
        return self._response, self.reasoning

    def feed(self, event: StreamEvent) -> None:
        """Apply one event."""
        if self._response is not None:
            raise StreamProtocolError(f"Event {type(event).__name__} received after message_stop")

        if isinstance(event, MessageStart):
            if self._message is not None:
                raise StreamProtocolError(f"Second message_start (message {event.id}) in one stream")
            self._message = event
            return

        if self._message is None:
            raise StreamProtocolError(f"{type(event).__name__} received before message_start")

        if isinstance(event, ContentBlockStart):
            self._start_block(event)
        elif isinstance(event, ContentBlockDelta):
            self._apply_delta(event)
        elif isinstance(event, ContentBlockStop):
            self._stop_block(event.index)
        elif isinstance(event, MessageDelta):
            self._stop_reason = event.stop_reason
            self._delta_usage = event.usage
        elif isinstance(event, MessageStop):
            self._response = self._assemble()
        else:
            assert_never(event)

    # ------------------------------------------------------------------
    # Block handling
    # ------------------------------------------------------------------

    def _start_block(self, event: ContentBlockStart) -> None:
        index = event.index
        if index in self._used:
            raise StreamProtocolError(f"content_block_start for already-used block index {index}")
        self._used.add(index)

        shell = event.block
        if isinstance(shell, TextBlock):
            buffer = _BlockBuffer(kind="text")
            if shell.text:
                buffer.parts.append(shell.text)
            self._open[index] = buffer
        elif isinstance(shell, ToolUseBlock):
            self._open[index] = _BlockBuffer(kind="tool_use", tool_id=shell.id, tool_name=shell.name)
        elif isinstance(shell, ThinkingShell):
            self._thinking.add(index)
        else:
            assert_never(shell)

    def _apply_delta(self, event: ContentBlockDelta) -> None:
        index = event.index
        delta = event.delta

        if index in self._thinking:
            if not isinstance(delta, ThinkingDelta):
                raise StreamProtocolError(
                    f"{type(delta).__name__} sent to thinking block index {index}"
                )
            if delta.thinking:
                self._reasoning.append(delta.thinking)
                self._notifier.notify(self._session_id, ReasoningChunk(text=delta.thinking))
            return

        buffer = self._open.get(index)
        if buffer is None:
            raise StreamProtocolError(
                f"content_block_delta references block index {index}, "
                f"which was never opened (open: {sorted(self._open)})"
            )

        if isinstance(delta, TextDelta):
            if buffer.kind != "text":
                raise StreamProtocolError(f"text_delta sent to {buffer.kind} block index {index}")
            buffer.parts.append(delta.text)
            if delta.text:
                self._notifier.notify(self._session_id, StreamingChunk(text=delta.text))
        elif isinstance(delta, InputJsonDelta):
            if buffer.kind != "tool_use":
                raise StreamProtocolError(f"input_json_delta sent to {buffer.kind} block index {index}")
            buffer.parts.append(delta.partial_json)
        elif isinstance(delta, ThinkingDelta):
            raise StreamProtocolError(f"thinking_delta sent to {buffer.kind} block index {index}")
        else:
            assert_never(delta)

    def _stop_block(self, index: int) -> None:
        if index in self._thinking:
            self._thinking.discard(index)
            return
        buffer = self._open.pop(index, None)
        if buffer is None:
            raise StreamProtocolError(
                f"content_block_stop references block index {index}, which is not open"
            )
        self._finished[index] = buffer.finalize()

    def _assemble(self) -> LLMResponse:
        assert self._message is not None
        if self._open:
            logger.warning(
                "message_stop with open block(s) %s; finalizing as received",
                sorted(self._open),
            )
            for index in sorted(self._open):
                self._finished[index] = self._open.pop(index).finalize()
        self._thinking.clear()

        usage = self._message.usage
        if self._delta_usage is not None:
            usage = TokenUsage(
                input_tokens=self._delta_usage.input_tokens or usage.input_tokens,
                output_tokens=self._delta_usage.output_tokens or usage.output_tokens,
            )

        return LLMResponse(
            id=self._message.id,
            model=self._message.model,
            content=[self._finished[i] for i in sorted(self._finished)],
            stop_reason=self._stop_reason,
            usage=usage,
        )
