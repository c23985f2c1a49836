"""Progress events emitted while the agent processes a message.

Progress events are ephemeral and fire-and-forget: they describe one
observable moment of a turn (a streamed chunk, a tool starting, a
compaction) and are never persisted by the core.

Delivery is synchronous from the loop's point of view.  Callback errors
are isolated -- one broken subscriber never crashes the tool loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Any, Callable, ClassVar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """Base class for all progress events."""

    type: ClassVar[str] = "progress"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, **asdict(self)}


@dataclass(frozen=True)
class Thinking(ProgressEvent):
    type: ClassVar[str] = "thinking"


@dataclass(frozen=True)
class ToolStarted(ProgressEvent):
    type: ClassVar[str] = "tool_started"

    tool_name: str
    tool_input: dict[str, Any]


@dataclass(frozen=True)
class ToolCompleted(ProgressEvent):
    type: ClassVar[str] = "tool_completed"

    tool_name: str
    tool_input: dict[str, Any]
    success: bool
    summary: str


@dataclass(frozen=True)
class IntermediateText(ProgressEvent):
    """Text the model sends alongside a batch of tool calls."""

    type: ClassVar[str] = "intermediate_text"

    text: str
    reasoning: str | None = None


@dataclass(frozen=True)
class StreamingChunk(ProgressEvent):
    type: ClassVar[str] = "streaming_chunk"

    text: str


@dataclass(frozen=True)
class ReasoningChunk(ProgressEvent):
    """Thinking text from the provider (display-only)."""

    type: ClassVar[str] = "reasoning_chunk"

    text: str


@dataclass(frozen=True)
class Compacting(ProgressEvent):
    type: ClassVar[str] = "compacting"


@dataclass(frozen=True)
class CompactionSummary(ProgressEvent):
    type: ClassVar[str] = "compaction_summary"

    summary: str


@dataclass(frozen=True)
class RestartReady(ProgressEvent):
    type: ClassVar[str] = "restart_ready"

    status: str


@dataclass(frozen=True)
class TokenCount(ProgressEvent):
    """Current context size in tokens."""

    type: ClassVar[str] = "token_count"

    tokens: int


# Callback type: (session_id, event) -> None.  Must not block.
ProgressCallback = Callable[[str, ProgressEvent], None]


class ProgressNotifier:
    """Delivers progress events to an optional callback with error isolation."""

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self._callback = callback

    @property
    def enabled(self) -> bool:
        return self._callback is not None

    def notify(self, session_id: str, event: ProgressEvent) -> None:
        if self._callback is None:
            return
        try:
            self._callback(session_id, event)
        except Exception:
            logger.exception(
                "Progress callback failed for event %s (session %s)",
                event.type,
                session_id,
            )


class ProgressBroadcaster:
    """Fans progress events out to per-session subscriber queues.

    Usable directly as a ProgressCallback.  Subscribers get an
    asyncio.Queue; if a queue is full the event is dropped with a
    warning (never blocks the tool loop).
    """

    def __init__(self, max_queue: int = 1000) -> None:
        self._max_queue = max_queue
        self._subscribers: dict[str, list[asyncio.Queue[ProgressEvent]]] = defaultdict(list)

    def subscribe(self, session_id: str) -> asyncio.Queue[ProgressEvent]:
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers[session_id].append(queue)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue[ProgressEvent]) -> None:
        queues = self._subscribers.get(session_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[session_id]

    def __call__(self, session_id: str, event: ProgressEvent) -> None:
        for queue in self._subscribers.get(session_id, []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Progress queue full for session %s, dropping event: %s",
                    session_id,
                    event.type,
                )

    @property
    def subscriber_count(self) -> int:
        return sum(len(q) for q in self._subscribers.values())
