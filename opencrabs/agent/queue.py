"""Injection of externally-queued user messages into a running tool loop.

A chat adapter that receives a follow-up while tools are executing puts
it in a queue; the tool loop polls once per iteration boundary and
folds the message into context before the next provider call.

The poll capability must return immediately and consume atomically:
a message returned once is never returned again.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

# Returns one pending message or None.  Must not block.
MessageQueueCallback = Callable[[], Awaitable[str | None]]


class MessageQueueInjector:
    """Polls an optional message-queue capability."""

    def __init__(self, poll: MessageQueueCallback | None = None) -> None:
        self._poll = poll

    async def poll(self) -> str | None:
        if self._poll is None:
            return None
        try:
            message = await self._poll()
        except Exception as e:
            logger.warning("Message queue poll failed: %s", e)
            return None
        if not message or not message.strip():
            return None
        return message


class SessionMessageQueue:
    """In-memory FIFO of pending user messages, one queue per session.

    put() and take() contain no await, so on a single event loop each
    take() is atomic: at-most-once delivery without extra locking.
    """

    def __init__(self) -> None:
        self._queues: dict[str, deque[str]] = {}

    def put(self, session_id: str, message: str) -> int:
        """Queue a message; return the number now pending for the session."""
        queue = self._queues.setdefault(session_id, deque())
        queue.append(message)
        return len(queue)

    def take(self, session_id: str) -> str | None:
        queue = self._queues.get(session_id)
        if not queue:
            return None
        message = queue.popleft()
        if not queue:
            del self._queues[session_id]
        return message

    def pending(self, session_id: str) -> int:
        return len(self._queues.get(session_id, ()))

    def callback_for(self, session_id: str) -> MessageQueueCallback:
        """Bind a MessageQueueCallback to one session."""

        async def poll() -> str | None:
            return self.take(session_id)

        return poll
