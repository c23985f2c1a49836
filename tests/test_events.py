"""Tests for progress events, the notifier and the broadcaster."""

import asyncio
import logging

from opencrabs.events import (
    IntermediateText,
    ProgressBroadcaster,
    ProgressNotifier,
    RestartReady,
    StreamingChunk,
    Thinking,
    TokenCount,
    ToolCompleted,
)
from tests.conftest import EventRecorder


class TestProgressEvent:
    def test_to_dict_includes_type(self):
        event = ToolCompleted(tool_name="bash", tool_input={"command": "ls"}, success=True, summary="a.txt")
        assert event.to_dict() == {
            "type": "tool_completed",
            "tool_name": "bash",
            "tool_input": {"command": "ls"},
            "success": True,
            "summary": "a.txt",
        }

    def test_payloadless_event(self):
        assert Thinking().to_dict() == {"type": "thinking"}

    def test_intermediate_text_reasoning_optional(self):
        assert IntermediateText(text="hi").to_dict() == {"type": "intermediate_text", "text": "hi", "reasoning": None}

    def test_restart_ready_carries_status(self):
        assert RestartReady(status="binary rebuilt").to_dict() == {"type": "restart_ready", "status": "binary rebuilt"}


class TestProgressNotifier:
    def test_disabled_without_callback(self):
        notifier = ProgressNotifier()
        assert not notifier.enabled
        notifier.notify("s", Thinking())

    def test_delivers_with_session_id(self):
        recorder = EventRecorder()
        ProgressNotifier(recorder).notify("sess-1", TokenCount(tokens=42))
        assert recorder.events == [("sess-1", TokenCount(tokens=42))]

    def test_callback_error_isolated(self, caplog):
        def broken(session_id, event):
            raise ValueError("bad subscriber")

        with caplog.at_level(logging.ERROR, logger="opencrabs.events"):
            ProgressNotifier(broken).notify("s", Thinking())

        assert "Progress callback failed" in caplog.text


class TestProgressBroadcaster:
    def test_fan_out_per_session(self):
        broadcaster = ProgressBroadcaster()
        a1 = broadcaster.subscribe("a")
        a2 = broadcaster.subscribe("a")
        b = broadcaster.subscribe("b")

        broadcaster("a", StreamingChunk(text="x"))

        assert a1.get_nowait() == StreamingChunk(text="x")
        assert a2.get_nowait() == StreamingChunk(text="x")
        assert b.empty()

    def test_full_queue_drops_event(self):
        broadcaster = ProgressBroadcaster(max_queue=1)
        queue = broadcaster.subscribe("a")

        broadcaster("a", TokenCount(tokens=1))
        broadcaster("a", TokenCount(tokens=2))

        assert queue.qsize() == 1
        assert queue.get_nowait() == TokenCount(tokens=1)

    def test_unsubscribe(self):
        broadcaster = ProgressBroadcaster()
        queue = broadcaster.subscribe("a")
        assert broadcaster.subscriber_count == 1

        broadcaster.unsubscribe("a", queue)
        broadcaster("a", Thinking())

        assert broadcaster.subscriber_count == 0
        assert isinstance(queue, asyncio.Queue)
        assert queue.empty()
