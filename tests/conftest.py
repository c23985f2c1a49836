"""Test fixtures: in-memory SQLite store, scripted provider and test tools."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest
import pytest_asyncio

from opencrabs.agent.models import (
    LLMRequest,
    LLMResponse,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolUseBlock,
)
from opencrabs.agent.stream import (
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    InputJsonDelta,
    MessageDelta,
    MessageStart,
    MessageStop,
    StreamEvent,
    TextDelta,
)
from opencrabs.agent.tools import Tool, ToolExecutionContext, ToolRegistry, ToolResult
from opencrabs.config import Settings
from opencrabs.events import ProgressEvent
from opencrabs.storage.database import Database
from opencrabs.storage.sessions import SessionStore

# ---------------------------------------------------------------------------
# Response builders
# ---------------------------------------------------------------------------


def text_response(text: str, input_tokens: int = 10, output_tokens: int = 20) -> LLMResponse:
    return LLMResponse(
        id="msg_text",
        model="mock-model",
        content=[TextBlock(text=text)],
        stop_reason=StopReason.END_TURN,
        usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def tool_response(
    calls: list[tuple[str, str, dict[str, Any]]],
    text: str = "",
    input_tokens: int = 10,
    output_tokens: int = 20,
    stop_reason: StopReason = StopReason.TOOL_USE,
) -> LLMResponse:
    """Response with optional leading text and one tool_use block per (id, name, input)."""
    content: list = [TextBlock(text=text)] if text else []
    content.extend(ToolUseBlock(id=i, name=n, input=inp) for i, n, inp in calls)
    return LLMResponse(
        id="msg_tools",
        model="mock-model",
        content=content,
        stop_reason=stop_reason,
        usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def response_to_events(response: LLMResponse) -> list[StreamEvent]:
    """Render a response as the provider event stream that would produce it.

    Text and tool input arrive split over two deltas.  Input tokens come
    with MessageStart, output tokens with MessageDelta.
    """
    events: list[StreamEvent] = [
        MessageStart(
            id=response.id,
            model=response.model,
            usage=TokenUsage(input_tokens=response.usage.input_tokens, output_tokens=1),
        )
    ]
    for index, block in enumerate(response.content):
        if isinstance(block, TextBlock):
            events.append(ContentBlockStart(index=index, block=TextBlock(text="")))
            half = len(block.text) // 2
            for part in (block.text[:half], block.text[half:]):
                if part:
                    events.append(ContentBlockDelta(index=index, delta=TextDelta(text=part)))
        elif isinstance(block, ToolUseBlock):
            events.append(ContentBlockStart(index=index, block=ToolUseBlock(id=block.id, name=block.name)))
            raw = json.dumps(block.input)
            half = len(raw) // 2
            events.append(ContentBlockDelta(index=index, delta=InputJsonDelta(partial_json=raw[:half])))
            events.append(ContentBlockDelta(index=index, delta=InputJsonDelta(partial_json=raw[half:])))
        events.append(ContentBlockStop(index=index))
    events.append(
        MessageDelta(
            stop_reason=response.stop_reason,
            usage=TokenUsage(input_tokens=0, output_tokens=response.usage.output_tokens),
        )
    )
    events.append(MessageStop())
    return events


async def aiter_events(events: list[StreamEvent]):
    for event in events:
        yield event


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------


class ScriptedProvider:
    """Provider that replays scripted responses in order.

    Items may be LLMResponse objects, raw event lists (streamed as-is)
    or exceptions (raised when reached).  Cost is $1 per million input
    tokens and $2 per million output tokens.
    """

    name = "mock"

    def __init__(self, script: list[Any], context_window: int | None = None, delay: float = 0.0) -> None:
        self.script = list(script)
        self.requests: list[LLMRequest] = []
        self.complete_calls = 0
        self.stream_calls = 0
        self._window = context_window
        self.delay = delay

    def _next(self) -> Any:
        if not self.script:
            raise AssertionError("ScriptedProvider ran out of responses")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def complete(self, request: LLMRequest) -> LLMResponse:
        self.requests.append(request)
        self.complete_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self._next()
        assert isinstance(item, LLMResponse)
        return item

    async def stream(self, request: LLMRequest):
        self.requests.append(request)
        self.stream_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self._next()
        events = item if isinstance(item, list) else response_to_events(item)
        for event in events:
            yield event

    def default_model(self) -> str:
        return "mock-model"

    def supported_models(self) -> list[str]:
        return ["mock-model"]

    def context_window(self, model: str) -> int | None:
        return self._window

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens * 1.0 + output_tokens * 2.0) / 1_000_000


# ---------------------------------------------------------------------------
# Test tools
# ---------------------------------------------------------------------------


class EchoTool(Tool):
    """Echoes its message input; records every call."""

    name = "test_tool"
    description = "A test tool"
    input_schema = {
        "type": "object",
        "properties": {"message": {"type": "string"}},
    }

    def __init__(self, needs_approval: bool = False, error: Exception | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self.contexts: list[ToolExecutionContext] = []
        self._needs_approval = needs_approval
        self._error = error

    def requires_approval(self) -> bool:
        return self._needs_approval

    async def execute(self, tool_input: dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        self.calls.append(tool_input)
        self.contexts.append(context)
        if self._error is not None:
            raise self._error
        return ToolResult.ok(f"Tool executed: {tool_input.get('message', '')}")


class EventRecorder:
    """Progress callback that records (session_id, event) pairs."""

    def __init__(self) -> None:
        self.events: list[tuple[str, ProgressEvent]] = []

    def __call__(self, session_id: str, event: ProgressEvent) -> None:
        self.events.append((session_id, event))

    def of_type(self, cls: type) -> list:
        return [e for _, e in self.events if isinstance(e, cls)]

    @property
    def types(self) -> list[str]:
        return [e.type for _, e in self.events]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        db_url="sqlite+aiosqlite:///:memory:",
        workspace_dir=str(tmp_path / "workspace"),
    )


@pytest_asyncio.fixture
async def db(settings):
    """Function-scoped in-memory database with tables created."""
    database = Database(settings)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def store(db) -> SessionStore:
    return SessionStore(db)


@pytest_asyncio.fixture
async def session_id(store) -> str:
    info = await store.create_session(title="test session")
    return info.id


@pytest.fixture
def echo_tool() -> EchoTool:
    return EchoTool()


@pytest.fixture
def registry(echo_tool) -> ToolRegistry:
    tools = ToolRegistry()
    tools.register(echo_tool)
    return tools


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()
