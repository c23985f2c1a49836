"""Integration tests for REST API endpoints.

Uses httpx AsyncClient with ASGITransport for async HTTP testing.
A real AgentService runs against the in-memory store with a
ScriptedProvider standing in for the LLM.
"""

import asyncio
import json
import logging

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from opencrabs.agent.errors import ProviderError
from opencrabs.agent.models import Role
from opencrabs.agent.queue import SessionMessageQueue
from opencrabs.agent.service import AgentService
from opencrabs.api.rest import create_app
from opencrabs.events import ProgressBroadcaster
from tests.conftest import ScriptedProvider, text_response, tool_response


class _Harness:
    """App plus the collaborators tests need to inspect."""

    def __init__(self, store, db, settings, registry) -> None:
        self.provider = ScriptedProvider([])
        self.broadcaster = ProgressBroadcaster()
        self.queue = SessionMessageQueue()
        service = AgentService(
            self.provider,
            store,
            settings,
            tools=registry,
            progress_callback=self.broadcaster,
        )
        self.app = create_app(service, store, db, self.broadcaster, self.queue)

    def script(self, *items) -> None:
        self.provider.script.extend(items)


@pytest.fixture
def harness(store, db, settings, registry) -> _Harness:
    return _Harness(store, db, settings, registry)


@pytest_asyncio.fixture
async def client(harness):
    transport = ASGITransport(app=harness.app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _sse_events(body: str) -> list[dict]:
    return [json.loads(line[6:]) for line in body.splitlines() if line.startswith("data: ")]


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessionEndpoints:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_create_and_get_session(self, client):
        created = await client.post("/sessions", json={"title": "Tide pools"})
        assert created.status_code == 201
        session_id = created.json()["id"]

        fetched = await client.get(f"/sessions/{session_id}")
        assert fetched.status_code == 200
        assert fetched.json()["title"] == "Tide pools"
        assert fetched.json()["usage"] == {"input_tokens": 0, "output_tokens": 0}

    @pytest.mark.asyncio
    async def test_unknown_session_404(self, client):
        response = await client.get("/sessions/nope")
        assert response.status_code == 404

        response = await client.get("/sessions/nope/messages")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_create_session_validation(self, client):
        response = await client.post("/sessions", json={"title": "x" * 500})
        assert response.status_code == 400


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class TestChat:
    @pytest.mark.asyncio
    async def test_chat_creates_session(self, client, harness):
        harness.script(text_response("Hello!", 10, 20))

        response = await client.post("/chat", json={"message": "Hi"})

        assert response.status_code == 200
        data = response.json()
        assert data["content"] == "Hello!"
        assert data["stop_reason"] == "end_turn"
        assert data["usage"] == {"input_tokens": 10, "output_tokens": 20}
        assert data["context_tokens"] == 10

        messages = await client.get(f"/sessions/{data['session_id']}/messages")
        assert messages.json()["total"] == 2
        assert [m["role"] for m in messages.json()["messages"]] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_chat_existing_session(self, client, harness, session_id):
        harness.script(text_response("Welcome back"))

        response = await client.post("/chat", json={"message": "Hi", "session_id": session_id})

        assert response.status_code == 200
        assert response.json()["session_id"] == session_id

    @pytest.mark.asyncio
    async def test_chat_validation(self, client):
        assert (await client.post("/chat", json={})).status_code == 400
        assert (await client.post("/chat", json={"message": ""})).status_code == 400
        bad = await client.post("/chat", content=b"{not json", headers={"content-type": "application/json"})
        assert bad.status_code == 400
        assert bad.json()["error"] == "Invalid JSON body"

    @pytest.mark.asyncio
    async def test_chat_unknown_session(self, client):
        response = await client.post("/chat", json={"message": "Hi", "session_id": "ghost"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_chat_provider_error(self, client, harness, session_id):
        harness.script(ProviderError("upstream down", status_code=500))

        response = await client.post("/chat", json={"message": "Hi", "session_id": session_id})

        assert response.status_code == 502
        assert "upstream down" in response.json()["error"]


# ---------------------------------------------------------------------------
# Queue and cancel
# ---------------------------------------------------------------------------


class TestQueueEndpoints:
    @pytest.mark.asyncio
    async def test_queue_message(self, client, harness, session_id):
        response = await client.post(f"/sessions/{session_id}/queue", json={"message": "one more thing"})

        assert response.status_code == 202
        assert response.json()["pending"] == 1
        assert response.json()["active"] is False
        assert harness.queue.pending(session_id) == 1

    @pytest.mark.asyncio
    async def test_queue_unknown_session(self, client):
        response = await client.post("/sessions/ghost/queue", json={"message": "hi"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_queued_message_injected_into_next_tool_loop(self, client, harness, session_id):
        await client.post(f"/sessions/{session_id}/queue", json={"message": "user follow-up"})
        harness.script(
            tool_response([("toolu_1", "test_tool", {"message": "test"})]),
            text_response("Done"),
        )

        response = await client.post("/chat", json={"message": "Go", "session_id": session_id})

        assert response.status_code == 200
        last = harness.provider.requests[1].messages[-1]
        assert last.role == Role.USER
        assert last.text == "user follow-up"
        assert harness.queue.pending(session_id) == 0

    @pytest.mark.asyncio
    async def test_cancel_idle_session(self, client, session_id):
        response = await client.post(f"/sessions/{session_id}/cancel")
        assert response.status_code == 200
        assert response.json()["status"] == "idle"


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestChatStream:
    @pytest.mark.asyncio
    async def test_stream_progress_then_response(self, client, harness, session_id):
        harness.script(
            tool_response([("toolu_1", "test_tool", {"message": "test"})], text="On it."),
            text_response("All done"),
        )

        response = await client.post("/chat/stream", json={"message": "Go", "session_id": session_id})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(response.text)
        types = [e["type"] for e in events]
        assert types[0] == "thinking"
        assert "streaming_chunk" in types
        assert "intermediate_text" in types
        assert "tool_started" in types
        assert "tool_completed" in types
        assert types[-1] == "response"
        assert events[-1]["content"] == "All done"
        assert events[-1]["session_id"] == session_id
        assert harness.broadcaster.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_stream_error_event(self, client, harness, session_id):
        harness.script(ProviderError("boom"))

        response = await client.post("/chat/stream", json={"message": "Go", "session_id": session_id})

        events = _sse_events(response.text)
        assert events[-1]["type"] == "error"
        assert "boom" in events[-1]["text"]


# ---------------------------------------------------------------------------
# Full app wiring
# ---------------------------------------------------------------------------


class TestAppLifecycle:
    @pytest.mark.asyncio
    async def test_build_app_lifespan_wires_components(self, settings):
        from opencrabs.main import build_app

        app = build_app(settings)

        async with app.router.lifespan_context(app):
            components = app.state.components
            assert components["tools"].names == ["bash", "read_file", "write_file"]
            assert isinstance(components["service"], AgentService)

            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as c:
                assert (await c.get("/health")).json() == {"status": "healthy"}
                created = await c.post("/sessions", json={"title": "wired"})
                assert created.status_code == 201


# ---------------------------------------------------------------------------
# Turn lifecycle
# ---------------------------------------------------------------------------


async def _stream_until_first_chunk(app, payload: dict) -> list[dict]:
    """Drive /chat/stream over raw ASGI and disconnect after the first body chunk."""
    body = json.dumps(payload).encode()
    first_chunk = asyncio.Event()
    sent: list[dict] = []
    request_delivered = False

    async def receive():
        nonlocal request_delivered
        if not request_delivered:
            request_delivered = True
            return {"type": "http.request", "body": body, "more_body": False}
        await first_chunk.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message)
        if message["type"] == "http.response.body" and message.get("body"):
            first_chunk.set()

    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/chat/stream",
        "raw_path": b"/chat/stream",
        "root_path": "",
        "query_string": b"",
        "headers": [(b"content-type", b"application/json"), (b"host", b"test")],
        "server": ("test", 80),
        "client": ("testclient", 50000),
    }
    await app(scope, receive, send)
    return sent


async def _wait_for_background_tasks(timeout: float = 5.0) -> list[asyncio.Task]:
    current = asyncio.current_task()
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        pending = [t for t in asyncio.all_tasks() if t is not current and not t.done()]
        if not pending or asyncio.get_running_loop().time() > deadline:
            return pending
        await asyncio.sleep(0.05)


class TestTurnLifecycle:
    @pytest.mark.asyncio
    async def test_cancel_targets_running_turn_not_waiting_one(self, client, harness, session_id):
        harness.provider.delay = 0.4
        harness.script(
            tool_response([("toolu_1", "test_tool", {"message": "first"})]),
            text_response("second"),
        )

        first = asyncio.create_task(client.post("/chat", json={"message": "one", "session_id": session_id}))
        await asyncio.sleep(0.15)
        second = asyncio.create_task(client.post("/chat", json={"message": "two", "session_id": session_id}))
        await asyncio.sleep(0.1)

        cancelled = await client.post(f"/sessions/{session_id}/cancel")
        first_response, second_response = await asyncio.gather(first, second)

        assert cancelled.status_code == 202
        assert first_response.status_code == 409
        assert second_response.status_code == 200
        assert second_response.json()["content"] == "second"

        idle = await client.post(f"/sessions/{session_id}/cancel")
        assert idle.json()["status"] == "idle"

    @pytest.mark.asyncio
    async def test_stream_disconnect_cancels_turn_and_cleans_up(self, harness, session_id, caplog):
        harness.provider.delay = 0.2
        harness.script(tool_response([("toolu_1", "test_tool", {"message": "test"})]))

        with caplog.at_level(logging.INFO, logger="opencrabs.api.rest"):
            sent = await _stream_until_first_chunk(harness.app, {"message": "Go", "session_id": session_id})
            leftover = await _wait_for_background_tasks()

        assert sent[0]["status"] == 200
        assert leftover == []
        assert harness.broadcaster.subscriber_count == 0
        assert "Turn abandoned by disconnected stream client" in caplog.text
        assert "Turn cancelled" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_session_maps_to_404_by_type(self, client):
        response = await client.post("/chat", json={"message": "Hi", "session_id": "ghost"})
        assert response.status_code == 404
        assert response.json()["error"] == "Session not found: ghost"
