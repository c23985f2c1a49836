"""REST API for the OpenCrabs agent core.

Endpoints:
  POST /sessions                 - Create a session
  GET  /sessions/{id}            - Session info + usage totals
  GET  /sessions/{id}/messages   - Stored message history
  POST /sessions/{id}/queue      - Queue a follow-up for a running turn
  POST /sessions/{id}/cancel     - Cancel the running turn
  POST /chat                     - Send message, get response
  POST /chat/stream              - SSE progress events, then the response
  GET  /health                   - Health check (DB connectivity)
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel, ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from opencrabs.agent.errors import OpenCrabsError, ProviderError, SessionNotFoundError, TurnCancelledError
from opencrabs.agent.queue import SessionMessageQueue
from opencrabs.agent.service import AgentService
from opencrabs.api.schemas import ChatRequest, QueueRequest, SessionCreate
from opencrabs.events import ProgressBroadcaster
from opencrabs.storage.database import Database
from opencrabs.storage.sessions import SessionInfo, SessionStore, StoredMessage

logger = logging.getLogger(__name__)


def _session_dict(info: SessionInfo) -> dict[str, Any]:
    return {
        "id": info.id,
        "title": info.title,
        "model": info.model,
        "summary": info.summary,
        "usage": {
            "input_tokens": info.total_input_tokens,
            "output_tokens": info.total_output_tokens,
        },
        "cost": info.total_cost,
        "context_tokens": info.last_context_tokens,
        "created_at": info.created_at.isoformat() if info.created_at else None,
    }


def _message_dict(stored: StoredMessage) -> dict[str, Any]:
    return {
        "id": stored.id,
        "seq": stored.seq,
        "role": stored.role.value,
        "content": [block.to_dict() for block in stored.message.content],
        "text": stored.text,
        "usage": stored.usage.to_dict() if stored.usage else None,
        "cost": stored.cost,
        "model": stored.model,
    }


def _error_status(error: Exception) -> int:
    if isinstance(error, SessionNotFoundError):
        return 404
    if isinstance(error, TurnCancelledError):
        return 409
    if isinstance(error, ProviderError):
        return 502
    return 500


def _log_abandoned_turn(turn: asyncio.Task) -> None:
    """Collect the outcome of a turn whose stream client went away."""
    if turn.cancelled():
        return
    error = turn.exception()
    if error is not None:
        logger.info("Turn abandoned by disconnected stream client ended with: %s", error)


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


async def _parse_body(request: Request, model: type[BaseModel]) -> BaseModel | JSONResponse:
    try:
        body = await request.json()
    except Exception:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    try:
        return model.model_validate(body)
    except ValidationError as e:
        details = e.errors(include_url=False, include_context=False)
        return JSONResponse({"error": "Invalid request", "details": details}, status_code=400)


def create_app(
    service: AgentService,
    store: SessionStore,
    database: Database,
    broadcaster: ProgressBroadcaster,
    message_queue: SessionMessageQueue,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    # Cancellation events of running and waiting turns, by session, in
    # arrival order.  The session lock serves waiters first-come first-served,
    # so the head of each list belongs to the turn that holds the lock.
    active_turns: dict[str, list[asyncio.Event]] = {}

    async def _resolve_session(chat: ChatRequest) -> str:
        if chat.session_id:
            return chat.session_id
        info = await store.create_session(title=chat.message[:80], model=chat.model)
        return info.id

    async def _run_turn(session_id: str, chat: ChatRequest, cancel_event: asyncio.Event):
        turns = active_turns.setdefault(session_id, [])
        turns.append(cancel_event)
        try:
            return await service.send_message(
                session_id,
                chat.message,
                chat.model,
                message_queue=message_queue.callback_for(session_id),
                cancel_event=cancel_event,
            )
        finally:
            turns.remove(cancel_event)
            if not turns and active_turns.get(session_id) is turns:
                del active_turns[session_id]

    async def create_session(request: Request) -> JSONResponse:
        """POST /sessions - Create a new session."""
        parsed = await _parse_body(request, SessionCreate)
        if isinstance(parsed, JSONResponse):
            return parsed
        try:
            info = await store.create_session(title=parsed.title, model=parsed.model)
        except OpenCrabsError as e:
            logger.error("Create session error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse(_session_dict(info), status_code=201)

    async def get_session(request: Request) -> JSONResponse:
        """GET /sessions/{session_id} - Session info and totals."""
        session_id = request.path_params["session_id"]
        try:
            info = await store.get_session(session_id)
        except OpenCrabsError as e:
            return JSONResponse({"error": str(e)}, status_code=_error_status(e))
        return JSONResponse(_session_dict(info))

    async def list_messages(request: Request) -> JSONResponse:
        """GET /sessions/{session_id}/messages - Full stored history."""
        session_id = request.path_params["session_id"]
        try:
            messages = await store.list_messages(session_id)
        except OpenCrabsError as e:
            return JSONResponse({"error": str(e)}, status_code=_error_status(e))
        return JSONResponse({
            "session_id": session_id,
            "messages": [_message_dict(m) for m in messages],
            "total": len(messages),
        })

    async def queue_message(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/queue - Queue a follow-up message."""
        session_id = request.path_params["session_id"]
        parsed = await _parse_body(request, QueueRequest)
        if isinstance(parsed, JSONResponse):
            return parsed
        try:
            if not await store.session_exists(session_id):
                return JSONResponse({"error": f"Session not found: {session_id}"}, status_code=404)
        except OpenCrabsError as e:
            return JSONResponse({"error": str(e)}, status_code=500)
        pending = message_queue.put(session_id, parsed.message)
        return JSONResponse(
            {"session_id": session_id, "pending": pending, "active": bool(active_turns.get(session_id))},
            status_code=202,
        )

    async def cancel_turn(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/cancel - Cancel the running turn."""
        session_id = request.path_params["session_id"]
        turns = active_turns.get(session_id)
        if not turns:
            return JSONResponse({"status": "idle", "session_id": session_id})
        turns[0].set()
        return JSONResponse({"status": "cancelling", "session_id": session_id}, status_code=202)

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Send a message, get a response."""
        parsed = await _parse_body(request, ChatRequest)
        if isinstance(parsed, JSONResponse):
            return parsed

        try:
            session_id = await _resolve_session(parsed)
            response = await _run_turn(session_id, parsed, asyncio.Event())
        except OpenCrabsError as e:
            logger.error("Chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=_error_status(e))

        return JSONResponse({"session_id": session_id, **response.to_dict()})

    async def chat_stream(request: Request) -> StreamingResponse | JSONResponse:
        """POST /chat/stream - SSE streaming chat."""
        parsed = await _parse_body(request, ChatRequest)
        if isinstance(parsed, JSONResponse):
            return parsed

        try:
            session_id = await _resolve_session(parsed)
        except OpenCrabsError as e:
            return JSONResponse({"error": str(e)}, status_code=500)

        async def event_generator() -> AsyncIterator[str]:
            events = broadcaster.subscribe(session_id)
            cancel_event = asyncio.Event()
            turn = asyncio.create_task(_run_turn(session_id, parsed, cancel_event))
            next_event: asyncio.Future | None = None
            delivered = False
            try:
                while True:
                    next_event = asyncio.ensure_future(events.get())
                    done, _ = await asyncio.wait({next_event, turn}, return_when=asyncio.FIRST_COMPLETED)
                    if next_event in done:
                        yield _sse(next_event.result().to_dict())
                        continue
                    break

                while not events.empty():
                    yield _sse(events.get_nowait().to_dict())

                delivered = True
                response = turn.result()
                yield _sse({"type": "response", "session_id": session_id, **response.to_dict()})
            except Exception as e:
                logger.error("Stream error: %s", e)
                yield _sse({"type": "error", "session_id": session_id, "text": str(e)})
            finally:
                # Runs on client disconnect too; must not await
                broadcaster.unsubscribe(session_id, events)
                if next_event is not None:
                    next_event.cancel()
                if not delivered:
                    cancel_event.set()
                    turn.add_done_callback(_log_abandoned_turn)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            from sqlalchemy import text

            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/sessions", create_session, methods=["POST"]),
        Route("/sessions/{session_id}", get_session),
        Route("/sessions/{session_id}/messages", list_messages),
        Route("/sessions/{session_id}/queue", queue_message, methods=["POST"]),
        Route("/sessions/{session_id}/cancel", cancel_turn, methods=["POST"]),
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
