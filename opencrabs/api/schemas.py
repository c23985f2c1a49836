"""Pydantic request bodies for the REST surface."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SessionCreate(BaseModel):
    title: str | None = Field(default=None, max_length=200)
    model: str | None = Field(default=None, max_length=100)


class ChatRequest(BaseModel):
    """A user message for one turn; a new session is created if session_id is omitted."""

    message: str = Field(min_length=1)
    session_id: str | None = None
    model: str | None = None


class QueueRequest(BaseModel):
    """A follow-up message to inject into a running tool loop."""

    message: str = Field(min_length=1)
