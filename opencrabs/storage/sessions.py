"""Persistence bridge: sessions and their ordered message history.

Every append commits before returning, so a tool-loop iteration always
sees the previous iteration's messages in the store.  All SQLAlchemy
failures surface as PersistenceError.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opencrabs.agent.context import ConversationContext
from opencrabs.agent.errors import PersistenceError, SessionNotFoundError
from opencrabs.agent.models import Message, Role, TokenUsage, block_from_dict
from opencrabs.storage.database import Database
from opencrabs.storage.models import MessageRow, SessionRow

logger = logging.getLogger(__name__)


@dataclass
class SessionInfo:
    id: str
    title: str | None
    model: str | None
    summary: str | None
    summary_through_seq: int
    total_input_tokens: int
    total_output_tokens: int
    total_cost: float
    last_context_tokens: int
    created_at: datetime | None


@dataclass
class StoredMessage:
    id: str
    session_id: str
    seq: int
    role: Role
    message: Message
    text: str
    usage: TokenUsage | None = None
    cost: float | None = None
    model: str | None = None
    created_at: datetime | None = None


def _session_info(row: SessionRow) -> SessionInfo:
    return SessionInfo(
        id=row.id,
        title=row.title,
        model=row.model,
        summary=row.summary,
        summary_through_seq=row.summary_through_seq or 0,
        total_input_tokens=row.total_input_tokens or 0,
        total_output_tokens=row.total_output_tokens or 0,
        total_cost=row.total_cost or 0.0,
        last_context_tokens=row.last_context_tokens or 0,
        created_at=row.created_at,
    )


def _stored_message(row: MessageRow) -> StoredMessage:
    role = Role(row.role)
    message = Message(role=role, content=[block_from_dict(b) for b in row.content])
    usage = None
    if row.input_tokens is not None or row.output_tokens is not None:
        usage = TokenUsage(input_tokens=row.input_tokens or 0, output_tokens=row.output_tokens or 0)
    return StoredMessage(
        id=row.id,
        session_id=row.session_id,
        seq=row.seq,
        role=role,
        message=message,
        text=row.text,
        usage=usage,
        cost=row.cost,
        model=row.model,
        created_at=row.created_at,
    )


class SessionStore:
    def __init__(self, database: Database) -> None:
        self._db = database

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._db.session() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("Storage error: %s", e)
            raise PersistenceError(f"Storage error: {e}") from e

    async def _get_row(self, session: AsyncSession, session_id: str) -> SessionRow:
        row = await session.get(SessionRow, session_id)
        if row is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return row

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, title: str | None = None, model: str | None = None) -> SessionInfo:
        async with self._session() as session:
            row = SessionRow(title=title, model=model)
            session.add(row)
            await session.commit()
            await session.refresh(row)
            logger.debug("Created session %s", row.id)
            return _session_info(row)

    async def get_session(self, session_id: str) -> SessionInfo:
        async with self._session() as session:
            return _session_info(await self._get_row(session, session_id))

    async def session_exists(self, session_id: str) -> bool:
        async with self._session() as session:
            return await session.get(SessionRow, session_id) is not None

    async def record_usage(
        self,
        session_id: str,
        usage: TokenUsage,
        cost: float,
        context_tokens: int,
    ) -> None:
        """Add one turn's usage and cost to the session totals."""
        async with self._session() as session:
            row = await self._get_row(session, session_id)
            row.total_input_tokens = (row.total_input_tokens or 0) + usage.input_tokens
            row.total_output_tokens = (row.total_output_tokens or 0) + usage.output_tokens
            row.total_cost = (row.total_cost or 0.0) + cost
            row.last_context_tokens = context_tokens
            await session.commit()

    async def save_summary(self, session_id: str, summary: str, through_seq: int) -> None:
        """Persist a compaction summary covering messages up to through_seq."""
        async with self._session() as session:
            row = await self._get_row(session, session_id)
            row.summary = summary
            row.summary_through_seq = through_seq
            await session.commit()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_message(
        self,
        session_id: str,
        message: Message,
        *,
        usage: TokenUsage | None = None,
        cost: float | None = None,
        model: str | None = None,
    ) -> StoredMessage:
        async with self._session() as session:
            await self._get_row(session, session_id)
            result = await session.execute(
                select(func.coalesce(func.max(MessageRow.seq), 0)).where(MessageRow.session_id == session_id)
            )
            seq = int(result.scalar_one()) + 1
            row = MessageRow(
                session_id=session_id,
                seq=seq,
                role=message.role.value,
                content=[block.to_dict() for block in message.content],
                text=message.text,
                input_tokens=usage.input_tokens if usage else None,
                output_tokens=usage.output_tokens if usage else None,
                cost=cost,
                model=model,
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return _stored_message(row)

    async def list_messages(self, session_id: str) -> list[StoredMessage]:
        async with self._session() as session:
            await self._get_row(session, session_id)
            result = await session.execute(
                select(MessageRow).where(MessageRow.session_id == session_id).order_by(MessageRow.seq)
            )
            return [_stored_message(row) for row in result.scalars()]

    async def load_context(self, session_id: str) -> ConversationContext:
        """Load the provider-facing context: compaction summary + later messages."""
        async with self._session() as session:
            row = await self._get_row(session, session_id)
            through = row.summary_through_seq or 0
            result = await session.execute(
                select(MessageRow)
                .where(MessageRow.session_id == session_id, MessageRow.seq > through)
                .order_by(MessageRow.seq)
            )
            context = ConversationContext(session_id=session_id, summary=row.summary)
            for message_row in result.scalars():
                stored = _stored_message(message_row)
                context.append(stored.message, stored.seq)
            return context
