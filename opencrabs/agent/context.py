"""Conversation context, request assembly and history compaction.

The ConversationContext is the ordered message history sent to the
provider on every call of a session's tool loop.  When the last known
context size crosses the compaction threshold, ContextCompactor
summarizes older messages with one single-shot provider call; the
context then starts with a synthetic summary exchange followed by the
recent messages kept verbatim.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from opencrabs.agent.models import (
    LLMRequest,
    LLMResponse,
    Message,
    Role,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from opencrabs.config import Settings

if TYPE_CHECKING:
    from opencrabs.agent.provider import Provider

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary]"
SUMMARY_ACK = "I have the context. Let's continue."

CHECKPOINT_SYSTEM_PROMPT = """\
You are a conversation summarizer. Output ONLY a structured summary.
TARGET LENGTH: 400-800 words. Prioritize precision over completeness.

## Goal
[1-2 sentences]

## Progress
- [Completed and in-progress work, including tool results that matter]

## Key Decisions
- **[Decision]**: [Rationale]

## Critical Context
- [File paths, error messages, commands, identifiers]
"""

UPDATE_SYSTEM_PROMPT = """\
You are updating a conversation summary with new messages.
PRESERVE existing info unless explicitly superseded, ADD new progress
and decisions, and keep exact file paths and error messages.
Use the SAME format as the existing summary. Output ONLY the updated summary."""


def extract_text(response: LLMResponse) -> str:
    """Text shown to the user: non-empty text blocks joined by blank lines.

    Tool calls are reported through progress events, never as raw text.
    """
    parts = [b.text for b in response.content if isinstance(b, TextBlock) and b.text.strip()]
    return "\n\n".join(parts)


def estimate_tokens(text: str) -> int:
    """chars/4 heuristic."""
    return max(1, len(text) // 4) if text else 0


@dataclass
class ConversationContext:
    """Ordered message history for one session.

    seqs[i] is the store sequence number of messages[i].
    """

    session_id: str
    messages: list[Message] = field(default_factory=list)
    seqs: list[int] = field(default_factory=list)
    summary: str | None = None

    def append(self, message: Message, seq: int) -> None:
        self.messages.append(message)
        self.seqs.append(seq)

    def provider_messages(self) -> list[Message]:
        """Messages as sent to the provider, summary exchange first."""
        if not self.summary:
            return list(self.messages)
        prefix = [
            Message.user(f"{SUMMARY_PREFIX}\n\n{self.summary}"),
            Message.assistant([TextBlock(text=SUMMARY_ACK)]),
        ]
        return prefix + self.messages

    def to_request(
        self,
        model: str,
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
        max_tokens: int = 4096,
    ) -> LLMRequest:
        return LLMRequest(
            model=model,
            messages=self.provider_messages(),
            tools=list(tools or []),
            system=system or None,
            max_tokens=max_tokens,
        )


class ContextCompactor:
    """Summarizes older history when the context window fills up."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def should_compact(self, context_tokens: int, context_window: int | None) -> bool:
        if not self._settings.compaction_enabled or not context_window or context_tokens <= 0:
            return False
        return context_tokens > self._settings.compaction_threshold * context_window

    def find_cut_point(self, context: ConversationContext) -> int:
        """Index of the first message kept verbatim; 0 means nothing to compact.

        Always lands on a plain user message so no tool result is
        separated from the tool call that produced it: forward from the
        keep_recent boundary first, then backward (keeping more).
        """
        keep = max(1, self._settings.compaction_keep_recent)
        start = len(context.messages) - keep
        if start <= 0:
            return 0
        for i in [*range(start, len(context.messages)), *range(start - 1, 0, -1)]:
            message = context.messages[i]
            if message.role == Role.USER and any(isinstance(b, TextBlock) for b in message.content):
                return i
        return 0

    async def compact(self, context: ConversationContext, provider: Provider, model: str) -> tuple[str, int] | None:
        """Summarize messages before the cut point.

        Mutates context in place and returns (summary, through_seq), or
        None if there is nothing to compact.  Provider errors propagate.
        """
        cut = self.find_cut_point(context)
        if cut <= 0:
            return None

        start_time = time.monotonic()
        old_messages = context.messages[:cut]
        if context.summary:
            user_content = (
                f"## Existing Summary\n\n{context.summary}\n\n"
                f"## New Conversation\n\n{self._serialize(old_messages)}"
            )
            system = UPDATE_SYSTEM_PROMPT
        else:
            user_content = self._serialize(old_messages)
            system = CHECKPOINT_SYSTEM_PROMPT

        response = await provider.complete(
            LLMRequest(
                model=model,
                messages=[Message.user(user_content)],
                system=system,
                max_tokens=self._settings.max_tokens,
            )
        )
        summary = extract_text(response)
        if not summary.strip():
            raise ValueError("Compaction produced an empty summary")

        through_seq = context.seqs[cut - 1]
        context.summary = summary
        context.messages = context.messages[cut:]
        context.seqs = context.seqs[cut:]

        logger.info(
            "Compacted session %s: %d messages summarized (%d chars, %d ms)",
            context.session_id,
            cut,
            len(summary),
            int((time.monotonic() - start_time) * 1000),
        )
        return summary, through_seq

    @staticmethod
    def _serialize(messages: list[Message]) -> str:
        """Render messages as readable text for summarization."""
        lines = []
        for message in messages:
            for block in message.content:
                if isinstance(block, TextBlock):
                    role = "User" if message.role == Role.USER else "Assistant"
                    lines.append(f"**{role}:** {block.text}")
                elif isinstance(block, ToolUseBlock):
                    lines.append(f"**Tool call:** {block.name} {block.input}")
                elif isinstance(block, ToolResultBlock):
                    status = "error" if block.is_error else "ok"
                    lines.append(f"**Tool result ({status}):** {block.content[:2000]}")
        return "\n\n".join(lines)
