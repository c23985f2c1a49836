"""Shared data models for the agent core.

Content blocks, messages, provider requests/responses and the final
AgentResponse.  Kept free of I/O so the stream reconstructor, the
provider and the storage layer can all import from here without
circular imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class StopReason(StrEnum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    PAUSE_TURN = "pause_turn"
    REFUSAL = "refusal"

    @classmethod
    def parse(cls, value: str | None) -> StopReason | None:
        """Map a wire stop_reason to StopReason; unknown values map to None."""
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass
class TextBlock:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
            "is_error": self.is_error,
        }


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    """Rebuild a content block from its wire/storage dict."""
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=data.get("text", ""))
    if block_type == "tool_use":
        return ToolUseBlock(id=data["id"], name=data["name"], input=data.get("input") or {})
    if block_type == "tool_result":
        content = data.get("content", "")
        if isinstance(content, list):
            # API allows a list of text blocks as tool_result content
            content = "".join(c.get("text", "") for c in content if isinstance(c, dict))
        return ToolResultBlock(
            tool_use_id=data["tool_use_id"],
            content=content,
            is_error=bool(data.get("is_error", False)),
        )
    raise ValueError(f"Unsupported content block type: {block_type!r}")


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TokenUsage:
        if not data:
            return cls()
        return cls(
            input_tokens=int(data.get("input_tokens") or 0),
            output_tokens=int(data.get("output_tokens") or 0),
        )

    def to_dict(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


# ---------------------------------------------------------------------------
# Messages, requests, responses
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A single message in a conversation context."""

    role: Role
    content: list[ContentBlock] = field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role=Role.USER, content=[TextBlock(text=text)])

    @classmethod
    def assistant(cls, content: list[ContentBlock]) -> Message:
        return cls(role=Role.ASSISTANT, content=list(content))

    @classmethod
    def tool_result(cls, tool_use_id: str, content: str, is_error: bool = False) -> Message:
        return cls(
            role=Role.TOOL,
            content=[ToolResultBlock(tool_use_id=tool_use_id, content=content, is_error=is_error)],
        )

    @property
    def text(self) -> str:
        """Plain-text rendering: text blocks, or tool result bodies for tool messages."""
        parts: list[str] = []
        for block in self.content:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ToolResultBlock):
                parts.append(block.content)
        return "\n".join(parts)


@dataclass
class LLMRequest:
    """A provider call: model + full history + tool declarations."""

    model: str
    messages: list[Message]
    tools: list[dict[str, Any]] = field(default_factory=list)
    system: str | None = None
    max_tokens: int = 4096


@dataclass
class LLMResponse:
    """A complete provider response (single-shot or reconstructed from a stream)."""

    id: str
    model: str
    content: list[ContentBlock]
    stop_reason: StopReason | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]


@dataclass
class ToolApprovalInfo:
    """Everything an approval callback needs to decide on one tool call."""

    session_id: str
    tool_name: str
    tool_description: str
    tool_input: dict[str, Any]
    capabilities: list[str] = field(default_factory=list)


@dataclass
class AgentResponse:
    """Final aggregate result of one send_message call."""

    message_id: str
    content: str
    stop_reason: StopReason | None
    usage: TokenUsage  # accumulated across all loop iterations (billing)
    context_tokens: int  # input tokens of the last provider call only (display)
    cost: float
    model: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "content": self.content,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "usage": self.usage.to_dict(),
            "context_tokens": self.context_tokens,
            "cost": self.cost,
            "model": self.model,
        }
