"""Tool capability, results and the registry the tool loop dispatches through.

Tools subclass Tool and are registered by name in a ToolRegistry.  The
registry converts every tool-level failure (unknown name, raised
exception) into a failed ToolResult so the model can see and react to
it on the next iteration -- tool errors are never fatal to the loop.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

# Max chars of tool output echoed into ToolCompleted summaries
_SUMMARY_CHARS = 200


class ToolCapability(StrEnum):
    READ_FILES = "read_files"
    WRITE_FILES = "write_files"
    EXECUTE_SHELL = "execute_shell"
    NETWORK = "network"
    SYSTEM_MODIFICATION = "system_modification"


@dataclass
class ToolResult:
    success: bool
    output: str = ""
    error: str | None = None

    @classmethod
    def ok(cls, output: str) -> ToolResult:
        return cls(success=True, output=output)

    @classmethod
    def failure(cls, error: str, output: str = "") -> ToolResult:
        return cls(success=False, output=output, error=error)

    @property
    def message(self) -> str:
        """Text folded back into the conversation as the tool result."""
        if self.success:
            return self.output or "(no output)"
        if self.output:
            return f"{self.error}\n{self.output}"
        return self.error or "Tool failed"

    @property
    def summary(self) -> str:
        text = self.message.strip().replace("\n", " ")
        if len(text) > _SUMMARY_CHARS:
            return text[:_SUMMARY_CHARS] + "..."
        return text


@dataclass
class ToolExecutionContext:
    """Per-call execution context handed to Tool.execute()."""

    session_id: str
    workspace_dir: str
    sudo_password: str | None = None


class Tool(ABC):
    """A named, schema-described capability the model can invoke."""

    name: str = ""
    description: str = ""
    input_schema: dict[str, Any] = {"type": "object", "properties": {}}
    capabilities: tuple[ToolCapability, ...] = ()

    def requires_approval(self) -> bool:
        return True

    def requires_sudo(self, tool_input: dict[str, Any]) -> bool:
        """Whether this particular call needs a privileged credential."""
        return False

    @abstractmethod
    async def execute(self, tool_input: dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        """Run the tool.  May raise; the registry converts errors to results."""

    def definition(self) -> dict[str, Any]:
        """Tool declaration in Anthropic API format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """Registers tools by name and dispatches tool calls."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if not tool.name:
            raise ValueError(f"Tool {type(tool).__name__} has no name")
        if tool.name in self._tools:
            logger.warning("Replacing already-registered tool: %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [tool.definition() for tool in self._tools.values()]

    async def execute(
        self,
        name: str,
        tool_input: dict[str, Any],
        context: ToolExecutionContext,
    ) -> ToolResult:
        """Execute a tool call.  Never raises for tool-level failures."""
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult.failure(f"Unknown tool: {name}")
        try:
            return await tool.execute(tool_input, context)
        except Exception as e:
            logger.exception("Tool execution error for %s", name)
            return ToolResult.failure(f"Tool error: {e}")
