"""Built-in workspace tools: bash, read_file, write_file.

All paths are confined to the workspace directory.  read_file runs
without approval; write_file and bash require it.  bash commands that
start with sudo need a credential from the sudo callback, which is fed
to `sudo -S` on stdin.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from opencrabs.agent.errors import ToolExecutionError
from opencrabs.agent.tools import (
    Tool,
    ToolCapability,
    ToolExecutionContext,
    ToolRegistry,
    ToolResult,
)

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve path_str inside workspace_dir.

    Raises ToolExecutionError if the path escapes the workspace.
    """
    workspace = Path(workspace_dir).resolve()
    target = Path(path_str).resolve() if Path(path_str).is_absolute() else (workspace / path_str).resolve()

    if not target.is_relative_to(workspace):
        raise ToolExecutionError(
            f"Path '{path_str}' is outside workspace '{workspace_dir}'. "
            "Only paths within the workspace directory are allowed."
        )
    return target


def _truncate(text: str, label: str) -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"
    return text


class BashTool(Tool):
    name = "bash"
    description = "Execute a shell command in the workspace directory"
    input_schema = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Shell command to execute"},
            "timeout": {
                "type": "integer",
                "description": "Timeout in seconds (default 30, max 300)",
                "default": 30,
                "minimum": 1,
                "maximum": 300,
            },
        },
        "required": ["command"],
    }
    capabilities = (ToolCapability.EXECUTE_SHELL, ToolCapability.SYSTEM_MODIFICATION)

    def requires_sudo(self, tool_input: dict[str, Any]) -> bool:
        command = str(tool_input.get("command", "")).lstrip()
        return command == "sudo" or command.startswith("sudo ")

    async def execute(self, tool_input: dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        command = tool_input.get("command")
        if not command or not isinstance(command, str):
            return ToolResult.failure("Missing required parameter: command")
        timeout = max(1, min(int(tool_input.get("timeout", 30)), _MAX_BASH_TIMEOUT))

        stdin_data: bytes | None = None
        if context.sudo_password is not None and self.requires_sudo(tool_input):
            # -S reads the password from stdin, -p '' suppresses the prompt
            command = "sudo -S -p '' " + command.lstrip()[len("sudo"):].lstrip()
            stdin_data = (context.sudo_password + "\n").encode()

        workspace = Path(context.workspace_dir)
        workspace.mkdir(parents=True, exist_ok=True)

        proc = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workspace),
        )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(stdin_data), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return ToolResult.failure(f"Command timed out after {timeout}s.\nCommand: {command}")

        stdout_text = _truncate(stdout.decode("utf-8", errors="replace"), "output")
        stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), "stderr")

        parts = []
        if stdout_text:
            parts.append(stdout_text)
        if stderr_text:
            parts.append(f"STDERR:\n{stderr_text}")
        output = "\n".join(parts) if parts else "(no output)"

        if proc.returncode != 0:
            return ToolResult.failure(f"Exit code: {proc.returncode}", output=output)
        return ToolResult.ok(output)


class ReadFileTool(Tool):
    name = "read_file"
    description = "Read a file from the workspace directory"
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
            "offset": {
                "type": "integer",
                "description": "Line offset to start reading from (0-indexed)",
                "default": 0,
                "minimum": 0,
            },
            "limit": {
                "type": "integer",
                "description": "Number of lines to read (0 = all)",
                "default": 0,
                "minimum": 0,
            },
        },
        "required": ["path"],
    }
    capabilities = (ToolCapability.READ_FILES,)

    def requires_approval(self) -> bool:
        return False

    async def execute(self, tool_input: dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        path = tool_input.get("path")
        if not path:
            return ToolResult.failure("Missing required parameter: path")
        offset = int(tool_input.get("offset", 0))
        limit = int(tool_input.get("limit", 0))

        target = _validate_path(path, context.workspace_dir)
        if not target.exists():
            return ToolResult.failure(f"File not found: {path}")
        if not target.is_file():
            return ToolResult.failure(f"Not a file: {path}")

        file_size = target.stat().st_size
        if file_size > _MAX_FILE_SIZE:
            return ToolResult.failure(
                f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
                f"Use offset/limit to read portions."
            )

        content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")

        if offset > 0 or limit > 0:
            lines = content.splitlines(keepends=True)
            if offset > 0:
                lines = lines[offset:]
            if limit > 0:
                lines = lines[:limit]
            content = "".join(lines)

        return ToolResult.ok(content if content else "(empty file)")


class WriteFileTool(Tool):
    name = "write_file"
    description = "Write content to a file in the workspace directory"
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
            "content": {"type": "string", "description": "Content to write to the file"},
        },
        "required": ["path", "content"],
    }
    capabilities = (ToolCapability.WRITE_FILES,)

    async def execute(self, tool_input: dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        path = tool_input.get("path")
        content = tool_input.get("content")
        if not path or content is None:
            return ToolResult.failure("Missing required parameters: path, content")

        target = _validate_path(path, context.workspace_dir)
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")

        return ToolResult.ok(f"File written successfully: {target}\nSize: {len(content):,} bytes")


def register_builtin_tools(registry: ToolRegistry) -> None:
    """Register bash, read_file and write_file.

    The workspace directory is carried per call in ToolExecutionContext.
    """
    registry.register(BashTool())
    registry.register(ReadFileTool())
    registry.register(WriteFileTool())
