"""Per-tool-call approval policy.

Policy order:
  1. auto-approve configured -> allow
  2. tool declares it needs no approval -> allow
  3. ask the approval callback; no callback means deny (fail-closed)

Calls that need a privileged credential additionally go through the
sudo callback.  Denial and sudo cancellation both mean "not executed";
only the reason string differs.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from opencrabs.agent.models import ToolApprovalInfo, ToolUseBlock
from opencrabs.agent.tools import Tool

logger = logging.getLogger(__name__)

# Returns True if approved.  May wait indefinitely on a human.
ApprovalCallback = Callable[[ToolApprovalInfo], Awaitable[bool]]

# Takes the command text, returns the credential or None if cancelled.
SudoCallback = Callable[[str], Awaitable[str | None]]


@dataclass(frozen=True)
class ApprovalDecision:
    approved: bool
    reason: str
    sudo_password: str | None = None


class ApprovalGate:
    def __init__(
        self,
        *,
        auto_approve: bool = False,
        approval_callback: ApprovalCallback | None = None,
        sudo_callback: SudoCallback | None = None,
    ) -> None:
        self._auto_approve = auto_approve
        self._approval_callback = approval_callback
        self._sudo_callback = sudo_callback

    async def decide(self, session_id: str, tool: Tool | None, call: ToolUseBlock) -> ApprovalDecision:
        """Decide whether one tool call may execute."""
        if tool is None:
            # Unknown tools are let through; the registry reports them as failed results.
            return ApprovalDecision(approved=True, reason="unknown tool")

        decision = await self._check_approval(session_id, tool, call)
        if not decision.approved:
            logger.info("Tool %s not approved: %s", call.name, decision.reason)
            return decision

        if tool.requires_sudo(call.input):
            decision = await self._request_sudo(tool, call)
            if not decision.approved:
                logger.info("Tool %s not executed: %s", call.name, decision.reason)
        return decision

    async def _check_approval(self, session_id: str, tool: Tool, call: ToolUseBlock) -> ApprovalDecision:
        if self._auto_approve:
            return ApprovalDecision(approved=True, reason="auto-approved")
        if not tool.requires_approval():
            return ApprovalDecision(approved=True, reason="no approval required")
        if self._approval_callback is None:
            return ApprovalDecision(approved=False, reason="approval required but no approval handler is configured")

        info = ToolApprovalInfo(
            session_id=session_id,
            tool_name=tool.name,
            tool_description=tool.description,
            tool_input=call.input,
            capabilities=[str(c) for c in tool.capabilities],
        )
        try:
            approved = await self._approval_callback(info)
        except Exception as e:
            logger.warning("Approval callback failed for %s: %s", tool.name, e)
            return ApprovalDecision(approved=False, reason=f"approval request failed: {e}")

        if approved:
            return ApprovalDecision(approved=True, reason="approved by user")
        return ApprovalDecision(approved=False, reason="denied by user")

    async def _request_sudo(self, tool: Tool, call: ToolUseBlock) -> ApprovalDecision:
        if self._sudo_callback is None:
            return ApprovalDecision(approved=False, reason="sudo credential required but no sudo handler is configured")

        command = str(call.input.get("command", tool.name))
        try:
            password = await self._sudo_callback(command)
        except Exception as e:
            logger.warning("Sudo callback failed for %s: %s", tool.name, e)
            return ApprovalDecision(approved=False, reason=f"sudo prompt failed: {e}")

        if password is None:
            return ApprovalDecision(approved=False, reason="sudo cancelled by user")
        return ApprovalDecision(approved=True, reason="sudo credential provided", sudo_password=password)
