"""Agent core -- tool loop, stream reconstruction, approval and accounting.

Public API: AgentService + the types embedders need to drive it.
"""

from opencrabs.agent.approval import ApprovalCallback, ApprovalDecision, ApprovalGate, SudoCallback
from opencrabs.agent.errors import (
    OpenCrabsError,
    PersistenceError,
    ProviderError,
    SessionNotFoundError,
    StreamProtocolError,
    StreamTruncatedError,
    ToolExecutionError,
    TurnCancelledError,
)
from opencrabs.agent.models import (
    AgentResponse,
    LLMRequest,
    LLMResponse,
    Message,
    Role,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolApprovalInfo,
    ToolResultBlock,
    ToolUseBlock,
)
from opencrabs.agent.provider import AnthropicProvider, Provider
from opencrabs.agent.queue import MessageQueueCallback, MessageQueueInjector, SessionMessageQueue
from opencrabs.agent.service import AgentService
from opencrabs.agent.stream import StreamReconstructor
from opencrabs.agent.tools import Tool, ToolCapability, ToolExecutionContext, ToolRegistry, ToolResult
from opencrabs.agent.usage import UsageAccountant

__all__ = [
    "AgentService",
    # Capabilities
    "AnthropicProvider",
    "ApprovalCallback",
    "MessageQueueCallback",
    "Provider",
    "SudoCallback",
    # Loop components
    "ApprovalDecision",
    "ApprovalGate",
    "MessageQueueInjector",
    "SessionMessageQueue",
    "StreamReconstructor",
    "UsageAccountant",
    # Tools
    "Tool",
    "ToolCapability",
    "ToolExecutionContext",
    "ToolRegistry",
    "ToolResult",
    # Models
    "AgentResponse",
    "LLMRequest",
    "LLMResponse",
    "Message",
    "Role",
    "StopReason",
    "TextBlock",
    "TokenUsage",
    "ToolApprovalInfo",
    "ToolResultBlock",
    "ToolUseBlock",
    # Errors
    "OpenCrabsError",
    "PersistenceError",
    "ProviderError",
    "SessionNotFoundError",
    "StreamProtocolError",
    "StreamTruncatedError",
    "ToolExecutionError",
    "TurnCancelledError",
]
