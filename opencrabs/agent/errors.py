"""Error taxonomy for the agent core.

Provider, protocol, persistence and cancellation errors abort a
send_message call.  Tool errors never do: they are folded back into the
conversation as failed tool results.
"""

from __future__ import annotations


class OpenCrabsError(Exception):
    """Base class for all agent core errors."""


class ProviderError(OpenCrabsError):
    """Transport, auth, rate-limit or malformed-response failure."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamProtocolError(ProviderError):
    """The provider's event stream violated the expected protocol."""


class StreamTruncatedError(StreamProtocolError):
    """The event stream ended before MessageStop."""


class PersistenceError(OpenCrabsError):
    """Session/message storage failure."""


class SessionNotFoundError(PersistenceError):
    """No session with the requested id."""


class ToolExecutionError(OpenCrabsError):
    """A tool failed while executing."""


class TurnCancelledError(OpenCrabsError):
    """The caller cancelled the turn; completed work has been persisted."""
