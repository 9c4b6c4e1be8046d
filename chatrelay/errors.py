"""
Exception taxonomy for the relay.

Only connection-level and status-level errors abort a turn.  Frame-level and
tool-level errors are recovered where they happen and are never raised past
the component that detected them.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by chatrelay."""


# ---------------------------------------------------------------------------
# Upstream
# ---------------------------------------------------------------------------


class UpstreamError(RelayError):
    """The chat-completion service could not produce a stream."""


class UpstreamConnectionError(UpstreamError):
    """DNS, connect, or read-timeout failure talking to the upstream service."""


class UpstreamStatusError(UpstreamError):
    """The upstream service answered with a non-success HTTP status."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Upstream returned HTTP {status_code}")


# ---------------------------------------------------------------------------
# Local, recoverable errors
# ---------------------------------------------------------------------------


class MalformedFrameError(RelayError):
    """A single SSE frame could not be parsed.  The decoder drops it."""


class ToolArgumentParseError(RelayError):
    """Assembled tool-call arguments are empty or not a JSON object."""


class ToolExecutionError(RelayError):
    """A tool handler failed.  Converted into an error ``ToolResult``."""


# ---------------------------------------------------------------------------
# Client side
# ---------------------------------------------------------------------------


class ClientDisconnected(RelayError):
    """The client connection went away while a turn was being relayed."""


class RelayClosedError(RelayError):
    """``emit`` was called after the finished frame had been sent."""


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ConversationNotFoundError(RelayError):
    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class ConversationBusyError(RelayError):
    """A second request for the same conversation overlapped the first."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(
            f"Conversation {conversation_id} already has a turn in progress"
        )
