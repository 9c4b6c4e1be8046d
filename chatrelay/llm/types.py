"""Core types for the streaming relay."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


FRAME_CONTENT = "content"
FRAME_TOOL_CALL = "tool_call"
FRAME_DONE = "done"
FRAME_OTHER = "other"


@dataclass
class ToolCallFragment:
    """
    One piece of a streamed tool call.

    Fragments are keyed by ``index`` because the upstream service may
    interleave fragments of several concurrent tool calls.
    """

    index: int
    id: str | None = None
    name: str | None = None
    arguments_chunk: str = ""


@dataclass
class RawFrame:
    """
    A single decoded protocol event.

    *kind* is one of ``content``, ``tool_call``, ``done`` or ``other``
    (role-only deltas, usage reports, heartbeats).  A frame may carry both
    content and tool fragments; consumers should look at both fields.
    """

    kind: str
    content: str = ""
    tool_fragments: list[ToolCallFragment] = field(default_factory=list)
    finish_reason: str | None = None
    data: dict = field(default_factory=dict)

    @property
    def is_done(self) -> bool:
        return self.kind == FRAME_DONE


@dataclass
class ToolCallRecord:
    """The assembled result of merging every fragment sharing an ``index``."""

    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""
    valid: bool = True
    error: str | None = None

    def parsed_arguments(self) -> dict:
        """
        Parse ``arguments`` as a JSON object.

        Raises ``ValueError`` (``json.JSONDecodeError`` is a subclass) when
        the string is empty, malformed, or not an object.
        """
        if not self.arguments.strip():
            raise ValueError("empty tool-call arguments")
        parsed = json.loads(self.arguments)
        if not isinstance(parsed, dict):
            raise ValueError(
                f"tool-call arguments must be a JSON object, got {type(parsed).__name__}"
            )
        return parsed

    def to_wire(self) -> dict:
        """Render the raw tool-call descriptor sent back to the upstream service."""
        return {
            "id": self.id or f"call_{self.index}",
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class TurnStatus:
    COMPLETE = "complete"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass
class Turn:
    """A single message in a conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    attachments: list[dict] | None = None
    tool_call_id: str | None = None
    tool_calls: list[dict] | None = None
    extracted_text: str | None = None
    id: str | None = None
    is_streaming: bool = False
    status: str = TurnStatus.COMPLETE
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_wire(self) -> dict[str, Any]:
        """Render this turn as an upstream chat-completion message."""
        msg: dict[str, Any] = {"role": self.role}

        if self.attachments:
            parts: list[dict] = [{"type": "text", "text": self.content}]
            for attachment in self.attachments:
                parts.append(
                    {"type": "image_url", "image_url": {"url": attachment["url"]}}
                )
            msg["content"] = parts
        elif self.tool_calls and not self.content:
            msg["content"] = None
        else:
            msg["content"] = self.content

        if self.tool_calls:
            msg["tool_calls"] = self.tool_calls
        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id
        return msg
