"""
Incremental Server-Sent-Events decoder for chat-completion streams.

The upstream service sends records of the form::

    data: {json}\\n\\n

terminated by the sentinel ``data: [DONE]``.  Network reads are not aligned
with records, so the decoder keeps one growable byte buffer and only cuts it
at blank-line delimiters.  Splitting on bytes (not on decoded text) keeps a
multi-byte UTF-8 character that straddles two reads intact.

Malformed payloads are dropped with a warning; upstream services emit
heartbeat and comment frames that are not JSON.
"""

from __future__ import annotations

import json
import logging
import re

from chatrelay.errors import MalformedFrameError
from chatrelay.llm.types import (
    FRAME_CONTENT,
    FRAME_DONE,
    FRAME_OTHER,
    FRAME_TOOL_CALL,
    RawFrame,
    ToolCallFragment,
)

logger = logging.getLogger(__name__)

SENTINEL = "[DONE]"

_DELIMITER = re.compile(rb"\r\n\r\n|\n\n")


class FrameDecoder:
    """Turns arbitrarily chunked bytes into an ordered list of ``RawFrame``."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.finished = False
        self.dropped = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, chunk: bytes) -> list[RawFrame]:
        """
        Append *chunk* to the buffer and return every frame it completes.

        Once the sentinel has been seen the decoder returns a single ``done``
        frame and ignores all further input.
        """
        if self.finished:
            return []
        self._buffer.extend(chunk)

        frames: list[RawFrame] = []
        while True:
            match = _DELIMITER.search(self._buffer)
            if match is None:
                break
            raw = bytes(self._buffer[: match.start()])
            del self._buffer[: match.end()]

            frame = self._decode_record(raw)
            if frame is None:
                continue
            frames.append(frame)
            if frame.is_done:
                self._buffer.clear()
                break
        return frames

    def flush(self) -> list[RawFrame]:
        """
        Decode a trailing record that was never followed by a blank line.

        Called when the connection closes without a sentinel.
        """
        if self.finished or not self._buffer.strip():
            self._buffer.clear()
            return []
        raw = bytes(self._buffer)
        self._buffer.clear()
        frame = self._decode_record(raw)
        return [frame] if frame is not None else []

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet consumed."""
        return len(self._buffer)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _decode_record(self, raw: bytes) -> RawFrame | None:
        try:
            return self._parse_record(raw)
        except MalformedFrameError as exc:
            self.dropped += 1
            logger.warning("Dropping malformed SSE frame: %s", exc)
            return None

    def _parse_record(self, raw: bytes) -> RawFrame | None:
        text = raw.decode("utf-8", errors="replace")
        data_lines: list[str] = []
        for line in text.splitlines():
            if line.startswith("data:"):
                value = line[len("data:"):]
                if value.startswith(" "):
                    value = value[1:]
                data_lines.append(value)
            # ":" comments and event/id/retry fields carry nothing we relay.

        if not data_lines:
            return None

        payload = "\n".join(data_lines).strip()
        if not payload:
            return None

        if payload == SENTINEL:
            self.finished = True
            return RawFrame(kind=FRAME_DONE)

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise MalformedFrameError(f"{exc}: {payload[:200]!r}") from exc
        if not isinstance(data, dict):
            raise MalformedFrameError(f"expected a JSON object: {payload[:200]!r}")

        return parse_payload(data)


def parse_payload(data: dict) -> RawFrame:
    """
    Classify one chat-completion payload.

    Handles both the streaming shape (``choices[0].delta``) and the
    non-streaming fallback (``choices[0].message``).  Payloads that parse as
    JSON but do not have that shape raise ``MalformedFrameError``.
    """
    choices = data.get("choices") or []
    if not isinstance(choices, list):
        raise MalformedFrameError(f"choices is not a list: {choices!r:.200}")
    if not choices:
        return RawFrame(kind=FRAME_OTHER, data=data)

    choice = choices[0] or {}
    if not isinstance(choice, dict):
        raise MalformedFrameError(f"choice is not an object: {choice!r:.200}")
    delta = choice.get("delta")
    if delta is None:
        delta = choice.get("message") or {}
    if not isinstance(delta, dict):
        raise MalformedFrameError(f"delta is not an object: {delta!r:.200}")
    finish_reason = choice.get("finish_reason")

    content = delta.get("content") or ""
    if not isinstance(content, str):
        content = ""

    raw_calls = delta.get("tool_calls") or []
    if not isinstance(raw_calls, list):
        raise MalformedFrameError(f"tool_calls is not a list: {raw_calls!r:.200}")

    fragments: list[ToolCallFragment] = []
    for position, raw_tc in enumerate(raw_calls):
        if not isinstance(raw_tc, dict):
            raise MalformedFrameError(f"tool call is not an object: {raw_tc!r:.200}")
        func = raw_tc.get("function") or {}
        if not isinstance(func, dict):
            raise MalformedFrameError(f"function is not an object: {func!r:.200}")
        arguments = func.get("arguments")
        if arguments is None:
            arguments = ""
        elif not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        index = raw_tc.get("index")
        if not isinstance(index, int) or isinstance(index, bool):
            index = position
        fragments.append(
            ToolCallFragment(
                index=index,
                id=raw_tc.get("id"),
                name=func.get("name"),
                arguments_chunk=arguments,
            )
        )

    if fragments:
        kind = FRAME_TOOL_CALL
    elif content:
        kind = FRAME_CONTENT
    else:
        kind = FRAME_OTHER

    return RawFrame(
        kind=kind,
        content=content,
        tool_fragments=fragments,
        finish_reason=finish_reason,
        data=data,
    )
