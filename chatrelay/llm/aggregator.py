"""
Accumulates streamed content and reassembles fragmented tool calls.

Design goals:
  - Content deltas are appended to the turn's content buffer and forwarded to
    the relay sink immediately, in arrival order.
  - Tool-call fragments are merged into an ``index -> ToolCallRecord`` table
    and are never forwarded to the client.
  - Merge rules: the first non-empty ``id``/``name`` wins, ``arguments`` is
    always appended.
  - At stream end, records whose arguments are empty or do not parse are
    still reported but marked invalid, so the caller can apologise for them
    without invoking a handler.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from chatrelay.llm.types import RawFrame, ToolCallFragment, ToolCallRecord

if TYPE_CHECKING:
    from chatrelay.relay.sink import RelaySink

logger = logging.getLogger(__name__)


def merge_fragment(record: ToolCallRecord, fragment: ToolCallFragment) -> ToolCallRecord:
    """Merge *fragment* into *record* in place and return it."""
    if fragment.id and not record.id:
        record.id = fragment.id
    if fragment.name and not record.name:
        record.name = fragment.name
    if fragment.arguments_chunk:
        record.arguments += fragment.arguments_chunk
    return record


class DeltaAggregator:
    """Consumes ``RawFrame`` objects for one upstream turn."""

    def __init__(self, sink: RelaySink | None = None) -> None:
        self._sink = sink
        self._parts: list[str] = []
        self._records: dict[int, ToolCallRecord] = {}
        self._frozen: list[ToolCallRecord] | None = None
        self.finish_reason: str | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def consume(self, frame: RawFrame) -> str:
        """
        Process one frame.

        Returns the content text relayed for this frame (``""`` when the
        frame carried none).
        """
        if self._frozen is not None:
            raise RuntimeError("DeltaAggregator already finalized")

        if frame.finish_reason:
            self.finish_reason = frame.finish_reason

        for fragment in frame.tool_fragments:
            self.feed_fragment(fragment)

        if frame.content:
            self._parts.append(frame.content)
            if self._sink is not None:
                await self._sink.emit(frame.content)
            return frame.content
        return ""

    def feed_fragment(self, fragment: ToolCallFragment) -> ToolCallRecord:
        """Look up (or create) the record at ``fragment.index`` and merge into it."""
        record = self._records.get(fragment.index)
        if record is None:
            record = ToolCallRecord(index=fragment.index)
            self._records[fragment.index] = record
        return merge_fragment(record, fragment)

    @property
    def content(self) -> str:
        """Text accumulated so far."""
        return "".join(self._parts)

    def finalize(self) -> list[ToolCallRecord]:
        """
        Freeze the tool-call table.

        Returns the records with a non-empty ``name`` in the order their
        ``index`` first appeared.  Calling it again returns the same list.
        """
        if self._frozen is not None:
            return self._frozen

        records: list[ToolCallRecord] = []
        for record in self._records.values():
            if not record.name:
                logger.warning(
                    "Discarding tool call idx=%d with no name (args=%r)",
                    record.index,
                    record.arguments[:200],
                )
                continue
            try:
                record.parsed_arguments()
            except ValueError as exc:
                record.valid = False
                record.error = str(exc)
                logger.warning(
                    "Tool call %s idx=%d has invalid arguments: %s",
                    record.name,
                    record.index,
                    exc,
                )
            records.append(record)

        self._frozen = records
        return records

    @property
    def valid_calls(self) -> list[ToolCallRecord]:
        return [r for r in self.finalize() if r.valid]

    @property
    def invalid_calls(self) -> list[ToolCallRecord]:
        return [r for r in self.finalize() if not r.valid]
