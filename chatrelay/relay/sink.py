"""
Client-facing relay sinks.

A sink forwards content deltas to whatever is waiting on the other end of a
client connection.  Every client session ends with exactly one frame whose
``finished`` flag is set; a second ``emit_finished`` is a no-op and any
``emit`` after it raises ``RelayClosedError``.

Frames are rendered on the wire as Server-Sent Events::

    data: {"content": "...", "finished": false}\\n\\n
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator

from chatrelay.errors import ClientDisconnected, RelayClosedError

logger = logging.getLogger(__name__)


@dataclass
class ClientFrame:
    """One event delivered to the client."""

    content: str
    finished: bool = False
    error: bool = False

    def to_dict(self) -> dict:
        d: dict = {"content": self.content, "finished": self.finished}
        if self.error:
            d["error"] = True
        return d

    def encode(self) -> str:
        """Render as a single SSE record."""
        return f"data: {json.dumps(self.to_dict())}\n\n"


class RelaySink(ABC):
    """
    Narrow transport interface used by the orchestrator.

    Subclasses implement ``_send``; ordering and the single-terminal-frame
    rule are enforced here.
    """

    def __init__(self) -> None:
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def disconnected(self) -> bool:
        """True once the client on the other end has gone away."""
        return False

    async def emit(self, delta_text: str, *, error: bool = False) -> None:
        """Push one content frame carrying exactly *delta_text*."""
        if self._finished:
            raise RelayClosedError("emit() after the finished frame was sent")
        await self._send(ClientFrame(content=delta_text, error=error))

    async def emit_finished(self) -> None:
        """Send the terminal frame.  Later calls do nothing."""
        if self._finished:
            return
        self._finished = True
        await self._send(ClientFrame(content="", finished=True))

    @abstractmethod
    async def _send(self, frame: ClientFrame) -> None:
        """Deliver *frame*; block (or raise) rather than drop it."""
        ...


class QueueSink(RelaySink):
    """
    Sink backed by a bounded ``asyncio.Queue``.

    The web layer reads from ``frames()`` (or ``sse_stream()``) while the
    orchestrator writes.  When the queue is full ``emit`` blocks, which in
    turn pauses upstream consumption.

    Parameters
    ----------
    maxsize:
        Queue bound.  ``0`` means unbounded.
    """

    def __init__(self, maxsize: int = 64) -> None:
        super().__init__()
        self._queue: asyncio.Queue[ClientFrame] = asyncio.Queue(maxsize=maxsize)
        self._disconnected = False

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    def disconnect(self) -> None:
        """
        Mark the client as gone.

        Drains the queue so a writer blocked on a full queue wakes up and
        sees the disconnect.
        """
        self._disconnected = True
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break

    async def _send(self, frame: ClientFrame) -> None:
        if self._disconnected:
            raise ClientDisconnected("client disconnected")
        await self._queue.put(frame)
        if self._disconnected:
            raise ClientDisconnected("client disconnected")

    async def frames(self) -> AsyncIterator[ClientFrame]:
        """Yield frames in emit order, ending after the finished frame."""
        while not self._disconnected:
            frame = await self._queue.get()
            yield frame
            if frame.finished:
                return

    async def sse_stream(self) -> AsyncIterator[str]:
        """Yield SSE-encoded records for a streaming HTTP response body."""
        async for frame in self.frames():
            yield frame.encode()


class CollectingSink(RelaySink):
    """Records every frame in memory."""

    def __init__(self) -> None:
        super().__init__()
        self.frames: list[ClientFrame] = []

    async def _send(self, frame: ClientFrame) -> None:
        self.frames.append(frame)

    @property
    def contents(self) -> list[str]:
        """Content of every non-terminal frame, in order."""
        return [f.content for f in self.frames if not f.finished]

    @property
    def text(self) -> str:
        return "".join(self.contents)

    @property
    def finished_count(self) -> int:
        return sum(1 for f in self.frames if f.finished)

    @property
    def error_frames(self) -> list[ClientFrame]:
        return [f for f in self.frames if f.error]
