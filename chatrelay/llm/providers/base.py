"""Abstract base class for upstream chat-completion providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import AsyncIterator

from chatrelay.llm.types import Turn


class Provider(ABC):
    """
    A provider encapsulates access to a single chat-completion endpoint.

    Implementations must support:
      - Opening a streaming turn (``stream``) that hands back the raw
        response body as byte chunks.  Decoding is left to the caller.
      - A non-streaming fallback (``complete``).
    """

    @abstractmethod
    def stream(
        self,
        messages: list[Turn],
        tools: list[dict] | None = None,
    ) -> AbstractAsyncContextManager[AsyncIterator[bytes]]:
        """
        Open a streaming request.

        Used as::

            async with provider.stream(messages, tools) as chunks:
                async for chunk in chunks:
                    ...

        Leaving the block closes the upstream connection.  Raises
        ``UpstreamConnectionError`` or ``UpstreamStatusError`` when the
        stream cannot be opened or breaks mid-read.
        """
        ...

    @abstractmethod
    async def complete(
        self,
        messages: list[Turn],
        tools: list[dict] | None = None,
    ) -> dict:
        """Run a non-streaming request and return the decoded JSON body."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name (e.g. ``"openai-compat"``)."""
        ...
