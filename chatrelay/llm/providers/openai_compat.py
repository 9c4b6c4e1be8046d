"""
OpenAI-compatible chat-completion provider.

Works with any endpoint that speaks the OpenAI ``/v1/chat/completions`` wire
protocol -- OpenAI itself, DeepSeek, Groq, vLLM, LM Studio, etc.

Dependencies: ``httpx`` (async HTTP client).  No ``openai`` SDK needed.

The provider does not retry.  Connect and read are bounded by separate
timeouts; a read timeout surfaces as ``UpstreamConnectionError`` like any
other transport failure.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx

from chatrelay.errors import UpstreamConnectionError, UpstreamStatusError
from chatrelay.llm.providers.base import Provider
from chatrelay.llm.types import Turn

logger = logging.getLogger(__name__)


class OpenAICompatProvider(Provider):
    """
    Stream-capable provider for any OpenAI-API-compatible endpoint.

    Parameters
    ----------
    url:
        Base URL of the API, e.g. ``"https://api.openai.com/v1"``, or the
        full ``.../chat/completions`` endpoint.
    model:
        Model identifier sent in the ``model`` field.
    api_key:
        Bearer token.  Pass ``""`` for unauthenticated local endpoints.
    temperature, max_tokens:
        Generation parameters sent with every request.
    connect_timeout:
        Seconds allowed to establish the connection.
    read_timeout:
        Seconds allowed between two reads of the response body.
    transport:
        Optional ``httpx`` transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o",
        api_key: str = "",
        temperature: float = 0.7,
        max_tokens: int = 2000,
        connect_timeout: float = 10.0,
        read_timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        url = url.rstrip("/")
        if not url.endswith("/chat/completions"):
            url = f"{url}/chat/completions"
        self._url = url
        self._model = model
        self._api_key = api_key
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self._transport = transport

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "openai-compat"

    @property
    def url(self) -> str:
        return self._url

    @asynccontextmanager
    async def stream(
        self,
        messages: list[Turn],
        tools: list[dict] | None = None,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        body = self.build_body(messages, tools, stream=True)
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", self._url, json=body, headers=self._build_headers()
                ) as response:
                    if not response.is_success:
                        await response.aread()
                        logger.error(
                            "Upstream request failed: status=%d body=%s",
                            response.status_code,
                            response.text[:500],
                        )
                        raise UpstreamStatusError(response.status_code, response.text)
                    yield response.aiter_bytes()
        except httpx.TransportError as exc:
            logger.error("Upstream connection failed: %s", exc)
            raise UpstreamConnectionError(str(exc) or type(exc).__name__) from exc

    async def complete(
        self,
        messages: list[Turn],
        tools: list[dict] | None = None,
    ) -> dict:
        body = self.build_body(messages, tools, stream=False)
        try:
            async with self._client() as client:
                resp = await client.post(
                    self._url, json=body, headers=self._build_headers()
                )
        except httpx.TransportError as exc:
            logger.error("Upstream connection failed: %s", exc)
            raise UpstreamConnectionError(str(exc) or type(exc).__name__) from exc

        if not resp.is_success:
            logger.error(
                "Upstream request failed: status=%d body=%s",
                resp.status_code,
                resp.text[:500],
            )
            raise UpstreamStatusError(resp.status_code, resp.text)
        return resp.json()

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _build_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def build_body(
        self,
        messages: list[Turn],
        tools: list[dict] | None,
        stream: bool,
    ) -> dict:
        body: dict = {
            "model": self._model,
            "messages": [m.to_wire() for m in messages],
            "stream": stream,
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
        logger.info(
            "REQUEST: model=%s tools=%d messages=%d stream=%s",
            self._model,
            len(tools) if tools else 0,
            len(body["messages"]),
            stream,
        )
        return body
