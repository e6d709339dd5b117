"""Streaming chat client for the relay's /api/chat-stream endpoint."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Sequence

import httpx

from config import RelayConfig

from apps.pipeline.errors import StreamTransportError
from apps.pipeline.state import Message

log = logging.getLogger("jia.backend")


class ChatBackend(ABC):
    @abstractmethod
    def stream(
        self,
        messages: Sequence[Message],
        image_base64: Optional[str] = None,
    ):
        """Async context manager yielding the response byte stream.

        Entering the context means response headers have arrived.  Any
        failure, before or during the body, raises StreamTransportError.
        """


def build_request(
    system_prompt: str,
    messages: Sequence[Message],
    image_base64: Optional[str] = None,
) -> dict:
    """Request body; the system instruction is prepended, never stored."""
    body: dict = {
        "messages": [{"role": "system", "content": system_prompt}]
        + [m.as_dict() for m in messages],
    }
    if image_base64:
        body["base64Image"] = image_base64
    return body


class RelayChatBackend(ChatBackend):
    def __init__(
        self,
        cfg: RelayConfig,
        system_prompt: str,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._url = cfg.base_url.rstrip("/") + cfg.chat_stream_path
        self._system_prompt = system_prompt
        # No client-side read timeout; the stream ends when the transport does.
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10.0, read=None, write=None, pool=None),
        )

    @asynccontextmanager
    async def stream(
        self,
        messages: Sequence[Message],
        image_base64: Optional[str] = None,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        body = build_request(self._system_prompt, messages, image_base64)
        log.info(
            "event=chat_request url=%s messages=%d image=%s",
            self._url, len(body["messages"]), bool(image_base64),
        )
        try:
            async with self._client.stream(
                "POST", self._url, json=body, headers={"Accept": "text/event-stream"},
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")[:200]
                    raise StreamTransportError(
                        f"Relay returned {response.status_code}: {detail}",
                        status_code=response.status_code,
                    )
                yield self._iter_body(response)
        except httpx.HTTPError as exc:
            raise StreamTransportError(f"Relay request failed: {exc}") from exc

    async def _iter_body(self, response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as exc:
            raise StreamTransportError(f"Relay stream broke: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()
