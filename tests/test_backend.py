import json

import httpx
import pytest

from conftest import sse

from config import RelayConfig

from apps.pipeline.backend import RelayChatBackend, build_request
from apps.pipeline.errors import StreamTransportError
from apps.pipeline.state import Message


def make_backend(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RelayChatBackend(RelayConfig(base_url="http://relay.test/"), "Be kind.", client=client)


def test_system_prompt_is_prepended_not_stored():
    history = [Message("user", "hi")]

    body = build_request("Be kind.", history, "aW1n")

    assert body["messages"] == [
        {"role": "system", "content": "Be kind."},
        {"role": "user", "content": "hi"},
    ]
    assert body["base64Image"] == "aW1n"
    assert history == [Message("user", "hi")]
    assert "base64Image" not in build_request("Be kind.", history)


async def test_stream_posts_history_and_yields_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=sse("Hi there."))

    backend = make_backend(handler)
    async with backend.stream([Message("user", "hello")], "aW1n") as chunks:
        body = b"".join([chunk async for chunk in chunks])
    await backend.aclose()

    assert seen["url"] == "http://relay.test/api/chat-stream"
    assert seen["body"]["messages"][0]["role"] == "system"
    assert seen["body"]["base64Image"] == "aW1n"
    assert body == sse("Hi there.")


async def test_error_status_becomes_transport_error():
    backend = make_backend(lambda request: httpx.Response(500, json={"detail": "no key"}))

    with pytest.raises(StreamTransportError) as exc_info:
        async with backend.stream([Message("user", "hello")]):
            pass
    await backend.aclose()

    assert exc_info.value.status_code == 500


async def test_connection_failure_becomes_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    backend = make_backend(handler)
    with pytest.raises(StreamTransportError) as exc_info:
        async with backend.stream([Message("user", "hello")]):
            pass
    await backend.aclose()

    assert exc_info.value.status_code is None
