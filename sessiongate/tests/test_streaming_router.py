import json
from contextlib import AsyncExitStack

import httpx
import pytest
from starlette.requests import Request

from sessiongate.adapters.openai_compat import router as openai_router
from sessiongate.adapters.openai_compat import upstream
from sessiongate.adapters.openai_compat.stream_utils import (
    _extract_sse_data_payload,
    _relay_stream_lines,
    _stream_error_line,
)
from sessiongate.config.settings import settings
from sessiongate.core.errors import UpstreamUnreachableError
from sessiongate.core.models import Session
from sessiongate.core.session import SessionManager, SessionStore


def _build_request(body: bytes) -> Request:
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/v1/chat/completions",
        "raw_path": b"/v1/chat/completions",
        "query_string": b"",
        "headers": [(b"content-type", b"application/json")],
        "client": ("127.0.0.1", 54321),
        "server": ("testserver", 80),
    }
    sent = False

    async def receive() -> dict:
        nonlocal sent
        if sent:
            return {"type": "http.request", "body": b"", "more_body": False}
        sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


async def _healthy() -> bool:
    return True


async def _unused_factory(model_id: str) -> str:
    raise AssertionError("session should already be established")


def _build_forwarder() -> openai_router.ChatForwarder:
    store = SessionStore()
    store.set(Session(session_id="sess-stream", model_id="model-abc", last_used=0.0))
    manager = SessionManager(store, clock=lambda: 1.0, health_check=_healthy, session_factory=_unused_factory)
    return openai_router.ChatForwarder(manager)


def _install_transport(monkeypatch, handler) -> list[httpx.Request]:
    seen: list[httpx.Request] = []

    def recording_handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(recording_handler))

    async def fake_get_client():
        return client

    monkeypatch.setattr(upstream, "_get_upstream_async_client", fake_get_client)
    return seen


async def _collect(response) -> list[bytes]:
    chunks: list[bytes] = []
    async for chunk in response.body_iterator:
        chunks.append(chunk if isinstance(chunk, bytes) else chunk.encode("utf-8"))
    return chunks


@pytest.fixture(autouse=True)
def proxy_settings(monkeypatch):
    monkeypatch.setattr(settings, "model_id", "model-abc")
    monkeypatch.setattr(settings, "marketplace_url", "http://marketplace:9000/v1/chat/completions")
    monkeypatch.setattr(settings, "session_ttl_seconds", 1800.0)
    monkeypatch.setattr(settings, "streaming_enabled", True)


def test_extract_sse_data_payload():
    assert _extract_sse_data_payload(b"data: [DONE]\n") == "[DONE]"
    assert _extract_sse_data_payload(b"event: message\n") is None


def test_stream_error_line_is_sse_data_event():
    line = _stream_error_line("Error reading streaming response")
    assert line.startswith(b"data: ")
    assert json.loads(line[len(b"data: "):]) == {"error": "Error reading streaming response"}


@pytest.mark.asyncio
async def test_stream_lines_are_relayed_one_chunk_per_line(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200)
        return httpx.Response(200, content=b"data: A\ndata: B\ndata: [DONE]\n")

    seen = _install_transport(monkeypatch, handler)
    forwarder = _build_forwarder()

    response = await forwarder.handle(_build_request(b'{"messages":[],"stream":true}'))

    assert response.status_code == 200
    assert response.headers["content-type"] == "text/event-stream"
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["connection"] == "keep-alive"
    assert await _collect(response) == [b"data: A\n", b"data: B\n", b"data: [DONE]\n"]

    post = [request for request in seen if request.method == "POST"][0]
    assert post.headers["Session_id"] == "sess-stream"
    assert json.loads(post.content)["model"] == "model-abc"


@pytest.mark.asyncio
async def test_stream_keeps_blank_event_separators(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200)
        return httpx.Response(200, content=b"data: A\n\ndata: [DONE]\n\n")

    _install_transport(monkeypatch, handler)
    response = await _build_forwarder().handle(_build_request(b'{"stream":true}'))

    assert b"".join(await _collect(response)) == b"data: A\n\ndata: [DONE]\n\n"


@pytest.mark.asyncio
async def test_streaming_unsupported_returns_500_before_forwarding(monkeypatch):
    monkeypatch.setattr(settings, "streaming_enabled", False)
    seen = _install_transport(monkeypatch, lambda request: httpx.Response(200))

    response = await _build_forwarder().handle(_build_request(b'{"stream":true}'))

    assert response.status_code == 500
    assert json.loads(response.body) == {"error": "Streaming unsupported"}
    assert seen == []


@pytest.mark.asyncio
async def test_stream_open_failure_returns_500(monkeypatch):
    async def failing_open(payload, session_id):
        raise UpstreamUnreachableError("marketplace is not accessible: dns")

    monkeypatch.setattr(upstream, "open_chat_stream", failing_open)

    response = await _build_forwarder().handle(_build_request(b'{"stream":true}'))

    assert response.status_code == 500
    assert json.loads(response.body) == {"error": "Failed to forward streaming request"}


@pytest.mark.asyncio
async def test_non_boolean_stream_flag_uses_buffered_mode(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200)
        return httpx.Response(200, json={"id": "buffered"})

    _install_transport(monkeypatch, handler)

    response = await _build_forwarder().handle(_build_request(b'{"stream":"true"}'))

    assert response.headers["content-type"] == "application/json"
    assert json.loads(response.body) == {"id": "buffered"}


@pytest.mark.asyncio
async def test_relay_stops_on_read_error_and_closes_upstream():
    class BrokenStream(httpx.AsyncByteStream):
        async def __aiter__(self):
            yield b"data: A\n"
            raise httpx.ReadError("connection reset")

    closed: list[bool] = []
    exit_stack = AsyncExitStack()

    async def mark_closed() -> None:
        closed.append(True)

    exit_stack.push_async_callback(mark_closed)
    response = httpx.Response(200, stream=BrokenStream())

    chunks = [chunk async for chunk in _relay_stream_lines(response, exit_stack)]

    assert chunks[0] == b"data: A\n"
    assert b"Error reading streaming response" in chunks[-1]
    assert closed == [True]
