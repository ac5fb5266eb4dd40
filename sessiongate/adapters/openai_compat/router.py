"""OpenAI-compatible chat completion forwarding."""

from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from starlette.datastructures import MutableHeaders
from starlette.requests import ClientDisconnect

from sessiongate.adapters.openai_compat import upstream
from sessiongate.adapters.openai_compat.stream_utils import _build_streaming_response, _relay_stream_lines
from sessiongate.config.settings import settings
from sessiongate.core.errors import (
    BadRequestError,
    SessionGateError,
    StreamingUnsupportedError,
    TransportError,
)
from sessiongate.core.models import ChatPayload, Session
from sessiongate.core.session import SessionManager, SessionStore
from sessiongate.util.logger import logger

router = APIRouter()

INBOUND_SESSION_HEADER = "session_id"
_HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}
# 响应体由服务端重新编码与计算长度，不能原样透传
_FRAMING_HEADERS = {"content-length", "content-encoding"}
_DEBUG_REQUEST_BODY_MAX_CHARS = 32000
_DEBUG_HEADERS_REDACT = frozenset({"authorization", "cookie", "session_id"})


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _build_client_response_headers(response: Response, upstream_headers: httpx.Headers) -> None:
    excluded = _FRAMING_HEADERS | _HOP_BY_HOP_HEADERS
    for key, value in upstream_headers.multi_items():
        if key.lower() in excluded:
            continue
        response.headers.append(key, value)


def _attach_inbound_session_header(request: Request, session_id: str) -> None:
    # 直接改写 ASGI scope 中的请求头，后续读取 request.scope 的组件可见
    MutableHeaders(scope=request.scope)[INBOUND_SESSION_HEADER] = session_id


def _ensure_streaming_supported(request: Request) -> None:
    if not settings.streaming_enabled or request.scope.get("type") != "http":
        raise StreamingUnsupportedError("client transport cannot flush incrementally")


def _log_request_if_debug(request: Request, body: bytes) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return

    headers_safe: dict[str, str] = {}
    for key, value in request.headers.items():
        key_lower = key.lower()
        if key_lower in _DEBUG_HEADERS_REDACT or "key" in key_lower or "secret" in key_lower or "token" in key_lower:
            headers_safe[key] = "***"
        else:
            headers_safe[key] = value
    logger.debug(
        "incoming request method=%s path=%s headers=%s body_size=%d",
        request.method,
        request.url.path,
        headers_safe,
        len(body),
    )
    if not settings.log_full_request_body:
        return
    body_text = body.decode("utf-8", errors="replace")
    if len(body_text) > _DEBUG_REQUEST_BODY_MAX_CHARS:
        body_text = f"{body_text[:_DEBUG_REQUEST_BODY_MAX_CHARS]}...<truncated {len(body_text)} chars>"
    logger.debug("incoming request body:\n%s", body_text)


class ChatForwarder:
    """Validates a chat request, attaches the marketplace session and relays the answer."""

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    async def _read_body(self, request: Request) -> bytes:
        try:
            return await request.body()
        except ClientDisconnect as exc:
            raise TransportError("client disconnected while sending body") from exc

    async def handle(self, request: Request) -> Response:
        try:
            body = await self._read_body(request)
        except TransportError as exc:
            logger.warning("read request body failed path=%s error=%s", request.url.path, exc)
            return _error_response(500, "Failed to read request body")
        _log_request_if_debug(request, body)

        try:
            session = await self.sessions.ensure()
        except SessionGateError as exc:
            logger.error("session establishment failed error=%s", exc)
            return _error_response(500, "Failed to establish session")

        try:
            payload = ChatPayload.from_bytes(body)
        except BadRequestError as exc:
            logger.info("rejecting chat request error=%s", exc)
            return _error_response(400, "Invalid request body")

        model_id = settings.model_id.strip()
        if not model_id:
            logger.error("MODEL_ID missing at forward time")
            return _error_response(500, "MODEL_ID environment variable not set")
        payload.model = model_id

        _attach_inbound_session_header(request, session.session_id)

        if payload.stream:
            return await self._handle_streaming(request, payload, session)
        return await self._handle_buffered(payload, session)

    async def _handle_streaming(self, request: Request, payload: ChatPayload, session: Session) -> Response:
        try:
            _ensure_streaming_supported(request)
        except StreamingUnsupportedError as exc:
            logger.error("streaming unsupported path=%s error=%s", request.url.path, exc)
            return _error_response(500, "Streaming unsupported")

        try:
            upstream_response, exit_stack = await upstream.open_chat_stream(payload, session.session_id)
        except SessionGateError as exc:
            logger.error("forward streaming request failed error=%s", exc)
            return _error_response(500, "Failed to forward streaming request")

        return _build_streaming_response(_relay_stream_lines(upstream_response, exit_stack))

    async def _handle_buffered(self, payload: ChatPayload, session: Session) -> Response:
        try:
            upstream_response = await upstream.forward_chat(payload, session.session_id)
        except SessionGateError as exc:
            logger.error("forward request failed error=%s", exc)
            return _error_response(500, "Failed to forward request")

        response = Response(content=upstream_response.content, status_code=upstream_response.status_code)
        _build_client_response_headers(response, upstream_response.headers)
        return response


_forwarder: ChatForwarder | None = None


def _build_forwarder() -> ChatForwarder:
    return ChatForwarder(SessionManager(SessionStore()))


def _get_forwarder() -> ChatForwarder:
    global _forwarder
    if _forwarder is None:
        _forwarder = _build_forwarder()
    return _forwarder


@router.post("/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _get_forwarder().handle(request)
