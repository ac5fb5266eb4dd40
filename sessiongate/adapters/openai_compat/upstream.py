"""
marketplace 上游调用：会话创建、探活与聊天请求转发。从 router 拆出，便于维护与单测。
"""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack
from typing import Any

import httpx

from sessiongate.config.settings import settings
from sessiongate.core.errors import ConfigurationError, UpstreamError, UpstreamUnreachableError
from sessiongate.core.models import ChatPayload, SessionCreateRequest, SessionCreateResponse
from sessiongate.util.logger import logger

# 可达性探测时从聊天地址剥掉的路由后缀
CHAT_COMPLETIONS_SUFFIX = "/v1/chat/completions"
HEALTHCHECK_PATH = "/healthcheck"
_ERROR_BODY_LOG_MAX_CHARS = 600
# InvalidURL 不属于 HTTPError，配置了格式错误的地址时同样视为上游不可用
_TRANSPORT_ERRORS = (httpx.HTTPError, httpx.InvalidURL)

_upstream_async_client: httpx.AsyncClient | None = None
_upstream_client_lock: Any = None


def _upstream_http_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=max(10, int(settings.upstream_max_connections)),
        max_keepalive_connections=max(5, int(settings.upstream_max_keepalive_connections)),
    )


def _upstream_http_timeout() -> httpx.Timeout:
    timeout = float(settings.upstream_timeout_seconds)
    return httpx.Timeout(connect=timeout, read=timeout, write=timeout, pool=timeout)


def _stream_http_timeout() -> httpx.Timeout:
    # 流式响应只要上游连接存活就持续转发，不设读超时
    timeout = float(settings.upstream_timeout_seconds)
    return httpx.Timeout(connect=timeout, read=None, write=timeout, pool=timeout)


def _check_http_timeout() -> httpx.Timeout:
    return httpx.Timeout(float(settings.check_timeout_seconds))


async def _get_upstream_async_client() -> httpx.AsyncClient:
    global _upstream_async_client, _upstream_client_lock
    if _upstream_async_client is not None:
        return _upstream_async_client
    if _upstream_client_lock is None:
        _upstream_client_lock = asyncio.Lock()
    async with _upstream_client_lock:
        if _upstream_async_client is None:
            _upstream_async_client = httpx.AsyncClient(
                follow_redirects=False,
                http2=False,
                timeout=_upstream_http_timeout(),
                limits=_upstream_http_limits(),
            )
    return _upstream_async_client


async def close_upstream_async_client() -> None:
    global _upstream_async_client
    if _upstream_async_client is not None:
        await _upstream_async_client.aclose()
        _upstream_async_client = None


def _error_detail(exc: Exception) -> str:
    return (str(exc) or "").strip() or "connection_failed_or_timeout"


def _marketplace_api_base() -> str:
    base = settings.marketplace_api_url.strip().rstrip("/")
    if not base:
        raise ConfigurationError("MARKETPLACE_API_URL is not set")
    return base


def resolve_marketplace_url() -> str:
    url = settings.marketplace_url.strip()
    if not url:
        raise ConfigurationError("MARKETPLACE_URL environment variable is not set")
    return url


def _reachability_url(marketplace_url: str) -> str:
    if marketplace_url.endswith(CHAT_COMPLETIONS_SUFFIX):
        return marketplace_url[: -len(CHAT_COMPLETIONS_SUFFIX)]
    return marketplace_url


async def check_health() -> bool:
    """Advisory check of the marketplace healthcheck; failures are only logged."""

    try:
        url = f"{_marketplace_api_base()}{HEALTHCHECK_PATH}"
    except ConfigurationError as exc:
        logger.warning("marketplace health check skipped error=%s", exc)
        return False
    client = await _get_upstream_async_client()
    try:
        response = await client.get(url, timeout=_check_http_timeout())
    except _TRANSPORT_ERRORS as exc:
        logger.warning("marketplace health check failed url=%s error=%s", url, _error_detail(exc))
        return False
    if response.status_code != 200:
        logger.warning("marketplace health check failed url=%s status=%s", url, response.status_code)
        return False
    logger.debug("marketplace health check ok url=%s", url)
    return True


async def check_reachable(marketplace_url: str) -> None:
    """Blocking check: any HTTP answer counts, a transport failure aborts the forward."""

    url = _reachability_url(marketplace_url)
    client = await _get_upstream_async_client()
    try:
        response = await client.get(url, timeout=_check_http_timeout())
    except _TRANSPORT_ERRORS as exc:
        detail = _error_detail(exc)
        logger.warning("marketplace unreachable url=%s error=%s", url, detail)
        raise UpstreamUnreachableError(f"marketplace is not accessible: {detail}") from exc
    logger.debug("marketplace reachable url=%s status=%s", url, response.status_code)


async def create_session(model_id: str) -> str:
    url = f"{_marketplace_api_base()}/blockchain/models/{model_id}/session"
    body = SessionCreateRequest(
        session_duration=int(settings.session_duration_seconds),
        failover=bool(settings.session_failover),
    ).to_bytes()
    client = await _get_upstream_async_client()
    try:
        response = await client.post(url, content=body, headers={"Content-Type": "application/json"})
    except _TRANSPORT_ERRORS as exc:
        detail = _error_detail(exc)
        logger.warning("session establishment failed url=%s error=%s", url, detail)
        raise UpstreamUnreachableError(f"failed to establish session: {detail}") from exc

    logger.debug("session response status=%s body=%s", response.status_code, response.text[:_ERROR_BODY_LOG_MAX_CHARS])
    try:
        parsed = SessionCreateResponse.model_validate_json(response.content)
    except ValueError as exc:
        raise UpstreamError(f"undecodable session response status={response.status_code}") from exc
    if not parsed.session_id:
        raise UpstreamError("failed to get valid session ID from response")
    return parsed.session_id


def _build_chat_headers(session_id: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        settings.session_id_header: session_id,
    }


async def _prepare_chat_call(payload: ChatPayload, session_id: str) -> tuple[str, bytes, dict[str, str]]:
    url = resolve_marketplace_url()
    if not session_id:
        logger.warning("no active session id available for forward")
        raise UpstreamError("no active session")
    logger.debug("forwarding request to %s", url)
    await check_reachable(url)
    return url, payload.to_bytes(), _build_chat_headers(session_id)


def _log_error_status(url: str, response: httpx.Response) -> None:
    if response.is_success:
        return
    logger.warning(
        "marketplace returned error status url=%s status=%s body=%s",
        url,
        response.status_code,
        response.text[:_ERROR_BODY_LOG_MAX_CHARS],
    )


async def forward_chat(payload: ChatPayload, session_id: str) -> httpx.Response:
    url, body, headers = await _prepare_chat_call(payload, session_id)
    logger.debug("forward_chat start url=%s payload_bytes=%d", url, len(body))
    client = await _get_upstream_async_client()
    try:
        response = await client.post(url, content=body, headers=headers, timeout=_upstream_http_timeout())
    except _TRANSPORT_ERRORS as exc:
        detail = _error_detail(exc)
        logger.warning("forward_chat http_error url=%s error=%s", url, detail)
        raise UpstreamUnreachableError(f"failed to forward request: {detail}") from exc
    logger.debug("forward_chat done url=%s status=%s", url, response.status_code)
    _log_error_status(url, response)
    return response


async def open_chat_stream(payload: ChatPayload, session_id: str) -> tuple[httpx.Response, AsyncExitStack]:
    """Open the backend stream; the caller owns the returned exit stack."""

    url, body, headers = await _prepare_chat_call(payload, session_id)
    logger.debug("forward_stream start url=%s payload_bytes=%d", url, len(body))
    client = await _get_upstream_async_client()
    exit_stack = AsyncExitStack()
    try:
        response = await exit_stack.enter_async_context(
            client.stream("POST", url, content=body, headers=headers, timeout=_stream_http_timeout())
        )
    except _TRANSPORT_ERRORS as exc:
        await exit_stack.aclose()
        detail = _error_detail(exc)
        logger.warning("forward_stream http_error url=%s error=%s", url, detail)
        raise UpstreamUnreachableError(f"failed to forward request: {detail}") from exc
    logger.debug("forward_stream connected url=%s status=%s", url, response.status_code)
    if not response.is_success:
        logger.warning("marketplace returned error status on stream url=%s status=%s", url, response.status_code)
    return response, exit_stack
