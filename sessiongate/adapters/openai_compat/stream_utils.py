"""
流式 SSE 转发工具。从 router 拆出，便于维护与单测。
"""

from __future__ import annotations

import json
from contextlib import AsyncExitStack
from typing import AsyncGenerator, AsyncIterable, Iterable

import httpx
from fastapi.responses import StreamingResponse

from sessiongate.util.logger import logger

STREAMING_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def _stream_error_line(message: str) -> bytes:
    """Trailing error line once the 200 status has already been sent."""
    detail = (message or "upstream_error").strip() or "upstream_error"
    return f"data: {json.dumps({'error': detail}, ensure_ascii=False)}\n\n".encode("utf-8")


def _extract_sse_data_payload(line: bytes) -> str | None:
    if not line:
        return None
    stripped = line.strip()
    if not stripped.startswith(b"data:"):
        return None
    return stripped[5:].strip().decode("utf-8", errors="replace")


async def _relay_stream_lines(
    response: httpx.Response,
    exit_stack: AsyncExitStack,
) -> AsyncGenerator[bytes, None]:
    """Yield the backend body one line at a time, each line as its own chunk."""
    relayed = 0
    done_seen = False
    try:
        async for line in response.aiter_lines():
            chunk = f"{line}\n".encode("utf-8")
            if _extract_sse_data_payload(chunk) == "[DONE]":
                done_seen = True
            relayed += 1
            yield chunk
    except httpx.HTTPError as exc:
        detail = (str(exc) or "").strip() or "connection_failed_or_timeout"
        logger.warning("stream relay interrupted lines=%d error=%s", relayed, detail)
        yield _stream_error_line("Error reading streaming response")
    finally:
        await exit_stack.aclose()
        logger.debug("stream relay closed lines=%d done_seen=%s", relayed, done_seen)


def _build_streaming_response(generator: Iterable[bytes] | AsyncIterable[bytes]) -> StreamingResponse:
    return StreamingResponse(generator, headers=dict(STREAMING_HEADERS))
