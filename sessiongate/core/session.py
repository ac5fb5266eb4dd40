"""Marketplace session store and lifecycle."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from sessiongate.adapters.openai_compat import upstream
from sessiongate.config.settings import settings
from sessiongate.core.errors import ConfigurationError, UpstreamError
from sessiongate.core.models import Session
from sessiongate.observability.logging import log_event
from sessiongate.util.logger import get_logger

logger = get_logger("session")


class SessionStore:
    """Holds at most one session; ``lock`` guards the whole check-or-create sequence."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self._session: Session | None = None

    def get(self) -> Session | None:
        return self._session

    def set(self, session: Session) -> None:
        self._session = session

    def clear(self) -> None:
        self._session = None


class SessionManager:
    """Reuses the stored session while fresh, otherwise establishes a new one.

    The store lock is held across the network round trip so a burst of
    requests after expiry results in exactly one session-creation call.
    """

    def __init__(
        self,
        store: SessionStore | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        health_check: Callable[[], Awaitable[bool]] | None = None,
        session_factory: Callable[[str], Awaitable[str]] | None = None,
    ) -> None:
        self.store = store or SessionStore()
        self._clock = clock
        self._health_check = health_check or upstream.check_health
        self._session_factory = session_factory or upstream.create_session

    def current(self) -> Session | None:
        return self.store.get()

    def invalidate(self) -> None:
        self.store.clear()

    async def ensure(self) -> Session:
        async with self.store.lock:
            existing = self.store.get()
            logger.debug("checking session state current=%s", existing)
            if existing is not None and existing.is_fresh(self._clock(), settings.session_ttl_seconds):
                log_event("session_reused", level=logging.DEBUG, session_id=existing.session_id)
                return existing

            model_id = settings.model_id.strip()
            if not model_id:
                raise ConfigurationError("MODEL_ID environment variable must be set")
            logger.info("establishing new session for model %s", model_id)

            # 探活仅作参考，失败也继续建会话
            await self._health_check()

            try:
                session_id = await self._session_factory(model_id)
            except UpstreamError as exc:
                log_event("session_failed", level=logging.WARNING, model_id=model_id, error=str(exc))
                raise
            if not session_id:
                log_event("session_failed", level=logging.WARNING, model_id=model_id, error="empty session id")
                raise UpstreamError("failed to get valid session ID from response")

            session = Session(session_id=session_id, model_id=model_id, last_used=self._clock())
            self.store.set(session)
            log_event("session_established", session_id=session_id, model_id=model_id)
            return session
