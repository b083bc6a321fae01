"""
Owns the one shared browser connection.

Search and trending lookups borrow it in shared mode and leave it warm for
``idle_timeout`` seconds so a follow-up product click reuses it. The product
detail flow pins it (counted exclusive holds) and releases it when the stream
ends; the browser closes once no holder and no shared user remains.
Concurrent callers that find no live session share one connect attempt.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from kickfinder import cancellation
from kickfinder.cancellation import CancellationToken
from kickfinder.errors import Aborted, ConnectionFailure
from kickfinder.retry import RetryingConnector

logger = logging.getLogger(__name__)

Launcher = Callable[[], Awaitable[Any]]


class PoolState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    IDLE_ARMED = "idle_armed"
    EXCLUSIVE = "exclusive"


class SessionPool:
    def __init__(
        self,
        launcher: Launcher,
        *,
        idle_timeout: float = 30.0,
        connector: Optional[RetryingConnector] = None,
    ) -> None:
        self._launcher = launcher
        self.idle_timeout = idle_timeout
        self._connector = connector or RetryingConnector(label="browser connect")
        self._session: Any = None
        self._connecting: Optional[asyncio.Future] = None
        self._lock = asyncio.Lock()
        self._idle_handle: Optional[asyncio.TimerHandle] = None
        self._eviction: Optional[asyncio.Task] = None
        self._shared_users = 0
        self._exclusive_holders = 0
        self.connect_count = 0

    @property
    def state(self) -> PoolState:
        if self._connecting is not None:
            return PoolState.CONNECTING
        if not self._is_live():
            return PoolState.DISCONNECTED
        if self._exclusive_holders:
            return PoolState.EXCLUSIVE
        if self._idle_handle is not None:
            return PoolState.IDLE_ARMED
        return PoolState.CONNECTED

    @property
    def session(self) -> Any:
        return self._session if self._is_live() else None

    def _is_live(self) -> bool:
        return self._session is not None and self._session.is_connected()

    def _in_use(self) -> bool:
        return bool(self._shared_users or self._exclusive_holders)

    async def acquire_shared(self, token: Optional[CancellationToken] = None) -> Any:
        self._cancel_idle_timer()
        return await self._ensure_connected(token)

    @asynccontextmanager
    async def shared(self, token: Optional[CancellationToken] = None) -> AsyncIterator[Any]:
        """Borrow the session for one operation, then re-arm the idle timer."""
        self._shared_users += 1
        try:
            session = await self.acquire_shared(token)
            yield session
        finally:
            self._shared_users -= 1
            if not self._in_use() and self._is_live():
                self._arm_idle_timer()

    async def acquire_exclusive(self, token: Optional[CancellationToken] = None) -> Any:
        """
        Pin the session for a product flow; pair every success with ``release()``.

        Holders are counted. The session stays out of idle eviction until the
        last holder releases, and tabs opened by other callers keep working.
        """
        self._cancel_idle_timer()
        self._exclusive_holders += 1
        try:
            return await self._ensure_connected(token)
        except BaseException:
            self._exclusive_holders -= 1
            raise

    async def release(self) -> None:
        self._exclusive_holders = max(0, self._exclusive_holders - 1)
        if self._in_use():
            # The last shared user re-arms the idle timer on its way out.
            return
        self._cancel_idle_timer()
        await self._close_session(self._detach())

    async def close(self) -> None:
        self._cancel_idle_timer()
        self._exclusive_holders = 0
        if self._eviction is not None and not self._eviction.done():
            await asyncio.gather(self._eviction, return_exceptions=True)
        await self._close_session(self._detach())

    def _detach(self) -> Any:
        session, self._session = self._session, None
        return session

    async def _close_session(self, session: Any) -> None:
        if session is None:
            return
        try:
            await session.close()
        except Exception as exc:
            logger.warning("error closing browser session: %s", exc)
        logger.info("browser session released")

    async def _ensure_connected(self, token: Optional[CancellationToken]) -> Any:
        while True:
            cancellation.check_or_fail(token, "browser connect")
            if self._is_live():
                return self._session

            async with self._lock:
                if self._is_live():
                    return self._session
                if self._connecting is None:
                    self._connecting = asyncio.ensure_future(self._connect(token))
                connecting = self._connecting

            try:
                return await asyncio.shield(connecting)
            except Aborted:
                if token is not None and token.signalled:
                    raise
                # The caller that started this connect gave up; start our own.
                logger.info("shared browser connect was aborted by another caller, retrying")

    async def _connect(self, token: Optional[CancellationToken]) -> Any:
        stale = self._detach()
        try:
            if stale is not None:
                try:
                    await stale.close()
                except Exception as exc:
                    logger.debug("closing stale session failed: %s", exc)

            async def attempt() -> Any:
                self.connect_count += 1
                return await self._launcher()

            try:
                outcome = await self._connector.run(attempt, token)
            except Aborted:
                raise
            except Exception as exc:
                logger.error("browser connect failed: %s", exc)
                raise ConnectionFailure(f"failed to acquire browser session: {exc}") from exc

            self._session = outcome.value
            logger.info("browser session connected (attempts=%s)", outcome.attempts)
            return self._session
        finally:
            self._connecting = None

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(self.idle_timeout, self._on_idle)

    def _cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _on_idle(self) -> None:
        self._idle_handle = None
        if self._in_use() or self._session is None:
            return
        logger.info("browser idle for %.0fs, closing", self.idle_timeout)
        # Detached now so a caller arriving before the close runs connects afresh.
        session = self._detach()
        self._eviction = asyncio.get_running_loop().create_task(self._close_session(session))
