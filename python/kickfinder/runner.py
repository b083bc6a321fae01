"""
Runs the asyncio engine on one background thread for the Flask workers.

The session pool, its lock and its idle timer all live on this loop, so
every request thread hands its coroutines to the same loop.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, AsyncIterator, Awaitable, Iterator, Optional, TypeVar

from kickfinder.cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSE_TIMEOUT_SECONDS = 30.0
_EXHAUSTED = object()


async def _next(agen: AsyncIterator[T]) -> Any:
    try:
        return await agen.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


async def _close(agen: Any) -> None:
    await agen.aclose()


class EngineLoop:
    def __init__(self) -> None:
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is None or self._loop.is_closed():
                loop = asyncio.new_event_loop()
                thread = threading.Thread(target=self._serve, args=(loop,), name="kickfinder-engine", daemon=True)
                thread.start()
                self._loop, self._thread = loop, thread
            return self._loop

    @staticmethod
    def _serve(loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
        finally:
            loop.close()

    def run(self, coro: Awaitable[T], timeout: Optional[float] = None) -> T:
        future = asyncio.run_coroutine_threadsafe(coro, self._ensure_loop())
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def iterate(self, agen: AsyncIterator[T], token: Optional[CancellationToken] = None) -> Iterator[T]:
        """
        Drives an async generator from a sync one.

        Closing the returned iterator early (a client disconnect) signals
        ``token`` first so in-flight work stops at its next check point.
        """
        finished = False
        try:
            while True:
                item = self.run(_next(agen))
                if item is _EXHAUSTED:
                    finished = True
                    return
                yield item
        finally:
            if not finished:
                if token is not None:
                    token.signal()
                try:
                    self.run(_close(agen), timeout=CLOSE_TIMEOUT_SECONDS)
                except Exception as exc:
                    logger.warning("stream close failed: %s", exc)

    def stop(self, cleanup: Any = None) -> None:
        """Runs ``cleanup`` (a coroutine) on the loop, then stops it."""
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = self._thread = None
        if loop is None or loop.is_closed():
            if cleanup is not None and hasattr(cleanup, "close"):
                cleanup.close()
            return
        if cleanup is not None:
            try:
                asyncio.run_coroutine_threadsafe(cleanup, loop).result(CLOSE_TIMEOUT_SECONDS)
            except Exception as exc:
                logger.warning("engine cleanup failed: %s", exc)
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=5)
