"""
Fans one lookup out across the source adapters.

Every adapter runs as its own asyncio task with its own tab (local browser)
or its own stateless remote call. Results are reported in completion order,
one per adapter, followed by a single terminal event.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from kickfinder import cancellation
from kickfinder.cancellation import CancellationToken
from kickfinder.errors import Aborted, ConnectionFailure, NotFound, ScrapeError
from kickfinder.models import ScrapeTask, SourceResult, StreamEvent, TaskStatus
from kickfinder.sources.base import SourceScraper

logger = logging.getLogger(__name__)

ABORTED_MESSAGE = "aborted"
NO_SESSION_MESSAGE = "browser session is not connected"


class ScraperOrchestrator:
    def __init__(
        self,
        adapters: Iterable[SourceScraper],
        *,
        remote: bool = False,
        max_concurrency: int = 6,
        task_timeout: float = 120.0,
    ) -> None:
        self.adapters: List[SourceScraper] = list(adapters)
        self.remote = remote
        self.max_concurrency = max(1, max_concurrency)
        self.task_timeout = task_timeout

    async def stream(
        self,
        target: str,
        token: Optional[CancellationToken] = None,
        session: Any = None,
        *,
        started: Optional[float] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Yields one ``update`` per adapter that ran, then ``done`` or ``error``.

        ``started`` lets a caller that did work before the fan-out (the StockX
        anchor) report the total elapsed time in ``done``.
        """
        started = started if started is not None else time.perf_counter()
        if not self.remote and (session is None or not session.is_connected()):
            yield StreamEvent.error(NO_SESSION_MESSAGE)
            return

        async with aclosing(self._fan_out(target, token, session)) as tasks:
            async for task in tasks:
                if task.status is TaskStatus.ABORTED:
                    continue
                yield StreamEvent.update(task.source_id, task.result)

        if token is not None and token.signalled:
            yield StreamEvent.error(ABORTED_MESSAGE)
            return
        yield StreamEvent.done(int((time.perf_counter() - started) * 1000))

    async def collect(
        self,
        target: str,
        token: Optional[CancellationToken] = None,
        session: Any = None,
    ) -> Dict[str, Optional[SourceResult]]:
        if not self.remote and (session is None or not session.is_connected()):
            raise ConnectionFailure(NO_SESSION_MESSAGE)
        results: Dict[str, Optional[SourceResult]] = {}
        async with aclosing(self._fan_out(target, token, session)) as tasks:
            async for task in tasks:
                if task.status is not TaskStatus.ABORTED:
                    results[task.source_id] = task.result
        cancellation.check_or_fail(token, "fan-out")
        return results

    async def _fan_out(
        self,
        target: str,
        token: Optional[CancellationToken],
        session: Any,
    ) -> AsyncIterator[ScrapeTask]:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        futures = [
            asyncio.ensure_future(self._run(adapter, ScrapeTask(adapter.source_id, target), session, token, semaphore))
            for adapter in self.adapters
        ]
        try:
            for next_done in asyncio.as_completed(futures):
                yield await next_done
        finally:
            for future in futures:
                if not future.done():
                    future.cancel()
            await asyncio.gather(*futures, return_exceptions=True)

    async def _run(
        self,
        adapter: SourceScraper,
        task: ScrapeTask,
        session: Any,
        token: Optional[CancellationToken],
        semaphore: asyncio.Semaphore,
    ) -> ScrapeTask:
        async with semaphore:
            if token is not None and token.signalled:
                task.status = TaskStatus.ABORTED
                return task
            task.started = True
            task.status = TaskStatus.RUNNING
            began = time.perf_counter()
            try:
                task.result = await asyncio.wait_for(self._scrape(adapter, task, session, token), self.task_timeout)
                task.status = TaskStatus.SUCCEEDED
            except Aborted:
                task.status = TaskStatus.ABORTED
            except NotFound as exc:
                logger.info("%s: %s", adapter.source_id, exc)
                task.status = TaskStatus.SUCCEEDED
            except asyncio.TimeoutError:
                logger.warning("%s timed out after %.0fs", adapter.source_id, self.task_timeout)
                task.status = TaskStatus.FAILED
                task.error = "timeout"
            except ScrapeError as exc:
                logger.warning("%s failed: %s", adapter.source_id, exc)
                task.status = TaskStatus.FAILED
                task.error = str(exc)
            except Exception as exc:
                logger.exception("%s failed", adapter.source_id)
                task.status = TaskStatus.FAILED
                task.error = str(exc)
            logger.info(
                "%s %s in %.2fs",
                adapter.source_id,
                task.status.value,
                time.perf_counter() - began,
            )
            return task

    async def _scrape(
        self,
        adapter: SourceScraper,
        task: ScrapeTask,
        session: Any,
        token: Optional[CancellationToken],
    ) -> Optional[SourceResult]:
        cancellation.check_or_fail(token, f"{adapter.source_id} start")
        if self.remote or session is None:
            return await adapter.scrape(None, task.target, token)
        async with session.open_tab(adapter.source_id) as tab:
            task.tab = tab
            try:
                return await adapter.scrape(tab, task.target, token)
            finally:
                task.tab = None
