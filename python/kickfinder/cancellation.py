"""
Cooperative cancellation for scrape runs.

One token is created per inbound request and handed to every task spawned
for it. Tasks call ``check_or_fail`` right before each suspension point
(navigation, DOM wait, settle sleep, remote call); ``sleep`` slices long
waits so a signal lands within one slice.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from kickfinder.errors import Aborted

logger = logging.getLogger(__name__)

SLEEP_SLICE_SECONDS = 0.1


class CancellationToken:
    __slots__ = ("_signalled", "deadline")

    def __init__(self, deadline: Optional[float] = None) -> None:
        self._signalled = False
        self.deadline = deadline

    @classmethod
    def create(cls, timeout: Optional[float] = None) -> "CancellationToken":
        deadline = time.monotonic() + timeout if timeout is not None else None
        return cls(deadline=deadline)

    @property
    def signalled(self) -> bool:
        if self._signalled:
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def signal(self) -> None:
        self._signalled = True

    def check_or_fail(self, where: str = "") -> None:
        if self.signalled:
            logger.debug("cancelled at %s", where or "check point")
            raise Aborted(where)

    def __repr__(self) -> str:
        return f"CancellationToken(signalled={self.signalled})"


def check_or_fail(token: Optional[CancellationToken], where: str = "") -> None:
    if token is not None:
        token.check_or_fail(where)


async def sleep(
    seconds: float,
    token: Optional[CancellationToken] = None,
    *,
    where: str = "sleep",
    slice_seconds: float = SLEEP_SLICE_SECONDS,
) -> None:
    remaining = max(0.0, seconds)
    check_or_fail(token, where)
    while remaining > 0:
        chunk = min(slice_seconds, remaining)
        await asyncio.sleep(chunk)
        remaining -= chunk
        check_or_fail(token, where)
