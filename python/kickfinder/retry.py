from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from kickfinder import cancellation
from kickfinder.cancellation import CancellationToken
from kickfinder.errors import Aborted, RateLimited, is_rate_limit_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float, Optional[CancellationToken]], Awaitable[None]]


async def _token_sleep(seconds: float, token: Optional[CancellationToken]) -> None:
    await cancellation.sleep(seconds, token, where="rate-limit backoff")


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    value: T
    attempts: int


class RetryingConnector:
    """
    Retries one remote-connection attempt while it fails with a rate limit.

    Backoff is linear: ``backoff_base * (attempt_index + 1)`` seconds after
    the failed attempt ``attempt_index`` (zero based). Anything that is not a
    rate limit propagates on the first failure.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        sleep: SleepFn | None = None,
        label: str = "remote",
    ) -> None:
        self.max_retries = max(0, max_retries)
        self.backoff_base = max(0.0, backoff_base)
        self._sleep = sleep or _token_sleep
        self.label = label

    async def run(
        self,
        attempt: Callable[[], Awaitable[T]],
        token: Optional[CancellationToken] = None,
    ) -> RetryOutcome[T]:
        last_error: BaseException | None = None
        total_attempts = self.max_retries + 1

        for attempt_index in range(total_attempts):
            cancellation.check_or_fail(token, f"{self.label} attempt {attempt_index + 1}")
            try:
                value = await attempt()
                return RetryOutcome(value=value, attempts=attempt_index + 1)
            except Aborted:
                raise
            except Exception as exc:
                if not is_rate_limit_error(exc):
                    raise
                last_error = exc

            if attempt_index + 1 >= total_attempts:
                break
            delay = self.backoff_base * (attempt_index + 1)
            logger.warning(
                "%s rate limited (attempt %s/%s), retrying in %.1fs",
                self.label,
                attempt_index + 1,
                total_attempts,
                delay,
            )
            await self._sleep(delay, token)

        raise RateLimited(str(last_error), attempts=total_attempts) from last_error

    async def call(self, attempt: Callable[[], Awaitable[T]], token: Optional[CancellationToken] = None) -> T:
        outcome = await self.run(attempt, token)
        return outcome.value


def connector_from_settings(settings: Any, *, label: str = "remote", sleep: SleepFn | None = None) -> RetryingConnector:
    return RetryingConnector(
        max_retries=settings.rate_limit_max_retries,
        backoff_base=settings.rate_limit_backoff_ms / 1000.0,
        sleep=sleep,
        label=label,
    )
