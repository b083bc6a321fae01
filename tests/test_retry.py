import pytest

from kickfinder.cancellation import CancellationToken
from kickfinder.config import Settings
from kickfinder.errors import Aborted, Blocked, RateLimited
from kickfinder.retry import RetryingConnector, connector_from_settings


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds, token):
        self.delays.append(seconds)


class Flaky:
    def __init__(self, failures, exc_factory=lambda: RateLimited("429 Too Many Requests")):
        self.failures = failures
        self.exc_factory = exc_factory
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_factory()
        return "connected"


@pytest.mark.asyncio
async def test_rate_limited_twice_then_success_backs_off_linearly():
    sleep = RecordingSleep()
    connector = RetryingConnector(max_retries=3, backoff_base=2.0, sleep=sleep)

    outcome = await connector.run(Flaky(2))

    assert outcome.value == "connected"
    assert outcome.attempts == 3
    assert sleep.delays == [2.0, 4.0]


@pytest.mark.asyncio
async def test_exhausted_retries_raise_rate_limited_with_attempt_count():
    sleep = RecordingSleep()
    connector = RetryingConnector(max_retries=2, backoff_base=1.0, sleep=sleep)

    with pytest.raises(RateLimited) as info:
        await connector.run(Flaky(10))

    assert info.value.attempts == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_plain_429_text_counts_as_rate_limit():
    sleep = RecordingSleep()
    connector = RetryingConnector(max_retries=1, backoff_base=0.5, sleep=sleep)

    outcome = await connector.run(Flaky(1, lambda: RuntimeError("Unexpected server response: 429")))

    assert outcome.attempts == 2
    assert sleep.delays == [0.5]


@pytest.mark.asyncio
async def test_other_errors_are_not_retried():
    sleep = RecordingSleep()
    connector = RetryingConnector(max_retries=3, sleep=sleep)
    attempt = Flaky(1, lambda: Blocked("captcha"))

    with pytest.raises(Blocked):
        await connector.run(attempt)

    assert attempt.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_signalled_token_aborts_before_first_attempt():
    token = CancellationToken.create()
    token.signal()
    attempt = Flaky(0)

    with pytest.raises(Aborted):
        await RetryingConnector(sleep=RecordingSleep()).run(attempt, token)

    assert attempt.calls == 0


@pytest.mark.asyncio
async def test_abort_during_attempt_is_never_retried():
    sleep = RecordingSleep()
    attempt = Flaky(5, lambda: Aborted("goto"))

    with pytest.raises(Aborted):
        await RetryingConnector(max_retries=3, sleep=sleep).run(attempt)

    assert attempt.calls == 1


def test_connector_from_settings_uses_millisecond_backoff():
    connector = connector_from_settings(Settings(rate_limit_max_retries=5, rate_limit_backoff_ms=1500), label="bql")
    assert connector.max_retries == 5
    assert connector.backoff_base == 1.5
    assert connector.label == "bql"
