from __future__ import annotations

import re

RATE_LIMIT_PATTERN = re.compile(r"\b429\b|too many requests", re.IGNORECASE)


class ScrapeError(Exception):
    """Base class for failures raised by the scraping engine."""

    kind = "error"


class Aborted(ScrapeError):
    """The request's cancellation token fired."""

    kind = "aborted"

    def __init__(self, where: str = "") -> None:
        super().__init__(f"aborted: {where}" if where else "aborted")
        self.where = where


class RateLimited(ScrapeError):
    kind = "rate_limited"

    def __init__(self, message: str = "rate limited (429 Too Many Requests)", *, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


class Blocked(ScrapeError):
    """An anti-bot interstitial is still in front of the page."""

    kind = "blocked"


class NotFound(ScrapeError):
    kind = "not_found"


class ScrapeTimeout(ScrapeError):
    kind = "timeout"


class ConnectionFailure(ScrapeError):
    kind = "connection_failure"


class UnknownSource(ScrapeError, KeyError):
    kind = "unknown_source"

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown source"


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, RateLimited):
        return True
    if getattr(exc, "status", None) == 429 or getattr(exc, "status_code", None) == 429:
        return True
    return bool(RATE_LIMIT_PATTERN.search(str(exc)))


def friendly_message(exc: BaseException) -> str:
    message = str(exc) or exc.__class__.__name__
    if is_rate_limit_error(exc):
        return "Browser service rate limit (429). Please retry in a minute."
    return message
