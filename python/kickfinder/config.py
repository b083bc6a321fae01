from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

STRATEGY_LOCAL = "local"
STRATEGY_REMOTE = "remote"


def env_int(name: str, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if min_value is not None:
        value = max(min_value, value)
    if max_value is not None:
        value = min(max_value, value)
    return value


def env_float(name: str, default: float, *, min_value: float | None = None, max_value: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if min_value is not None:
        value = max(min_value, value)
    if max_value is not None:
        value = min(max_value, value)
    return value


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw not in {"0", "false", "False", "no", "off"}


def env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    browserless_token: Optional[str] = None
    browserless_url: str = "https://production-sfo.browserless.io"
    browserql_proxy_country: str = "ca"
    browser_ws_endpoint: Optional[str] = None
    strategy: str = STRATEGY_LOCAL
    headless: bool = True

    idle_timeout_ms: int = 30000
    rate_limit_max_retries: int = 3
    rate_limit_backoff_ms: int = 2000
    usd_to_cad_rate: float = 1.36

    nav_timeout_ms: int = 30000
    wait_for_selector_timeout_ms: int = 8000
    remote_call_timeout_ms: int = 90000
    source_timeout_ms: int = 120000
    challenge_wait_ms: int = 15000
    max_concurrent_sources: int = 6

    catalog_target_count: int = 50
    trending_ttl_seconds: int = 6 * 60 * 60

    redis_url: Optional[str] = None

    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173"])

    @property
    def browserql_configured(self) -> bool:
        return bool(self.browserless_token)

    @property
    def uses_remote_protocol(self) -> bool:
        return self.strategy == STRATEGY_REMOTE

    @classmethod
    def from_env(cls) -> "Settings":
        strategy = (os.getenv("SCRAPE_STRATEGY") or "").strip().lower()
        token = os.getenv("BROWSERLESS_API_TOKEN") or None
        if strategy not in {STRATEGY_LOCAL, STRATEGY_REMOTE}:
            # BrowserQL is the default whenever a Browserless token is present.
            strategy = STRATEGY_REMOTE if token else STRATEGY_LOCAL
        return cls(
            browserless_token=token,
            browserless_url=os.getenv("BROWSERLESS_URL", cls.browserless_url),
            browserql_proxy_country=os.getenv("BROWSERQL_PROXY_COUNTRY", cls.browserql_proxy_country),
            browser_ws_endpoint=os.getenv("BROWSER_WS_ENDPOINT") or None,
            strategy=strategy,
            headless=env_bool("PLAYWRIGHT_HEADLESS", True),
            idle_timeout_ms=env_int("IDLE_TIMEOUT_MS", 30000, min_value=1000, max_value=600000),
            rate_limit_max_retries=env_int("RATE_LIMIT_MAX_RETRIES", 3, min_value=0, max_value=10),
            rate_limit_backoff_ms=env_int("RATE_LIMIT_BACKOFF_MS", 2000, min_value=100, max_value=60000),
            usd_to_cad_rate=env_float("USD_TO_CAD_RATE", 1.36, min_value=0.5, max_value=3.0),
            nav_timeout_ms=env_int("NAV_TIMEOUT_MS", 30000, min_value=5000, max_value=90000),
            wait_for_selector_timeout_ms=env_int("WAIT_FOR_SELECTOR_TIMEOUT_MS", 8000, min_value=1000, max_value=30000),
            remote_call_timeout_ms=env_int("REMOTE_CALL_TIMEOUT_MS", 90000, min_value=5000, max_value=300000),
            source_timeout_ms=env_int("SOURCE_TIMEOUT_MS", 120000, min_value=5000, max_value=600000),
            challenge_wait_ms=env_int("CHALLENGE_WAIT_MS", 15000, min_value=0, max_value=60000),
            max_concurrent_sources=env_int("MAX_CONCURRENT_SOURCES", 6, min_value=1, max_value=16),
            catalog_target_count=env_int("CATALOG_TARGET_COUNT", 50, min_value=5, max_value=120),
            trending_ttl_seconds=env_int("TRENDING_TTL_SECONDS", 6 * 60 * 60, min_value=60, max_value=7 * 24 * 60 * 60),
            redis_url=os.getenv("REDIS_URL") or None,
            cors_origins=env_list("CORS_ORIGINS", ["http://localhost:5173"]),
        )
