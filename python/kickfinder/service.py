from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional

from kickfinder import browser
from kickfinder.aggregator import aggregate_listings, flatten_results
from kickfinder.browserql import BrowserQLClient
from kickfinder.cache import TRENDING_KEY, TTLCache, cache_from_settings, cache_get, cache_set
from kickfinder.cancellation import CancellationToken
from kickfinder.config import Settings
from kickfinder.errors import Aborted, NotFound, ScrapeError, ScrapeTimeout, friendly_message
from kickfinder.models import AggregatedListing, CatalogProduct, SourceResult, StreamEvent, utc_timestamp
from kickfinder.orchestrator import ABORTED_MESSAGE, ScraperOrchestrator
from kickfinder.retry import connector_from_settings
from kickfinder.session_pool import SessionPool
from kickfinder.sources import stockx
from kickfinder.sources.base import SourceScraper
from kickfinder.sources.registry import build_adapters, get_adapter, sku_adapters

logger = logging.getLogger(__name__)

MIN_STYLE_ID_LENGTH = 3
TRENDING_SORT = "most-active"


class PriceService:
    """
    The operations the web layer exposes.

    Catalog lookups (search, trending) always drive the pooled browser in
    shared mode. Price lookups use the pooled browser exclusively in local
    mode and stateless BrowserQL calls in remote mode.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        pool: Optional[SessionPool] = None,
        adapters: Optional[Dict[str, SourceScraper]] = None,
        cache: Optional[TTLCache] = None,
        client: Optional[BrowserQLClient] = None,
    ) -> None:
        self.settings = settings
        self.client = client
        if client is None and settings.uses_remote_protocol:
            self.client = BrowserQLClient(settings)
        self.pool = pool or SessionPool(
            lambda: browser.launch_browser(settings),
            idle_timeout=settings.idle_timeout_ms / 1000.0,
            connector=connector_from_settings(settings, label="browser connect"),
        )
        self.adapters = adapters if adapters is not None else build_adapters(settings, self.client)
        self.cache = cache
        self.remote = settings.uses_remote_protocol
        self.task_timeout = settings.source_timeout_ms / 1000.0
        self.orchestrator = ScraperOrchestrator(
            sku_adapters(self.adapters),
            remote=self.remote,
            max_concurrency=settings.max_concurrent_sources,
            task_timeout=self.task_timeout,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PriceService":
        settings = settings or Settings.from_env()
        return cls(settings, cache=cache_from_settings(settings))

    def status(self) -> Dict[str, Any]:
        return {
            "strategy": self.settings.strategy,
            "browser": self.pool.state.value,
            "sources": list(self.adapters),
        }

    async def search(self, query: str, token: Optional[CancellationToken] = None) -> List[CatalogProduct]:
        return await self._catalog(query=query, token=token)

    async def trending(self, token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        cached = await asyncio.to_thread(cache_get, self.cache, TRENDING_KEY)
        if cached is not None:
            try:
                payload = json.loads(cached)
                payload["meta"]["cached"] = True
                return payload
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("ignoring unreadable trending cache entry: %s", exc)

        products = await self._catalog(sort=TRENDING_SORT, token=token)
        payload = {
            "products": [product.to_dict() for product in products],
            "meta": {"total": len(products), "timestamp": utc_timestamp(), "cached": False},
        }
        if products:
            encoded = json.dumps(payload).encode("utf-8")
            await asyncio.to_thread(cache_set, self.cache, TRENDING_KEY, encoded, self.settings.trending_ttl_seconds)
        return payload

    async def _catalog(
        self,
        *,
        query: Optional[str] = None,
        sort: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[CatalogProduct]:
        async with self.pool.shared(token) as session:
            async with session.open_tab("stockx catalog") as tab:
                return await stockx.fetch_catalog(tab, self.settings, query=query, sort=sort, token=token)

    async def product_all_prices(
        self,
        product_url: str,
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        StockX first, for its own asks and the style id, then every SKU source.

        Yields the StockX ``update`` (with ``styleId``), one ``update`` per
        SKU source in completion order, then ``done`` or ``error``.
        """
        started = time.perf_counter()
        session = None
        try:
            if not self.remote:
                session = await self.pool.acquire_exclusive(token)

            anchor = await self._scrape_one(get_adapter(self.adapters, stockx.SOURCE_ID), product_url, token, session)
            style_id = anchor.style_id if anchor else None
            yield StreamEvent.update(stockx.SOURCE_ID, anchor, styleId=style_id)

            if not style_id or len(style_id) < MIN_STYLE_ID_LENGTH:
                yield StreamEvent.error("Could not find a style id on the StockX page")
                return

            logger.info("fanning out style id %s", style_id)
            async with aclosing(self.orchestrator.stream(style_id, token, session, started=started)) as events:
                async for event in events:
                    yield event
        except Aborted:
            yield StreamEvent.error(ABORTED_MESSAGE)
        except NotFound as exc:
            yield StreamEvent.error(str(exc) or "Product not found on StockX")
        except ScrapeError as exc:
            logger.warning("all-prices failed: %s", exc)
            yield StreamEvent.error(friendly_message(exc))
        except Exception as exc:
            logger.exception("all-prices failed")
            yield StreamEvent.error(friendly_message(exc))
        finally:
            if session is not None:
                await self.pool.release()

    async def price_by_source(
        self,
        source_id: str,
        identifier: str,
        token: Optional[CancellationToken] = None,
    ) -> Optional[SourceResult]:
        adapter = get_adapter(self.adapters, source_id)
        if self.remote:
            return await self._scrape_one(adapter, identifier, token, None)
        async with self.pool.shared(token) as session:
            return await self._scrape_one(adapter, identifier, token, session)

    async def compare(self, identifier: str, token: Optional[CancellationToken] = None) -> List[AggregatedListing]:
        if self.remote:
            results = await self.orchestrator.collect(identifier, token)
        else:
            async with self.pool.shared(token) as session:
                results = await self.orchestrator.collect(identifier, token, session)
        listings = flatten_results(results, identifier=identifier)
        return aggregate_listings(listings)

    async def _scrape_one(
        self,
        adapter: SourceScraper,
        target: str,
        token: Optional[CancellationToken],
        session: Any,
    ) -> Optional[SourceResult]:
        async def run() -> Optional[SourceResult]:
            if session is None:
                return await adapter.scrape(None, target, token)
            async with session.open_tab(adapter.source_id) as tab:
                return await adapter.scrape(tab, target, token)

        try:
            return await asyncio.wait_for(run(), self.task_timeout)
        except asyncio.TimeoutError as exc:
            raise ScrapeTimeout(f"{adapter.name or adapter.source_id} timed out") from exc

    async def close(self) -> None:
        await self.pool.close()
        if self.client is not None:
            await self.client.aclose()
