"""
In-memory stand-ins for the browser session and the marketplace adapters.

Nothing here touches the network or launches a browser.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

import pytest

from kickfinder import cancellation
from kickfinder.config import Settings
from kickfinder.models import CatalogProduct, SourceResult
from kickfinder.sources.base import SourceScraper, build_source_result


def make_result(source_id: str, prices=None, *, style_id: Optional[str] = None, name: str = "Air Jordan 1 Retro High OG") -> SourceResult:
    prices = prices if prices is not None else {"9": 200}
    rows = [{"size": size, "price": price, "currency": "CAD"} for size, price in prices.items()]
    return build_source_result(
        source_id,
        rows,
        currency="CAD",
        product_url=f"https://{source_id}.example/product",
        usd_to_cad_rate=1.36,
        product_name=name,
        style_id=style_id,
    )


def catalog_product(index: int) -> CatalogProduct:
    return CatalogProduct(
        id=f"stockx-{index}",
        name=f"Nike Dunk Low {index}",
        brand="Nike",
        sku=f"NIKE DUNK LOW {index}",
        image_url="",
        stockx_url=f"https://stockx.com/nike-dunk-low-{index}",
        stockx_lowest_ask=150,
    )


class FakeTab:
    def __init__(self, label: str) -> None:
        self.label = label


class FakeSession:
    def __init__(self) -> None:
        self.connected = True
        self.close_count = 0
        self.tabs_opened = 0
        self.tabs_closed = 0

    def is_connected(self) -> bool:
        return self.connected

    @asynccontextmanager
    async def open_tab(self, label: str = ""):
        self.tabs_opened += 1
        try:
            yield FakeTab(label)
        finally:
            self.tabs_closed += 1

    async def close(self) -> None:
        self.close_count += 1
        self.connected = False


class FakeAdapter(SourceScraper):
    def __init__(self, source_id: str, *, delay: float = 0.0, result=None, exc: Optional[BaseException] = None) -> None:
        self.source_id = source_id
        self.name = source_id.title()
        self.delay = delay
        self.result = result if result is not None else make_result(source_id)
        self.exc = exc
        self.calls: List[str] = []
        self.tabs: List[object] = []
        self.finished = False

    async def scrape(self, tab, target, token):
        self.calls.append(target)
        self.tabs.append(tab)
        await cancellation.sleep(self.delay, token, where=self.source_id, slice_seconds=0.01)
        if self.exc is not None:
            raise self.exc
        self.finished = True
        return self.result


class FakeLauncher:
    """Counts launches; each launch returns a fresh FakeSession."""

    def __init__(self, *, delay: float = 0.0, fail_times: int = 0, exc: Optional[BaseException] = None) -> None:
        self.delay = delay
        self.fail_times = fail_times
        self.exc = exc or RuntimeError("connect refused")
        self.launches = 0
        self.sessions: List[FakeSession] = []

    async def __call__(self) -> FakeSession:
        self.launches += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.launches <= self.fail_times:
            raise self.exc
        session = FakeSession()
        self.sessions.append(session)
        return session


@pytest.fixture
def settings():
    return Settings(idle_timeout_ms=1000, source_timeout_ms=5000, max_concurrent_sources=4)


@pytest.fixture
def fake_session():
    return FakeSession()
