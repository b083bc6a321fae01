"""
End-to-end adapter runs against a scripted Playwright page and a mocked
BrowserQL endpoint.
"""

import asyncio
import json

import httpx
import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from kickfinder import browser
from kickfinder.browserql import BrowserQLClient
from kickfinder.cancellation import CancellationToken
from kickfinder.config import Settings
from kickfinder.errors import Aborted, Blocked, NotFound, RateLimited, ScrapeTimeout
from kickfinder.retry import RetryingConnector
from kickfinder.sources.local import PageScraper
from kickfinder.sources.profiles import MARKETPLACES_BY_ID
from kickfinder.sources.remote import BrowserQLScraper
from kickfinder.sources.stockx import StockXRemoteScraper

STOCKX_URL = "https://stockx.com/air-jordan-1-retro-high-og-chicago-lost-and-found"
REMOTE_SETTINGS = Settings(browserless_token="secret", strategy="remote")


class FakePage:
    """Answers ``evaluate`` calls in order; the last title repeats forever."""

    def __init__(self, *, evaluations=None, titles=None, timeout_urls=(), missing_selectors=()):
        self.evaluations = list(evaluations or [])
        self.titles = list(titles or [""])
        self.timeout_urls = timeout_urls
        self.missing_selectors = set(missing_selectors)
        self.url = "about:blank"
        self.visited = []
        self.evaluated = []
        self.clicked = []

    async def goto(self, url, wait_until=None, timeout=None):
        if any(part in url for part in self.timeout_urls):
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded")
        self.visited.append(url)
        self.url = url

    async def title(self):
        if len(self.titles) > 1:
            return self.titles.pop(0)
        return self.titles[0]

    async def wait_for_selector(self, selector, timeout=None):
        if selector in self.missing_selectors:
            raise PlaywrightTimeoutError(f"waiting for {selector}")

    async def evaluate(self, script, arg=None):
        self.evaluated.append(arg)
        return self.evaluations.pop(0)

    async def click(self, selector, timeout=None):
        self.clicked.append(selector)


async def no_sleep(seconds, token):
    return None


def quick_profile(source_id):
    return dict(MARKETPLACES_BY_ID[source_id], settle_ms=0, open_sizes_selector=None)


def browserql_client(handler):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    connector = RetryingConnector(max_retries=0, sleep=no_sleep, label="BrowserQL")
    return BrowserQLClient(REMOTE_SETTINGS, http_client=http_client, connector=connector), http_client


@pytest.fixture
def fast_challenge_poll(monkeypatch):
    monkeypatch.setattr(browser, "CHALLENGE_POLL_MS", 10)


@pytest.mark.asyncio
async def test_goto_timeout_becomes_scrape_timeout():
    page = FakePage(timeout_urls=["goat.com"])

    with pytest.raises(ScrapeTimeout):
        await browser.goto(page, "https://www.goat.com/en-ca/search?query=x", None, timeout_ms=1000)


@pytest.mark.asyncio
async def test_goto_checks_the_token_first():
    token = CancellationToken.create()
    token.signal()
    page = FakePage()

    with pytest.raises(Aborted):
        await browser.goto(page, "https://www.goat.com/", token, timeout_ms=1000)
    assert page.visited == []


@pytest.mark.asyncio
async def test_wait_for_selector_timeout_is_a_soft_miss():
    page = FakePage(missing_selectors=["h1"])
    assert await browser.wait_for_selector(page, "h1", None, timeout_ms=100) is False
    assert await browser.wait_for_selector(page, "main", None, timeout_ms=100) is True


@pytest.mark.asyncio
async def test_challenge_that_clears_is_waited_out(fast_challenge_poll):
    page = FakePage(titles=["Just a moment...", "Just a moment...", "Air Jordan 1 | GOAT"])

    await browser.wait_out_challenge(page, None, bound_ms=1000, source="GOAT")

    assert page.titles == ["Air Jordan 1 | GOAT"]


@pytest.mark.asyncio
async def test_unresolved_challenge_becomes_timeout(fast_challenge_poll):
    page = FakePage(titles=["Just a moment..."])

    with pytest.raises(ScrapeTimeout) as info:
        await browser.wait_out_challenge(page, None, bound_ms=50, source="GOAT")

    assert isinstance(info.value.__cause__, Blocked)
    assert "just a moment" in str(info.value)


@pytest.mark.asyncio
async def test_challenge_url_marker_is_detected():
    page = FakePage(titles=["GOAT"])
    page.url = "https://www.goat.com/captcha?return=/sneakers"
    assert await browser.detect_challenge(page) == "captcha"


@pytest.mark.asyncio
async def test_challenge_wait_stops_on_cancellation(fast_challenge_poll):
    page = FakePage(titles=["Attention Required! | Cloudflare"])
    token = CancellationToken.create()
    asyncio.get_running_loop().call_later(0.03, token.signal)

    with pytest.raises(Aborted):
        await browser.wait_out_challenge(page, token, bound_ms=5000, source="GOAT")


@pytest.mark.asyncio
async def test_page_scraper_reads_sizes_from_the_product_page():
    page = FakePage(evaluations=[
        {"href": "/sneakers/air-jordan-1-retro-high-og-dz5485-612?utm=x", "name": "Air Jordan 1"},
        {
            "productName": "Air Jordan 1 Retro High OG 'Chicago Lost & Found'",
            "imageUrl": "https://image.goat.com/aj1.png",
            "sizes": [
                {"size": "10", "priceText": "CA$310", "soldOut": False},
                {"size": "9", "priceText": "CA$295", "soldOut": False},
                {"size": "11", "priceText": "", "soldOut": True},
            ],
        },
    ])
    scraper = PageScraper(quick_profile("goat"), Settings())

    result = await scraper.scrape(page, "DZ5485-612", CancellationToken.create())

    assert page.visited == [
        "https://www.goat.com/en-ca/search?query=DZ5485-612&pageNumber=1",
        "https://www.goat.com/sneakers/air-jordan-1-retro-high-og-dz5485-612",
    ]
    assert page.evaluated[0]["sku"] == "DZ5485-612"
    assert [entry.size for entry in result.sizes] == ["9", "10"]
    assert result.lowest_price == 295
    assert result.product_name.startswith("Air Jordan 1 Retro High OG")
    assert result.image_url == "https://image.goat.com/aj1.png"


@pytest.mark.asyncio
async def test_page_scraper_without_search_hit_is_not_found():
    page = FakePage(evaluations=[None], missing_selectors=[MARKETPLACES_BY_ID["goat"]["result_link_selector"]])
    scraper = PageScraper(quick_profile("goat"), Settings())

    with pytest.raises(NotFound):
        await scraper.scrape(page, "ZZ0000-000", CancellationToken.create())
    assert len(page.visited) == 1


@pytest.mark.asyncio
async def test_page_scraper_reads_the_variants_api():
    page = FakePage(evaluations=[
        {"href": "/air-jordan-1-retro-high-og-dz5485-612", "name": "Air Jordan 1 Retro High OG"},
        {"status": 200, "data": {"productVariants": [
            {"size": 9, "lowestPriceCents": {"amount": 40500, "currency": "CAD"}},
            {"size": 10, "lowestPriceCents": {"amount": 39000, "currency": "CAD"}},
            {"size": 11, "lowestPriceCents": {"amount": 30000, "currency": "USD"}},
        ]}},
    ])
    scraper = PageScraper(quick_profile("flightclub"), Settings())

    result = await scraper.scrape(page, "DZ5485-612", None)

    assert "productTemplateId=air-jordan-1-retro-high-og-dz5485-612" in page.evaluated[1]["url"]
    assert [entry.size for entry in result.sizes] == ["9", "10"]
    assert result.lowest_price == 390
    assert result.product_url == "https://www.flightclub.com/air-jordan-1-retro-high-og-dz5485-612"


@pytest.mark.asyncio
async def test_page_scraper_variants_api_rate_limit():
    page = FakePage(evaluations=[
        {"href": "/air-jordan-1-retro-high-og-dz5485-612", "name": ""},
        {"status": 429, "data": None},
    ])
    scraper = PageScraper(quick_profile("flightclub"), Settings())

    with pytest.raises(RateLimited):
        await scraper.scrape(page, "DZ5485-612", None)


@pytest.mark.asyncio
async def test_browserql_scraper_reads_size_labels():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content)["variables"])
        return httpx.Response(200, json={"data": {
            "sizeTexts": [{"text": "9"}, {"text": "10"}, {"text": "10.5"}],
            "priceTexts": [{"text": "CA$295"}, {"text": "CA$310"}],
            "productName": {"text": " Air Jordan 1 Retro High OG "},
            "productImage": {"html": '<img alt="AJ1" src="https://image.goat.com/aj1.png">'},
            "currentUrl": {"url": "https://www.goat.com/sneakers/air-jordan-1-dz5485-612?size=9"},
        }})

    client, http_client = browserql_client(handler)
    scraper = BrowserQLScraper(MARKETPLACES_BY_ID["goat"], client, REMOTE_SETTINGS)

    result = await scraper.scrape(None, "DZ5485-612", CancellationToken.create())

    assert seen[0]["searchUrl"] == "https://www.goat.com/en-ca/search?query=DZ5485-612&pageNumber=1"
    assert [entry.size for entry in result.sizes] == ["9", "10"]
    assert result.lowest_price == 295
    assert result.product_url == "https://www.goat.com/sneakers/air-jordan-1-dz5485-612"
    assert result.product_name == "Air Jordan 1 Retro High OG"
    assert result.image_url == "https://image.goat.com/aj1.png"
    await http_client.aclose()


@pytest.mark.asyncio
async def test_browserql_scraper_empty_page_is_not_found():
    client, http_client = browserql_client(lambda request: httpx.Response(200, json={"data": {}}))
    scraper = BrowserQLScraper(MARKETPLACES_BY_ID["goat"], client, REMOTE_SETTINGS)

    with pytest.raises(NotFound):
        await scraper.scrape(None, "ZZ0000-000", None)
    await http_client.aclose()


@pytest.mark.asyncio
async def test_browserql_scraper_variants_flow():
    requests = []

    def handler(request):
        requests.append((request.method, request.url.host))
        if request.method == "POST":
            return httpx.Response(200, json={"data": {"links": [
                {"html": '<a data-qa="ProductItemsUrl" href="/air-jordan-1-retro-high-og-dz5485-612">'},
            ]}})
        assert request.url.params["productTemplateId"] == "air-jordan-1-retro-high-og-dz5485-612"
        assert request.headers["x-goat-app"] == "sneakers"
        return httpx.Response(200, json={"productVariants": [
            {"size": 9, "lowestPriceCents": {"amount": 40500, "currency": "CAD"}},
        ]})

    client, http_client = browserql_client(handler)
    scraper = BrowserQLScraper(MARKETPLACES_BY_ID["flightclub"], client, REMOTE_SETTINGS)

    result = await scraper.scrape(None, "DZ5485-612", None)

    assert [method for method, _ in requests] == ["POST", "GET"]
    assert result.lowest_price == 405
    assert result.product_url == "https://www.flightclub.com/air-jordan-1-retro-high-og-dz5485-612"
    await http_client.aclose()


@pytest.mark.asyncio
async def test_browserql_scraper_without_search_hit_is_not_found():
    client, http_client = browserql_client(lambda request: httpx.Response(200, json={"data": {"links": []}}))
    scraper = BrowserQLScraper(MARKETPLACES_BY_ID["flightclub"], client, REMOTE_SETTINGS)

    with pytest.raises(NotFound):
        await scraper.scrape(None, "ZZ0000-000", None)
    await http_client.aclose()


@pytest.mark.asyncio
async def test_stockx_remote_scraper_reads_style_id_and_asks():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content)["variables"])
        return httpx.Response(200, json={"data": {
            "traitsHtml": {"html": '<div><span>Style</span><p class="chakra-text">DZ5485-612</p></div>'},
            "sizeTexts": [{"text": "US M 9"}, {"text": "US M 10"}, {"text": "All"}],
            "priceTexts": [{"text": "CA$410"}, {"text": "CA$398"}, {"text": "CA$398"}],
            "productName": {"text": "Jordan 1 Retro High OG Chicago Lost and Found"},
            "productImage": {"html": '<img src="https://images.stockx.com/aj1.jpg?w=576&amp;h=384">'},
        }})

    client, http_client = browserql_client(handler)
    scraper = StockXRemoteScraper(client, REMOTE_SETTINGS)

    result = await scraper.scrape(None, STOCKX_URL, CancellationToken.create())

    assert seen[0]["productUrl"] == STOCKX_URL
    assert result.style_id == "DZ5485-612"
    assert [entry.size for entry in result.sizes] == ["9", "10"]
    assert result.lowest_price == 398
    assert result.image_url == "https://images.stockx.com/aj1.jpg?w=576&h=384"
    await http_client.aclose()


@pytest.mark.asyncio
async def test_stockx_remote_scraper_without_traits_has_no_style_id():
    client, http_client = browserql_client(lambda request: httpx.Response(200, json={"data": {}}))
    scraper = StockXRemoteScraper(client, REMOTE_SETTINGS)

    result = await scraper.scrape(None, STOCKX_URL, None)

    assert result.style_id is None
    assert result.sizes == []
    await http_client.aclose()
