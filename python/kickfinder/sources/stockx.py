"""
StockX: the catalog (search, trending) and the product page that anchors the
all-prices flow with its style id.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlencode

from playwright.async_api import Error as PlaywrightError, Page

from kickfinder import browser, cancellation
from kickfinder.browserql import BrowserQLClient
from kickfinder.cancellation import CancellationToken
from kickfinder.config import Settings
from kickfinder.models import CatalogProduct, SourceResult, to_canonical
from kickfinder.sources.base import SourceScraper, build_source_result, parse_price, price_currency
from kickfinder.sources.remote import SRC_PATTERN, _mutation, _texts

logger = logging.getLogger(__name__)

SOURCE_ID = "stockx"
BASE_URL = "https://stockx.com"
TILE_SELECTOR = "[data-testid='ProductTile']"
TRAITS_SELECTOR = "[data-component='ProductTraits'], [data-testid='product-traits']"
SIZE_MENU_SELECTOR = "[data-testid='pdp-size-selector'], [data-testid='size-selector-button'], button[aria-haspopup='menu']"
SIZE_BUTTON_SELECTOR = "[data-testid='size-selector-button']"
STYLE_PATTERN = re.compile(r"Style</span>\s*<p[^>]*>([A-Z0-9\-]+)</p>", re.IGNORECASE)
SIZE_LABEL_PATTERN = re.compile(r"([\d.]+)$")

BRAND_KEYWORDS = [
    ("Jordan", ("jordan",)),
    ("Nike", ("nike", "dunk", "air force", "air max")),
    ("Adidas", ("adidas", "yeezy", "samba", "campus")),
    ("New Balance", ("new balance", "550", "2002")),
    ("Puma", ("puma",)),
    ("Converse", ("converse",)),
    ("Vans", ("vans",)),
    ("ASICS", ("asics",)),
]

CATALOG_SCRIPT = r"""
(limit) => {
  const tiles = Array.from(document.querySelectorAll("[data-testid='ProductTile']"));
  const rows = [];
  for (const tile of tiles) {
    if (rows.length >= limit) break;
    const link = tile.querySelector("[data-testid='productTile-ProductSwitcherLink']") || tile.querySelector('a[href^="/"]');
    const href = link ? link.getAttribute('href') : '';
    if (!href) continue;
    const title = tile.querySelector("[data-testid='product-tile-title']") || tile.querySelector('p');
    const ask = tile.querySelector("[data-testid='product-tile-lowest-ask-amount']");
    const img = tile.querySelector('img');
    rows.push({
      href,
      name: title ? (title.textContent || '').trim() : '',
      priceText: ask ? ((ask.textContent || '').trim() || (ask.getAttribute('aria-label') || '').replace('Lowest Ask ', '')) : '',
      srcset: img ? (img.getAttribute('srcset') || '') : '',
      src: img ? (img.getAttribute('src') || img.getAttribute('data-src') || '') : '',
    });
  }
  return rows;
}
"""

PRODUCT_SCRIPT = r"""
() => {
  let styleId = null;
  const traits = document.querySelectorAll("[data-component='product-trait'], [data-testid='product-detail-trait']");
  for (const trait of Array.from(traits)) {
    const label = trait.querySelector('span');
    if (label && (label.textContent || '').trim().toLowerCase() === 'style') {
      const value = trait.querySelector('p');
      styleId = value ? (value.textContent || '').trim() : null;
      break;
    }
  }
  const sizes = [];
  for (const button of Array.from(document.querySelectorAll("[data-testid='size-selector-button']"))) {
    const label = button.querySelector("[data-testid='selector-label']");
    const price = button.querySelector("[data-testid='selector-secondary-label']");
    sizes.push({
      label: label ? (label.textContent || '').trim() : '',
      priceText: price ? (price.textContent || '').trim() : '',
    });
  }
  const heading = document.querySelector('h1');
  const img = document.querySelector("[data-component='MediaContainer'] img, [data-component='SingleImage'] img, img[data-testid='product-image']");
  return {
    styleId,
    productName: heading ? (heading.textContent || '').trim() : '',
    srcset: img ? (img.getAttribute('srcset') || '') : '',
    src: img ? (img.getAttribute('src') || '') : '',
    sizes,
    html: styleId ? '' : document.body.innerHTML,
  };
}
"""


def catalog_url(query: Optional[str] = None, sort: Optional[str] = None) -> str:
    params = {"category": "sneakers"}
    if query:
        params["s"] = query
    if sort:
        params["sort"] = sort
    return f"{BASE_URL}/search?{urlencode(params)}"


def extract_brand(name: str) -> str:
    lowered = name.lower()
    for brand, keywords in BRAND_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return brand
    return "Sneaker"


def slug_to_name(slug: str) -> str:
    return " ".join(word.capitalize() for word in slug.split("-") if word)


def generated_image_url(slug: str) -> str:
    product = "-".join(word.capitalize() for word in slug.split("-") if word)
    return f"https://images.stockx.com/360/{product}/Images/{product}/Lv2/img01.jpg?w=576&q=60&dpr=3&h=384"


def best_image(srcset: str, src: str) -> str:
    candidates = [part.strip() for part in (srcset or "").split(",") if part.strip()]
    for density in ("3x", "2x"):
        for candidate in candidates:
            if candidate.endswith(density):
                return candidate.rsplit(" ", 1)[0].replace("&amp;", "&")
    return (src or "").replace("&amp;", "&")


def coerce_catalog(rows: Iterable[Dict[str, Any]], *, limit: int, usd_to_cad_rate: float) -> List[CatalogProduct]:
    products: List[CatalogProduct] = []
    seen = set()
    stamp = int(time.time() * 1000)
    for index, row in enumerate(rows):
        href = (row.get("href") or "").strip()
        if not href or href == "/" or "#" in href:
            continue
        slug = href.lstrip("/").split("?", 1)[0]
        if slug in seen:
            continue
        seen.add(slug)

        name = (row.get("name") or "").strip() or slug_to_name(slug)
        if len(name) < 3:
            continue
        price_text = row.get("priceText") or ""
        amount = parse_price(price_text)
        ask = to_canonical(amount, price_currency(price_text, "CAD"), usd_to_cad_rate) if amount else 0

        products.append(CatalogProduct(
            id=f"stockx-{index}-{stamp}",
            name=name[:150],
            brand=extract_brand(name),
            sku=slug.upper().replace("-", " ")[:30],
            image_url=best_image(row.get("srcset") or "", row.get("src") or "") or generated_image_url(slug),
            stockx_url=f"{BASE_URL}/{slug}",
            stockx_lowest_ask=ask,
        ))
        if len(products) >= limit:
            break
    return products


async def fetch_catalog(
    tab: Page,
    settings: Settings,
    *,
    query: Optional[str] = None,
    sort: Optional[str] = None,
    token: Optional[CancellationToken] = None,
) -> List[CatalogProduct]:
    url = catalog_url(query, sort)
    logger.info("StockX catalog: %s", url)
    await browser.goto(tab, url, token, timeout_ms=settings.nav_timeout_ms)
    await browser.wait_out_challenge(tab, token, bound_ms=settings.challenge_wait_ms, source="StockX")
    if not await browser.wait_for_selector(tab, TILE_SELECTOR, token, timeout_ms=settings.wait_for_selector_timeout_ms):
        logger.info("StockX product tiles not found, settling")
        await cancellation.sleep(1.0, token, where="StockX")

    for index in range(3):
        await browser.evaluate(tab, "(i) => window.scrollTo(0, (i + 1) * window.innerHeight)", index, token)
        await cancellation.sleep(0.4, token, where="StockX scroll")
    await browser.evaluate(tab, "() => window.scrollTo(0, document.body.scrollHeight)", None, token)
    await cancellation.sleep(0.5, token, where="StockX scroll")

    rows = await browser.evaluate(tab, CATALOG_SCRIPT, settings.catalog_target_count, token)
    products = coerce_catalog(rows or [], limit=settings.catalog_target_count, usd_to_cad_rate=settings.usd_to_cad_rate)
    logger.info("StockX extracted %s products", len(products))
    return products


def product_result(extracted: Dict[str, Any], product_url: str, settings: Settings) -> SourceResult:
    style_id = (extracted.get("styleId") or "").strip() or None
    if not style_id:
        match = STYLE_PATTERN.search(extracted.get("html") or "")
        style_id = match.group(1) if match else None

    rows = []
    for size in extracted.get("sizes") or []:
        label_match = SIZE_LABEL_PATTERN.search(size.get("label") or "")
        if label_match:
            rows.append({"size": label_match.group(1), "priceText": size.get("priceText") or ""})

    return build_source_result(
        SOURCE_ID,
        rows,
        currency="CAD",
        product_url=product_url,
        usd_to_cad_rate=settings.usd_to_cad_rate,
        product_name=extracted.get("productName") or "",
        image_url=best_image(extracted.get("srcset") or "", extracted.get("src") or ""),
        style_id=style_id,
    )


class StockXScraper(SourceScraper):
    source_id = SOURCE_ID
    name = "StockX"

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def scrape(self, tab: Optional[Page], target: str, token: Optional[CancellationToken]) -> Optional[SourceResult]:
        if tab is None:
            raise ValueError("StockX needs a browser tab in local mode")
        settings = self.settings
        await browser.goto(tab, target, token, timeout_ms=settings.nav_timeout_ms, wait_until="networkidle")
        await browser.wait_out_challenge(tab, token, bound_ms=settings.challenge_wait_ms, source="StockX")
        if not await browser.wait_for_selector(tab, TRAITS_SELECTOR, token, timeout_ms=settings.wait_for_selector_timeout_ms):
            logger.info("StockX product traits not found, continuing")

        cancellation.check_or_fail(token, "StockX size menu")
        try:
            await tab.click(SIZE_MENU_SELECTOR, timeout=settings.wait_for_selector_timeout_ms)
            await cancellation.sleep(1.0, token, where="StockX")
        except PlaywrightError as exc:
            logger.debug("StockX size menu click failed: %s", exc)
        await browser.wait_for_selector(tab, SIZE_BUTTON_SELECTOR, token, timeout_ms=5000)
        await cancellation.sleep(0.8, token, where="StockX")

        extracted = await browser.evaluate(tab, PRODUCT_SCRIPT, None, token)
        result = product_result(extracted or {}, target, settings)
        logger.info("StockX style id %s, %s sizes", result.style_id or "NOT FOUND", len(result.sizes))
        return result


class StockXRemoteScraper(SourceScraper):
    source_id = SOURCE_ID
    name = "StockX"

    def __init__(self, client: BrowserQLClient, settings: Settings) -> None:
        self.client = client
        self.settings = settings

    async def scrape(self, tab: Any, target: str, token: Optional[CancellationToken]) -> Optional[SourceResult]:
        variables = {
            "productUrl": target,
            "traits": TRAITS_SELECTOR,
            "sizeMenu": SIZE_MENU_SELECTOR,
            "sizeLabel": f"{SIZE_BUTTON_SELECTOR} [data-testid='selector-label']",
            "sizePrice": f"{SIZE_BUTTON_SELECTOR} [data-testid='selector-secondary-label']",
        }
        steps = [
            "goto(url: $productUrl, waitUntil: networkIdle) { status }",
            "waitForTraits: waitForSelector(selector: $traits, timeout: 10000) { time }",
            "traitsHtml: querySelector(selector: $traits) { html: outerHTML }",
            "clickSizes: click(selector: $sizeMenu) { x y }",
            "waitForSizes: waitForTimeout(time: 1500) { time }",
            "sizeTexts: querySelectorAll(selector: $sizeLabel) { text: innerText }",
            "priceTexts: querySelectorAll(selector: $sizePrice) { text: innerText }",
            "productName: querySelector(selector: \"h1\") { text: innerText }",
            "productImage: querySelector(selector: \"[data-component='MediaContainer'] img, [data-component='SingleImage'] img\") { html: outerHTML }",
        ]
        data = await self.client.execute(_mutation("ScrapeStockX", variables, steps), variables, token=token, label="StockX")

        labels = _texts(data.get("sizeTexts"))
        prices = _texts(data.get("priceTexts"))
        image_match = SRC_PATTERN.search((data.get("productImage") or {}).get("html") or "")
        extracted = {
            "productName": ((data.get("productName") or {}).get("text") or "").strip(),
            "src": image_match.group(1) if image_match else "",
            "sizes": [
                {"label": label, "priceText": prices[index] if index < len(prices) else ""}
                for index, label in enumerate(labels)
            ],
            "html": (data.get("traitsHtml") or {}).get("html") or "",
        }
        return product_result(extracted, target, self.settings)
