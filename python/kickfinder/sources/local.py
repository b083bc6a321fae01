from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote_plus

from playwright.async_api import Error as PlaywrightError, Page

from kickfinder import browser, cancellation
from kickfinder.cancellation import CancellationToken
from kickfinder.config import Settings
from kickfinder.errors import NotFound, RateLimited
from kickfinder.models import SourceResult
from kickfinder.sources.base import SourceScraper, build_source_result, normalize_url, parse_variants
from kickfinder.sources.profiles import template_id_from_href

logger = logging.getLogger(__name__)

FIND_PRODUCT_SCRIPT = r"""
({selector, sku, nameSelector, nameAttribute}) => {
  const wanted = (sku || '').toLowerCase().replace(/[^a-z0-9]/g, '');
  const links = Array.from(document.querySelectorAll(selector));
  const describe = (link) => {
    let name = nameAttribute ? (link.getAttribute(nameAttribute) || '') : '';
    if (!name && nameSelector) {
      const el = document.querySelector(nameSelector);
      name = el ? (el.textContent || '').trim() : '';
    }
    if (!name) name = (link.innerText || '').trim();
    return {href: link.getAttribute('href') || '', name};
  };
  if (wanted) {
    for (const link of links) {
      const href = (link.getAttribute('href') || '').toLowerCase().replace(/[^a-z0-9]/g, '');
      const label = nameAttribute ? (link.getAttribute(nameAttribute) || '') : '';
      if (href.includes(wanted) || label.toLowerCase().replace(/[^a-z0-9]/g, '').includes(wanted)) {
        return describe(link);
      }
    }
  }
  return links.length ? describe(links[0]) : null;
}
"""

SIZES_SCRIPT = r"""
({item, label, price, soldOut, name}) => {
  const rows = [];
  const seen = new Set();
  for (const el of Array.from(document.querySelectorAll(item))) {
    const sizeEl = el.querySelector(label);
    const priceEl = el.querySelector(price);
    const size = sizeEl ? (sizeEl.textContent || '').trim() : '';
    if (!size || seen.has(size)) continue;
    seen.add(size);
    rows.push({
      size,
      priceText: priceEl ? (priceEl.textContent || '').trim() : '',
      soldOut: soldOut ? !!el.querySelector(soldOut) : false,
    });
  }
  const heading = name ? document.querySelector(name) : null;
  const img = document.querySelector('main img[src^="http"], img[alt][src^="http"]');
  return {
    productName: heading ? (heading.textContent || '').trim() : '',
    imageUrl: img ? img.getAttribute('src') : '',
    sizes: rows,
  };
}
"""

FETCH_JSON_SCRIPT = r"""
async ({url, headers}) => {
  try {
    const response = await fetch(url, {method: 'GET', headers, credentials: 'include'});
    if (!response.ok) return {status: response.status, data: null};
    return {status: response.status, data: await response.json()};
  } catch (err) {
    return {status: 0, error: String(err), data: null};
  }
}
"""


class PageScraper(SourceScraper):
    """Scrapes one marketplace in a caller-owned Playwright tab."""

    def __init__(self, profile: Dict[str, Any], settings: Settings) -> None:
        self.profile = profile
        self.settings = settings
        self.source_id = profile["id"]
        self.name = profile["name"]

    async def scrape(self, tab: Optional[Page], target: str, token: Optional[CancellationToken]) -> Optional[SourceResult]:
        if tab is None:
            raise ValueError(f"{self.name} needs a browser tab in local mode")
        profile = self.profile
        search_url = profile["search_url"].format(query=quote_plus(target))

        await browser.goto(tab, search_url, token, timeout_ms=self.settings.nav_timeout_ms)
        await browser.wait_out_challenge(tab, token, bound_ms=self.settings.challenge_wait_ms, source=self.name)
        found_grid = await browser.wait_for_selector(
            tab,
            profile["result_link_selector"],
            token,
            timeout_ms=self.settings.wait_for_selector_timeout_ms,
        )
        if not found_grid:
            await cancellation.sleep(profile.get("settle_ms", 1500) / 1000.0, token, where=self.name)

        match = await browser.evaluate(tab, FIND_PRODUCT_SCRIPT, {
            "selector": profile["result_link_selector"],
            "sku": target,
            "nameSelector": profile.get("result_name_selector"),
            "nameAttribute": profile.get("result_name_attribute"),
        }, token)
        if not match or not match.get("href"):
            raise NotFound(f"{self.name}: no product for {target}")

        product_url = normalize_url(match["href"].split("?", 1)[0], profile["base_url"])
        logger.info("%s found %s", self.name, product_url)
        await browser.goto(tab, product_url, token, timeout_ms=self.settings.nav_timeout_ms)
        await browser.wait_out_challenge(tab, token, bound_ms=self.settings.challenge_wait_ms, source=self.name)
        await cancellation.sleep(profile.get("settle_ms", 1500) / 1000.0, token, where=self.name)

        if profile.get("variants_api"):
            rows = await self._fetch_variants(tab, match["href"], token)
            extracted = {"productName": match.get("name") or "", "imageUrl": "", "sizes": rows}
        else:
            extracted = await self._extract_sizes(tab, token)

        result = build_source_result(
            self.source_id,
            extracted["sizes"],
            currency=profile["currency"],
            product_url=product_url,
            usd_to_cad_rate=self.settings.usd_to_cad_rate,
            product_name=extracted.get("productName") or match.get("name") or "",
            image_url=extracted.get("imageUrl") or "",
        )
        logger.info("%s found %s sizes", self.name, len(result.sizes))
        return result

    async def _extract_sizes(self, tab: Page, token: Optional[CancellationToken]) -> Dict[str, Any]:
        profile = self.profile
        timeout_ms = self.settings.wait_for_selector_timeout_ms
        if profile.get("ready_selector"):
            await browser.wait_for_selector(tab, profile["ready_selector"], token, timeout_ms=timeout_ms)
        opener = profile.get("open_sizes_selector")
        if opener:
            cancellation.check_or_fail(token, f"{self.name} open sizes")
            try:
                await tab.click(opener, timeout=timeout_ms)
                await cancellation.sleep(1.0, token, where=self.name)
            except PlaywrightError as exc:
                logger.debug("%s size picker click failed: %s", self.name, exc)
        await browser.wait_for_selector(tab, profile["size_item_selector"], token, timeout_ms=timeout_ms)
        return await browser.evaluate(tab, SIZES_SCRIPT, {
            "item": profile["size_item_selector"],
            "label": profile["size_label_selector"],
            "price": profile["size_price_selector"],
            "soldOut": profile.get("sold_out_selector"),
            "name": profile.get("name_selector"),
        }, token)

    async def _fetch_variants(self, tab: Page, href: str, token: Optional[CancellationToken]) -> List[Dict[str, Any]]:
        api_url = self.profile["variants_api"].format(template_id=template_id_from_href(href))
        response = await browser.evaluate(tab, FETCH_JSON_SCRIPT, {
            "url": api_url,
            "headers": self.profile.get("variants_api_headers") or {},
        }, token)
        status = response.get("status")
        if status == 429:
            raise RateLimited(f"{self.name} variants API rate limit (429)")
        if response.get("data") is None:
            logger.warning("%s variants API failed: %s", self.name, response.get("error") or status)
            return []
        return parse_variants(response["data"], self.profile["currency"])
