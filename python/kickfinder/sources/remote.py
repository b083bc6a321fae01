from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote_plus

from kickfinder.browserql import BrowserQLClient
from kickfinder.cancellation import CancellationToken
from kickfinder.config import Settings
from kickfinder.errors import NotFound
from kickfinder.models import SourceResult
from kickfinder.sources.base import SourceScraper, build_source_result, normalize_url, parse_variants
from kickfinder.sources.profiles import template_id_from_href

logger = logging.getLogger(__name__)

HREF_PATTERN = re.compile(r'href="([^"]+)"')
SRC_PATTERN = re.compile(r'src="([^"]+)"')


def _mutation(name: str, variables: Dict[str, Any], steps: List[str]) -> str:
    declared = ", ".join(f"${key}: String!" for key in variables)
    body = "\n    ".join(steps)
    return f"mutation {name}({declared}) {{\n    {body}\n}}"


def build_product_query(profile: Dict[str, Any], search_url: str) -> Tuple[str, Dict[str, Any]]:
    """Search, open the first hit and read every size/price label in one call."""
    item = profile["size_item_selector"]
    variables: Dict[str, Any] = {
        "searchUrl": search_url,
        "resultLink": profile["result_link_selector"],
        "sizeItem": item,
        "sizeLabel": f"{item} {profile['size_label_selector']}",
        "sizePrice": f"{item} {profile['size_price_selector']}",
        "productName": profile.get("name_selector") or "h1",
    }
    steps = [
        "viewport(width: 1366, height: 768) { width }",
        "goto(url: $searchUrl, waitUntil: networkIdle) { status }",
        "waitForResults: waitForSelector(selector: $resultLink, timeout: 10000) { time }",
        "clickResult: click(selector: $resultLink) { x y }",
        "waitForProduct: waitForTimeout(time: 3000) { time }",
    ]
    if profile.get("ready_selector"):
        variables["ready"] = profile["ready_selector"]
        steps.append("waitForReady: waitForSelector(selector: $ready, timeout: 10000) { time }")
    if profile.get("open_sizes_selector"):
        variables["openSizes"] = profile["open_sizes_selector"]
        steps.append("clickSizes: click(selector: $openSizes) { x y }")
        steps.append("waitForSizes: waitForTimeout(time: 1500) { time }")
    steps += [
        "waitForItems: waitForSelector(selector: $sizeItem, timeout: 5000) { time }",
        "sizeTexts: querySelectorAll(selector: $sizeLabel) { text: innerText }",
        "priceTexts: querySelectorAll(selector: $sizePrice) { text: innerText }",
        "productName: querySelector(selector: $productName) { text: innerText }",
        "productImage: querySelector(selector: \"img[alt]\") { html: outerHTML }",
        "currentUrl: url { url }",
    ]
    return _mutation(f"Scrape{profile['id'].title()}", variables, steps), variables


def build_search_query(profile: Dict[str, Any], search_url: str) -> Tuple[str, Dict[str, Any]]:
    variables = {"searchUrl": search_url, "resultLink": profile["result_link_selector"]}
    steps = [
        "goto(url: $searchUrl, waitUntil: networkIdle) { status }",
        "waitForSelector(selector: $resultLink, timeout: 5000) { time }",
        "links: querySelectorAll(selector: $resultLink) { html: outerHTML }",
    ]
    return _mutation(f"Search{profile['id'].title()}", variables, steps), variables


def _texts(items: Any) -> List[str]:
    return [str((item or {}).get("text") or "").strip() for item in (items or [])]


def rows_from_labels(size_texts: List[str], price_texts: List[str]) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    seen = set()
    for index, size in enumerate(size_texts):
        if not size or size in seen:
            continue
        seen.add(size)
        price_text = price_texts[index] if index < len(price_texts) else ""
        rows.append({"size": size, "priceText": price_text, "soldOut": not price_text})
    return rows


class BrowserQLScraper(SourceScraper):
    """Scrapes one marketplace through independent BrowserQL calls; needs no tab."""

    def __init__(self, profile: Dict[str, Any], client: BrowserQLClient, settings: Settings) -> None:
        self.profile = profile
        self.client = client
        self.settings = settings
        self.source_id = profile["id"]
        self.name = profile["name"]

    async def scrape(self, tab: Any, target: str, token: Optional[CancellationToken]) -> Optional[SourceResult]:
        search_url = self.profile["search_url"].format(query=quote_plus(target))
        if self.profile.get("variants_api"):
            return await self._scrape_variants(search_url, target, token)

        mutation, variables = build_product_query(self.profile, search_url)
        data = await self.client.execute(mutation, variables, token=token, label=self.name)
        rows = rows_from_labels(_texts(data.get("sizeTexts")), _texts(data.get("priceTexts")))
        product_url = ((data.get("currentUrl") or {}).get("url") or "").split("?", 1)[0]
        if not rows and not product_url:
            raise NotFound(f"{self.name}: no product for {target}")

        image_html = (data.get("productImage") or {}).get("html") or ""
        image_match = SRC_PATTERN.search(image_html)
        result = build_source_result(
            self.source_id,
            rows,
            currency=self.profile["currency"],
            product_url=product_url,
            usd_to_cad_rate=self.settings.usd_to_cad_rate,
            product_name=((data.get("productName") or {}).get("text") or "").strip(),
            image_url=image_match.group(1) if image_match else "",
        )
        logger.info("%s BrowserQL extracted %s sizes", self.name, len(result.sizes))
        return result

    async def _scrape_variants(self, search_url: str, target: str, token: Optional[CancellationToken]) -> SourceResult:
        mutation, variables = build_search_query(self.profile, search_url)
        data = await self.client.execute(mutation, variables, token=token, label=self.name)
        links = data.get("links") or []
        href_match = HREF_PATTERN.search((links[0] or {}).get("html") or "") if links else None
        if not href_match:
            raise NotFound(f"{self.name}: no product for {target}")

        href = href_match.group(1)
        product_url = normalize_url(href.split("?", 1)[0], self.profile["base_url"])
        api_url = self.profile["variants_api"].format(template_id=template_id_from_href(href))
        payload = await self.client.get_json(
            api_url,
            headers=self.profile.get("variants_api_headers") or {},
            token=token,
            label=self.name,
        )
        return build_source_result(
            self.source_id,
            parse_variants(payload, self.profile["currency"]) if payload is not None else [],
            currency=self.profile["currency"],
            product_url=product_url,
            usd_to_cad_rate=self.settings.usd_to_cad_rate,
        )
