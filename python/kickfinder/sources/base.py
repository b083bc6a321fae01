from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from kickfinder.cancellation import CancellationToken
from kickfinder.models import SizePrice, SourceResult, to_canonical

PRICE_PATTERN = re.compile(r"\$?\s*([0-9]{1,3}(?:,[0-9]{3})+|[0-9]+)(?:\.(\d{2}))?")
SIZE_NUMBER_PATTERN = re.compile(r"(\d+(?:\.\d+)?)")


def parse_price(price_text: str) -> Optional[float]:
    """
    Extracts the first price-looking token from text.
    Examples:
      "CA$1,249" -> 1249.0
      "$189.99" -> 189.99
      "Sold Out" -> None
    """
    if not price_text:
        return None
    match = PRICE_PATTERN.search(price_text)
    if not match:
        return None
    whole = match.group(1).replace(",", "")
    cents = match.group(2) or "00"
    return float(f"{whole}.{cents}")


def price_currency(price_text: str, default: str) -> str:
    text = (price_text or "").upper()
    if "CA$" in text or "C$" in text or "CAD" in text:
        return "CAD"
    if "US$" in text or "USD" in text:
        return "USD"
    return default


def size_sort_key(size: str) -> tuple:
    match = SIZE_NUMBER_PATTERN.search(size)
    if not match:
        return (1, 0.0, size)
    return (0, float(match.group(1)), size)


def normalize_url(href: str, base_url: str) -> str:
    if href.startswith("http://") or href.startswith("https://"):
        return href
    if href.startswith("/"):
        return f"{base_url}{href}"
    return f"{base_url}/{href}"


def parse_variants(payload: Any, currency: str = "CAD") -> List[Dict[str, Any]]:
    """Rows from a GOAT-style ``product_variants`` JSON payload."""
    if isinstance(payload, dict):
        variants = payload.get("productVariants") or []
    else:
        variants = payload or []
    rows: List[Dict[str, Any]] = []
    for variant in variants:
        lowest = variant.get("lowestPriceCents") or {}
        amount = lowest.get("amount")
        if lowest.get("currency") != currency or not amount:
            continue
        rows.append({"size": str(variant.get("size")), "price": round(amount / 100), "currency": currency})
    return rows


def build_source_result(
    source_id: str,
    raw_sizes: Iterable[Dict[str, Any]],
    *,
    currency: str,
    product_url: str,
    usd_to_cad_rate: float,
    product_name: str = "",
    image_url: str = "",
    style_id: Optional[str] = None,
) -> SourceResult:
    """
    Normalizes raw ``{size, priceText | price, soldOut}`` rows into a result.

    Keeps the lowest canonical price per size and orders sizes numerically.
    """
    best: Dict[str, SizePrice] = {}
    for raw in raw_sizes:
        size = str(raw.get("size") or "").strip()
        if not size or raw.get("soldOut"):
            continue
        price_text = str(raw.get("priceText") or "")
        amount = raw.get("price")
        if amount is None:
            amount = parse_price(price_text)
        if amount is None or amount <= 0:
            continue
        row_currency = raw.get("currency") or price_currency(price_text, currency)
        entry = SizePrice(
            size=size,
            price_local=float(amount),
            price=to_canonical(float(amount), row_currency, usd_to_cad_rate),
            currency=row_currency,
            url=f"{product_url}?size={size}" if product_url else "",
            available=True,
        )
        existing = best.get(size)
        if existing is None or entry.price < existing.price:
            best[size] = entry

    sizes: List[SizePrice] = sorted(best.values(), key=lambda entry: size_sort_key(entry.size))
    lowest = min((entry.price for entry in sizes), default=0)
    return SourceResult(
        source_id=source_id,
        sizes=sizes,
        lowest_price=lowest,
        available=bool(sizes),
        product_name=product_name,
        product_url=product_url,
        image_url=image_url,
        style_id=style_id,
    )


class SourceScraper(ABC):
    """
    One marketplace adapter.

    ``tab`` is a Playwright page owned by the caller in local-browser mode and
    ``None`` in remote-protocol mode. Raises ``NotFound`` when the marketplace
    has no matching product.
    """

    source_id: str = ""
    name: str = ""

    @abstractmethod
    async def scrape(self, tab: Any, target: str, token: Optional[CancellationToken]) -> Optional[SourceResult]:
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.source_id!r})"
