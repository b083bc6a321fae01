"""
Groups size-level listings from every marketplace into comparable products.

The grouping key prefers the style id (SKU). Without one it falls back to a
name heuristic (first five cleaned words plus brand). The heuristic is lossy:
two colorways of one silhouette can share a key when the names are vague.
"""

from __future__ import annotations

import re
from collections import OrderedDict
from typing import Dict, Iterable, List, Mapping, Optional

from kickfinder.models import AggregatedListing, Listing, SourceResult, round_half_up

SIZE_TOKEN_PATTERN = re.compile(r"size\s*:?\s*\d+\.?\d*", re.IGNORECASE)
PARENTHETICAL_PATTERN = re.compile(r"\([^)]*\)")
CONDITION_PATTERN = re.compile(r"\b(?:ds|deadstock|brand new|bnib|vnds|pads)\b", re.IGNORECASE)
NAME_WORD_LIMIT = 5


def group_key(name: str, identifier: str = "", brand: str = "") -> str:
    identifier = (identifier or "").strip()
    if len(identifier) > 3:
        return re.sub(r"[^a-z0-9]", "", identifier.lower())

    cleaned = (name or "").lower()
    cleaned = SIZE_TOKEN_PATTERN.sub("", cleaned)
    cleaned = PARENTHETICAL_PATTERN.sub("", cleaned)
    cleaned = CONDITION_PATTERN.sub("", cleaned)
    cleaned = re.sub(r"[^a-z0-9]", " ", cleaned)
    words = re.sub(r"\s+", " ", cleaned).strip().split(" ")
    joined = "".join(words[:NAME_WORD_LIMIT])
    brand_part = re.sub(r"[^a-z]", "", (brand or "").lower())
    return f"{brand_part}-{joined}"


def flatten_results(
    results: Mapping[str, Optional[SourceResult]],
    *,
    name: str = "",
    brand: str = "",
    identifier: str = "",
) -> List[Listing]:
    listings: List[Listing] = []
    for source_id, result in results.items():
        if result is None:
            continue
        for size in result.sizes:
            if not size.available:
                continue
            listings.append(Listing(
                source=source_id,
                size=size.size,
                price=size.price,
                url=size.url,
                name=result.product_name or name,
                brand=brand,
                identifier=result.style_id or identifier,
                price_local=size.price_local,
                currency=size.currency,
                image_url=result.image_url,
            ))
    return listings


def _build_group(key: str, members: List[Listing]) -> AggregatedListing:
    base = members[0]
    image_source = next((member for member in members if member.image_url), base)
    prices = [member.price for member in members]

    best_deal = members[0]
    for member in members[1:]:
        if member.price < best_deal.price:
            best_deal = member

    return AggregatedListing(
        group_key=key,
        name=base.name,
        brand=base.brand,
        identifier=base.identifier,
        image_url=image_source.image_url,
        lowest_price=min(prices),
        highest_price=max(prices),
        average_price=round_half_up(sum(prices) / len(prices)),
        best_deal=best_deal,
        members=sorted(members, key=lambda member: member.price),
    )


def aggregate_listings(listings: Iterable[Listing]) -> List[AggregatedListing]:
    groups: Dict[str, List[Listing]] = OrderedDict()
    for listing in listings:
        key = group_key(listing.name, listing.identifier, listing.brand)
        groups.setdefault(key, []).append(listing)

    aggregated = [_build_group(key, members) for key, members in groups.items()]
    return sorted(aggregated, key=lambda group: (-len(group.members), group.lowest_price))
