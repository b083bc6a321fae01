from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

CANONICAL_CURRENCY = "CAD"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def to_canonical(amount: float, currency: str, usd_to_cad_rate: float) -> int:
    if currency.upper() == CANONICAL_CURRENCY:
        return round_half_up(amount)
    return round_half_up(amount * usd_to_cad_rate)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class SizePrice:
    size: str
    price_local: float
    price: int
    currency: str
    url: str
    available: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "price": self.price_local,
            "priceCAD": self.price,
            "currency": self.currency,
            "url": self.url,
            "available": self.available,
        }


@dataclass(frozen=True)
class SourceResult:
    source_id: str
    sizes: List[SizePrice]
    lowest_price: int
    available: bool
    product_name: str = ""
    product_url: str = ""
    image_url: str = ""
    style_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source_id,
            "productName": self.product_name,
            "productUrl": self.product_url,
            "imageUrl": self.image_url,
            "styleId": self.style_id,
            "sizes": [size.to_dict() for size in self.sizes],
            "lowestPrice": self.lowest_price,
            "available": self.available,
        }


@dataclass(frozen=True)
class CatalogProduct:
    id: str
    name: str
    brand: str
    sku: str
    image_url: str
    stockx_url: str
    stockx_lowest_ask: int
    colorway: str = ""
    retail_price: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "brand": self.brand,
            "colorway": self.colorway,
            "sku": self.sku,
            "imageUrl": self.image_url,
            "retailPrice": self.retail_price,
            "stockxUrl": self.stockx_url,
            "stockxLowestAsk": self.stockx_lowest_ask,
        }


@dataclass(frozen=True)
class Listing:
    source: str
    size: str
    price: int
    url: str
    name: str
    brand: str = ""
    identifier: str = ""
    price_local: Optional[float] = None
    currency: str = CANONICAL_CURRENCY
    image_url: str = ""


@dataclass(frozen=True)
class AggregatedListing:
    group_key: str
    name: str
    brand: str
    identifier: str
    image_url: str
    lowest_price: int
    highest_price: int
    average_price: int
    best_deal: Listing
    members: List[Listing]

    @property
    def price_range(self) -> str:
        return f"${self.lowest_price} - ${self.highest_price}"

    @property
    def source_count(self) -> int:
        return len({member.source for member in self.members})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groupKey": self.group_key,
            "name": self.name,
            "brand": self.brand,
            "sku": self.identifier,
            "imageUrl": self.image_url,
            "lowestPrice": self.lowest_price,
            "highestPrice": self.highest_price,
            "averagePrice": self.average_price,
            "priceRange": self.price_range,
            "bestDeal": asdict(self.best_deal),
            "listings": [asdict(member) for member in self.members],
        }


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class ScrapeTask:
    source_id: str
    target: str
    status: TaskStatus = TaskStatus.PENDING
    result: Optional[SourceResult] = None
    error: Optional[str] = None
    tab: Any = field(default=None, repr=False)
    started: bool = False

    @property
    def finished(self) -> bool:
        return self.status in {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.ABORTED}


EVENT_UPDATE = "update"
EVENT_DONE = "done"
EVENT_ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    kind: str
    data: Dict[str, Any]

    @classmethod
    def update(cls, source: str, result: Optional[SourceResult], **extra: Any) -> "StreamEvent":
        payload: Dict[str, Any] = {"source": source, "result": result.to_dict() if result else None}
        payload.update(extra)
        return cls(EVENT_UPDATE, payload)

    @classmethod
    def done(cls, duration_ms: int) -> "StreamEvent":
        return cls(EVENT_DONE, {"durationMs": duration_ms, "timestamp": utc_timestamp()})

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(EVENT_ERROR, {"message": message})

    @property
    def terminal(self) -> bool:
        return self.kind in {EVENT_DONE, EVENT_ERROR}

    def to_sse(self) -> str:
        return f"event: {self.kind}\ndata: {json.dumps(self.data, default=str)}\n\n"
