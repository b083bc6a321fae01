from kickfinder.sources.base import SourceScraper
from kickfinder.sources.registry import SKU_SOURCE_IDS, SOURCE_IDS, build_adapters, get_adapter, sku_adapters

__all__ = [
    "SKU_SOURCE_IDS",
    "SOURCE_IDS",
    "SourceScraper",
    "build_adapters",
    "get_adapter",
    "sku_adapters",
]
