from __future__ import annotations

import logging
from typing import Dict, List, Optional

from kickfinder.browserql import BrowserQLClient
from kickfinder.config import Settings
from kickfinder.errors import UnknownSource
from kickfinder.sources.base import SourceScraper
from kickfinder.sources.local import PageScraper
from kickfinder.sources.profiles import MARKETPLACES
from kickfinder.sources.remote import BrowserQLScraper
from kickfinder.sources.stockx import SOURCE_ID as STOCKX_ID, StockXRemoteScraper, StockXScraper

logger = logging.getLogger(__name__)

SKU_SOURCE_IDS = [profile["id"] for profile in MARKETPLACES]
SOURCE_IDS = [STOCKX_ID] + SKU_SOURCE_IDS


def build_adapters(settings: Settings, client: Optional[BrowserQLClient] = None) -> Dict[str, SourceScraper]:
    """One adapter per source, all local-browser or all BrowserQL."""
    if settings.uses_remote_protocol:
        if client is None:
            client = BrowserQLClient(settings)
        adapters: List[SourceScraper] = [StockXRemoteScraper(client, settings)]
        adapters += [BrowserQLScraper(profile, client, settings) for profile in MARKETPLACES]
    else:
        adapters = [StockXScraper(settings)]
        adapters += [PageScraper(profile, settings) for profile in MARKETPLACES]
    logger.info("%s source adapters (%s)", len(adapters), settings.strategy)
    return {adapter.source_id: adapter for adapter in adapters}


def get_adapter(adapters: Dict[str, SourceScraper], source_id: str) -> SourceScraper:
    try:
        return adapters[source_id]
    except KeyError:
        raise UnknownSource(source_id) from None


def sku_adapters(adapters: Dict[str, SourceScraper]) -> List[SourceScraper]:
    """Adapters that look a product up by style id, StockX excluded."""
    return [adapter for source_id, adapter in adapters.items() if source_id != STOCKX_ID]
