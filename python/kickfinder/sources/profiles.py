from __future__ import annotations

from typing import Any, Dict, List

# Marketplaces looked up by style id (SKU). Selectors must not contain double
# quotes; the BrowserQL mutations pass them through as GraphQL variables.
MARKETPLACES: List[Dict[str, Any]] = [
    {
        "id": "goat",
        "name": "GOAT",
        "base_url": "https://www.goat.com",
        "search_url": "https://www.goat.com/en-ca/search?query={query}&pageNumber=1",
        "result_link_selector": "a[href*='/sneakers/']",
        "ready_selector": "[data-qa='buy_bar_desktop']",
        "open_sizes_selector": "[data-qa='buy_bar_desktop'] .swiper-wrapper",
        "size_item_selector": "[data-qa='buy_bar_item_desktop']",
        "size_label_selector": "[data-qa^='buy_bar_size_']",
        "size_price_selector": "[data-qa^='buy_bar_price_size_']",
        "sold_out_selector": "[data-qa='buy_bar_oos']",
        "name_selector": "h1[data-qa='product_display_name'], h1",
        "currency": "CAD",
        "settle_ms": 2000,
    },
    {
        "id": "flightclub",
        "name": "Flight Club",
        "base_url": "https://www.flightclub.com",
        "search_url": "https://www.flightclub.com/catalogsearch/result?query={query}",
        "result_link_selector": "a[data-qa='ProductItemsUrl']",
        "result_name_selector": "[data-qa='ProductItemTitle']",
        "variants_api": (
            "https://www.flightclub.com/web-api/v1/product_variants"
            "?countryCode=CA&productTemplateId={template_id}&currency=CAD"
        ),
        "variants_api_headers": {
            "Accept": "application/json",
            "x-goat-app": "sneakers",
            "x-goat-sales-channel": "2",
        },
        "currency": "CAD",
        "settle_ms": 1500,
    },
    {
        "id": "stadiumgoods",
        "name": "Stadium Goods",
        "base_url": "https://www.stadiumgoods.com",
        "search_url": "https://www.stadiumgoods.com/search?q={query}",
        "result_link_selector": "a.tvg_grid_item_VkuMWq_item_link",
        "result_name_attribute": "data-name",
        "ready_selector": ".ProductForm__select__list",
        "size_item_selector": ".ProductForm__select__button.js-product-variant",
        "size_label_selector": ".ProductForm__select__variant__name",
        "size_price_selector": ".ProductForm__select__variant__price",
        "name_selector": "h1",
        "currency": "USD",
        "settle_ms": 1500,
    },
    {
        "id": "kickscrew",
        "name": "KicksCrew",
        "base_url": "https://www.kickscrew.com",
        "search_url": "https://www.kickscrew.com/en-CA/search?q={query}",
        "result_link_selector": "a[href*='/products/']",
        "ready_selector": "#size-picker, [data-testid='size-picker-selected-info']",
        "open_sizes_selector": "button[aria-haspopup='menu']",
        "size_item_selector": "li[data-testid^='size-option-']",
        "size_label_selector": ".font-semibold",
        "size_price_selector": ".text-sm",
        "name_selector": "h1",
        "currency": "CAD",
        "settle_ms": 2000,
    },
]

MARKETPLACES_BY_ID: Dict[str, Dict[str, Any]] = {profile["id"]: profile for profile in MARKETPLACES}


def template_id_from_href(href: str) -> str:
    path = href.split("?", 1)[0]
    if "://" in path:
        path = "/" + path.split("://", 1)[1].split("/", 1)[-1]
    return path.strip("/")
