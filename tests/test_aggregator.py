from conftest import make_result
from kickfinder.aggregator import aggregate_listings, flatten_results, group_key
from kickfinder.models import Listing


def listing(source, size, price, *, name="Air Jordan 1 Retro High OG Chicago", identifier="", brand="Jordan"):
    return Listing(
        source=source,
        size=size,
        price=price,
        url=f"https://{source}.example/{size}",
        name=name,
        brand=brand,
        identifier=identifier,
    )


def test_identifier_wins_over_name():
    assert group_key("anything at all", "DZ5485-612", "Nike") == "dz5485612"


def test_short_identifier_falls_back_to_name():
    key = group_key("Nike Dunk Low Panda", "DD1", "Nike")
    assert key == "nike-nikedunklowpanda"


def test_name_cleanup_drops_size_parenthetical_and_condition():
    noisy = group_key("Nike Dunk Low Panda (2021) Size 10.5 DS", "", "Nike")
    clean = group_key("Nike Dunk Low Panda", "", "Nike")
    assert noisy == clean


def test_condition_words_only_match_whole_words():
    assert group_key("Adidas Padsole Runner", "", "Adidas") == "adidas-adidaspadsolerunner"


def test_only_first_five_words_count():
    key = group_key("one two three four five six seven", "", "Brand 1")
    assert key == "brand-onetwothreefourfive"


def test_best_deal_across_sources_sharing_a_key():
    listings = [
        listing("a", "9", 150, identifier="DZ5485-612"),
        listing("a", "9.5", 160, identifier="DZ5485-612"),
        listing("b", "9", 140, identifier="DZ5485-612"),
    ]

    groups = aggregate_listings(listings)

    assert len(groups) == 1
    group = groups[0]
    assert group.lowest_price == 140
    assert group.highest_price == 160
    assert group.average_price == 150
    assert (group.best_deal.source, group.best_deal.size) == ("b", "9")
    assert [member.price for member in group.members] == [140, 150, 160]
    assert group.source_count == 2
    assert group.price_range == "$140 - $160"


def test_single_listing_group():
    group = aggregate_listings([listing("goat", "10", 233)])[0]
    assert group.lowest_price == group.highest_price == group.average_price == 233
    assert group.best_deal.source == "goat"


def test_average_rounds_half_up():
    listings = [listing("a", "9", 100, identifier="SKU-1234"), listing("b", "9", 101, identifier="SKU-1234")]
    assert aggregate_listings(listings)[0].average_price == 101


def test_ties_keep_first_encountered_listing_as_best_deal():
    listings = [
        listing("first", "9", 120, identifier="SKU-1234"),
        listing("second", "9", 120, identifier="SKU-1234"),
    ]
    group = aggregate_listings(listings)[0]
    assert group.best_deal.source == "first"
    assert [member.source for member in group.members] == ["first", "second"]


def test_groups_rank_by_size_then_lowest_price():
    listings = [
        listing("a", "9", 300, identifier="SOLO-0001"),
        listing("a", "9", 250, identifier="PAIR-0001"),
        listing("b", "9", 260, identifier="PAIR-0001"),
        listing("c", "9", 90, identifier="CHEAP-0001"),
    ]

    keys = [group.group_key for group in aggregate_listings(listings)]

    assert keys == ["pair0001", "cheap0001", "solo0001"]


def test_aggregation_is_deterministic():
    listings = [
        listing("goat", "9", 210, identifier="DZ5485-612"),
        listing("kickscrew", "9", 205, identifier="DZ5485-612"),
        listing("stadiumgoods", "10", 205, name="Nike Dunk Low Panda", brand="Nike"),
        listing("flightclub", "10", 199, name="Nike Dunk Low Panda (W)", brand="Nike"),
    ]

    first = aggregate_listings(listings)
    second = aggregate_listings(listings)

    assert [(group.group_key, group.best_deal) for group in first] == [(group.group_key, group.best_deal) for group in second]


def test_name_heuristic_can_merge_distinct_colorways():
    # Known approximation: past five words the colorway is dropped.
    listings = [
        listing("goat", "9", 250, name="Air Jordan 1 Retro High OG Chicago"),
        listing("kickscrew", "9", 230, name="Air Jordan 1 Retro High OG Bred"),
    ]

    groups = aggregate_listings(listings)

    assert len(groups) == 1
    assert groups[0].best_deal.source == "kickscrew"


def test_flatten_results_skips_missing_sources_and_keeps_style_id():
    results = {
        "goat": make_result("goat", {"9": 210, "10": 220}, style_id="DZ5485-612"),
        "kickscrew": None,
        "flightclub": make_result("flightclub", {"9": 205}),
    }

    listings = flatten_results(results, identifier="DZ5485-612")

    assert len(listings) == 3
    assert {entry.identifier for entry in listings} == {"DZ5485-612"}
    assert {entry.source for entry in listings} == {"goat", "flightclub"}
    groups = aggregate_listings(listings)
    assert len(groups) == 1
    assert groups[0].best_deal.source == "flightclub"
