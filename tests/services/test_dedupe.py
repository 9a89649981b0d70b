import itertools

from app.services.discovery.dedupe import dedupe, dedupe_key, merge_businesses
from tests.helpers.factories import make_business


def test_dedupe_key_prefers_provider_id():
    assert dedupe_key(make_business(place_id="ChIJ-abc_1")) == "places:chijabc1"
    assert dedupe_key(make_business(external_id="mock-1")) == "places:mock1"
    assert dedupe_key(make_business("Joe's Plumbing, LLC")) == "name:joesplumbingllc:houston:tx"


def test_merge_fills_gaps_without_overwriting():
    primary = make_business(website=None, phone="(713) 555-0000", email=None)
    incoming = make_business(website="https://joe.example", phone="(999) 555-9999", email="a@b.co")

    merged = merge_businesses(primary, incoming)

    assert merged.website == "https://joe.example"
    assert merged.phone == "(713) 555-0000"
    assert merged.email == "a@b.co"


def test_merge_takes_rating_pair_only_with_more_reviews():
    primary = make_business(rating=4.0, review_count=10)

    more = merge_businesses(primary, make_business(rating=4.8, review_count=50))
    tie = merge_businesses(primary, make_business(rating=4.8, review_count=10))
    fewer = merge_businesses(primary, make_business(rating=4.8, review_count=5))

    assert (more.rating, more.review_count) == (4.8, 50)
    assert (tie.rating, tie.review_count) == (4.0, 10)
    assert (fewer.rating, fewer.review_count) == (4.0, 10)


def test_dedupe_collapses_duplicates_in_first_seen_order():
    businesses = [
        make_business("Alpha", place_id="p1", website=None),
        make_business("Bravo"),
        make_business("Alpha Duplicate", place_id="p1", website="https://alpha.example"),
        make_business("bravo!"),
        make_business("Charlie", city="Dallas"),
    ]

    result = dedupe(businesses)

    assert [business.name for business in result] == ["Alpha", "Bravo", "Charlie"]
    assert result[0].website == "https://alpha.example"


def test_dedupe_is_idempotent():
    businesses = [make_business("Alpha"), make_business("alpha"), make_business("Bravo")]

    once = dedupe(businesses)

    assert dedupe(once) == once


def test_dedupe_count_is_order_independent():
    businesses = [
        make_business("Alpha", place_id="p1"),
        make_business("Alpha Again", place_id="p1", review_count=500),
        make_business("Bravo"),
        make_business("BRAVO"),
        make_business("Charlie", city="Austin"),
    ]

    counts = {len(dedupe(list(order))) for order in itertools.permutations(businesses)}

    assert counts == {3}
