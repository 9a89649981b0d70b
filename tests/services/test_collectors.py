import json
import random

import httpx
import pytest

from app.clients.google_places import GooglePlacesClient
from app.models.discovery import BusinessSource, Geography
from app.services.discovery.collectors import (
    CollectionResult,
    FallbackCollector,
    GooglePlacesCollector,
    MockBusinessGenerator,
    SearchCache,
    build_search_queries,
    infer_industry,
    place_to_business,
)
from tests.helpers.factories import make_criteria


def _place(place_id: str, name: str, **extra):
    payload = {
        "id": place_id,
        "displayName": {"text": name},
        "formattedAddress": "1 Main St, Houston, TX 77002, USA",
        "addressComponents": [
            {"longText": "Houston", "shortText": "Houston", "types": ["locality"]},
            {"longText": "Texas", "shortText": "TX", "types": ["administrative_area_level_1"]},
            {"longText": "United States", "shortText": "US", "types": ["country"]},
        ],
        "location": {"latitude": 29.76, "longitude": -95.37},
        "rating": 4.5,
        "userRatingCount": 88,
        "types": ["hvac_contractor", "point_of_interest"],
        "businessStatus": "OPERATIONAL",
    }
    payload.update(extra)
    return payload


class _PlacesServer:
    """httpx handler that returns queued Places responses and records requests."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, payload = self.responses.pop(0)
        return httpx.Response(status, json=payload)


def _collector(server, sleeps, cache=None):
    http_client = httpx.Client(
        base_url="https://places.googleapis.com", transport=httpx.MockTransport(server)
    )
    client = GooglePlacesClient("test-key", http_client=http_client)
    return GooglePlacesCollector(
        client, cache=cache or SearchCache(60), query_delay_seconds=0.0, sleep=sleeps.append
    )


def test_build_search_queries_combines_industries_and_locations():
    criteria = make_criteria(
        industries=["HVAC", "Plumbing"],
        geography=Geography(states=["TX"], cities=["Houston", "Dallas"]),
    )

    assert build_search_queries(criteria) == [
        "HVAC in Houston, TX",
        "HVAC in Dallas, TX",
        "Plumbing in Houston, TX",
        "Plumbing in Dallas, TX",
    ]


def test_build_search_queries_edge_cases():
    assert build_search_queries(make_criteria(geography=Geography())) == []
    assert build_search_queries(
        make_criteria(industries=[], geography=Geography(states=["TX", "OK"]))
    ) == ["businesses in TX", "businesses in OK"]


def test_infer_industry_order():
    assert infer_industry(["dentist"], "plumber", "Dental Clinic") == "Dental Clinic"
    assert infer_industry(["dentist"], "plumber") == "Plumbing"
    assert infer_industry(["car_repair"]) == "Automotive"
    assert infer_industry(["storage_unit"]) == "Moving & Logistics"
    assert infer_industry(["zoo_keeper"]) == "Zoo Keeper"
    assert infer_industry([]) == "General Business"


def test_place_to_business_maps_fields():
    business = place_to_business(_place("abc", "Cool Air Co", websiteUri="https://coolair.example"))

    assert business.name == "Cool Air Co"
    assert business.place_id == "abc"
    assert (business.city, business.state, business.country) == ("Houston", "TX", "US")
    assert business.coordinates.lat == pytest.approx(29.76)
    assert business.industry == "HVAC"
    assert business.review_count == 88
    assert business.source is BusinessSource.GOOGLE_PLACES
    assert business.source_url == "https://www.google.com/maps/place/?q=place_id:abc"


def test_places_collector_runs_queries_with_delay_and_caches():
    server = _PlacesServer(
        [
            (200, {"places": [_place("a", "Alpha")]}),
            (200, {"places": [_place("b", "Bravo")]}),
            (200, {}),
        ]
    )
    sleeps: list[float] = []
    collector = _collector(server, sleeps)
    criteria = make_criteria(geography=Geography(states=["TX"], cities=["Houston", "Dallas", "Austin"]))

    result = collector.search(criteria, 9)

    assert [business.name for business in result.businesses] == ["Alpha", "Bravo"]
    assert result.api_calls == 3
    assert sleeps == [0.1, 0.1]
    body = json.loads(server.requests[0].content)
    assert body == {"textQuery": "HVAC in Houston, TX", "pageSize": 3, "languageCode": "en"}
    assert server.requests[0].headers["X-Goog-Api-Key"] == "test-key"
    assert "places.userRatingCount" in server.requests[0].headers["X-Goog-FieldMask"]

    cached = collector.search(criteria, 9)
    assert cached.businesses == result.businesses
    assert len(server.requests) == 3


def test_places_collector_skips_failed_queries():
    server = _PlacesServer(
        [
            (429, {"error": {"message": "quota"}}),
            (200, {"places": [_place("b", "Bravo")]}),
        ]
    )
    collector = _collector(server, [])
    criteria = make_criteria(geography=Geography(states=["TX"], cities=["Houston", "Dallas"]))

    result = collector.search(criteria, 10)

    assert [business.name for business in result.businesses] == ["Bravo"]
    assert result.api_calls == 1


def test_places_collector_unconfigured_returns_nothing():
    assert GooglePlacesCollector(None).search(make_criteria(), 10).businesses == []


def test_search_cache_expires_entries():
    now = [0.0]
    cache = SearchCache(10, time_source=lambda: now[0])
    criteria = make_criteria()
    key = SearchCache.build_key(criteria, 5)
    cache.set(key, "payload")

    assert cache.get(key) == "payload"
    assert SearchCache.build_key(make_criteria(industries=["HVAC"]), 5) == key
    now[0] = 10.0
    assert cache.get(key) is None


def test_search_cache_prunes_expired_entries_on_write():
    now = [0.0]
    cache = SearchCache(10, time_source=lambda: now[0])
    for city in ("Houston", "Dallas", "Austin"):
        criteria = make_criteria(geography=Geography(states=["TX"], cities=[city]))
        cache.set(SearchCache.build_key(criteria, 5), "stale")
    assert len(cache) == 3

    now[0] = 25.0
    fresh_key = SearchCache.build_key(make_criteria(), 10)
    cache.set(fresh_key, "fresh")

    assert len(cache) == 1
    assert cache.get(fresh_key) == "fresh"


def test_mock_generator_is_reproducible_and_in_range():
    criteria = make_criteria(industries=["HVAC"], geography=Geography(states=["CA"], cities=["Fresno"]))

    first = MockBusinessGenerator(random.Random(3)).generate(criteria, 5)
    second = MockBusinessGenerator(random.Random(3)).generate(criteria, 5)

    assert [b.model_dump(exclude={"fetched_at", "external_id"}) for b in first] == [
        b.model_dump(exclude={"fetched_at", "external_id"}) for b in second
    ]
    assert first[0].name == "Fresno HVAC Solutions 1"
    assert first[0].website == "https://www.fresnohvac1.com"
    assert first[0].state == "CA"
    for business in first:
        assert 3.5 <= business.rating <= 5.0
        assert 10 <= business.review_count < 210
        assert business.source is BusinessSource.MOCK
        assert business.phone.startswith("(")


def test_mock_generator_defaults_without_criteria():
    criteria = make_criteria(industries=[], geography=Geography())

    [business] = MockBusinessGenerator(random.Random(1)).generate(criteria, 1)

    assert business.state == "TX"
    assert business.city in {"Houston", "Dallas", "Austin", "San Antonio", "Fort Worth"}


class _FixedCollector:
    def __init__(self, count: int) -> None:
        self._count = count

    def is_configured(self) -> bool:
        return True

    def search(self, criteria, max_results):
        businesses = MockBusinessGenerator(random.Random(0)).generate(criteria, self._count)
        return CollectionResult(businesses=businesses, api_calls=2)


def test_fallback_tops_up_sparse_results():
    collector = FallbackCollector(_FixedCollector(1), MockBusinessGenerator(random.Random(5)))

    result = collector.search(make_criteria(), 10)

    assert result.used_mock_data is True
    assert len(result.businesses) == 10
    assert result.api_calls == 2


def test_fallback_keeps_real_results_when_enough():
    collector = FallbackCollector(_FixedCollector(4), MockBusinessGenerator(random.Random(5)))

    result = collector.search(make_criteria(), 10)

    assert result.used_mock_data is False
    assert len(result.businesses) == 4


def test_fallback_uses_mock_when_unconfigured():
    collector = FallbackCollector(GooglePlacesCollector(None), MockBusinessGenerator(random.Random(5)))

    result = collector.search(make_criteria(), 2)

    assert result.used_mock_data is True
    assert len(result.businesses) == 3
    assert result.api_calls == 0
