"""Business data collectors: Google Places with a synthetic fallback."""

from __future__ import annotations

import json
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Final, Protocol

from app.clients.google_places import GooglePlacesClient, GooglePlacesError
from app.config import settings
from app.models.discovery import (
    BusinessSource,
    Coordinates,
    RawBusinessData,
    TargetingCriteria,
    now_ms,
)
from app.observability.metrics import metrics

logger = logging.getLogger(__name__)

MAX_QUERIES: Final[int] = 3
MAX_INDUSTRIES: Final[int] = 5
MAX_LOCATIONS: Final[int] = 3
MIN_QUERY_DELAY_SECONDS: Final[float] = 0.1
MIN_REAL_RESULTS: Final[int] = 3

DEFAULT_MOCK_INDUSTRIES: Final[tuple[str, ...]] = (
    "Manufacturing",
    "Healthcare",
    "Technology",
    "Retail",
    "Construction",
)
DEFAULT_MOCK_CITIES: Final[tuple[str, ...]] = (
    "Houston",
    "Dallas",
    "Austin",
    "San Antonio",
    "Fort Worth",
)
DEFAULT_MOCK_STATE: Final[str] = "TX"

PLACE_TYPE_INDUSTRIES: Final[dict[str, str]] = {
    "plumber": "Plumbing",
    "electrician": "Electrical",
    "hvac_contractor": "HVAC",
    "roofing_contractor": "Roofing",
    "general_contractor": "Construction",
    "restaurant": "Restaurant",
    "store": "Retail",
    "health": "Healthcare",
    "doctor": "Healthcare",
    "dentist": "Healthcare",
    "car_dealer": "Automotive",
    "car_repair": "Automotive",
    "lawyer": "Legal Services",
    "accounting": "Financial Services",
    "bank": "Financial Services",
    "real_estate_agency": "Real Estate",
    "insurance_agency": "Insurance",
    "moving_company": "Moving & Logistics",
    "storage": "Moving & Logistics",
    "gym": "Fitness",
    "spa": "Wellness",
    "hotel": "Hospitality",
    "travel_agency": "Travel",
    "school": "Education",
    "university": "Education",
    "church": "Religious",
    "park": "Recreation",
}


@dataclass
class CollectionResult:
    businesses: list[RawBusinessData] = field(default_factory=list)
    api_calls: int = 0
    used_mock_data: bool = False


class BusinessCollector(Protocol):
    """Contract shared by real and synthetic business sources."""

    def is_configured(self) -> bool:
        ...

    def search(self, criteria: TargetingCriteria, max_results: int) -> CollectionResult:
        ...


class SearchCache:
    """Thread-safe TTL cache for collector results."""

    def __init__(
        self,
        ttl_seconds: float | None = None,
        *,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = (
            ttl_seconds
            if ttl_seconds is not None
            else settings.discovery_search_cache_ttl_seconds
        )
        self._time = time_source
        self._entries: dict[str, tuple[float, CollectionResult]] = {}
        self._lock = Lock()

    @staticmethod
    def build_key(
        criteria: TargetingCriteria, max_results: int, page_token: str | None = None
    ) -> str:
        return json.dumps(
            {
                "industries": sorted(criteria.industries),
                "cities": sorted(criteria.geography.cities),
                "states": sorted(criteria.geography.states),
                "maxResults": max_results,
                "pageToken": page_token,
            },
            sort_keys=True,
        )

    def get(self, key: str) -> CollectionResult | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, result = entry
            if self._time() >= expires_at:
                del self._entries[key]
                return None
            return result

    def set(self, key: str, result: CollectionResult) -> None:
        """Store ``result`` and drop every entry that has already expired."""
        with self._lock:
            now = self._time()
            expired = [name for name, (expires_at, _) in self._entries.items() if now >= expires_at]
            for name in expired:
                del self._entries[name]
            self._entries[key] = (now + self._ttl, result)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def build_search_queries(criteria: TargetingCriteria) -> list[str]:
    """Combine industries and locations into natural-language queries.

    Returns an empty list when no geography is set; an unscoped query is too
    broad to be worth paying for.
    """
    geography = criteria.geography
    locations: list[str] = []
    if geography.cities:
        state = geography.states[0] if geography.states else ""
        for city in geography.cities[:MAX_LOCATIONS]:
            locations.append(f"{city}, {state}" if state else city)
    elif geography.states:
        locations.extend(geography.states[:MAX_LOCATIONS])

    if not locations:
        return []

    if not criteria.industries:
        return [f"businesses in {location}" for location in locations]
    return [
        f"{industry} in {location}"
        for industry in criteria.industries[:MAX_INDUSTRIES]
        for location in locations
    ]


def infer_industry(
    types: list[str],
    primary_type: str | None = None,
    primary_type_display: str | None = None,
) -> str:
    if primary_type_display:
        return primary_type_display
    if primary_type and primary_type in PLACE_TYPE_INDUSTRIES:
        return PLACE_TYPE_INDUSTRIES[primary_type]
    for place_type in types:
        if place_type in PLACE_TYPE_INDUSTRIES:
            return PLACE_TYPE_INDUSTRIES[place_type]
        normalized = place_type.lower().replace("_", " ")
        for key, industry in PLACE_TYPE_INDUSTRIES.items():
            if key in normalized or normalized in key:
                return industry
    if types:
        return types[0].replace("_", " ").title()
    return "General Business"


def place_to_business(place: dict[str, Any]) -> RawBusinessData:
    """Map a Places API record onto ``RawBusinessData``."""
    city = ""
    state = ""
    country = "US"
    for component in place.get("addressComponents") or []:
        component_types = component.get("types") or []
        if "locality" in component_types:
            city = component.get("longText", "")
        elif "administrative_area_level_1" in component_types:
            state = component.get("shortText", "")
        elif "country" in component_types:
            country = component.get("shortText", "") or "US"

    location = place.get("location")
    coordinates = None
    if location and "latitude" in location and "longitude" in location:
        coordinates = Coordinates(lat=location["latitude"], lng=location["longitude"])

    place_id = place.get("id")
    display_name = (place.get("displayName") or {}).get("text")
    primary_display = (place.get("primaryTypeDisplayName") or {}).get("text")
    return RawBusinessData(
        place_id=place_id,
        external_id=place_id,
        name=display_name or "Unknown Business",
        industry=infer_industry(place.get("types") or [], place.get("primaryType"), primary_display),
        website=place.get("websiteUri"),
        address=place.get("formattedAddress"),
        city=city or None,
        state=state or None,
        country=country,
        coordinates=coordinates,
        phone=place.get("nationalPhoneNumber"),
        rating=place.get("rating"),
        review_count=place.get("userRatingCount"),
        business_status=place.get("businessStatus"),
        source=BusinessSource.GOOGLE_PLACES,
        source_url=f"https://www.google.com/maps/place/?q=place_id:{place_id}",
    )


class GooglePlacesCollector(BusinessCollector):
    """Real provider backed by Google Places text search."""

    def __init__(
        self,
        client: GooglePlacesClient | None = None,
        *,
        cache: SearchCache | None = None,
        query_delay_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._cache = cache or SearchCache()
        delay = (
            query_delay_seconds
            if query_delay_seconds is not None
            else settings.discovery_query_delay_seconds
        )
        self._delay = max(delay, MIN_QUERY_DELAY_SECONDS)
        self._sleep = sleep

    @classmethod
    def from_settings(cls, *, cache: SearchCache | None = None) -> GooglePlacesCollector:
        client = None
        if settings.google_places_api_key:
            client = GooglePlacesClient(
                settings.google_places_api_key,
                base_url=settings.google_places_base_url,
                timeout=settings.google_places_timeout_seconds,
            )
        return cls(client, cache=cache)

    def is_configured(self) -> bool:
        return self._client is not None

    def search(
        self,
        criteria: TargetingCriteria,
        max_results: int,
        *,
        page_token: str | None = None,
    ) -> CollectionResult:
        if not self.is_configured() or max_results <= 0:
            return CollectionResult()

        cache_key = SearchCache.build_key(criteria, max_results, page_token)
        cached = self._cache.get(cache_key)
        if cached is not None:
            metrics.increment("collector.cache_hit", tags={"source": "google_places"})
            logger.info("discovery.collector.cache_hit", extra={"source": "google_places"})
            return cached

        queries = build_search_queries(criteria)[:MAX_QUERIES]
        if not queries:
            logger.warning(
                "discovery.collector.no_queries",
                extra={"reason": "no geography specified"},
            )
            return CollectionResult()

        per_query = max(1, max_results // len(queries))
        businesses: list[RawBusinessData] = []
        api_calls = 0
        succeeded = 0
        for position, query in enumerate(queries):
            if len(businesses) >= max_results:
                break
            if position > 0:
                self._sleep(self._delay)
            try:
                response = self._client.search_text(
                    query,
                    max_results=per_query,
                    page_token=page_token,
                )
            except GooglePlacesError as exc:
                metrics.increment(
                    "collector.query_failed", tags={"source": "google_places", "code": exc.code}
                )
                logger.warning(
                    "discovery.collector.query_failed",
                    extra={"query": query, "code": exc.code},
                )
                continue
            api_calls += 1
            succeeded += 1
            businesses.extend(place_to_business(place) for place in response["places"])

        result = CollectionResult(businesses=businesses[:max_results], api_calls=api_calls)
        if succeeded:
            self._cache.set(cache_key, result)
        metrics.gauge("collector.results", len(result.businesses), tags={"source": "google_places"})
        logger.info(
            "discovery.collector.completed",
            extra={
                "source": "google_places",
                "queries": len(queries),
                "api_calls": api_calls,
                "businesses": len(result.businesses),
            },
        )
        return result


class MockBusinessGenerator(BusinessCollector):
    """Synthetic businesses for unconfigured or sparse environments."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def is_configured(self) -> bool:
        return True

    def search(self, criteria: TargetingCriteria, max_results: int) -> CollectionResult:
        return CollectionResult(
            businesses=self.generate(criteria, max_results),
            used_mock_data=True,
        )

    def generate(self, criteria: TargetingCriteria, count: int) -> list[RawBusinessData]:
        industries = criteria.industries or list(DEFAULT_MOCK_INDUSTRIES)
        cities = criteria.geography.cities or list(DEFAULT_MOCK_CITIES)
        state = criteria.geography.states[0] if criteria.geography.states else DEFAULT_MOCK_STATE
        rng = self._rng
        stamp = now_ms()

        businesses: list[RawBusinessData] = []
        for i in range(count):
            industry = rng.choice(industries)
            city = rng.choice(cities)
            slug = f"{city}{industry}".replace(" ", "").lower()
            businesses.append(
                RawBusinessData(
                    external_id=f"mock-{stamp}-{i}",
                    name=f"{city} {industry} Solutions {i + 1}",
                    industry=industry,
                    website=f"https://www.{slug}{i + 1}.com",
                    address=f"{rng.randint(100, 9999)} Main Street",
                    city=city,
                    state=state,
                    country="US",
                    phone=f"({rng.randint(200, 999)}) 555-{rng.randint(1000, 9999)}",
                    rating=round(rng.uniform(3.5, 5.0), 1),
                    review_count=rng.randrange(10, 210),
                    business_status="OPERATIONAL",
                    source=BusinessSource.MOCK,
                    source_url="https://example.com/mock",
                    fetched_at=stamp,
                )
            )
        return businesses


class FallbackCollector(BusinessCollector):
    """Tries the real provider first and tops up with synthetic data when sparse."""

    def __init__(self, primary: BusinessCollector, fallback: MockBusinessGenerator) -> None:
        self._primary = primary
        self._fallback = fallback

    @classmethod
    def from_settings(cls) -> FallbackCollector:
        return cls(GooglePlacesCollector.from_settings(), MockBusinessGenerator())

    @property
    def primary(self) -> BusinessCollector:
        return self._primary

    def is_configured(self) -> bool:
        return self._primary.is_configured()

    def search(self, criteria: TargetingCriteria, max_results: int) -> CollectionResult:
        businesses: list[RawBusinessData] = []
        api_calls = 0
        if self._primary.is_configured():
            primary_result = self._primary.search(criteria, max_results)
            businesses.extend(primary_result.businesses)
            api_calls += primary_result.api_calls
        else:
            logger.warning(
                "discovery.collector.not_configured",
                extra={"source": "google_places", "setting": "GOOGLE_PLACES_API_KEY"},
            )

        used_mock_data = False
        if len(businesses) < MIN_REAL_RESULTS:
            count = max(MIN_REAL_RESULTS, max_results - len(businesses))
            businesses.extend(self._fallback.generate(criteria, count))
            used_mock_data = True
            metrics.increment("collector.mock_fallback", tags={"count": count})
            logger.info(
                "discovery.collector.mock_fallback",
                extra={"real_results": len(businesses) - count, "mock_results": count},
            )
        return CollectionResult(
            businesses=businesses, api_calls=api_calls, used_mock_data=used_mock_data
        )
