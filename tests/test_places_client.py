import json

import httpx
import pytest

from app.clients.google_places import (
    FIELD_MASK,
    GooglePlacesClient,
    GooglePlacesError,
    GooglePlacesRateLimitError,
    GooglePlacesSchemaError,
    GooglePlacesTimeoutError,
)


def _client(handler):
    http_client = httpx.Client(
        base_url="https://places.googleapis.com", transport=httpx.MockTransport(handler)
    )
    return GooglePlacesClient("places-key", http_client=http_client)


def test_search_text_sends_documented_request():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200, json={"places": [{"id": "p1"}], "nextPageToken": "next-1"}
        )

    result = _client(handler).search_text("HVAC in Houston, TX", max_results=50, page_token="tok")

    assert result == {"places": [{"id": "p1"}], "nextPageToken": "next-1"}
    request = seen[0]
    assert request.url.path == "/v1/places:searchText"
    assert request.headers["X-Goog-FieldMask"] == FIELD_MASK
    assert json.loads(request.content) == {
        "textQuery": "HVAC in Houston, TX",
        "pageSize": 20,
        "languageCode": "en",
        "pageToken": "tok",
    }


def test_search_text_treats_missing_places_as_empty():
    result = _client(lambda request: httpx.Response(200, json={})).search_text("x")

    assert result == {"places": [], "nextPageToken": None}


@pytest.mark.parametrize(
    ("status", "error_type", "code"),
    [
        (429, GooglePlacesRateLimitError, "PLACES_429"),
        (408, GooglePlacesTimeoutError, "PLACES_TIMEOUT"),
        (403, GooglePlacesError, "PLACES_403"),
    ],
)
def test_search_text_maps_http_errors(status, error_type, code):
    client = _client(
        lambda request: httpx.Response(status, json={"error": {"message": "denied"}})
    )

    with pytest.raises(error_type) as excinfo:
        client.search_text("x")

    assert excinfo.value.code == code


def test_search_text_rejects_bad_payloads():
    client = _client(lambda request: httpx.Response(200, content=b"<html>"))
    with pytest.raises(GooglePlacesSchemaError):
        client.search_text("x")

    client = _client(lambda request: httpx.Response(200, json={"places": "nope"}))
    with pytest.raises(GooglePlacesSchemaError):
        client.search_text("x")


def test_search_text_validates_arguments():
    client = _client(lambda request: httpx.Response(200, json={}))

    with pytest.raises(ValueError):
        client.search_text("   ")
    with pytest.raises(ValueError):
        client.search_text("x", max_results=0)
    with pytest.raises(ValueError):
        GooglePlacesClient("")
