"""Client for the Google Places (New) Text Search API."""

from __future__ import annotations

import os
from typing import Any

import httpx

FIELD_MASK = ",".join(
    (
        "places.id",
        "places.displayName",
        "places.formattedAddress",
        "places.addressComponents",
        "places.location",
        "places.rating",
        "places.userRatingCount",
        "places.websiteUri",
        "places.nationalPhoneNumber",
        "places.types",
        "places.businessStatus",
        "places.primaryType",
        "places.primaryTypeDisplayName",
        "nextPageToken",
    )
)
MAX_PAGE_SIZE = 20


class GooglePlacesError(RuntimeError):
    """Base error for Google Places client failures."""

    def __init__(self, message: str, code: str = "PLACES_ERROR") -> None:
        super().__init__(message)
        self.code = code


class GooglePlacesRateLimitError(GooglePlacesError):
    """Raised when Google Places responds with HTTP 429."""

    def __init__(self, message: str = "Rate limited by Google Places") -> None:
        super().__init__(message, code="PLACES_429")


class GooglePlacesTimeoutError(GooglePlacesError):
    """Raised when a Google Places request times out."""

    def __init__(self, message: str = "Google Places request timed out") -> None:
        super().__init__(message, code="PLACES_TIMEOUT")


class GooglePlacesSchemaError(GooglePlacesError):
    """Raised when the Google Places response is not the documented shape."""

    def __init__(self, message: str = "Unexpected Google Places response schema") -> None:
        super().__init__(message, code="PLACES_SCHEMA_ERR")


class GooglePlacesClient:
    """Minimal wrapper around ``places:searchText``."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://places.googleapis.com",
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("GOOGLE_PLACES_API_KEY is required to create a GooglePlacesClient.")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    @classmethod
    def from_env(cls) -> GooglePlacesClient:
        """Instantiate the client using the GOOGLE_PLACES_API_KEY environment variable."""
        return cls(os.getenv("GOOGLE_PLACES_API_KEY", ""))

    def close(self) -> None:
        if self._owns_http_client:
            self._http.close()

    def search_text(
        self,
        query: str,
        *,
        max_results: int = MAX_PAGE_SIZE,
        page_token: str | None = None,
    ) -> dict[str, Any]:
        """Run a text search; returns ``{"places": [...], "nextPageToken": str | None}``."""
        if not query.strip():
            raise ValueError("query must be a non-empty string.")
        if max_results <= 0:
            raise ValueError("max_results must be a positive integer.")

        body: dict[str, Any] = {
            "textQuery": query,
            "pageSize": min(max_results, MAX_PAGE_SIZE),
            "languageCode": "en",
        }
        if page_token:
            body["pageToken"] = page_token
        headers = {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self._api_key,
            "X-Goog-FieldMask": FIELD_MASK,
        }

        try:
            response = self._http.post("/v1/places:searchText", json=body, headers=headers)
        except httpx.TimeoutException as exc:  # pragma: no cover - network failures
            raise GooglePlacesTimeoutError() from exc
        except httpx.HTTPError as exc:  # pragma: no cover - network failures
            raise GooglePlacesError(f"HTTP error calling Google Places: {exc}") from exc

        if response.status_code == 429:
            raise GooglePlacesRateLimitError()
        if response.status_code in (408, 504):
            raise GooglePlacesTimeoutError()
        if response.status_code >= 400:
            detail: str | None = None
            try:
                error = response.json().get("error") or {}
                detail = error.get("message") or error.get("status")
            except Exception:  # pragma: no cover - best effort decoding
                detail = response.text[:200]
            message = f"Google Places request failed: {response.status_code}"
            if detail:
                message = f"{message} - {detail}"
            raise GooglePlacesError(message, code=f"PLACES_{response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise GooglePlacesSchemaError("Failed to decode Google Places response JSON.") from exc
        if not isinstance(data, dict):
            raise GooglePlacesSchemaError()

        # an empty result set omits the key entirely
        places = data.get("places", [])
        if not isinstance(places, list) or not all(isinstance(p, dict) for p in places):
            raise GooglePlacesSchemaError("`places` must be a list of JSON objects.")
        return {"places": places, "nextPageToken": data.get("nextPageToken")}

    def __enter__(self) -> GooglePlacesClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
