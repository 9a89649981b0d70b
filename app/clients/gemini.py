"""Client for the Gemini ``generateContent`` REST endpoint."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import httpx


class GeminiError(RuntimeError):
    """Base error for Gemini client failures."""

    def __init__(self, message: str, code: str = "GEMINI_ERROR") -> None:
        super().__init__(message)
        self.code = code


class GeminiRateLimitError(GeminiError):
    def __init__(self, message: str = "Rate limited by Gemini") -> None:
        super().__init__(message, code="GEMINI_429")


class GeminiTimeoutError(GeminiError):
    def __init__(self, message: str = "Gemini request timed out") -> None:
        super().__init__(message, code="GEMINI_TIMEOUT")


class GeminiSchemaError(GeminiError):
    def __init__(self, message: str = "Unexpected Gemini response schema") -> None:
        super().__init__(message, code="GEMINI_SCHEMA_ERR")


@dataclass(frozen=True)
class GeminiResponse:
    text: str
    input_tokens: int
    output_tokens: int


class GeminiClient:
    """Single-prompt, deterministic Gemini caller."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout: float = 60.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("GOOGLE_AI_API_KEY or GEMINI_API_KEY is required to create a GeminiClient.")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    @classmethod
    def from_env(cls) -> GeminiClient:
        return cls(os.getenv("GOOGLE_AI_API_KEY") or os.getenv("GEMINI_API_KEY", ""))

    def close(self) -> None:
        if self._owns_http_client:
            self._http.close()

    def generate(self, prompt: str, *, model: str, max_output_tokens: int = 4096) -> GeminiResponse:
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": 0,
                "topP": 1,
                "topK": 1,
                "maxOutputTokens": max_output_tokens,
            },
        }
        try:
            response = self._http.post(
                f"/v1beta/models/{model}:generateContent",
                params={"key": self._api_key},
                json=body,
            )
        except httpx.TimeoutException as exc:  # pragma: no cover - network failures
            raise GeminiTimeoutError() from exc
        except httpx.HTTPError as exc:  # pragma: no cover - network failures
            raise GeminiError(f"HTTP error calling Gemini: {type(exc).__name__}") from exc

        if response.status_code == 429:
            raise GeminiRateLimitError()
        if response.status_code in (408, 504):
            raise GeminiTimeoutError()
        if response.status_code >= 400:
            raise GeminiError(
                f"Gemini request failed: {response.status_code}",
                code=f"GEMINI_{response.status_code}",
            )

        try:
            data: dict[str, Any] = response.json()
        except ValueError as exc:
            raise GeminiSchemaError("Failed to decode Gemini response JSON.") from exc

        try:
            parts = data["candidates"][0]["content"]["parts"]
            text = "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError) as exc:
            raise GeminiSchemaError("Gemini response did not include candidate text.") from exc

        usage = data.get("usageMetadata") or {}
        return GeminiResponse(
            text=text,
            input_tokens=int(usage.get("promptTokenCount", 0)),
            output_tokens=int(usage.get("candidatesTokenCount", 0)),
        )

    def __enter__(self) -> GeminiClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
