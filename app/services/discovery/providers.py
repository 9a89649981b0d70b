"""AI provider selection for lead scoring and analysis.

The provider is a tagged value chosen once from configuration: Gemini when a
Google AI key is present, OpenAI otherwise, and the network-free rule-based
path when neither is configured. Call sites match on ``AIProvider.kind``
instead of reading environment variables themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Final, Protocol

from openai import APIStatusError, OpenAI, OpenAIError

from app.clients.gemini import GeminiClient, GeminiError
from app.config import Settings, settings
from app.services.discovery.errors import AIProviderError

logger = logging.getLogger(__name__)


class ProviderKind(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"
    RULE_BASED = "rule-based"


class ModelTier(str, Enum):
    SCORING = "scoring"
    ANALYSIS = "analysis"


MODELS: Final[dict[ModelTier, dict[ProviderKind, str]]] = {
    ModelTier.SCORING: {
        ProviderKind.GEMINI: "gemini-1.5-flash",
        ProviderKind.OPENAI: "gpt-4o-mini",
    },
    ModelTier.ANALYSIS: {
        ProviderKind.GEMINI: "gemini-1.5-pro",
        ProviderKind.OPENAI: "gpt-4o",
    },
}
RULE_BASED_MODEL: Final[str] = "rule-based"
MAX_OUTPUT_TOKENS: Final[int] = 4096


@dataclass(frozen=True)
class Completion:
    text: str
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class CompletionClient(Protocol):
    """Minimal contract for a single-prompt LLM call."""

    def complete(self, prompt: str, *, model: str) -> Completion:
        ...


class GeminiCompletionClient(CompletionClient):
    """Adapts ``GeminiClient`` to the completion contract."""

    def __init__(self, client: GeminiClient) -> None:
        self._client = client

    def complete(self, prompt: str, *, model: str) -> Completion:
        try:
            response = self._client.generate(
                prompt, model=model, max_output_tokens=MAX_OUTPUT_TOKENS
            )
        except GeminiError as exc:
            code = "429_RATE_LIMIT" if exc.code == "GEMINI_429" else "502_AI_UPSTREAM"
            raise AIProviderError(f"Gemini request failed ({exc.code})", code=code) from exc
        return Completion(response.text, response.input_tokens, response.output_tokens)


class OpenAIChatCompletionClient(CompletionClient):
    """Thin wrapper around the official OpenAI chat completions API."""

    def __init__(self, api_key: str, *, timeout: float = 60.0, client: OpenAI | None = None) -> None:
        if not api_key and client is None:
            raise ValueError("OPENAI_API_KEY is required to call OpenAI.")
        self._client = client or OpenAI(api_key=api_key, timeout=timeout)

    def complete(self, prompt: str, *, model: str) -> Completion:
        try:
            response = self._client.chat.completions.create(
                model=model,
                temperature=0,
                max_tokens=MAX_OUTPUT_TOKENS,
                messages=[{"role": "user", "content": prompt}],
            )
        except APIStatusError as exc:
            code = "429_RATE_LIMIT" if exc.status_code == 429 else "502_AI_UPSTREAM"
            raise AIProviderError(f"OpenAI request failed ({exc.status_code})", code=code) from exc
        except OpenAIError as exc:
            raise AIProviderError(
                f"OpenAI request failed ({type(exc).__name__})", code="502_AI_UPSTREAM"
            ) from exc

        choices = getattr(response, "choices", None) or []
        if not choices:
            raise AIProviderError("OpenAI response did not include choices.")
        text = choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        return Completion(
            text=text,
            input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        )


@dataclass(frozen=True)
class AIProvider:
    """Selected provider; ``client`` is ``None`` only for the rule-based variant."""

    kind: ProviderKind
    client: CompletionClient | None = None

    @classmethod
    def rule_based(cls) -> AIProvider:
        return cls(ProviderKind.RULE_BASED)

    @property
    def uses_ai(self) -> bool:
        return self.kind is not ProviderKind.RULE_BASED and self.client is not None

    def model_for(self, tier: ModelTier) -> str:
        if not self.uses_ai:
            return RULE_BASED_MODEL
        return MODELS[tier][self.kind]


def select_provider(config: Settings | None = None) -> AIProvider:
    """Pick Gemini, then OpenAI, then rule-based from configured credentials."""
    config = config or settings
    if config.gemini_key:
        client = GeminiClient(
            config.gemini_key,
            base_url=config.gemini_base_url,
            timeout=config.ai_request_timeout_seconds,
        )
        provider = AIProvider(ProviderKind.GEMINI, GeminiCompletionClient(client))
    elif config.openai_api_key:
        provider = AIProvider(
            ProviderKind.OPENAI,
            OpenAIChatCompletionClient(
                config.openai_api_key, timeout=config.ai_request_timeout_seconds
            ),
        )
    else:
        provider = AIProvider.rule_based()
    logger.info("discovery.provider.selected", extra={"provider": provider.kind.value})
    return provider
