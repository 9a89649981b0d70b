"""Shared error classes for the discovery pipeline and its repositories."""

from __future__ import annotations


class DiscoveryError(RuntimeError):
    """Base exception raised by discovery services."""

    default_code = "500_DISCOVERY_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class TokenBudgetExceededError(DiscoveryError):
    """Raised when a sweep would exceed its token or API-call ceiling."""

    default_code = "429_TOKEN_BUDGET"


class DailyLimitExceededError(DiscoveryError):
    """Raised when a company or the platform has hit a daily/hourly ceiling."""

    default_code = "429_DAILY_LIMIT"


class CircuitBreakerOpenError(DiscoveryError):
    """Raised while the AI provider circuit breaker is cooling down."""

    default_code = "503_CIRCUIT_OPEN"


class AIProviderError(DiscoveryError):
    """Raised when an upstream AI provider fails or returns unusable output."""

    default_code = "502_AI_UPSTREAM"


class ProfileNotFoundError(DiscoveryError):
    default_code = "400_PROFILE_NOT_FOUND"


class ProfileIncompleteError(DiscoveryError):
    default_code = "400_PROFILE_INCOMPLETE"


class LeadNotFoundError(DiscoveryError):
    default_code = "404_LEAD_NOT_FOUND"


class InvalidLeadStatusError(DiscoveryError):
    default_code = "400_INVALID_STATUS"


class SweepExecutionError(DiscoveryError):
    """Raised when a sweep fails after its record was created."""

    default_code = "500_SWEEP_FAILED"

    def __init__(self, message: str, *, sweep_id: str, code: str | None = None) -> None:
        super().__init__(message, code=code)
        self.sweep_id = sweep_id


class DiscoveryPersistenceError(DiscoveryError):
    """Raised when the document store fails to read or write."""

    default_code = "500_INTERNAL"


BUDGET_ERRORS = (TokenBudgetExceededError, DailyLimitExceededError, CircuitBreakerOpenError)
