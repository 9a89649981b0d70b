"""Token, cost and failure ceilings for discovery sweeps.

Three layers are enforced here:

* ``TokenBudget``: per-sweep token/API-call ledger owned by one sweep.
* ``UsageGuard``: process-wide daily usage (per company and platform-wide)
  plus the running-sweep slots, reserved atomically when a sweep starts.
* ``CircuitBreaker``: fail-fast gate in front of AI providers after repeated
  failures.

``UsageGuard`` and ``CircuitBreaker`` are shared between concurrent sweeps and
guard all state with a lock; they are injected rather than imported as globals.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock

from app.config import settings
from app.models.discovery import (
    CircuitBreakerState,
    CompanyDailyUsage,
    DailyUsageRecord,
    TokenSafetyConfig,
    TokenUsage,
)
from app.observability.metrics import metrics
from app.services.discovery.errors import (
    CircuitBreakerOpenError,
    DailyLimitExceededError,
    TokenBudgetExceededError,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def token_safety_from_settings() -> TokenSafetyConfig:
    """Build the token safety config from environment-driven settings."""
    return TokenSafetyConfig(
        max_tokens_per_sweep=settings.token_max_tokens_per_sweep,
        max_api_calls_per_sweep=settings.token_max_api_calls_per_sweep,
        max_leads_to_analyze=settings.token_max_leads_to_analyze,
        max_tokens_per_company_per_day=settings.token_max_tokens_per_company_per_day,
        max_sweeps_per_company_per_day=settings.discovery_max_sweeps_per_day,
        max_tokens_per_hour=settings.token_max_tokens_per_hour,
        max_concurrent_sweeps=settings.token_max_concurrent_sweeps,
        max_daily_cost_usd=settings.token_max_daily_cost_usd,
        alert_threshold_usd=settings.token_alert_threshold_usd,
    )


class TokenBudget:
    """Token and API-call ledger scoped to a single sweep."""

    def __init__(self, sweep_id: str, config: TokenSafetyConfig | None = None) -> None:
        self.sweep_id = sweep_id
        self._config = config or token_safety_from_settings()
        self._tokens_used = 0
        self._api_calls = 0
        self._cost_usd = 0.0
        self._lock = Lock()

    def consume(self, tokens: int, cost_usd: float) -> None:
        """Record one API call; raises without mutating when a ceiling would be crossed."""
        with self._lock:
            if self._tokens_used + tokens > self._config.max_tokens_per_sweep:
                logger.warning(
                    "discovery.budget.tokens_exceeded",
                    extra={
                        "sweep_id": self.sweep_id,
                        "tokens_used": self._tokens_used,
                        "requested": tokens,
                        "limit": self._config.max_tokens_per_sweep,
                    },
                )
                raise TokenBudgetExceededError(
                    f"Token budget exceeded: {self._tokens_used + tokens} > "
                    f"{self._config.max_tokens_per_sweep}"
                )
            if self._api_calls + 1 > self._config.max_api_calls_per_sweep:
                logger.warning(
                    "discovery.budget.calls_exceeded",
                    extra={
                        "sweep_id": self.sweep_id,
                        "api_calls": self._api_calls,
                        "limit": self._config.max_api_calls_per_sweep,
                    },
                )
                raise TokenBudgetExceededError(
                    f"API call limit exceeded: {self._api_calls + 1} > "
                    f"{self._config.max_api_calls_per_sweep}"
                )
            self._tokens_used += tokens
            self._api_calls += 1
            self._cost_usd += cost_usd

    def record_overrun(self, tokens: int, cost_usd: float) -> None:
        """Charge a call the provider already billed after ``consume`` rejected it.

        The counters may end above the ceiling; daily usage must still see the spend.
        """
        with self._lock:
            self._tokens_used += tokens
            self._api_calls += 1
            self._cost_usd += cost_usd
            tokens_used = self._tokens_used
        logger.warning(
            "discovery.budget.overrun_recorded",
            extra={
                "sweep_id": self.sweep_id,
                "tokens": tokens,
                "tokens_used": tokens_used,
                "limit": self._config.max_tokens_per_sweep,
            },
        )

    def can_consume(self, estimated_tokens: int) -> bool:
        with self._lock:
            return (
                self._tokens_used + estimated_tokens <= self._config.max_tokens_per_sweep
                and self._api_calls + 1 <= self._config.max_api_calls_per_sweep
            )

    def get_remaining(self) -> int:
        with self._lock:
            return max(0, self._config.max_tokens_per_sweep - self._tokens_used)

    def get_remaining_calls(self) -> int:
        with self._lock:
            return max(0, self._config.max_api_calls_per_sweep - self._api_calls)

    def get_usage(self) -> TokenUsage:
        with self._lock:
            return TokenUsage(
                tokens_used=self._tokens_used,
                api_calls=self._api_calls,
                estimated_cost_usd=self._cost_usd,
            )

    def calculate_batch_size(self, tokens_per_item: int, max_items: int) -> int:
        """How many items fit in the remaining token and call allowance."""
        if tokens_per_item <= 0:
            raise ValueError("tokens_per_item must be > 0")
        items_by_tokens = self.get_remaining() // tokens_per_item
        return max(0, min(items_by_tokens, self.get_remaining_calls(), max_items))


class CircuitBreaker:
    """Opens after consecutive provider failures and fails fast until cooldown ends."""

    def __init__(
        self,
        *,
        failure_threshold: int | None = None,
        cooldown_seconds: float | None = None,
        time_source: Callable[[], float] = time.time,
    ) -> None:
        self._threshold = failure_threshold or settings.discovery_circuit_failure_threshold
        self._cooldown = (
            cooldown_seconds
            if cooldown_seconds is not None
            else settings.discovery_circuit_cooldown_seconds
        )
        self._time = time_source
        self._state = CircuitBreakerState()
        self._lock = Lock()

    def record_failure(self) -> None:
        with self._lock:
            now = self._time()
            self._state.failure_count += 1
            self._state.last_failure = now
            if self._state.failure_count >= self._threshold and not self._state.is_open:
                self._state.is_open = True
                self._state.cooldown_until = now + self._cooldown
                logger.error(
                    "discovery.circuit.opened",
                    extra={
                        "failure_count": self._state.failure_count,
                        "cooldown_seconds": self._cooldown,
                    },
                )
                metrics.alert(
                    "circuit_breaker.open",
                    value=self._state.failure_count,
                    threshold=self._threshold,
                    severity="critical",
                )

    def record_success(self) -> None:
        with self._lock:
            self._state.failure_count = 0
            self._state.is_open = False
            self._state.cooldown_until = None

    def is_closed(self) -> bool:
        with self._lock:
            return self._is_closed_locked()

    def is_open(self) -> bool:
        return not self.is_closed()

    def ensure_closed(self) -> None:
        """Raise ``CircuitBreakerOpenError`` while the breaker is cooling down."""
        with self._lock:
            if self._is_closed_locked():
                return
            wait_seconds = max(0.0, (self._state.cooldown_until or 0.0) - self._time())
        raise CircuitBreakerOpenError(
            f"Circuit breaker is open. Please wait {int(wait_seconds + 0.999)} seconds."
        )

    def get_state(self) -> CircuitBreakerState:
        with self._lock:
            return self._state.model_copy()

    def _is_closed_locked(self) -> bool:
        if not self._state.is_open:
            return True
        if self._time() >= (self._state.cooldown_until or 0.0):
            logger.info("discovery.circuit.reset", extra={"reason": "cooldown_elapsed"})
            self._state.is_open = False
            self._state.failure_count = 0
            self._state.cooldown_until = None
            return True
        return False


@dataclass(frozen=True)
class SweepPermission:
    allowed: bool
    reason: str | None = None


class UsageGuard:
    """Process-wide daily/hourly usage ledger plus the shared circuit breaker."""

    def __init__(
        self,
        config: TokenSafetyConfig | None = None,
        *,
        circuit_breaker: CircuitBreaker | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config or token_safety_from_settings()
        self._clock = clock
        self._lock = Lock()
        self._daily: DailyUsageRecord | None = None
        self._hourly_tokens: dict[str, int] = {}
        self._alerted_date: str | None = None
        self._active_sweeps = 0
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

    @property
    def config(self) -> TokenSafetyConfig:
        return self._config

    def get_daily_usage(self) -> DailyUsageRecord:
        with self._lock:
            return self._current_record().model_copy(deep=True)

    def get_company_usage(self, company_id: str) -> CompanyDailyUsage:
        with self._lock:
            usage = self._current_record().by_company.get(company_id)
            return usage.model_copy() if usage else CompanyDailyUsage()

    def get_hourly_tokens(self) -> int:
        with self._lock:
            return self._hourly_tokens.get(self._hour_key(), 0)

    def can_run_sweep(self, company_id: str) -> SweepPermission:
        """Check company and platform ceilings, in order, before a sweep starts."""
        with self._lock:
            permission, platform_cost = self._evaluate_locked(company_id)
        self._report_refusal(permission, platform_cost)
        return permission

    def ensure_can_run_sweep(self, company_id: str) -> None:
        permission = self.can_run_sweep(company_id)
        if not permission.allowed:
            raise DailyLimitExceededError(permission.reason or "Daily limit reached.")

    def reserve_sweep(self, company_id: str) -> None:
        """Check the ceilings and claim a sweep slot in one step.

        The sweep counts toward today's company and platform totals as soon as
        it is reserved. Every reservation must be paired with ``release_sweep``.
        """
        active = 0
        with self._lock:
            permission, platform_cost = self._evaluate_locked(company_id)
            if permission.allowed:
                record = self._current_record()
                company = record.by_company.setdefault(company_id, CompanyDailyUsage())
                record.sweep_count += 1
                company.sweeps += 1
                self._active_sweeps += 1
                active = self._active_sweeps
        self._report_refusal(permission, platform_cost)
        if not permission.allowed:
            raise DailyLimitExceededError(permission.reason or "Daily limit reached.")
        metrics.gauge("usage.active_sweeps", active)

    def release_sweep(self, company_id: str, usage: TokenUsage) -> DailyUsageRecord:
        """Free a reserved slot and add the sweep's spend to today's totals."""
        with self._lock:
            self._active_sweeps = max(0, self._active_sweeps - 1)
            active = self._active_sweeps
        metrics.gauge("usage.active_sweeps", active)
        return self.update_daily_usage(company_id, usage, count_sweep=False)

    def get_active_sweeps(self) -> int:
        with self._lock:
            return self._active_sweeps

    def update_daily_usage(
        self, company_id: str, usage: TokenUsage, *, count_sweep: bool = True
    ) -> DailyUsageRecord:
        """Atomically add a sweep's usage to today's company and platform totals."""
        with self._lock:
            record = self._current_record()
            record.total_tokens += usage.tokens_used
            record.total_cost_usd += usage.estimated_cost_usd
            company = record.by_company.setdefault(company_id, CompanyDailyUsage())
            company.tokens += usage.tokens_used
            company.cost_usd += usage.estimated_cost_usd
            if count_sweep:
                record.sweep_count += 1
                company.sweeps += 1
            hour_key = self._hour_key()
            self._hourly_tokens[hour_key] = self._hourly_tokens.get(hour_key, 0) + usage.tokens_used
            snapshot = record.model_copy(deep=True)
            should_alert = (
                snapshot.total_cost_usd >= self._config.alert_threshold_usd
                and self._alerted_date != snapshot.date
            )
            if should_alert:
                self._alerted_date = snapshot.date

        metrics.gauge("usage.daily_tokens", snapshot.total_tokens)
        metrics.gauge("usage.daily_cost_usd", snapshot.total_cost_usd)
        if should_alert:
            logger.warning(
                "discovery.platform.cost_alert",
                extra={
                    "cost_usd": snapshot.total_cost_usd,
                    "threshold_usd": self._config.alert_threshold_usd,
                },
            )
            metrics.alert(
                "platform.daily_cost",
                value=snapshot.total_cost_usd,
                threshold=self._config.alert_threshold_usd,
                severity="warning",
            )
        return snapshot

    def _evaluate_locked(self, company_id: str) -> tuple[SweepPermission, float | None]:
        # caller holds self._lock; the cost is returned only when it blocked the sweep
        config = self._config
        record = self._current_record()
        company = record.by_company.get(company_id) or CompanyDailyUsage()
        if company.sweeps >= config.max_sweeps_per_company_per_day:
            return SweepPermission(
                False,
                f"Daily sweep limit reached ({company.sweeps}/"
                f"{config.max_sweeps_per_company_per_day}). Try again tomorrow.",
            ), None
        if company.tokens >= config.max_tokens_per_company_per_day:
            return SweepPermission(
                False, "Daily token limit reached for your company. Try again tomorrow."
            ), None
        if record.total_cost_usd >= config.max_daily_cost_usd:
            return SweepPermission(
                False, "Platform-wide daily limit reached. Please try again tomorrow."
            ), record.total_cost_usd
        if self._hourly_tokens.get(self._hour_key(), 0) >= config.max_tokens_per_hour:
            return SweepPermission(
                False, "Platform is experiencing high usage. Please try again in a few minutes."
            ), None
        if self._active_sweeps >= config.max_concurrent_sweeps:
            return SweepPermission(
                False, "Too many discovery sweeps are running. Please try again in a few minutes."
            ), None
        return SweepPermission(True), None

    def _report_refusal(self, permission: SweepPermission, platform_cost: float | None) -> None:
        if permission.allowed or platform_cost is None:
            return
        logger.critical(
            "discovery.platform.cost_ceiling",
            extra={"cost_usd": platform_cost, "limit_usd": self._config.max_daily_cost_usd},
        )
        metrics.alert(
            "platform.daily_cost",
            value=platform_cost,
            threshold=self._config.max_daily_cost_usd,
            severity="critical",
        )

    def _current_record(self) -> DailyUsageRecord:
        # caller holds self._lock
        today = self._clock().date().isoformat()
        if self._daily is None or self._daily.date != today:
            self._daily = DailyUsageRecord(date=today)
            current_hour = self._hour_key()
            self._hourly_tokens = {
                key: value for key, value in self._hourly_tokens.items() if key == current_hour
            }
        return self._daily

    def _hour_key(self) -> str:
        return self._clock().strftime("%Y-%m-%dT%H")
