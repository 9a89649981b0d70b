"""End-to-end discovery sweep: collect, dedupe, analyze, persist, account."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from threading import Lock

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.config import settings
from app.models.discovery import (
    BusinessSource,
    DiscoveredLead,
    DiscoveredLeadAIAnalysis,
    DiscoveredLeadContact,
    DiscoveredLeadLocation,
    DiscoveredLeadSource,
    DiscoveredLeadVerification,
    DiscoveryProfile,
    DiscoverySweep,
    RawBusinessData,
    SweepResults,
    SweepStatus,
    SweepTrigger,
    TokenUsage,
    VerificationChecks,
    now_ms,
)
from app.observability.metrics import metrics
from app.services.discovery.analyzer import LeadAnalyzer
from app.services.discovery.collectors import BusinessCollector, FallbackCollector
from app.services.discovery.dedupe import dedupe
from app.services.discovery.errors import (
    BUDGET_ERRORS,
    DailyLimitExceededError,
    DiscoveryError,
    ProfileIncompleteError,
    ProfileNotFoundError,
    SweepExecutionError,
)
from app.services.discovery.profiles import calculate_next_run_time, is_profile_complete
from app.services.discovery.providers import AIProvider, ProviderKind, select_provider
from app.services.discovery.repositories import DiscoveryRepository, build_document_store
from app.services.discovery.token_safety import CircuitBreaker, TokenBudget, UsageGuard

logger = logging.getLogger(__name__)

AnalyzerFactory = Callable[[TokenBudget, CircuitBreaker], LeadAnalyzer]

_PROVIDER_LABELS = {
    ProviderKind.GEMINI.value: "Gemini",
    ProviderKind.OPENAI.value: "OpenAI",
}


class SweepOutcome(BaseModel):
    """Response body for a completed sweep."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    sweep_id: str
    leads_found: int
    message: str
    data_source: str
    ai_provider: str
    api_calls: int
    token_usage: TokenUsage
    estimated_cost_usd: float = Field(alias="estimatedCostUSD")
    warnings: list[str] = Field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _start_of_day_ms(moment: datetime) -> int:
    midnight = moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return int(midnight.timestamp() * 1000)


def build_discovered_lead(
    business: RawBusinessData,
    analysis: DiscoveredLeadAIAnalysis,
    *,
    company_id: str,
    profile_id: str,
    sweep_id: str,
) -> DiscoveredLead:
    """Convert a collected business plus its analysis into a persisted lead."""
    now = now_ms()
    contacts = []
    if business.phone or business.email:
        contacts.append(DiscoveredLeadContact(email=business.email, phone=business.phone))
    source_type = "google" if business.source is BusinessSource.GOOGLE_PLACES else "directory"
    return DiscoveredLead(
        company_id=company_id,
        discovery_profile_id=profile_id,
        business_name=business.name,
        industry=business.industry or "Unknown",
        website=business.website or None,
        contacts=contacts,
        location=DiscoveredLeadLocation(
            address=business.address or None,
            city=business.city or "Unknown",
            state=business.state or "Unknown",
            country=business.country or "US",
            coordinates=business.coordinates,
        ),
        ai_analysis=analysis,
        verification=DiscoveredLeadVerification(
            status="verified",
            verified_at=now,
            checks=VerificationChecks(
                website_exists=bool(business.website),
                phone_valid=bool(business.phone),
                email_valid=bool(business.email),
                business_registered=business.business_status == "OPERATIONAL",
            ),
        ),
        sources=[
            DiscoveredLeadSource(
                type=source_type, url=business.source_url or "", found_at=business.fetched_at
            )
        ],
        sweep_id=sweep_id,
        discovered_at=now,
    )


def compose_message(
    leads_found: int, *, used_mock_data: bool, ai_provider: str, warnings: list[str]
) -> str:
    if used_mock_data:
        message = (
            f"Sweep completed with mock data. Found {leads_found} leads. "
            "Configure GOOGLE_PLACES_API_KEY for real data."
        )
    else:
        message = f"Sweep completed! Found {leads_found} new leads from Google Places."
    label = _PROVIDER_LABELS.get(ai_provider)
    if label:
        message += f" Leads scored with {label} AI."
    else:
        message += " Leads scored with rule-based analysis."
    if warnings:
        message += f" {len(warnings)} warning(s) recorded."
    return message


class SweepOrchestrator:
    """Runs discovery sweeps for tenants against shared usage limits."""

    def __init__(
        self,
        repository: DiscoveryRepository,
        collector: BusinessCollector,
        *,
        usage_guard: UsageGuard,
        provider: AIProvider | None = None,
        analyzer_factory: AnalyzerFactory | None = None,
        max_sweeps_per_day: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._collector = collector
        self._usage_guard = usage_guard
        self._provider = provider or AIProvider.rule_based()
        self._analyzer_factory = analyzer_factory or self._default_analyzer
        self._max_sweeps = (
            max_sweeps_per_day
            if max_sweeps_per_day is not None
            else settings.discovery_max_sweeps_per_day
        )
        self._clock = clock
        self._start_lock = Lock()

    @property
    def repository(self) -> DiscoveryRepository:
        return self._repository

    @property
    def usage_guard(self) -> UsageGuard:
        return self._usage_guard

    @property
    def provider(self) -> AIProvider:
        return self._provider

    def run_sweep(
        self,
        company_id: str,
        *,
        user_id: str | None = None,
        triggered_by: SweepTrigger = SweepTrigger.MANUAL,
        max_leads: int | None = None,
    ) -> SweepOutcome:
        """Execute one sweep; precondition failures raise before any record exists."""
        max_leads = max_leads or settings.discovery_max_leads_per_sweep
        # the cap check, slot reservation and sweep record are one step per process
        with self._start_lock:
            profile = self._check_preconditions(company_id)
            self._usage_guard.reserve_sweep(company_id)
            try:
                sweep = self._repository.create_sweep(
                    DiscoverySweep(
                        company_id=company_id,
                        discovery_profile_id=profile.id,
                        triggered_by=triggered_by,
                        triggered_by_user_id=user_id,
                        started_at=int(self._clock().timestamp() * 1000),
                    )
                )
            except Exception:
                self._usage_guard.release_sweep(company_id, TokenUsage())
                raise
        sweep_id = sweep.id or ""
        budget = TokenBudget(sweep_id, self._usage_guard.config)
        logger.info(
            "discovery.sweep.started",
            extra={"company_id": company_id, "sweep_id": sweep_id, "trigger": triggered_by.value},
        )
        started = time.perf_counter()
        try:
            outcome = self._execute(profile, sweep_id, budget, max_leads)
        except BUDGET_ERRORS as exc:
            self._mark_failed(company_id, sweep_id, exc.message, budget, started)
            raise
        except Exception as exc:
            self._mark_failed(
                company_id,
                sweep_id,
                f"Sweep failed ({getattr(exc, 'code', type(exc).__name__)})",
                budget,
                started,
            )
            raise SweepExecutionError(
                "Failed to run discovery sweep", sweep_id=sweep_id
            ) from exc

        self._usage_guard.release_sweep(company_id, outcome.token_usage)
        metrics.timing("sweep.duration_ms", (time.perf_counter() - started) * 1000)
        metrics.increment("sweep.completed", tags={"data_source": outcome.data_source})
        logger.info(
            "discovery.sweep.completed",
            extra={
                "company_id": company_id,
                "sweep_id": sweep_id,
                "leads_found": outcome.leads_found,
                "data_source": outcome.data_source,
                "ai_provider": outcome.ai_provider,
                "cost_usd": round(outcome.estimated_cost_usd, 6),
            },
        )
        return outcome

    def list_sweeps(self, company_id: str, *, limit: int = 10) -> list[DiscoverySweep]:
        return self._repository.list_sweeps(company_id, limit=max(0, limit))

    def _check_preconditions(self, company_id: str) -> DiscoveryProfile:
        profile = self._repository.get_profile(company_id)
        if profile is None:
            raise ProfileNotFoundError(
                "Discovery profile not found. Please configure discovery settings first."
            )
        if not is_profile_complete(profile):
            raise ProfileIncompleteError(
                "Please complete your discovery profile with business description "
                "and targeting criteria."
            )
        since = _start_of_day_ms(self._clock())
        if self._repository.count_sweeps_since(company_id, since) >= self._max_sweeps:
            raise DailyLimitExceededError(
                f"Daily sweep limit reached ({self._max_sweeps} per day). Try again tomorrow."
            )
        return profile

    def _execute(
        self, profile: DiscoveryProfile, sweep_id: str, budget: TokenBudget, max_leads: int
    ) -> SweepOutcome:
        company_id = profile.company_id
        criteria = profile.targeting_criteria

        collection = self._collector.search(criteria, max_leads)
        unique = dedupe(collection.businesses)[:max_leads]

        analyzer = self._analyzer_factory(budget, self._usage_guard.circuit_breaker)
        analysis = analyzer.analyze_all_leads(unique, criteria)

        leads = [
            build_discovered_lead(
                business,
                analysis.lead_analyses[index],
                company_id=company_id,
                profile_id=profile.id,
                sweep_id=sweep_id,
            )
            for index, business in enumerate(unique)
        ]
        saved = self._repository.add_leads(leads)

        ai_usage = analysis.total_token_usage
        places_cost = collection.api_calls * settings.discovery_places_cost_per_request_usd
        token_usage = TokenUsage(
            tokens_used=ai_usage.tokens_used,
            api_calls=collection.api_calls + ai_usage.api_calls,
            estimated_cost_usd=ai_usage.estimated_cost_usd + places_cost,
        )
        data_source = (
            BusinessSource.MOCK.value
            if collection.used_mock_data
            else BusinessSource.GOOGLE_PLACES.value
        )
        results = SweepResults(
            sources_searched=1 if self._collector.is_configured() else 0,
            raw_results_found=len(collection.businesses),
            after_deduplication=len(unique),
            after_verification=len(saved),
            final_leads_count=len(saved),
        )
        self._repository.update_sweep(
            company_id,
            sweep_id,
            {
                "status": SweepStatus.COMPLETED.value,
                "completedAt": now_ms(),
                "tokenUsage": token_usage.to_document(),
                "results": results.to_document(),
                "warnings": list(analysis.warnings),
                "dataSource": data_source,
                "aiProvider": analysis.ai_provider,
            },
        )

        self._update_profile(profile, len(saved))

        return SweepOutcome(
            sweep_id=sweep_id,
            leads_found=len(saved),
            message=compose_message(
                len(saved),
                used_mock_data=collection.used_mock_data,
                ai_provider=analysis.ai_provider,
                warnings=analysis.warnings,
            ),
            data_source=data_source,
            ai_provider=analysis.ai_provider,
            api_calls=token_usage.api_calls,
            token_usage=token_usage,
            estimated_cost_usd=token_usage.estimated_cost_usd,
            warnings=list(analysis.warnings),
        )

    def _update_profile(self, profile: DiscoveryProfile, leads_found: int) -> None:
        company_id = profile.company_id
        self._repository.increment_profile_stats(company_id, totalLeadsFound=leads_found)
        schedule = profile.schedule
        next_run_at = (
            calculate_next_run_time(
                schedule.frequency,
                schedule.preferred_time,
                schedule.custom_days,
                now=self._clock(),
            )
            if schedule.enabled
            else None
        )
        self._repository.merge_profile(
            company_id,
            {
                "stats": {"lastSweepLeadsCount": leads_found},
                "schedule": {"lastRunAt": now_ms(), "nextRunAt": next_run_at},
                "updatedAt": now_ms(),
            },
        )

    def _mark_failed(
        self,
        company_id: str,
        sweep_id: str,
        error: str,
        budget: TokenBudget,
        started: float,
    ) -> None:
        usage = budget.get_usage()
        metrics.timing("sweep.duration_ms", (time.perf_counter() - started) * 1000)
        metrics.increment("sweep.failed")
        logger.error(
            "discovery.sweep.failed",
            extra={"company_id": company_id, "sweep_id": sweep_id, "error": error},
        )
        try:
            self._repository.update_sweep(
                company_id,
                sweep_id,
                {
                    "status": SweepStatus.FAILED.value,
                    "completedAt": now_ms(),
                    "tokenUsage": usage.to_document(),
                    "errors": [error],
                },
            )
        except DiscoveryError:
            logger.exception(
                "discovery.sweep.mark_failed_error",
                extra={"company_id": company_id, "sweep_id": sweep_id},
            )
        # spent tokens still count toward the daily ceilings
        self._usage_guard.release_sweep(company_id, usage)

    def _default_analyzer(self, budget: TokenBudget, breaker: CircuitBreaker) -> LeadAnalyzer:
        return LeadAnalyzer(
            self._provider,
            budget=budget,
            circuit_breaker=breaker,
            max_leads_to_score=self._usage_guard.config.max_leads_to_analyze,
        )


_ORCHESTRATOR_INSTANCE: SweepOrchestrator | None = None


def get_sweep_orchestrator() -> SweepOrchestrator:
    """Singleton accessor used by API routes; holds the process-wide usage guard."""
    global _ORCHESTRATOR_INSTANCE  # noqa: PLW0603
    if _ORCHESTRATOR_INSTANCE is None:
        _ORCHESTRATOR_INSTANCE = SweepOrchestrator(
            DiscoveryRepository(build_document_store()),
            FallbackCollector.from_settings(),
            usage_guard=UsageGuard(),
            provider=select_provider(),
        )
    return _ORCHESTRATOR_INSTANCE
