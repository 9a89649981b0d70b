"""Domain models for the AI lead discovery pipeline."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class DiscoveryModel(BaseModel):
    """Base model that serializes with the camelCase names used in stored documents."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class BusinessSource(str, Enum):
    GOOGLE_PLACES = "google_places"
    MOCK = "mock"
    DIRECTORY = "directory"


class SweepStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SweepTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"


class DiscoveredLeadStatus(str, Enum):
    NEW = "new"
    REVIEWED = "reviewed"
    ADDED_TO_PIPELINE = "added_to_pipeline"
    DISMISSED = "dismissed"


class ScheduleFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class Coordinates(DiscoveryModel):
    lat: float
    lng: float


class CompanySize(DiscoveryModel):
    min: int = 10
    max: int = 500


class Geography(DiscoveryModel):
    countries: list[str] = Field(default_factory=lambda: ["US"])
    states: list[str] = Field(default_factory=list)
    cities: list[str] = Field(default_factory=list)
    radius: float | None = Field(default=None, description="Miles from a point.")


class TargetingCriteria(DiscoveryModel):
    """Tenant-supplied filter used for collection and scoring."""

    industries: list[str] = Field(default_factory=list)
    company_size: CompanySize = Field(default_factory=CompanySize)
    geography: Geography = Field(default_factory=Geography)
    pain_points: list[str] = Field(default_factory=list)
    buying_signals: list[str] = Field(default_factory=list)
    exclude_keywords: list[str] = Field(default_factory=list)
    ideal_customer_profile: str = ""


class RawBusinessData(DiscoveryModel):
    """Unscored business record produced by a collector."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str
    industry: str | None = None
    website: str | None = None
    description: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    coordinates: Coordinates | None = None
    phone: str | None = None
    email: str | None = None
    rating: float | None = Field(default=None, ge=0, le=5)
    review_count: int | None = None
    business_status: str | None = None
    source: BusinessSource = BusinessSource.DIRECTORY
    source_url: str | None = None
    fetched_at: int = Field(default_factory=now_ms)
    external_id: str | None = None
    place_id: str | None = None


class TokenUsage(DiscoveryModel):
    tokens_used: int = 0
    api_calls: int = 0
    estimated_cost_usd: float = Field(default=0.0, alias="estimatedCostUSD")
    timestamp: int = Field(default_factory=now_ms)


class LeadScore(DiscoveryModel):
    lead_index: int
    score: int = Field(ge=0, le=100)
    reasoning: str


class LeadAnalysis(DiscoveryModel):
    lead_index: int
    score: int
    match_reasons: list[str] = Field(default_factory=list)
    pain_points_identified: list[str] = Field(default_factory=list)
    buying_signals: list[str] = Field(default_factory=list)
    summary: str = ""


class DiscoveredLeadAIAnalysis(DiscoveryModel):
    match_score: int
    match_reasons: list[str] = Field(default_factory=list)
    pain_points_identified: list[str] = Field(default_factory=list)
    buying_signals: list[str] = Field(default_factory=list)
    summary: str = ""


class DiscoveredLeadContact(DiscoveryModel):
    name: str = ""
    title: str = ""
    email: str | None = None
    phone: str | None = None
    linkedin: str | None = None


class DiscoveredLeadLocation(DiscoveryModel):
    address: str | None = None
    city: str = "Unknown"
    state: str = "Unknown"
    country: str = "US"
    coordinates: Coordinates | None = None


class VerificationChecks(DiscoveryModel):
    website_exists: bool = False
    phone_valid: bool = False
    email_valid: bool = False
    business_registered: bool = False


class DiscoveredLeadVerification(DiscoveryModel):
    status: str = "pending"
    verified_at: int | None = None
    checks: VerificationChecks = Field(default_factory=VerificationChecks)


class DiscoveredLeadSource(DiscoveryModel):
    type: str
    url: str = ""
    found_at: int


class DiscoveredLead(DiscoveryModel):
    """Persisted lead produced by a sweep."""

    id: str | None = None
    company_id: str
    discovery_profile_id: str = "current"
    business_name: str
    industry: str = "Unknown"
    website: str | None = None
    contacts: list[DiscoveredLeadContact] = Field(default_factory=list)
    location: DiscoveredLeadLocation = Field(default_factory=DiscoveredLeadLocation)
    ai_analysis: DiscoveredLeadAIAnalysis
    verification: DiscoveredLeadVerification = Field(default_factory=DiscoveredLeadVerification)
    sources: list[DiscoveredLeadSource] = Field(default_factory=list)
    status: DiscoveredLeadStatus = DiscoveredLeadStatus.NEW
    dismiss_reason: str | None = None
    pipeline_lead_id: str | None = None
    sweep_id: str
    discovered_at: int = Field(default_factory=now_ms)
    reviewed_at: int | None = None
    reviewed_by: str | None = None


class SweepResults(DiscoveryModel):
    sources_searched: int = 0
    raw_results_found: int = 0
    after_deduplication: int = 0
    after_verification: int = 0
    final_leads_count: int = 0


class DiscoverySweep(DiscoveryModel):
    """Persisted record of one discovery run."""

    id: str | None = None
    company_id: str
    discovery_profile_id: str = "current"
    status: SweepStatus = SweepStatus.RUNNING
    started_at: int = Field(default_factory=now_ms)
    completed_at: int | None = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    results: SweepResults = Field(default_factory=SweepResults)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    data_source: str | None = None
    ai_provider: str | None = None
    triggered_by: SweepTrigger = SweepTrigger.MANUAL
    triggered_by_user_id: str | None = None


class DiscoverySchedule(DiscoveryModel):
    enabled: bool = False
    frequency: ScheduleFrequency = ScheduleFrequency.WEEKLY
    custom_days: int | None = None
    preferred_time: str = "09:00"
    last_run_at: int | None = None
    next_run_at: int | None = None


class DiscordNotification(DiscoveryModel):
    enabled: bool = False
    channel_id: str | None = None
    mention_role: str | None = None


class EmailNotification(DiscoveryModel):
    enabled: bool = False
    recipients: list[str] = Field(default_factory=list)


class InAppNotification(DiscoveryModel):
    enabled: bool = True


class DiscoveryNotifications(DiscoveryModel):
    discord: DiscordNotification = Field(default_factory=DiscordNotification)
    email: EmailNotification = Field(default_factory=EmailNotification)
    in_app: InAppNotification = Field(default_factory=InAppNotification)


class DiscoveryStats(DiscoveryModel):
    total_leads_found: int = 0
    leads_added_to_pipeline: int = 0
    leads_dismissed: int = 0
    last_sweep_leads_count: int = 0


class DiscoveryProfile(DiscoveryModel):
    """Tenant discovery configuration."""

    id: str = "current"
    company_id: str
    business_description: str = ""
    targeting_criteria: TargetingCriteria = Field(default_factory=TargetingCriteria)
    schedule: DiscoverySchedule = Field(default_factory=DiscoverySchedule)
    notifications: DiscoveryNotifications = Field(default_factory=DiscoveryNotifications)
    stats: DiscoveryStats = Field(default_factory=DiscoveryStats)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class TokenSafetyConfig(DiscoveryModel):
    """Ceilings enforced per sweep, per company per day, and platform-wide."""

    max_tokens_per_sweep: int = 50_000
    max_api_calls_per_sweep: int = Field(default=20, alias="maxAPICallsPerSweep")
    max_leads_to_analyze: int = 50
    max_tokens_per_company_per_day: int = 100_000
    max_sweeps_per_company_per_day: int = 3
    max_tokens_per_hour: int = 500_000
    max_concurrent_sweeps: int = 5
    max_daily_cost_usd: float = Field(default=50.0, alias="maxDailyCostUSD")
    alert_threshold_usd: float = Field(default=25.0, alias="alertThresholdUSD")


class CompanyDailyUsage(DiscoveryModel):
    tokens: int = 0
    sweeps: int = 0
    cost_usd: float = Field(default=0.0, alias="costUSD")


class DailyUsageRecord(DiscoveryModel):
    date: str
    total_tokens: int = 0
    total_cost_usd: float = Field(default=0.0, alias="totalCostUSD")
    sweep_count: int = 0
    by_company: dict[str, CompanyDailyUsage] = Field(default_factory=dict)


class CircuitBreakerState(DiscoveryModel):
    is_open: bool = False
    failure_count: int = 0
    last_failure: float | None = None
    cooldown_until: float | None = None
