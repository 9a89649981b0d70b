"""Discovery profile management and schedule helpers."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any

from app.models.discovery import (
    DiscoveryProfile,
    ScheduleFrequency,
    TargetingCriteria,
    now_ms,
)
from app.services.discovery.errors import DiscoveryError
from app.services.discovery.repositories import DiscoveryRepository, deep_merge

logger = logging.getLogger(__name__)

MIN_DESCRIPTION_LENGTH = 20

_INDUSTRY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Manufacturing": ("manufacturing", "factory", "production", "industrial"),
    "Healthcare": ("healthcare", "medical", "hospital", "clinic", "health"),
    "Technology": ("technology", "tech", "software", "saas", "digital"),
    "Retail": ("retail", "store", "shop", "ecommerce", "e-commerce"),
    "Construction": ("construction", "building", "contractor"),
    "Real Estate": ("real estate", "property", "commercial real estate", "office building"),
    "HVAC": ("hvac", "heating", "cooling", "air conditioning"),
    "Logistics": ("logistics", "warehouse", "shipping", "transportation"),
    "Finance": ("finance", "financial", "banking", "insurance"),
    "Professional Services": ("consulting", "legal", "accounting", "professional services"),
}
_STATE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "TX": ("texas", "houston", "dallas", "austin", "san antonio"),
    "CA": ("california", "los angeles", "san francisco", "san diego"),
    "NY": ("new york", "nyc", "manhattan"),
    "FL": ("florida", "miami", "orlando", "tampa"),
    "IL": ("illinois", "chicago"),
    "PA": ("pennsylvania", "philadelphia"),
    "OH": ("ohio", "cleveland", "columbus"),
    "GA": ("georgia", "atlanta"),
    "WA": ("washington", "seattle"),
    "AZ": ("arizona", "phoenix"),
}
_KNOWN_CITIES = (
    "houston",
    "dallas",
    "austin",
    "san antonio",
    "los angeles",
    "chicago",
    "new york",
    "miami",
    "atlanta",
    "phoenix",
    "seattle",
    "denver",
    "boston",
)
_PAIN_POINT_PHRASES = (
    "high energy costs",
    "energy costs",
    "reduce costs",
    "cost reduction",
    "outdated equipment",
    "aging equipment",
    "old equipment",
    "manual processes",
    "inefficient processes",
    "compliance",
    "regulations",
    "customer retention",
    "losing customers",
    "scaling",
    "growth challenges",
    "digital transformation",
)
_BUYING_SIGNAL_PHRASES = (
    "expanding",
    "expansion",
    "new location",
    "hiring",
    "growing team",
    "recently funded",
    "funding",
    "investment",
    "upgrading",
    "modernizing",
    "sustainability",
    "green initiatives",
)
_SIZE_PATTERN = re.compile(r"(\d+)\s*(?:-|–|to)+\s*(\d+)\s*(?:employees|staff|people)", re.I)


def create_default_profile(company_id: str) -> DiscoveryProfile:
    """Unsaved profile with default targeting, schedule, notifications and stats."""
    now = now_ms()
    return DiscoveryProfile(company_id=company_id, created_at=now, updated_at=now)


def get_profile(repository: DiscoveryRepository, company_id: str) -> tuple[DiscoveryProfile, bool]:
    """Return ``(profile, is_new)``; a missing profile yields an unsaved default."""
    profile = repository.get_profile(company_id)
    if profile is None:
        return create_default_profile(company_id), True
    return profile, False


def save_profile(
    repository: DiscoveryRepository, company_id: str, updates: dict[str, Any]
) -> DiscoveryProfile:
    """Create or merge a profile from a camelCase partial payload.

    Nested sections (targeting criteria, schedule, notifications) merge into
    the stored values; omitted sections are left untouched. Identity, stats
    and timestamps cannot be overwritten by callers.
    """
    allowed = {
        key: value
        for key, value in updates.items()
        if key in {"businessDescription", "targetingCriteria", "schedule", "notifications"}
    }
    existing = repository.get_profile(company_id)
    base = (existing or create_default_profile(company_id)).to_document()
    merged = deep_merge(base, allowed)
    merged["companyId"] = company_id
    merged["updatedAt"] = now_ms()

    profile = DiscoveryProfile.model_validate(merged)
    schedule = profile.schedule
    if "schedule" in allowed:
        schedule.next_run_at = (
            calculate_next_run_time(
                schedule.frequency, schedule.preferred_time, schedule.custom_days
            )
            if schedule.enabled
            else None
        )
    saved = repository.save_profile(profile)
    logger.info(
        "discovery.profile.saved",
        extra={"company_id": company_id, "created": existing is None},
    )
    return saved


def delete_profile(repository: DiscoveryRepository, company_id: str) -> bool:
    deleted = repository.delete_profile(company_id)
    logger.info("discovery.profile.deleted", extra={"company_id": company_id, "deleted": deleted})
    return deleted


def is_profile_complete(profile: DiscoveryProfile) -> bool:
    return bool(profile.business_description.strip()) and bool(
        profile.targeting_criteria.industries
    )


def calculate_next_run_time(
    frequency: ScheduleFrequency | str,
    preferred_time: str,
    custom_days: int | None = None,
    *,
    now: datetime | None = None,
) -> int:
    """Next scheduled run in epoch milliseconds, computed in UTC."""
    now = now or datetime.now(timezone.utc)
    hours, minutes = _parse_preferred_time(preferred_time)
    candidate = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)

    frequency = ScheduleFrequency(frequency)
    if frequency is ScheduleFrequency.WEEKLY:
        candidate += timedelta(days=_days_until_monday(candidate))
    elif frequency is ScheduleFrequency.BIWEEKLY:
        candidate += timedelta(days=_days_until_monday(candidate) + 7)
    elif frequency is ScheduleFrequency.MONTHLY:
        if candidate.month == 12:
            candidate = candidate.replace(year=candidate.year + 1, month=1, day=1)
        else:
            candidate = candidate.replace(month=candidate.month + 1, day=1)
    elif frequency is ScheduleFrequency.CUSTOM and custom_days:
        candidate += timedelta(days=custom_days)
    return int(candidate.timestamp() * 1000)


def _days_until_monday(moment: datetime) -> int:
    # a Monday rolls to the following week
    return (7 - moment.weekday()) % 7 or 7


def _parse_preferred_time(value: str) -> tuple[int, int]:
    try:
        hours_text, minutes_text = (value or "09:00").split(":", 1)
        hours, minutes = int(hours_text), int(minutes_text)
    except ValueError as exc:
        raise DiscoveryError(
            f"Invalid preferred time: {value!r}", code="400_INVALID_SCHEDULE"
        ) from exc
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise DiscoveryError(f"Invalid preferred time: {value!r}", code="400_INVALID_SCHEDULE")
    return hours, minutes


def parse_business_description(description: str) -> TargetingCriteria:
    """Keyword-based extraction of targeting criteria from free text."""
    if not description or len(description.strip()) < MIN_DESCRIPTION_LENGTH:
        raise DiscoveryError(
            "Please provide a more detailed business description (at least 20 characters)",
            code="400_DESCRIPTION_TOO_SHORT",
        )
    lowered = description.lower()
    criteria = TargetingCriteria(ideal_customer_profile=description[:500])

    criteria.industries = [
        industry
        for industry, keywords in _INDUSTRY_KEYWORDS.items()
        if any(keyword in lowered for keyword in keywords)
    ]
    criteria.geography.states = [
        state
        for state, keywords in _STATE_KEYWORDS.items()
        if any(keyword in lowered for keyword in keywords)
    ]
    criteria.geography.cities = [city.title() for city in _KNOWN_CITIES if city in lowered]

    size_match = _SIZE_PATTERN.search(description)
    if size_match:
        criteria.company_size.min = int(size_match.group(1))
        criteria.company_size.max = int(size_match.group(2))
    elif "small business" in lowered:
        criteria.company_size.min, criteria.company_size.max = 1, 50
    elif "mid-size" in lowered or "midsize" in lowered:
        criteria.company_size.min, criteria.company_size.max = 50, 250
    elif "enterprise" in lowered:
        criteria.company_size.min, criteria.company_size.max = 250, 10_000

    criteria.pain_points = [phrase for phrase in _PAIN_POINT_PHRASES if phrase in lowered]
    criteria.buying_signals = [phrase for phrase in _BUYING_SIGNAL_PHRASES if phrase in lowered]
    return criteria
