from datetime import datetime, timezone

import pytest

from app.models.discovery import ScheduleFrequency
from app.services.discovery.errors import DiscoveryError
from app.services.discovery.profiles import (
    calculate_next_run_time,
    delete_profile,
    get_profile,
    is_profile_complete,
    parse_business_description,
    save_profile,
)
from tests.helpers.factories import COMPANY_ID, seed_profile

# Wednesday
NOW = datetime(2026, 3, 4, 10, 0, tzinfo=timezone.utc)


def _ms(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


@pytest.mark.parametrize(
    ("frequency", "preferred_time", "custom_days", "expected"),
    [
        (ScheduleFrequency.DAILY, "09:00", None, _ms(2026, 3, 5, 9, 0)),
        (ScheduleFrequency.DAILY, "11:30", None, _ms(2026, 3, 4, 11, 30)),
        (ScheduleFrequency.WEEKLY, "09:00", None, _ms(2026, 3, 9, 9, 0)),
        (ScheduleFrequency.BIWEEKLY, "09:00", None, _ms(2026, 3, 16, 9, 0)),
        (ScheduleFrequency.MONTHLY, "09:00", None, _ms(2026, 4, 1, 9, 0)),
        (ScheduleFrequency.CUSTOM, "09:00", 3, _ms(2026, 3, 8, 9, 0)),
        ("custom", "09:00", None, _ms(2026, 3, 5, 9, 0)),
    ],
)
def test_calculate_next_run_time(frequency, preferred_time, custom_days, expected):
    assert calculate_next_run_time(frequency, preferred_time, custom_days, now=NOW) == expected


def test_weekly_run_from_a_monday_rolls_to_next_week():
    sunday = datetime(2026, 3, 8, 10, 0, tzinfo=timezone.utc)

    assert calculate_next_run_time("weekly", "09:00", now=sunday) == _ms(2026, 3, 16, 9, 0)


def test_monthly_run_rolls_over_year_end():
    december = datetime(2026, 12, 15, 10, 0, tzinfo=timezone.utc)

    assert calculate_next_run_time("monthly", "09:00", now=december) == _ms(2027, 1, 1, 9, 0)


@pytest.mark.parametrize("preferred_time", ["25:00", "09:75", "nine"])
def test_calculate_next_run_time_rejects_bad_time(preferred_time):
    with pytest.raises(DiscoveryError) as excinfo:
        calculate_next_run_time("daily", preferred_time, now=NOW)

    assert excinfo.value.code == "400_INVALID_SCHEDULE"


def test_get_profile_returns_unsaved_default(repository):
    profile, is_new = get_profile(repository, COMPANY_ID)

    assert is_new is True
    assert profile.company_id == COMPANY_ID
    assert profile.schedule.frequency is ScheduleFrequency.WEEKLY
    assert profile.notifications.in_app.enabled is True
    assert repository.get_profile(COMPANY_ID) is None


def test_save_profile_merges_sections(repository):
    seed_profile(repository)

    saved = save_profile(
        repository,
        COMPANY_ID,
        {
            "targetingCriteria": {"geography": {"cities": ["Dallas"]}},
            "stats": {"totalLeadsFound": 999},
            "companyId": "someone-else",
        },
    )

    assert saved.company_id == COMPANY_ID
    assert saved.targeting_criteria.geography.cities == ["Dallas"]
    assert saved.targeting_criteria.geography.states == ["TX"]
    assert saved.targeting_criteria.industries == ["HVAC"]
    assert saved.business_description.startswith("We install")
    assert saved.stats.total_leads_found == 0
    assert get_profile(repository, COMPANY_ID)[1] is False


def test_save_profile_computes_next_run_only_when_enabled(repository):
    enabled = save_profile(
        repository,
        COMPANY_ID,
        {"schedule": {"enabled": True, "frequency": "daily", "preferredTime": "06:00"}},
    )
    assert enabled.schedule.next_run_at is not None

    disabled = save_profile(repository, COMPANY_ID, {"schedule": {"enabled": False}})
    assert disabled.schedule.next_run_at is None
    assert disabled.schedule.frequency is ScheduleFrequency.DAILY


def test_is_profile_complete_requires_description_and_industries(repository):
    profile = seed_profile(repository)
    assert is_profile_complete(profile) is True

    assert is_profile_complete(profile.model_copy(update={"business_description": "  "})) is False
    criteria = profile.targeting_criteria.model_copy(update={"industries": []})
    assert is_profile_complete(profile.model_copy(update={"targeting_criteria": criteria})) is False


def test_delete_profile(repository):
    seed_profile(repository)

    assert delete_profile(repository, COMPANY_ID) is True
    assert delete_profile(repository, COMPANY_ID) is False


def test_parse_business_description_extracts_keywords():
    description = (
        "We sell commercial HVAC and air conditioning maintenance to small business owners "
        "in Houston and Dallas, Texas facing high energy costs and expanding."
    )

    criteria = parse_business_description(description)

    assert criteria.industries == ["HVAC"]
    assert criteria.geography.states == ["TX"]
    assert criteria.geography.cities == ["Houston", "Dallas"]
    assert (criteria.company_size.min, criteria.company_size.max) == (1, 50)
    assert criteria.pain_points == ["high energy costs", "energy costs"]
    assert criteria.buying_signals == ["expanding"]
    assert criteria.ideal_customer_profile == description


def test_parse_business_description_reads_explicit_size_range():
    criteria = parse_business_description("Software for clinics with 10-200 employees nationwide.")

    assert (criteria.company_size.min, criteria.company_size.max) == (10, 200)
    assert criteria.industries == ["Healthcare", "Technology"]


def test_parse_business_description_rejects_short_text():
    with pytest.raises(DiscoveryError) as excinfo:
        parse_business_description("HVAC in Texas")

    assert excinfo.value.code == "400_DESCRIPTION_TOO_SHORT"
