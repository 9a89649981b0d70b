import pytest

from app.models.discovery import DiscoveredLead, DiscoveredLeadAIAnalysis, DiscoveredLeadStatus
from app.services.discovery import leads as leads_module
from app.services.discovery.errors import DiscoveryError, InvalidLeadStatusError, LeadNotFoundError
from app.services.discovery.leads import list_leads, update_lead_status
from tests.helpers.factories import COMPANY_ID, seed_profile
from tests.helpers.metrics_stub import StubMetrics


@pytest.fixture(autouse=True)
def stub_metrics(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(leads_module, "metrics", stub)
    return stub


def _add_lead(repository, name="Acme HVAC", discovered_at=1_000, **overrides):
    [lead] = repository.add_leads(
        [
            DiscoveredLead(
                company_id=COMPANY_ID,
                business_name=name,
                ai_analysis=DiscoveredLeadAIAnalysis(match_score=75),
                sweep_id="sweep-1",
                discovered_at=discovered_at,
                **overrides,
            )
        ]
    )
    return lead


def test_list_leads_pages_and_filters(repository):
    for index in range(3):
        _add_lead(repository, f"Lead {index}", discovered_at=1_000 + index)
    _add_lead(repository, "Gone", discovered_at=5_000, status=DiscoveredLeadStatus.DISMISSED)

    page = list_leads(repository, COMPANY_ID, status="new", limit=2, offset=1)

    assert [lead.business_name for lead in page.leads] == ["Lead 1", "Lead 0"]
    assert (page.total, page.limit, page.offset) == (3, 2, 1)
    assert list_leads(repository, COMPANY_ID).total == 4
    with pytest.raises(InvalidLeadStatusError):
        list_leads(repository, COMPANY_ID, status="archived")


def test_dismiss_lead_records_reason_and_stats(repository, stub_metrics):
    seed_profile(repository)
    lead = _add_lead(repository)

    updated = update_lead_status(
        repository,
        COMPANY_ID,
        lead.id,
        "dismissed",
        user_id="user-1",
        dismiss_reason="Too small",
        pipeline_lead_id="ignored",
    )

    assert updated.status is DiscoveredLeadStatus.DISMISSED
    assert updated.dismiss_reason == "Too small"
    assert updated.pipeline_lead_id is None
    assert updated.reviewed_by == "user-1"
    assert updated.reviewed_at is not None
    assert repository.get_profile(COMPANY_ID).stats.leads_dismissed == 1
    assert stub_metrics.counters("leads.reviewed")[0]["tags"] == {"status": "dismissed"}


def test_add_to_pipeline_links_lead(repository):
    seed_profile(repository)
    lead = _add_lead(repository)

    updated = update_lead_status(
        repository,
        COMPANY_ID,
        lead.id,
        DiscoveredLeadStatus.ADDED_TO_PIPELINE,
        pipeline_lead_id="crm-42",
    )

    assert updated.pipeline_lead_id == "crm-42"
    assert repository.get_profile(COMPANY_ID).stats.leads_added_to_pipeline == 1


def test_reviewed_status_leaves_stats_alone(repository):
    seed_profile(repository)
    lead = _add_lead(repository)

    update_lead_status(repository, COMPANY_ID, lead.id, "reviewed")

    stats = repository.get_profile(COMPANY_ID).stats
    assert (stats.leads_dismissed, stats.leads_added_to_pipeline) == (0, 0)


def test_update_survives_missing_profile(repository):
    lead = _add_lead(repository)

    updated = update_lead_status(repository, COMPANY_ID, lead.id, "dismissed")

    assert updated.status is DiscoveredLeadStatus.DISMISSED


@pytest.mark.parametrize("status", [None, "new", "archived"])
def test_update_rejects_invalid_status(repository, status):
    lead = _add_lead(repository)

    with pytest.raises(InvalidLeadStatusError, match="Valid status is required"):
        update_lead_status(repository, COMPANY_ID, lead.id, status)


def test_update_requires_existing_lead(repository):
    with pytest.raises(DiscoveryError) as excinfo:
        update_lead_status(repository, COMPANY_ID, "", "reviewed")
    assert excinfo.value.code == "400_LEAD_ID_REQUIRED"

    with pytest.raises(LeadNotFoundError, match="Lead not found"):
        update_lead_status(repository, COMPANY_ID, "missing", "reviewed")

    other_tenant_lead = _add_lead(repository)
    with pytest.raises(LeadNotFoundError):
        update_lead_status(repository, "company-other", other_tenant_lead.id, "reviewed")
