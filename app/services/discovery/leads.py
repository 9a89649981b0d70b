"""Review workflow for discovered leads."""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.discovery import DiscoveredLead, DiscoveredLeadStatus, now_ms
from app.observability.metrics import metrics
from app.services.discovery.errors import (
    DiscoveryError,
    DiscoveryPersistenceError,
    InvalidLeadStatusError,
    LeadNotFoundError,
)
from app.services.discovery.repositories import DiscoveryRepository

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
REVIEW_STATUSES = frozenset(
    {
        DiscoveredLeadStatus.REVIEWED,
        DiscoveredLeadStatus.ADDED_TO_PIPELINE,
        DiscoveredLeadStatus.DISMISSED,
    }
)
_STAT_FIELDS = {
    DiscoveredLeadStatus.ADDED_TO_PIPELINE: "leadsAddedToPipeline",
    DiscoveredLeadStatus.DISMISSED: "leadsDismissed",
}


class LeadPage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    leads: list[DiscoveredLead] = Field(default_factory=list)
    total: int = 0
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0


def list_leads(
    repository: DiscoveryRepository,
    company_id: str,
    *,
    status: DiscoveredLeadStatus | str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> LeadPage:
    resolved_status = _coerce_status(status) if status else None
    limit = max(0, limit)
    offset = max(0, offset)
    leads, total = repository.list_leads(
        company_id, status=resolved_status, limit=limit, offset=offset
    )
    return LeadPage(leads=leads, total=total, limit=limit, offset=offset)


def update_lead_status(
    repository: DiscoveryRepository,
    company_id: str,
    lead_id: str | None,
    status: DiscoveredLeadStatus | str | None,
    *,
    user_id: str | None = None,
    dismiss_reason: str | None = None,
    pipeline_lead_id: str | None = None,
) -> DiscoveredLead:
    """Move a lead out of ``new`` and bump the matching profile counter."""
    if not lead_id:
        raise DiscoveryError("Lead ID is required", code="400_LEAD_ID_REQUIRED")
    resolved = _coerce_status(status)
    if resolved not in REVIEW_STATUSES:
        raise InvalidLeadStatusError("Valid status is required")

    if repository.get_lead(company_id, lead_id) is None:
        raise LeadNotFoundError("Lead not found")

    updates: dict[str, object] = {
        "status": resolved.value,
        "reviewedAt": now_ms(),
        "reviewedBy": user_id,
    }
    if resolved is DiscoveredLeadStatus.DISMISSED and dismiss_reason:
        updates["dismissReason"] = dismiss_reason
    if resolved is DiscoveredLeadStatus.ADDED_TO_PIPELINE and pipeline_lead_id:
        updates["pipelineLeadId"] = pipeline_lead_id
    lead = repository.update_lead(company_id, lead_id, updates)

    stat_field = _STAT_FIELDS.get(resolved)
    if stat_field:
        try:
            repository.increment_profile_stats(company_id, **{stat_field: 1})
        except DiscoveryPersistenceError as exc:
            # profile may have been deleted after the sweep that found this lead
            if exc.code != "404_DOCUMENT_NOT_FOUND":
                raise
            logger.warning(
                "discovery.lead.stats_skipped",
                extra={"company_id": company_id, "lead_id": lead_id, "field": stat_field},
            )

    metrics.increment("leads.reviewed", tags={"status": resolved.value})
    logger.info(
        "discovery.lead.updated",
        extra={"company_id": company_id, "lead_id": lead_id, "status": resolved.value},
    )
    return lead


def _coerce_status(status: DiscoveredLeadStatus | str | None) -> DiscoveredLeadStatus:
    try:
        return DiscoveredLeadStatus(status)
    except ValueError as exc:
        raise InvalidLeadStatusError("Valid status is required") from exc
