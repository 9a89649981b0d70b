"""API endpoints for discovery sweeps, profiles and discovered leads.

Sweeps and store access block, so those handlers are plain ``def`` and run in
FastAPI's worker threadpool instead of on the event loop.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from app.services.discovery.errors import DiscoveryError, SweepExecutionError
from app.services.discovery.leads import LeadPage, list_leads, update_lead_status
from app.services.discovery.orchestrator import (
    SweepOrchestrator,
    SweepOutcome,
    get_sweep_orchestrator,
)
from app.services.discovery.profiles import (
    delete_profile,
    get_profile,
    parse_business_description,
    save_profile,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class _CamelRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProfileUpdateRequest(_CamelRequest):
    """Partial profile update; nested sections merge into stored values."""

    business_description: str | None = None
    targeting_criteria: dict[str, Any] | None = None
    schedule: dict[str, Any] | None = None
    notifications: dict[str, Any] | None = None


class ParseDescriptionRequest(_CamelRequest):
    description: str = ""


class LeadUpdateRequest(_CamelRequest):
    lead_id: str | None = None
    status: str | None = None
    dismiss_reason: str | None = None
    pipeline_lead_id: str | None = None


async def get_company_id(
    x_company_id: str | None = Header(default=None, alias="X-Company-Id"),
) -> str:
    """Tenant id forwarded by the authenticating gateway."""
    if not x_company_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return x_company_id


async def get_user_id(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
) -> str | None:
    return x_user_id or None


@router.post("/discovery/sweep", response_model=SweepOutcome)
def run_sweep(
    company_id: str = Depends(get_company_id),
    user_id: str | None = Depends(get_user_id),
    orchestrator: SweepOrchestrator = Depends(get_sweep_orchestrator),
) -> SweepOutcome:
    """Trigger a manual discovery sweep for the tenant."""
    try:
        return orchestrator.run_sweep(company_id, user_id=user_id)
    except SweepExecutionError as exc:
        logger.error(
            "discovery.api_error",
            extra={"company_id": company_id, "code": exc.code, "sweep_id": exc.sweep_id},
        )
        raise HTTPException(
            status_code=_map_error_code(exc.code),
            detail={"error": exc.message, "sweepId": exc.sweep_id},
        ) from exc
    except DiscoveryError as exc:
        raise _http_error(exc, company_id) from exc


@router.get("/discovery/sweep")
def list_sweeps(
    limit: int = Query(10, ge=0, le=100),
    company_id: str = Depends(get_company_id),
    orchestrator: SweepOrchestrator = Depends(get_sweep_orchestrator),
) -> dict[str, Any]:
    """Recent sweeps, newest first."""
    sweeps = orchestrator.list_sweeps(company_id, limit=limit)
    return {"sweeps": [sweep.to_document() for sweep in sweeps]}


@router.get("/discovery/profile")
def read_profile(
    company_id: str = Depends(get_company_id),
    orchestrator: SweepOrchestrator = Depends(get_sweep_orchestrator),
) -> dict[str, Any]:
    profile, is_new = get_profile(orchestrator.repository, company_id)
    return {"profile": profile.to_document(), "isNew": is_new}


@router.post("/discovery/profile")
def write_profile(
    payload: ProfileUpdateRequest,
    company_id: str = Depends(get_company_id),
    orchestrator: SweepOrchestrator = Depends(get_sweep_orchestrator),
) -> dict[str, Any]:
    updates = payload.model_dump(by_alias=True, exclude_none=True)
    try:
        profile = save_profile(orchestrator.repository, company_id, updates)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False, include_context=False),
        ) from exc
    except DiscoveryError as exc:
        raise _http_error(exc, company_id) from exc
    return {"success": True, "profile": profile.to_document()}


@router.delete("/discovery/profile")
def remove_profile(
    company_id: str = Depends(get_company_id),
    orchestrator: SweepOrchestrator = Depends(get_sweep_orchestrator),
) -> dict[str, Any]:
    deleted = delete_profile(orchestrator.repository, company_id)
    return {"success": True, "deleted": deleted}


@router.post("/discovery/parse")
async def parse_description(
    payload: ParseDescriptionRequest,
    company_id: str = Depends(get_company_id),
) -> dict[str, Any]:
    """Suggest targeting criteria from a free-text business description."""
    try:
        criteria = parse_business_description(payload.description)
    except DiscoveryError as exc:
        raise _http_error(exc, company_id) from exc
    return {
        "success": True,
        "targetingCriteria": criteria.to_document(),
        "note": "Criteria parsed using keyword matching.",
    }


@router.get("/discovery/leads", response_model=LeadPage)
def read_leads(
    lead_status: str | None = Query(None, alias="status"),
    limit: int = Query(50, ge=0, le=500),
    offset: int = Query(0, ge=0),
    company_id: str = Depends(get_company_id),
    orchestrator: SweepOrchestrator = Depends(get_sweep_orchestrator),
) -> LeadPage:
    try:
        return list_leads(
            orchestrator.repository, company_id, status=lead_status, limit=limit, offset=offset
        )
    except DiscoveryError as exc:
        raise _http_error(exc, company_id) from exc


@router.patch("/discovery/leads")
def review_lead(
    payload: LeadUpdateRequest,
    company_id: str = Depends(get_company_id),
    user_id: str | None = Depends(get_user_id),
    orchestrator: SweepOrchestrator = Depends(get_sweep_orchestrator),
) -> dict[str, Any]:
    try:
        lead = update_lead_status(
            orchestrator.repository,
            company_id,
            payload.lead_id,
            payload.status,
            user_id=user_id,
            dismiss_reason=payload.dismiss_reason,
            pipeline_lead_id=payload.pipeline_lead_id,
        )
    except DiscoveryError as exc:
        raise _http_error(exc, company_id) from exc
    return {"success": True, "lead": lead.to_document()}


def _http_error(exc: DiscoveryError, company_id: str) -> HTTPException:
    logger.error("discovery.api_error", extra={"company_id": company_id, "code": exc.code})
    return HTTPException(status_code=_map_error_code(exc.code), detail=exc.message)


def _map_error_code(code: str) -> int:
    if code in {
        "400_PROFILE_NOT_FOUND",
        "400_PROFILE_INCOMPLETE",
        "400_INVALID_STATUS",
        "400_LEAD_ID_REQUIRED",
        "400_DESCRIPTION_TOO_SHORT",
        "400_INVALID_SCHEDULE",
    }:
        return status.HTTP_400_BAD_REQUEST
    if code == "404_LEAD_NOT_FOUND":
        return status.HTTP_404_NOT_FOUND
    if code in {"429_DAILY_LIMIT", "429_TOKEN_BUDGET", "429_RATE_LIMIT"}:
        return status.HTTP_429_TOO_MANY_REQUESTS
    if code == "502_AI_UPSTREAM":
        return status.HTTP_502_BAD_GATEWAY
    if code == "503_CIRCUIT_OPEN":
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR
