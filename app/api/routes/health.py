from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.config import settings
from app.services.discovery.errors import DiscoveryPersistenceError
from app.services.discovery.orchestrator import SweepOrchestrator, get_sweep_orchestrator

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/ready")
def readiness_check(orchestrator: SweepOrchestrator = Depends(get_sweep_orchestrator)):
    """Readiness check that touches the document store and reports provider state."""
    try:
        orchestrator.repository.store.count("_health")
    except DiscoveryPersistenceError as exc:
        logger.error("health.store_unavailable", extra={"code": exc.code})
        raise HTTPException(status_code=503, detail="Document store is not available") from exc

    return {
        "status": "ready",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if settings.database_url else "not configured",
        "aiProvider": orchestrator.provider.kind.value,
        "circuitBreaker": "open" if orchestrator.usage_guard.circuit_breaker.is_open() else "closed",
    }
