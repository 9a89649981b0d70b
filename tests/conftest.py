import random

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.models.discovery import TokenSafetyConfig
from app.services.discovery.collectors import (
    FallbackCollector,
    GooglePlacesCollector,
    MockBusinessGenerator,
    SearchCache,
)
from app.services.discovery.orchestrator import SweepOrchestrator, get_sweep_orchestrator
from app.services.discovery.repositories import DiscoveryRepository, InMemoryDocumentStore
from app.services.discovery.token_safety import CircuitBreaker, UsageGuard


@pytest.fixture
def repository() -> DiscoveryRepository:
    return DiscoveryRepository(InMemoryDocumentStore())


@pytest.fixture
def usage_guard() -> UsageGuard:
    return UsageGuard(
        TokenSafetyConfig(),
        circuit_breaker=CircuitBreaker(failure_threshold=5, cooldown_seconds=300),
    )


@pytest.fixture
def offline_collector() -> FallbackCollector:
    """Unconfigured Places collector backed by a seeded mock generator."""
    return FallbackCollector(
        GooglePlacesCollector(None, cache=SearchCache(60)),
        MockBusinessGenerator(random.Random(7)),
    )


@pytest.fixture
def orchestrator(repository, usage_guard, offline_collector) -> SweepOrchestrator:
    return SweepOrchestrator(repository, offline_collector, usage_guard=usage_guard)


@pytest.fixture
def client(orchestrator):
    """Test client wired to an isolated in-memory orchestrator."""
    app.dependency_overrides[get_sweep_orchestrator] = lambda: orchestrator
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_sweep_orchestrator, None)
