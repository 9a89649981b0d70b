import logging
import time
from contextlib import asynccontextmanager

try:
    import sentry_sdk
except ModuleNotFoundError:  # Sentry optional in local/test envs
    sentry_sdk = None
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware

try:
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
except ModuleNotFoundError:  # Sentry optional during local dev/tests
    FastApiIntegration = None
    LoggingIntegration = None

from app.api.routes import discovery, health
from app.config import settings
from app.observability.metrics import metrics
from app.services.discovery.orchestrator import get_sweep_orchestrator
from app.services.discovery.repositories import SqlDocumentStore

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _init_sentry() -> None:
    if not (sentry_sdk and FastApiIntegration and LoggingIntegration and settings.sentry_dsn):
        return
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        integrations=[
            FastApiIntegration(auto_enabling_instrumentations=False),
            LoggingIntegration(level=logging.INFO),
        ],
        traces_sample_rate=0.1,
        environment=settings.environment,
    )
    logger.info("app.sentry_initialized", extra={"environment": settings.environment})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize Sentry and the discovery orchestrator; release the store on shutdown."""
    _init_sentry()
    orchestrator = get_sweep_orchestrator()
    logger.info(
        "app.startup",
        extra={
            "app_name": settings.app_name,
            "version": settings.app_version,
            "directory": "google_places" if settings.google_places_api_key else "mock",
            "ai_provider": orchestrator.provider.kind.value,
        },
    )

    yield

    store = orchestrator.repository.store
    if isinstance(store, SqlDocumentStore):
        store.dispose()
    logger.info("app.shutdown")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="AI lead discovery: directory collection, two-stage scoring and lead review.",
    lifespan=lifespan,
    debug=settings.debug,
)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(
    TrustedHostMiddleware, allowed_hosts=["*"] if settings.debug else ["localhost", "127.0.0.1"]
)


@app.middleware("http")
async def record_request(request: Request, call_next):
    """Log each request with its latency and emit a timing metric per route."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    route = request.scope.get("route")
    path = getattr(route, "path", request.url.path)
    logger.info(
        "http.request",
        extra={
            "method": request.method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": round(elapsed_ms, 2),
        },
    )
    metrics.timing(
        "http.request_ms",
        elapsed_ms,
        tags={"method": request.method, "path": path, "status": response.status_code},
    )
    return response


app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(discovery.router, prefix="/api", tags=["discovery"])


@app.get("/")
async def root():
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.environment,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host=settings.host, port=settings.port, reload=settings.debug)
