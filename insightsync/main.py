"""
InsightSync FastAPI Application Entry Point

This module wires the pipeline components together and exposes the sync
trigger API.
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from datetime import timedelta
from typing import AsyncGenerator, Dict, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from insightsync import __version__
from insightsync.api import sync
from insightsync.config.settings import Settings, get_settings
from insightsync.integrations import facebook, instagram  # noqa: F401  registers adapters
from insightsync.integrations.base import PlatformAdapter, default_registry
from insightsync.integrations.memory_store import InMemoryStore
from insightsync.integrations.rate_limiter import RateLimiter
from insightsync.integrations.storage import AnalyticsStorage, CredentialSource
from insightsync.models.analytics import Platform
from insightsync.services.cache import AnalyticsCache
from insightsync.services.comparison import ComparisonService
from insightsync.services.scheduler import SyncScheduler
from insightsync.services.sync import SyncOrchestrator
from insightsync.utils.error_handling import InsightSyncError
from insightsync.utils.logger import setup_logging


@dataclass
class Services:
    """Components shared for the lifetime of the process."""
    rate_limiter: RateLimiter
    store: AnalyticsStorage
    cache: AnalyticsCache
    adapters: Dict[Platform, PlatformAdapter]
    orchestrator: SyncOrchestrator
    comparison: ComparisonService
    scheduler: SyncScheduler
    scheduler_task: Optional["asyncio.Task[None]"] = field(default=None)

    async def aclose(self) -> None:
        await self.scheduler.stop()
        if self.scheduler_task is not None:
            self.scheduler_task.cancel()
            with suppress(asyncio.CancelledError):
                await self.scheduler_task
        for adapter in self.adapters.values():
            await adapter.client.aclose()
        await self.rate_limiter.aclose()


def build_services(
    settings: Settings,
    store: Optional[AnalyticsStorage] = None,
    credentials: Optional[CredentialSource] = None,
) -> Services:
    """
    Construct the rate limiter, clients, store, cache and orchestrator.

    Without an injected store an empty in-memory store is used, which also
    serves as the credential source unless one is given.
    """
    rate_limiter = RateLimiter.from_settings(settings)
    if store is None:
        store = InMemoryStore()
    if credentials is None:
        credentials = store
    cache = AnalyticsCache(ttl=timedelta(minutes=settings.cache_ttl_minutes))
    adapters = default_registry.build_all(rate_limiter, settings)
    orchestrator = SyncOrchestrator(
        storage=store,
        credentials=credentials,
        adapters=adapters,
        cache=cache,
        settings=settings,
    )
    return Services(
        rate_limiter=rate_limiter,
        store=store,
        cache=cache,
        adapters=adapters,
        orchestrator=orchestrator,
        comparison=ComparisonService(store, cache),
        scheduler=SyncScheduler(orchestrator, cache=cache, settings=settings),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    logger = structlog.get_logger(__name__)
    settings = get_settings()

    services = build_services(settings, app.state.store, app.state.credentials)
    app.state.services = services
    if settings.enable_scheduler:
        services.scheduler_task = asyncio.create_task(services.scheduler.start())
    logger.info("InsightSync application starting up", scheduler=settings.enable_scheduler)

    yield

    logger.info("InsightSync application shutting down")
    await services.aclose()


def create_application(
    store: Optional[AnalyticsStorage] = None,
    credentials: Optional[CredentialSource] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        store: Storage collaborator; defaults to an empty in-memory store
        credentials: Credential source; defaults to the store
    """
    settings = get_settings()

    app = FastAPI(
        title="InsightSync API",
        description="Social analytics collection and normalization",
        version=__version__,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.credentials = credentials

    app.include_router(sync.router, prefix="/api/v1/sync", tags=["sync"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint for monitoring and load balancers."""
        return {"status": "healthy", "service": "insightsync", "version": __version__}

    @app.exception_handler(InsightSyncError)
    async def insightsync_exception_handler(request: Request, exc: InsightSyncError):
        structlog.get_logger(__name__).error(
            "Unhandled pipeline error",
            path=request.url.path,
            error=exc.message,
            category=exc.category.value,
        )
        return JSONResponse(status_code=502, content={"error": exc.to_dict()})

    return app


app = create_application()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "insightsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
