from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from forumbrief import __version__
from forumbrief.api import summaries
from forumbrief.config import Settings, get_settings
from forumbrief.logging_config import configure_logging
from forumbrief.middleware.request_id import RequestIdMiddleware
from forumbrief.services.container import SummaryServices, build_services

# Configure structured logging
configure_logging()

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: SummaryServices = app.state.services
    await services.start()
    logger.info("Summary services started", provider=services.settings.summary_provider)

    yield

    # Shutdown
    await services.stop()
    logger.info("Shutting down...")


def _cors_origins(settings: Settings) -> list[str]:
    origins = [settings.frontend_url, "http://localhost:5173"]
    # Allow both www and non-www versions
    if "://www." not in settings.frontend_url:
        origins.append(settings.frontend_url.replace("://", "://www."))
    else:
        origins.append(settings.frontend_url.replace("://www.", "://"))
    return origins


def create_app(settings: Optional[Settings] = None, services: Optional[SummaryServices] = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="ForumBrief API",
        description="Cached, fault-tolerant AI summaries of forum threads",
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.app_env == "production" else "/docs",
        redoc_url=None if settings.app_env == "production" else "/redoc",
        openapi_url=None if settings.app_env == "production" else "/openapi.json",
    )
    # Built eagerly so the app is usable even where the lifespan never runs
    app.state.services = services or build_services(settings)

    # Prometheus metrics
    if settings.prometheus_enabled:
        from prometheus_fastapi_instrumentator import Instrumentator

        Instrumentator(
            should_group_status_codes=True,
            should_ignore_untemplated=True,
            excluded_handlers=["/health", "/metrics"],
        ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-Response-Time",
            "X-Cache-Status",
            "X-AI-Status",
            "X-Error-Category",
            "X-Retryable",
            "Retry-After",
        ],
    )
    app.add_middleware(RequestIdMiddleware)

    app.include_router(summaries.router, prefix="/api", tags=["summaries"])

    @app.get("/")
    async def root():
        if settings.app_env == "production":
            return {"status": "ok"}
        return {
            "message": "ForumBrief API",
            "version": __version__,
            "docs": "/docs",
        }

    @app.get("/health")
    async def health(request: Request):
        """Liveness plus a snapshot of cache occupancy."""
        services: SummaryServices = request.app.state.services
        size = services.cache.get_size()
        return {
            "status": "healthy",
            "cache": {
                "entries": size.entries,
                "maxEntries": size.max_entries,
                "utilizationPercent": size.utilization_percent,
                "sweepRunning": services.cache.running,
            },
        }

    return app


app = create_app()
