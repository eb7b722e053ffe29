"""Main FastAPI application for Toolshelf."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .api.routes import router as api_router
from .config import get_settings
from .database.connection import db_manager
from .database.migrations import create_tables
from .enrichment.exceptions import EnrichmentError
from .observability.logging import configure_logging

logger = logging.getLogger(__name__)


async def run_usage_prune_loop(
    ledger, stop_event: asyncio.Event, retention: timedelta, interval_seconds: float
) -> None:
    """Background loop that drops abandoned quota buckets."""
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            try:
                await ledger.prune(retention)
            except Exception as e:
                logger.warning("Failed to prune usage counters: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings = get_settings()

    configure_logging(
        environment=settings.environment,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    db_manager.initialize()
    await create_tables()

    from .enrichment.http_client import get_http_client
    from .enrichment.provider import GeminiProvider
    from .enrichment.quota import UsageLedger

    get_http_client()
    app.state.enrichment_provider = GeminiProvider(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        base_url=settings.gemini_base_url,
        temperature=settings.gemini_temperature,
        timeout=settings.enrich_timeout_seconds,
    )
    if not app.state.enrichment_provider.is_configured():
        logger.warning("GEMINI_API_KEY is not set; cache misses will fail with provider_error")

    ledger = UsageLedger(
        db_manager.session_factory,
        per_minute=settings.quota_per_minute,
        per_day=settings.quota_per_day,
    )
    app.state.usage_prune_stop = asyncio.Event()
    app.state.usage_prune_task = asyncio.create_task(
        run_usage_prune_loop(
            ledger,
            app.state.usage_prune_stop,
            retention=timedelta(days=settings.usage_retention_days),
            interval_seconds=settings.usage_prune_interval_seconds,
        )
    )

    logger.info("%s v%s started", settings.app_name, settings.app_version)
    logger.info("Environment: %s", settings.environment)
    logger.info(
        "Quota: %d/minute, %d/day; lock TTL %ds; stale after %d days",
        settings.quota_per_minute,
        settings.quota_per_day,
        settings.lock_ttl_seconds,
        settings.stale_after_days,
    )

    yield

    # Shutdown
    logger.info("Shutting down Toolshelf...")

    app.state.usage_prune_stop.set()
    await app.state.usage_prune_task

    await db_manager.close()
    logger.info("Database connections closed")

    from .enrichment.http_client import close_http_client
    await close_http_client()
    logger.info("HTTP client closed")


async def enrichment_error_handler(request: Request, exc: EnrichmentError) -> JSONResponse:
    """Render enrichment failures as typed JSON errors."""
    headers = {}
    retry_after = getattr(exc, "retry_after", None)
    if retry_after:
        headers["Retry-After"] = str(retry_after)
    if exc.status_code >= 500:
        logger.warning("Enrichment failed: %s", exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Shared enrichment cache for a software-tool knowledge base",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id", "Retry-After"],
    )

    from .middleware.request_context import RequestContextMiddleware
    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(EnrichmentError, enrichment_error_handler)

    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/health/live")
    async def health_live():
        """Liveness probe: process is running."""
        return {"status": "alive"}

    @app.get("/health/ready")
    async def health_ready(request: Request):
        """Readiness probe: DB reachable, provider configured."""
        checks = {}

        try:
            from sqlalchemy import text

            from .database.connection import get_db_context
            async with get_db_context() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception as e:
            checks["database"] = f"error: {str(e)}"
            return JSONResponse(
                content={"status": "not_ready", "checks": checks},
                status_code=503,
            )

        provider = getattr(request.app.state, "enrichment_provider", None)
        checks["provider"] = "ok" if provider and provider.is_configured() else "not_configured"

        return {"status": "ready", "checks": checks}

    if settings.enable_metrics:
        @app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            from .observability.metrics import generate_metrics_text
            text = generate_metrics_text()
            if text is None:
                return PlainTextResponse("# prometheus_client not installed\n", status_code=501)
            return PlainTextResponse(text, media_type="text/plain; version=0.0.4; charset=utf-8")

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "toolshelf.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info"
    )
