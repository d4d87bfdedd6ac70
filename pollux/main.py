import asyncio
from contextlib import asynccontextmanager, suppress
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from pollux.api.router import api_router
from pollux.core.config import get_settings
from pollux.core.telemetry import (
    TelemetryRuntime,
    configure_logging,
    record_response_status,
    server_span,
    setup_telemetry,
    shutdown_telemetry,
)
from pollux.services.repository import get_repository
from pollux.sync.registry import get_registry
from pollux.sync.scheduler import run_scheduler

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(correlate=settings.otel_log_correlation)
    telemetry_runtime: TelemetryRuntime = setup_telemetry(settings)
    repository = get_repository()
    scheduler_task: asyncio.Task[None] | None = None
    try:
        if repository.database_url:
            # Exhausted retries raise here and abort startup.
            await repository.connect_with_retry()
            await repository.ensure_schema()
            registry = get_registry()
            if settings.scheduler_enabled and registry.platforms:
                scheduler_task = asyncio.create_task(
                    run_scheduler(registry, settings.resync_interval_seconds),
                    name="pollux-scheduler",
                )
        else:
            logger.warning("database not configured; sync scheduler disabled")
        yield
    finally:
        if scheduler_task is not None:
            scheduler_task.cancel()
            with suppress(asyncio.CancelledError):
                await scheduler_task
        await get_registry().aclose()
        get_registry.cache_clear()
        await repository.close()
        get_repository.cache_clear()
        shutdown_telemetry(telemetry_runtime)


app = FastAPI(title=settings.app_name, lifespan=lifespan)


@app.middleware("http")
async def request_tracing_middleware(request: Request, call_next):
    with server_span(request.method, request.url.path) as span:
        started_at = time.perf_counter()
        response = await call_next(request)
        record_response_status(span, response.status_code)
        logger.info(
            "%s %s -> %s in %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started_at) * 1000.0,
        )
    return response


app.include_router(api_router)
