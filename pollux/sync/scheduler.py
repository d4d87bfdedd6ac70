from __future__ import annotations

import asyncio
import logging

from opentelemetry import trace

from pollux.sync.registry import PlatformRegistry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_tick(registry: PlatformRegistry) -> None:
    with tracer.start_as_current_span("scheduler.tick") as span:
        span.set_attribute("scheduler.platforms", len(registry.platforms))
        outcomes = await registry.sync_all()
    failed = [outcome.platform for outcome in outcomes if not outcome.ok]
    if failed:
        logger.warning("sync tick finished with failures platforms=%s", failed)


async def run_scheduler(registry: PlatformRegistry, interval_seconds: float) -> None:
    """Sync every platform, then sleep; a tick never overlaps the next one."""
    logger.info("scheduler started platforms=%s interval=%.1fs", registry.platforms, interval_seconds)
    while True:
        try:
            await run_tick(registry)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - loop robustness
            logger.exception("sync tick failed: %s", exc)
        await asyncio.sleep(interval_seconds)
