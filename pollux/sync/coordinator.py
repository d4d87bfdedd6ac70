from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
import logging

from opentelemetry import trace

from pollux.sync.models import SyncOutcome, SyncState, SyncWindow
from pollux.sync.persistence import PersistenceEngine, SyncStore, utc_now
from pollux.sync.platforms.base import GitPlatformAdapter, PlatformError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class SyncCoordinator:
    """Runs fetch + reconcile cycles for one platform, one cycle at a time.

    The lock is held for a whole cycle, so a scheduled tick and a manual
    force-sync for the same platform never overlap. A failed fetch never
    reaches the store; a failed reconcile rolls back, so in both cases the
    next cycle computes the same window again.
    """

    def __init__(
        self,
        adapter: GitPlatformAdapter,
        store: SyncStore,
        *,
        engine: PersistenceEngine | None = None,
        clock: Callable[[], datetime] = utc_now,
        lookback_days: int = 90,
        fetch_timeout_seconds: float | None = None,
        reconcile_timeout_seconds: float | None = None,
    ) -> None:
        self.adapter = adapter
        self.store = store
        self.engine = engine or PersistenceEngine(store, clock=clock)
        self.clock = clock
        self.lookback = timedelta(days=max(1, lookback_days))
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.reconcile_timeout_seconds = reconcile_timeout_seconds
        self.state = SyncState.IDLE
        self.last_outcome: SyncOutcome | None = None
        self._lock = asyncio.Lock()

    @property
    def platform(self) -> str:
        return self.adapter.name

    async def compute_window(self) -> SyncWindow:
        now = self.clock()
        watermark = await self.store.get_watermark(self.platform)
        return SyncWindow(start=watermark or now - self.lookback, end=now)

    async def update(self) -> SyncOutcome:
        async with self._lock:
            with tracer.start_as_current_span("sync.cycle") as span:
                span.set_attribute("sync.platform", self.platform)
                try:
                    outcome = await self._run_cycle()
                finally:
                    self.state = SyncState.IDLE
                span.set_attribute("sync.status", outcome.status)
                self.last_outcome = outcome
                return outcome

    async def _run_cycle(self) -> SyncOutcome:
        self.state = SyncState.FETCHING
        try:
            window = await self.compute_window()
        except Exception as exc:
            logger.exception("cannot read sync watermark platform=%s", self.platform)
            return SyncOutcome(platform=self.platform, status="fetch_failed", error=str(exc) or type(exc).__name__)

        try:
            with tracer.start_as_current_span("sync.fetch"):
                events = await asyncio.wait_for(self.adapter.fetch_events(window), timeout=self.fetch_timeout_seconds)
        except (PlatformError, asyncio.TimeoutError) as exc:
            self.adapter.discard_cache()
            error = str(exc) or type(exc).__name__
            logger.error("fetch failed platform=%s window=%s..%s: %s", self.platform, window.start, window.end, error)
            return SyncOutcome(platform=self.platform, status="fetch_failed", window=window, error=error)

        self.state = SyncState.RECONCILING
        try:
            with tracer.start_as_current_span("sync.reconcile") as span:
                summary = await asyncio.wait_for(
                    self.engine.reconcile(self.adapter, events),
                    timeout=self.reconcile_timeout_seconds,
                )
                span.set_attribute("sync.total_seen", summary.total_seen)
                span.set_attribute("sync.newly_inserted", summary.newly_inserted)
        except Exception as exc:
            # The fetched pages were never stored; do not let cached ETags hide them next time.
            self.adapter.discard_cache()
            logger.exception("reconcile failed platform=%s; watermark not advanced", self.platform)
            return SyncOutcome(
                platform=self.platform,
                status="reconcile_failed",
                window=window,
                error=str(exc) or type(exc).__name__,
            )

        logger.info(
            "sync finished platform=%s seen=%s inserted=%s skipped=%s",
            self.platform,
            summary.total_seen,
            summary.newly_inserted,
            dict(summary.skipped),
        )
        return SyncOutcome(platform=self.platform, status="ok", window=window, summary=summary)
