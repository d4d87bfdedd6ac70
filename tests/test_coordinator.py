from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from pollux.sync.coordinator import SyncCoordinator
from pollux.sync.models import SyncState


class SteppingClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


def test_first_window_uses_ninety_day_lookback(store, adapter_factory) -> None:
    clock = SteppingClock(datetime(2024, 6, 1, tzinfo=timezone.utc))
    coordinator = SyncCoordinator(adapter_factory("gitlab"), store, clock=clock)

    window = asyncio.run(coordinator.compute_window())

    assert window.end == clock.now
    assert window.start == clock.now - timedelta(days=90)


def test_failed_fetch_keeps_window_and_skips_reconcile(store, adapter_factory, event_factory) -> None:
    clock = SteppingClock(datetime(2024, 6, 1, tzinfo=timezone.utc))
    adapter = adapter_factory("gitlab", events=[event_factory("2024-05-20T10:00:00Z")])
    coordinator = SyncCoordinator(adapter, store, clock=clock)
    asyncio.run(coordinator.update())
    last_success = clock.now

    clock.advance(minutes=15)
    adapter.fail_fetch = True
    failed = asyncio.run(coordinator.update())
    clock.advance(minutes=15)
    adapter.fail_fetch = False
    retried = asyncio.run(coordinator.update())

    assert failed.status == "fetch_failed"
    assert failed.summary is None
    assert "502" in (failed.error or "")
    assert store.commits == 2
    assert adapter.cache_discards == 1
    assert retried.ok
    assert failed.window.start == last_success
    assert retried.window.start == failed.window.start
    assert coordinator.state is SyncState.IDLE


def test_successful_cycle_moves_next_window_to_completion_instant(store, adapter_factory, event_factory) -> None:
    clock = SteppingClock(datetime(2024, 6, 1, tzinfo=timezone.utc))
    adapter = adapter_factory("gitlab", events=[event_factory("2024-05-20T10:00:00Z")])
    coordinator = SyncCoordinator(adapter, store, clock=clock)

    first = asyncio.run(coordinator.update())
    completed_at = clock.now
    clock.advance(hours=1)
    asyncio.run(coordinator.update())

    assert first.ok
    assert first.summary is not None
    assert first.summary.newly_inserted == 1
    assert adapter.windows[1].start == completed_at
    assert adapter.windows[1].end == clock.now
    assert coordinator.last_outcome is not None
    assert coordinator.last_outcome.summary.newly_inserted == 0


def test_reconcile_failure_leaves_watermark_untouched(store, adapter_factory, event_factory) -> None:
    clock = SteppingClock(datetime(2024, 6, 1, tzinfo=timezone.utc))
    adapter = adapter_factory("gitlab", events=[event_factory(f"2024-05-20T10:0{minute}:00Z") for minute in range(3)])
    coordinator = SyncCoordinator(adapter, store, clock=clock)
    store.fail_after_inserts = 1

    outcome = asyncio.run(coordinator.update())

    assert outcome.status == "reconcile_failed"
    assert asyncio.run(store.get_watermark("gitlab")) is None
    assert store.stored_events() == []
    assert adapter.cache_discards == 1


def test_slow_fetch_times_out_as_fetch_failure(store, adapter_factory) -> None:
    adapter = adapter_factory("github")
    adapter.fetch_delay = 1.0
    coordinator = SyncCoordinator(adapter, store, fetch_timeout_seconds=0.01)

    outcome = asyncio.run(coordinator.update())

    assert outcome.status == "fetch_failed"
    assert store.commits == 0


def test_concurrent_updates_for_one_platform_are_serialized(store, adapter_factory, event_factory) -> None:
    adapter = adapter_factory("gitlab", events=[event_factory("2024-05-20T10:00:00Z")])
    adapter.fetch_delay = 0.02
    coordinator = SyncCoordinator(adapter, store)

    async def run() -> list:
        return await asyncio.gather(coordinator.update(), coordinator.update())

    outcomes = asyncio.run(run())

    assert [outcome.status for outcome in outcomes] == ["ok", "ok"]
    assert adapter.max_active_fetches == 1
    assert sorted(outcome.summary.newly_inserted for outcome in outcomes) == [0, 1]


def test_unreadable_watermark_is_a_failed_cycle(store, adapter_factory) -> None:
    adapter = adapter_factory("gitlab")
    coordinator = SyncCoordinator(adapter, store)
    store.watermark_error = ConnectionError("database went away")

    outcome = asyncio.run(coordinator.update())

    assert outcome.status == "fetch_failed"
    assert outcome.window is None
    assert "database went away" in (outcome.error or "")
    assert coordinator.last_outcome is outcome
    assert coordinator.state is SyncState.IDLE
    assert adapter.windows == []
