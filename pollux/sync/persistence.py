"""Reconciliation of freshly fetched events against the stored history.

One call to :meth:`PersistenceEngine.reconcile` is one transaction. Events
that cannot be stored (bad timestamp, unknown action, private or unknown
project, duplicate) are skipped one by one and counted in the summary; any
error raised by the store itself aborts the batch, rolls the transaction back
and leaves the platform watermark where it was.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
import logging
from typing import Protocol

from pollux.sync.actions import canonical_action
from pollux.sync.models import NormalizedEvent, Project, ProjectDetail, ReconcileSummary
from pollux.sync.platforms.base import GitPlatformAdapter

logger = logging.getLogger(__name__)

SKIP_INVALID_TIMESTAMP = "invalid_timestamp"
SKIP_PROJECT_UNAVAILABLE = "project_unavailable"
SKIP_PROJECT_NOT_PUBLIC = "project_not_public"
SKIP_UNKNOWN_ACTION = "unknown_action"
SKIP_DUPLICATE = "duplicate"
SKIP_INTEGRITY_ANOMALY = "integrity_anomaly"


class ReconcileError(Exception):
    """Raised when a batch cannot be committed consistently."""


class SyncSession(Protocol):
    async def fetch_platform_names(self, name: str) -> list[str]: ...

    async def insert_platform(self, name: str, first_sync: datetime) -> None: ...

    async def set_last_sync(self, name: str, synced_at: datetime) -> None: ...

    async def fetch_projects(self, platform: str, platform_project_id: int) -> list[Project]: ...

    async def insert_project(self, platform: str, platform_project_id: int, detail: ProjectDetail) -> int: ...

    async def fetch_action_ids(self, name: str) -> list[int]: ...

    async def insert_action(self, name: str) -> int: ...

    async def count_matching_events(self, timestamp: datetime, project_id: int, action_id: int) -> int: ...

    async def insert_event(self, timestamp: datetime) -> int: ...

    async def insert_git_event(self, event_id: int, action_id: int, project_id: int) -> None: ...


class SyncStore(Protocol):
    def sync_session(self) -> AbstractAsyncContextManager[SyncSession]: ...

    async def get_watermark(self, platform: str) -> datetime | None: ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_event_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp into UTC with second precision.

    Timestamps without an offset are rejected rather than guessed.
    """
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if not candidate:
        return None
    if candidate[-1] in {"Z", "z"}:
        candidate = f"{candidate[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed.astimezone(timezone.utc).replace(microsecond=0)


class PersistenceEngine:
    def __init__(self, store: SyncStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.clock = clock

    async def reconcile(self, adapter: GitPlatformAdapter, events: list[NormalizedEvent]) -> ReconcileSummary:
        platform = adapter.name
        summary = ReconcileSummary(platform=platform)
        rejected_projects: dict[int, str] = {}

        async with self.store.sync_session() as session:
            for event in events:
                summary.total_seen += 1
                reason = await self._store_event(session, adapter, event, rejected_projects)
                if reason is None:
                    summary.newly_inserted += 1
                else:
                    summary.skip(reason)

            if not await self._ensure_platform(session, platform):
                raise ReconcileError(f"cannot advance watermark for platform {platform!r}")
            await session.set_last_sync(platform, self.clock())

        return summary

    async def _store_event(
        self,
        session: SyncSession,
        adapter: GitPlatformAdapter,
        event: NormalizedEvent,
        rejected_projects: dict[int, str],
    ) -> str | None:
        timestamp = parse_event_timestamp(event.created_at)
        if timestamp is None:
            logger.error(
                "cannot parse %s event timestamp %r; skipping event project=%s",
                adapter.name,
                event.created_at,
                event.external_project_id,
            )
            return SKIP_INVALID_TIMESTAMP

        project_id, reason = await self._resolve_project(session, adapter, event.external_project_id, rejected_projects)
        if project_id is None:
            return reason

        action_name = canonical_action(adapter.name, event.raw_action)
        if action_name is None:
            logger.info("unmapped %s action %r; skipping event", adapter.name, event.raw_action)
            return SKIP_UNKNOWN_ACTION

        action_ids = await session.fetch_action_ids(action_name)
        if len(action_ids) > 1:
            logger.error("found %s git actions named %r; skipping event", len(action_ids), action_name)
            return SKIP_INTEGRITY_ANOMALY
        action_id = action_ids[0] if action_ids else await session.insert_action(action_name)

        matching = await session.count_matching_events(timestamp, project_id, action_id)
        if matching > 1:
            logger.error(
                "found %s stored events with action=%s project=%s at %s; the store already holds duplicates",
                matching,
                action_id,
                project_id,
                timestamp.isoformat(),
            )
        if matching:
            logger.debug("duplicate %s event project=%s action=%s at %s", adapter.name, project_id, action_name, timestamp)
            return SKIP_DUPLICATE

        event_id = await session.insert_event(timestamp)
        await session.insert_git_event(event_id, action_id, project_id)
        logger.debug("stored %s event id=%s action=%s project=%s", adapter.name, event_id, action_name, project_id)
        return None

    async def _resolve_project(
        self,
        session: SyncSession,
        adapter: GitPlatformAdapter,
        external_project_id: int,
        rejected_projects: dict[int, str],
    ) -> tuple[int | None, str | None]:
        projects = await session.fetch_projects(adapter.name, external_project_id)
        if len(projects) > 1:
            logger.error(
                "found %s git projects for platform=%s id=%s; skipping event",
                len(projects),
                adapter.name,
                external_project_id,
            )
            return None, SKIP_INTEGRITY_ANOMALY
        if projects:
            return projects[0].id, None

        if external_project_id in rejected_projects:
            return None, rejected_projects[external_project_id]

        detail = await adapter.fetch_project_detail(external_project_id)
        if detail is None:
            logger.warning("cannot resolve %s project id=%s; skipping event", adapter.name, external_project_id)
            rejected_projects[external_project_id] = SKIP_PROJECT_UNAVAILABLE
            return None, SKIP_PROJECT_UNAVAILABLE
        if not detail.is_public:
            logger.info(
                "%s project id=%s has visibility=%s; skipping event",
                adapter.name,
                external_project_id,
                detail.visibility,
            )
            rejected_projects[external_project_id] = SKIP_PROJECT_NOT_PUBLIC
            return None, SKIP_PROJECT_NOT_PUBLIC

        if not await self._ensure_platform(session, adapter.name):
            return None, SKIP_INTEGRITY_ANOMALY
        project_id = await session.insert_project(adapter.name, external_project_id, detail)
        logger.info("stored %s project id=%s name=%s", adapter.name, project_id, detail.name)
        return project_id, None

    async def _ensure_platform(self, session: SyncSession, platform: str) -> bool:
        names = await session.fetch_platform_names(platform)
        if len(names) > 1:
            logger.error("found %s platform rows named %r", len(names), platform)
            return False
        if not names:
            await session.insert_platform(platform, self.clock())
            logger.info("registered platform %s", platform)
        return True
