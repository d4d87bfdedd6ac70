from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import pytest

from pollux.sync.models import NormalizedEvent, Project, ProjectDetail, SyncWindow
from pollux.sync.platforms.base import GitPlatformAdapter, PlatformFetchError


@dataclass
class MemoryTables:
    platforms: dict[str, dict[str, Any]] = field(default_factory=dict)
    projects: list[Project] = field(default_factory=list)
    actions: dict[int, str] = field(default_factory=dict)
    events: dict[int, datetime] = field(default_factory=dict)
    git_events: list[tuple[int, int, int]] = field(default_factory=list)
    duplicate_platforms: set[str] = field(default_factory=set)
    next_id: int = 1


class StoreFailure(Exception):
    pass


class MemorySession:
    def __init__(self, store: "InMemorySyncStore") -> None:
        self.store = store
        self.tables = store.tables

    def _next_id(self) -> int:
        value = self.tables.next_id
        self.tables.next_id += 1
        return value

    async def fetch_platform_names(self, name: str) -> list[str]:
        if name not in self.tables.platforms:
            return []
        return [name, name] if name in self.tables.duplicate_platforms else [name]

    async def insert_platform(self, name: str, first_sync: datetime) -> None:
        self.tables.platforms.setdefault(name, {"first_sync": first_sync, "last_sync": None})

    async def set_last_sync(self, name: str, synced_at: datetime) -> None:
        self.tables.platforms[name]["last_sync"] = synced_at

    async def fetch_projects(self, platform: str, platform_project_id: int) -> list[Project]:
        return [
            project
            for project in self.tables.projects
            if project.platform == platform and project.platform_project_id == platform_project_id
        ]

    async def insert_project(self, platform: str, platform_project_id: int, detail: ProjectDetail) -> int:
        project_id = self._next_id()
        self.tables.projects.append(
            Project(
                id=project_id,
                platform=platform,
                platform_project_id=platform_project_id,
                name=detail.name,
                url=detail.url,
            )
        )
        return project_id

    async def fetch_action_ids(self, name: str) -> list[int]:
        return [action_id for action_id, action_name in self.tables.actions.items() if action_name == name]

    async def insert_action(self, name: str) -> int:
        action_id = self._next_id()
        self.tables.actions[action_id] = name
        return action_id

    async def count_matching_events(self, timestamp: datetime, project_id: int, action_id: int) -> int:
        return sum(
            1
            for event_id, stored_action_id, stored_project_id in self.tables.git_events
            if self.tables.events[event_id] == timestamp
            and stored_project_id == project_id
            and stored_action_id == action_id
        )

    async def insert_event(self, timestamp: datetime) -> int:
        if self.store.fail_after_inserts is not None and len(self.tables.events) >= self.store.fail_after_inserts:
            raise StoreFailure("simulated store failure")
        event_id = self._next_id()
        self.tables.events[event_id] = timestamp
        return event_id

    async def insert_git_event(self, event_id: int, action_id: int, project_id: int) -> None:
        self.tables.git_events.append((event_id, action_id, project_id))


class InMemorySyncStore:
    """Store double with transaction semantics: a failing session restores the prior snapshot."""

    def __init__(self) -> None:
        self.tables = MemoryTables()
        self.fail_after_inserts: int | None = None
        self.watermark_error: Exception | None = None
        self.commits = 0
        self.rollbacks = 0

    @asynccontextmanager
    async def sync_session(self) -> AsyncIterator[MemorySession]:
        snapshot = copy.deepcopy(self.tables)
        try:
            yield MemorySession(self)
        except BaseException:
            self.tables.__dict__.update(snapshot.__dict__)
            self.rollbacks += 1
            raise
        self.commits += 1

    async def get_watermark(self, platform: str) -> datetime | None:
        if self.watermark_error is not None:
            raise self.watermark_error
        row = self.tables.platforms.get(platform)
        return row["last_sync"] if row else None

    def stored_events(self) -> list[tuple[datetime, int, str]]:
        return sorted(
            (self.tables.events[event_id], project_id, self.tables.actions[action_id])
            for event_id, action_id, project_id in self.tables.git_events
        )


class FakeAdapter(GitPlatformAdapter):
    def __init__(
        self,
        name: str = "gitlab",
        *,
        events: list[NormalizedEvent] | None = None,
        details: dict[int, ProjectDetail | None] | None = None,
    ) -> None:
        super().__init__(base_url="https://example.invalid", token="token")
        self.name = name
        self.events = events or []
        self.details = details or {}
        self.detail_calls: list[int] = []
        self.windows: list[SyncWindow] = []
        self.fail_fetch = False
        self.fetch_delay = 0.0
        self.active_fetches = 0
        self.max_active_fetches = 0
        self.cache_discards = 0

    async def fetch_events(self, window: SyncWindow) -> list[NormalizedEvent]:
        self.windows.append(window)
        self.active_fetches += 1
        self.max_active_fetches = max(self.max_active_fetches, self.active_fetches)
        try:
            if self.fetch_delay:
                await asyncio.sleep(self.fetch_delay)
            if self.fail_fetch:
                raise PlatformFetchError("upstream returned status 502")
            return list(self.events)
        finally:
            self.active_fetches -= 1

    async def fetch_project_detail(self, external_project_id: int) -> ProjectDetail | None:
        self.detail_calls.append(external_project_id)
        if external_project_id in self.details:
            return self.details[external_project_id]
        return ProjectDetail(
            platform_project_id=external_project_id,
            name=f"group / project-{external_project_id}",
            url=f"https://gitlab.example/group/project-{external_project_id}",
            visibility="public",
        )

    def discard_cache(self) -> None:
        self.cache_discards += 1


def make_event(
    created_at: str,
    *,
    project_id: int = 100,
    raw_action: str = "pushed to",
    platform: str = "gitlab",
) -> NormalizedEvent:
    return NormalizedEvent(
        platform=platform,
        external_project_id=project_id,
        raw_action=raw_action,
        created_at=created_at,
    )


@pytest.fixture
def store() -> InMemorySyncStore:
    return InMemorySyncStore()


@pytest.fixture
def adapter_factory():
    return FakeAdapter


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def store_factory():
    return InMemorySyncStore
