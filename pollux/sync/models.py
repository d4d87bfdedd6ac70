from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    RECONCILING = "reconciling"


@dataclass(slots=True)
class Platform:
    name: str
    first_sync: datetime
    last_sync: datetime | None = None


@dataclass(slots=True)
class Project:
    id: int
    platform: str
    platform_project_id: int
    name: str
    url: str


@dataclass(slots=True)
class Action:
    id: int
    name: str


@dataclass(slots=True)
class Event:
    id: int
    timestamp: datetime


@dataclass(slots=True)
class PlatformEvent:
    event_id: int
    action_id: int
    project_id: int


@dataclass(slots=True)
class NormalizedEvent:
    """One upstream event in platform-independent form, before persistence."""

    platform: str
    external_project_id: int
    raw_action: str
    created_at: str
    project_name: str | None = None
    project_url: str | None = None
    commit_count: int | None = None


@dataclass(slots=True)
class ProjectDetail:
    platform_project_id: int
    name: str
    url: str
    visibility: str | None = None

    @property
    def is_public(self) -> bool:
        return (self.visibility or "").lower() == "public"


@dataclass(slots=True)
class SyncWindow:
    start: datetime
    end: datetime


@dataclass(slots=True)
class ReconcileSummary:
    platform: str
    total_seen: int = 0
    newly_inserted: int = 0
    skipped: Counter[str] = field(default_factory=Counter)

    def skip(self, reason: str) -> None:
        self.skipped[reason] += 1


@dataclass(slots=True)
class SyncOutcome:
    platform: str
    status: str
    window: SyncWindow | None = None
    summary: ReconcileSummary | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"
