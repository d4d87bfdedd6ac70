from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
import logging
from pathlib import Path
import random
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from pollux.core.config import get_settings
from pollux.sync.models import Project, ProjectDetail

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class PostgresSyncSession:
    """Row-level operations of one reconcile batch, bound to an open transaction."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self.conn = conn

    async def fetch_platform_names(self, name: str) -> list[str]:
        rows = await self.conn.fetch("select name from git_platforms where name = $1", name)
        return [row["name"] for row in rows]

    async def insert_platform(self, name: str, first_sync: datetime) -> None:
        await self.conn.execute(
            """
            insert into git_platforms (name, first_sync)
            values ($1, $2)
            on conflict (name) do nothing
            """,
            name,
            first_sync,
        )

    async def set_last_sync(self, name: str, synced_at: datetime) -> None:
        await self.conn.execute("update git_platforms set last_sync = $2 where name = $1", name, synced_at)

    async def fetch_projects(self, platform: str, platform_project_id: int) -> list[Project]:
        rows = await self.conn.fetch(
            """
            select id, platform, platform_project_id, name, url
            from git_projects
            where platform = $1
              and platform_project_id = $2
            """,
            platform,
            platform_project_id,
        )
        return [
            Project(
                id=row["id"],
                platform=row["platform"],
                platform_project_id=row["platform_project_id"],
                name=row["name"],
                url=row["url"],
            )
            for row in rows
        ]

    async def insert_project(self, platform: str, platform_project_id: int, detail: ProjectDetail) -> int:
        return await self.conn.fetchval(
            """
            insert into git_projects (platform, platform_project_id, name, url)
            values ($1, $2, $3, $4)
            returning id
            """,
            platform,
            platform_project_id,
            detail.name,
            detail.url,
        )

    async def fetch_action_ids(self, name: str) -> list[int]:
        rows = await self.conn.fetch("select id from git_actions where name = $1", name)
        return [row["id"] for row in rows]

    async def insert_action(self, name: str) -> int:
        # Platforms reconcile concurrently; the other transaction may have committed this name first.
        action_id = await self.conn.fetchval(
            "insert into git_actions (name) values ($1) on conflict (name) do nothing returning id",
            name,
        )
        if action_id is None:
            action_id = await self.conn.fetchval("select id from git_actions where name = $1", name)
        return action_id

    async def count_matching_events(self, timestamp: datetime, project_id: int, action_id: int) -> int:
        count = await self.conn.fetchval(
            """
            select count(*)
            from git_events ge
            join events e on e.id = ge.id
            where e."timestamp" = $1
              and ge.project_id = $2
              and ge.action_id = $3
            """,
            timestamp,
            project_id,
            action_id,
        )
        return int(count or 0)

    async def insert_event(self, timestamp: datetime) -> int:
        return await self.conn.fetchval('insert into events ("timestamp") values ($1) returning id', timestamp)

    async def insert_git_event(self, event_id: int, action_id: int, project_id: int) -> None:
        await self.conn.execute(
            "insert into git_events (id, action_id, project_id) values ($1, $2, $3)",
            event_id,
            action_id,
            project_id,
        )


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        connect_retries: int = 5,
        connect_backoff_seconds: float = 1.0,
        connect_max_backoff_seconds: float = 30.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.connect_retries = max(1, connect_retries)
        self.connect_backoff_seconds = max(0.0, connect_backoff_seconds)
        self.connect_max_backoff_seconds = max(self.connect_backoff_seconds, connect_max_backoff_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def connect_with_retry(self, *, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
        backoff = self.connect_backoff_seconds
        for attempt in range(1, self.connect_retries + 1):
            try:
                await self._get_pool()
                logger.info("database connection established attempt=%s", attempt)
                return
            except RepositoryUnavailableError as exc:
                if not self.database_url or attempt == self.connect_retries:
                    raise
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (1.0 + jitter), self.connect_max_backoff_seconds)
                logger.warning(
                    "database unavailable attempt=%s/%s: %s; retry in %.1fs",
                    attempt,
                    self.connect_retries,
                    exc.__cause__ or exc,
                    sleep_for,
                )
                await sleep(sleep_for)
                backoff = min(backoff * 2.0, self.connect_max_backoff_seconds)

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        await pool.execute(SCHEMA_PATH.read_text(encoding="utf-8"))

    @asynccontextmanager
    async def sync_session(self) -> AsyncIterator[PostgresSyncSession]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                yield PostgresSyncSession(conn)

    async def get_watermark(self, platform: str) -> datetime | None:
        pool = await self._get_pool()
        return await pool.fetchval("select last_sync from git_platforms where name = $1", platform)

    async def list_git_events(self, *, since: datetime, limit: int = 1000) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              e.id,
              e."timestamp" as timestamp,
              p.platform,
              a.name as action,
              p.name as project_name,
              p.url as project_url
            from git_events ge
            join events e on e.id = ge.id
            join git_actions a on a.id = ge.action_id
            join git_projects p on p.id = ge.project_id
            where e."timestamp" >= $1
            order by e."timestamp" desc, e.id desc
            limit $2
            """,
            since,
            limit,
        )
        return [dict(row) for row in rows]

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("POLLUX_DATABASE_URL or POLLUX_DB_* settings are required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.resolved_database_url(),
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        connect_retries=settings.db_connect_retries,
        connect_backoff_seconds=settings.db_connect_backoff_seconds,
        connect_max_backoff_seconds=settings.db_connect_max_backoff_seconds,
    )
