from __future__ import annotations

import asyncio
from functools import lru_cache
import logging

from pollux.core.config import Settings, get_settings
from pollux.services.repository import get_repository
from pollux.sync.coordinator import SyncCoordinator
from pollux.sync.models import SyncOutcome
from pollux.sync.persistence import SyncStore
from pollux.sync.platforms.base import GitPlatformAdapter
from pollux.sync.platforms.github import GitHubAdapter
from pollux.sync.platforms.gitlab import GitLabAdapter

logger = logging.getLogger(__name__)


class PlatformRegistry:
    """The coordinators of every configured platform, shared by the scheduler and the API."""

    def __init__(self, coordinators: list[SyncCoordinator] | None = None) -> None:
        self._coordinators: dict[str, SyncCoordinator] = {}
        for coordinator in coordinators or []:
            self.register(coordinator)

    def register(self, coordinator: SyncCoordinator) -> None:
        if coordinator.platform in self._coordinators:
            raise ValueError(f"platform {coordinator.platform!r} is already registered")
        self._coordinators[coordinator.platform] = coordinator

    def get(self, platform: str) -> SyncCoordinator | None:
        return self._coordinators.get(platform)

    @property
    def platforms(self) -> list[str]:
        return list(self._coordinators)

    async def sync(self, platform: str) -> SyncOutcome:
        coordinator = self._coordinators.get(platform)
        if coordinator is None:
            raise KeyError(platform)
        return await coordinator.update()

    async def sync_all(self) -> list[SyncOutcome]:
        """Update every platform concurrently; returns only after all of them finished."""
        platforms = list(self._coordinators)
        results = await asyncio.gather(
            *(coordinator.update() for coordinator in self._coordinators.values()),
            return_exceptions=True,
        )
        outcomes: list[SyncOutcome] = []
        for platform, result in zip(platforms, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error("sync crashed platform=%s", platform, exc_info=result)
                result = SyncOutcome(platform=platform, status="failed", error=str(result) or type(result).__name__)
            outcomes.append(result)
        return outcomes

    async def aclose(self) -> None:
        for coordinator in self._coordinators.values():
            await coordinator.adapter.aclose()


def build_adapters(settings: Settings) -> list[GitPlatformAdapter]:
    adapters: list[GitPlatformAdapter] = []
    enabled = settings.configured_platforms()
    if "github" in enabled:
        adapters.append(
            GitHubAdapter(
                username=settings.github_username,
                token=settings.github_api_token,
                base_url=settings.github_api_url,
                per_page=settings.github_per_page,
                timeout_seconds=settings.http_timeout_seconds,
            )
        )
    else:
        logger.info("github credentials not configured; github sync disabled")

    if "gitlab" in enabled:
        adapters.append(
            GitLabAdapter(
                user_id=settings.gitlab_user_id,
                token=settings.gitlab_api_token,
                base_url=settings.gitlab_api_url,
                per_page=settings.gitlab_per_page,
                timeout_seconds=settings.http_timeout_seconds,
            )
        )
    else:
        logger.info("gitlab credentials not configured; gitlab sync disabled")
    return adapters


def build_registry(settings: Settings, store: SyncStore) -> PlatformRegistry:
    return PlatformRegistry(
        [
            SyncCoordinator(
                adapter,
                store,
                lookback_days=settings.initial_lookback_days,
                fetch_timeout_seconds=settings.fetch_timeout_seconds,
                reconcile_timeout_seconds=settings.reconcile_timeout_seconds,
            )
            for adapter in build_adapters(settings)
        ]
    )


@lru_cache
def get_registry() -> PlatformRegistry:
    return build_registry(get_settings(), get_repository())
