from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from typing import Any

import httpx

from pollux.sync.models import NormalizedEvent, ProjectDetail, SyncWindow

logger = logging.getLogger(__name__)

USER_AGENT = "pollux-sync/1.0"


class PlatformError(Exception):
    """Base platform adapter error."""


class PlatformFetchError(PlatformError):
    """Raised when an event listing cannot be fetched completely."""


class GitPlatformAdapter(ABC):
    name: str

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    @abstractmethod
    async def fetch_events(self, window: SyncWindow) -> list[NormalizedEvent]:
        """Fetch every event the platform has for ``window``, following pagination to the end."""

    @abstractmethod
    async def fetch_project_detail(self, external_project_id: int) -> ProjectDetail | None:
        """Return name, url and visibility of a project, or ``None`` when it cannot be resolved."""

    def discard_cache(self) -> None:
        """Forget conditional-request state so the next fetch starts from scratch."""

    def default_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "User-Agent": USER_AGENT,
        }

    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get_json_or_none(self, url: str, *, headers: dict[str, str] | None = None) -> Any | None:
        try:
            response = await self.client().get(url, headers=headers or self.default_headers())
        except httpx.HTTPError as exc:
            logger.warning("%s detail request failed url=%s error=%s", self.name, url, exc)
            return None
        if not response.is_success:
            logger.warning("%s detail request returned status=%s url=%s", self.name, response.status_code, url)
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("%s detail response is not valid json url=%s", self.name, url)
            return None


def as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
