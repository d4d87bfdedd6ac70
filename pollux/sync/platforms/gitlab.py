from __future__ import annotations

from datetime import timedelta
import logging
from typing import Any

import httpx

from pollux.sync.models import NormalizedEvent, ProjectDetail, SyncWindow
from pollux.sync.platforms.base import GitPlatformAdapter, PlatformFetchError, as_int, as_text

logger = logging.getLogger(__name__)

LARGE_RESULT_PAGES = 20


class GitLabAdapter(GitPlatformAdapter):
    """Events of one user from the GitLab v4 API, bounded by a date window.

    GitLab treats ``after`` and ``before`` as exclusive day bounds, so the
    request widens the window by one day on each side; rows outside the
    window are harmless because the persistence engine drops duplicates.
    """

    name = "gitlab"

    def __init__(
        self,
        *,
        user_id: str,
        token: str,
        base_url: str = "https://gitlab.com",
        per_page: int = 20,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url=base_url, token=token, timeout_seconds=timeout_seconds, client=client)
        self.user_id = user_id
        self.per_page = max(1, min(100, per_page))

    async def fetch_events(self, window: SyncWindow) -> list[NormalizedEvent]:
        after = window.start.date() - timedelta(days=1)
        before = window.end.date() + timedelta(days=1)
        if after >= before:
            logger.warning("gitlab window after=%s >= before=%s; no events will be returned", after, before)
        url = f"{self.base_url}/api/v4/users/{self.user_id}/events"
        logger.info("fetching gitlab events user=%s after=%s before=%s", self.user_id, after, before)

        events: list[NormalizedEvent] = []
        current_page = 1
        while True:
            params = {
                "after": after.isoformat(),
                "before": before.isoformat(),
                "per_page": self.per_page,
                "page": current_page,
            }
            try:
                response = await self.client().get(url, params=params, headers=self.default_headers())
            except httpx.HTTPError as exc:
                raise PlatformFetchError(f"gitlab request failed for page {current_page}: {exc}") from exc
            if not response.is_success:
                logger.error("gitlab returned status=%s page=%s body=%s", response.status_code, current_page, response.text)
                raise PlatformFetchError(f"gitlab returned status {response.status_code} for page {current_page}")

            total_pages = _header_int(response, "x-total-pages")
            reported_page = _header_int(response, "x-page")
            if reported_page != current_page:
                raise PlatformFetchError(f"gitlab reported page {reported_page} while page {current_page} was requested")
            if current_page == 1 and total_pages > LARGE_RESULT_PAGES:
                logger.warning("gitlab window spans %s pages of events", total_pages)

            try:
                payload = response.json()
            except ValueError as exc:
                raise PlatformFetchError(f"gitlab returned invalid json for page {current_page}") from exc
            if not isinstance(payload, list):
                raise PlatformFetchError(f"gitlab returned unexpected payload for page {current_page}")

            events.extend(event for event in (self._normalize(item) for item in payload) if event is not None)
            logger.debug("gitlab page %s of %s", current_page, total_pages)
            if current_page >= total_pages:
                break
            current_page += 1

        logger.info("fetched gitlab events user=%s count=%s", self.user_id, len(events))
        return events

    def _normalize(self, item: Any) -> NormalizedEvent | None:
        if not isinstance(item, dict):
            return None
        project_id = as_int(item.get("project_id"))
        if project_id is None:
            # Events such as "joined" a group carry no project.
            logger.debug("skipping gitlab event without project id=%s", item.get("id"))
            return None
        push_data = item.get("push_data")
        commit_count = as_int(push_data.get("commit_count")) if isinstance(push_data, dict) else None
        return NormalizedEvent(
            platform=self.name,
            external_project_id=project_id,
            raw_action=as_text(item.get("action_name")) or "",
            created_at=as_text(item.get("created_at")) or "",
            commit_count=commit_count,
        )

    async def fetch_project_detail(self, external_project_id: int) -> ProjectDetail | None:
        url = f"{self.base_url}/api/v4/projects/{external_project_id}"
        logger.info("fetching gitlab project detail id=%s", external_project_id)
        payload = await self._get_json_or_none(url)
        if not isinstance(payload, dict):
            return None

        name = as_text(payload.get("name_with_namespace")) or as_text(payload.get("name"))
        web_url = as_text(payload.get("web_url"))
        if name is None or web_url is None:
            logger.warning("gitlab project detail incomplete id=%s", external_project_id)
            return None
        return ProjectDetail(
            platform_project_id=external_project_id,
            name=name,
            url=web_url,
            visibility=as_text(payload.get("visibility")),
        )


def _header_int(response: httpx.Response, header: str) -> int:
    raw = response.headers.get(header)
    if raw is None:
        raise PlatformFetchError(f"gitlab response is missing the {header} header")
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise PlatformFetchError(f"gitlab {header} header is not a number: {raw!r}") from exc
