from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

import httpx

from pollux.sync.models import NormalizedEvent, ProjectDetail, SyncWindow
from pollux.sync.platforms.base import GitPlatformAdapter, PlatformFetchError, as_int, as_text

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"


@dataclass(slots=True)
class PageCursor:
    page: int
    url: str
    cached_tag: str | None = None


@dataclass(slots=True)
class PageResult:
    events: list[NormalizedEvent] = field(default_factory=list)
    not_modified: bool = False
    etag: str | None = None
    next_url: str | None = None


def parse_next_link(header: str | None) -> str | None:
    """Return the ``rel="next"`` target of a ``Link`` header, if any.

    Example header::

        <https://api.github.com/user/1/events?per_page=2&page=2>; rel="next",
        <https://api.github.com/user/1/events?per_page=2&page=6>; rel="last"
    """
    if not header:
        return None
    for link in header.split(","):
        url_part, separator, params = link.partition(";")
        if not separator:
            continue
        rels = {
            value.strip().strip('"')
            for key, _, value in (param.strip().partition("=") for param in params.split(";"))
            if key.strip() == "rel"
        }
        if "next" not in rels:
            continue
        url_part = url_part.strip()
        if url_part.startswith("<") and url_part.endswith(">"):
            return url_part[1:-1]
    return None


class GitHubAdapter(GitPlatformAdapter):
    """Events of one user from the GitHub REST API.

    The events endpoint has no time filter, so every fetch walks the whole
    available backlog and leaves dropping already stored rows to the
    persistence engine. Each page's ETag is remembered per page index; when
    GitHub answers 304 to a conditional request the fetch stops early with
    whatever it collected before that page.
    """

    name = "github"

    def __init__(
        self,
        *,
        username: str,
        token: str,
        base_url: str = "https://api.github.com",
        per_page: int = 30,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url=base_url, token=token, timeout_seconds=timeout_seconds, client=client)
        self.username = username
        self.per_page = max(1, min(100, per_page))
        self.etags: dict[int, str] = {}

    def discard_cache(self) -> None:
        self.etags.clear()

    def default_headers(self) -> dict[str, str]:
        headers = super().default_headers()
        headers["Accept"] = "application/vnd.github+json"
        headers["X-GitHub-Api-Version"] = GITHUB_API_VERSION
        return headers

    async def fetch_events(self, window: SyncWindow) -> list[NormalizedEvent]:
        first_url = f"{self.base_url}/users/{self.username}/events?per_page={self.per_page}&page=1"
        logger.info("fetching github events user=%s", self.username)

        events: list[NormalizedEvent] = []
        fresh_tags: dict[int, str] = {}
        cursor: PageCursor | None = PageCursor(page=1, url=first_url, cached_tag=self.etags.get(1))
        while cursor is not None:
            result = await self._fetch_page(cursor)
            if result.not_modified:
                logger.debug("github page=%s not modified; no new events", cursor.page)
                break
            if result.etag:
                fresh_tags[cursor.page] = result.etag
            events.extend(result.events)
            if result.next_url is None:
                logger.debug("github page=%s is the last page", cursor.page)
                break
            next_page = cursor.page + 1
            cursor = PageCursor(page=next_page, url=result.next_url, cached_tag=self.etags.get(next_page))

        # Tags only count once every page of this call came back.
        self.etags.update(fresh_tags)
        logger.info("fetched github events user=%s count=%s", self.username, len(events))
        return events

    async def _fetch_page(self, cursor: PageCursor) -> PageResult:
        headers = self.default_headers()
        if cursor.cached_tag:
            headers["If-None-Match"] = cursor.cached_tag

        try:
            response = await self.client().get(cursor.url, headers=headers)
        except httpx.HTTPError as exc:
            raise PlatformFetchError(f"github request failed for page {cursor.page}: {exc}") from exc

        if response.status_code == 304 and cursor.cached_tag:
            return PageResult(not_modified=True)
        if not response.is_success:
            logger.error("github returned status=%s page=%s body=%s", response.status_code, cursor.page, response.text)
            raise PlatformFetchError(f"github returned status {response.status_code} for page {cursor.page}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise PlatformFetchError(f"github returned invalid json for page {cursor.page}") from exc
        if not isinstance(payload, list):
            raise PlatformFetchError(f"github returned unexpected payload for page {cursor.page}")

        return PageResult(
            events=[event for event in (self._normalize(item) for item in payload) if event is not None],
            etag=response.headers.get("etag"),
            next_url=parse_next_link(response.headers.get("link")),
        )

    def _normalize(self, item: Any) -> NormalizedEvent | None:
        if not isinstance(item, dict):
            return None
        if item.get("public") is False:
            logger.debug("skipping non-public github event id=%s", item.get("id"))
            return None
        repo = item.get("repo")
        repo = repo if isinstance(repo, dict) else {}
        project_id = as_int(repo.get("id"))
        if project_id is None:
            logger.warning("skipping github event without repo id id=%s", item.get("id"))
            return None
        payload = item.get("payload")
        commit_count = as_int(payload.get("size")) if isinstance(payload, dict) else None
        return NormalizedEvent(
            platform=self.name,
            external_project_id=project_id,
            raw_action=as_text(item.get("type")) or "",
            created_at=as_text(item.get("created_at")) or "",
            project_name=as_text(repo.get("name")),
            project_url=as_text(repo.get("url")),
            commit_count=commit_count,
        )

    async def fetch_project_detail(self, external_project_id: int) -> ProjectDetail | None:
        url = f"{self.base_url}/repositories/{external_project_id}"
        logger.info("fetching github project detail id=%s", external_project_id)
        payload = await self._get_json_or_none(url)
        if not isinstance(payload, dict):
            return None

        visibility = as_text(payload.get("visibility"))
        if visibility is None and isinstance(payload.get("private"), bool):
            visibility = "private" if payload["private"] else "public"
        name = as_text(payload.get("full_name")) or as_text(payload.get("name"))
        url = as_text(payload.get("html_url"))
        if name is None or url is None:
            logger.warning("github project detail incomplete id=%s", external_project_id)
            return None
        return ProjectDetail(
            platform_project_id=external_project_id,
            name=name,
            url=url,
            visibility=visibility,
        )
