from datetime import date, datetime, time, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status

from pollux.core.config import Settings, get_settings
from pollux.schemas.git_events import GitEventOut
from pollux.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.get("", response_model=list[GitEventOut])
async def list_git_events(
    since: date | None = Query(default=None, description="YYYY-MM-DD; defaults to the configured lookback"),
    limit: int = Query(default=1000, ge=1, le=5000),
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> list[GitEventOut]:
    if since is None:
        since = datetime.now(timezone.utc).date() - timedelta(days=settings.default_query_days)
    since_at = datetime.combine(since, time.min, tzinfo=timezone.utc)
    try:
        rows = await repository.list_git_events(since=since_at, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [GitEventOut(**row) for row in rows]
