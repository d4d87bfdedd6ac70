import logging

from fastapi import APIRouter, Depends, HTTPException, status as http_status

from pollux.core.config import Settings, get_settings
from pollux.schemas.git_events import SyncMessageOut
from pollux.sync.registry import get_registry

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/force-sync", response_model=SyncMessageOut)
async def force_sync(
    settings: Settings = Depends(get_settings),
    registry=Depends(get_registry),
) -> SyncMessageOut:
    if not settings.development_mode:
        raise HTTPException(
            status_code=http_status.HTTP_403_FORBIDDEN,
            detail="force sync is only available in development mode",
        )

    try:
        outcomes = await registry.sync_all()
    except Exception:
        logger.exception("forced sync failed")
        return SyncMessageOut(message="sync finished")

    for outcome in outcomes:
        logger.info("forced sync platform=%s status=%s", outcome.platform, outcome.status)
    return SyncMessageOut(message="sync finished")
