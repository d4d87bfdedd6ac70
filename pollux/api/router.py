from fastapi import APIRouter

from pollux.api.routes import git_events, health, sync

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(sync.router, prefix="/api/v1", tags=["sync"])
api_router.include_router(git_events.router, prefix="/api/v1/git-events", tags=["public"])
