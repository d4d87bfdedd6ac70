from datetime import datetime
from typing import Literal

from pydantic import BaseModel

PlatformName = Literal["github", "gitlab"]


class GitEventOut(BaseModel):
    id: int
    timestamp: datetime
    platform: PlatformName
    action: str
    project_name: str
    project_url: str


class SyncMessageOut(BaseModel):
    message: str
