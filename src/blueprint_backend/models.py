from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConversionStatus(str, Enum):
    PENDING = "pending"
    RENDERING = "rendering"
    COMPLETE = "complete"
    FAILED = "failed"


class NotificationType(str, Enum):
    BLUEPRINT_PROGRESS = "projects.blueprints.progress"
    BLUEPRINT_CREATE = "projects.blueprints.create"


class PageSize(BaseModel):
    unit: str
    width: float
    height: float


class PageDescriptor(BaseModel):
    rotation: int
    size: PageSize


class BlueprintPublic(BaseModel):
    id: str
    name: str
    project: str
    progress: float
    pages: List[PageDescriptor]
    status: ConversionStatus
    created_at: datetime
    updated_at: datetime


class BlueprintUpdate(BaseModel):
    """Partial update body; only the display name is client-editable."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1)


class TaskLocation(BaseModel):
    blueprint: str
    page_number: int = Field(ge=1)
    x: float
    y: float


class TaskPublic(BaseModel):
    id: str
    project: str
    description: str
    location: Optional[TaskLocation] = None
    created_at: datetime


class NotificationPublic(BaseModel):
    id: str
    type: NotificationType
    creator: str
    strong: bool
    project: str
    blueprint: str
    created_at: datetime
