from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class CrmActivityOut(BaseModel):
    id: str
    type: str
    property_id: str | None = None
    lead_id: str | None = None
    user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class CrmActivityListOut(BaseModel):
    data: list[CrmActivityOut]
    limit: int
