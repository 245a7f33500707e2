from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

DeliveryStatus = Literal["delivered", "failed"]


class WebhookFailureOut(BaseModel):
    id: str
    subscription_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int
    final_error: str
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    is_resolved: bool
    replayed_at: datetime | None = None
    replay_job_id: str | None = None
    created_at: datetime


class WebhookFailureListOut(BaseModel):
    data: list[WebhookFailureOut]
    total: int
    limit: int
    offset: int


class WebhookDeliveryOut(BaseModel):
    id: str
    subscription_id: str
    event_type: str
    status: DeliveryStatus
    attempts_made: int
    job_id: str
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    is_resolved: bool
    created_at: datetime


class WebhookDeliveryListOut(BaseModel):
    data: list[WebhookDeliveryOut]
    total: int
    limit: int
    offset: int


class ReplayOut(BaseModel):
    replayed: bool = True
    failure_id: str
    job_id: str


class ReplayAllRequest(BaseModel):
    subscription_id: str | None = None
    event_type: str | None = None
    limit: int = Field(default=500, ge=1, le=500)


class ReplayAllOut(BaseModel):
    replayed: int
    job_ids: list[str]


class TestEventRequest(BaseModel):
    event_type: str = Field(default="test.event", min_length=1)
    payload: dict[str, Any] = Field(default_factory=lambda: {"ok": True})


class QueuedJobOut(BaseModel):
    queued: bool = True
    job_id: str
    queue_name: str


class WebhookSubscriptionCreate(BaseModel):
    target_url: str = Field(min_length=1, pattern=r"^https?://")
    event_types: list[str] = Field(min_length=1)
    signing_secret: str | None = Field(default=None, min_length=16)
    is_active: bool = True


class WebhookSubscriptionUpdate(BaseModel):
    is_active: bool


class WebhookSubscriptionOut(BaseModel):
    id: str
    target_url: str
    event_types: list[str]
    is_active: bool
    created_at: datetime


class WebhookSubscriptionCreatedOut(WebhookSubscriptionOut):
    signing_secret: str
