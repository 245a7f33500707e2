from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

QueueName = Literal["enrichment", "matchmaking", "webhook"]
JobStatus = Literal["queued", "active", "completed", "failed"]
ReplayMode = Literal["single", "bulk"]
ORIGIN_MARKERS = frozenset({"auto", "admin"})


class QueuePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class EnrichmentJobPayload(QueuePayload):
    property_id: str = Field(alias="propertyId", min_length=1)


class MatchmakingJobPayload(QueuePayload):
    matchmaking_job_id: str = Field(alias="matchmakingJobId", min_length=1)


class WebhookJobPayload(QueuePayload):
    subscription_id: str = Field(alias="subscriptionId", min_length=1)
    event_type: str = Field(alias="eventType", min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    failure_id: str | None = Field(default=None, alias="failureId")
    replay_mode: ReplayMode | None = Field(default=None, alias="replayMode")


class MatchFilter(BaseModel):
    """Criteria stored in a matchmaking job's ``filterJSON``.

    ``origin`` records who created the job (``auto`` or ``admin``) and never
    filters properties. ``source`` filters on the property's scrape source.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    min_score: float = Field(default=0, alias="minScore")
    source: str | None = None
    property_id: str | None = Field(default=None, alias="propertyId")
    origin: str | None = None

    @model_validator(mode="before")
    @classmethod
    def split_origin_from_source(cls, data: Any) -> Any:
        # Older jobs stored the origin marker in ``source``.
        if isinstance(data, dict) and data.get("source") in ORIGIN_MARKERS:
            data = dict(data)
            data.setdefault("origin", data["source"])
            data["source"] = None
        return data
