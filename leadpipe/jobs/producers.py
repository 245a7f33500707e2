from __future__ import annotations

from typing import Any

from leadpipe.schemas.jobs import EnrichmentJobPayload, MatchmakingJobPayload, WebhookJobPayload
from leadpipe.services.queue import (
    ENRICHMENT_QUEUE,
    MATCHMAKING_QUEUE,
    WEBHOOK_QUEUE,
    EnqueueOptions,
    Job,
    JobQueue,
)


async def enqueue_enrichment(queue: JobQueue, property_id: str, *, options: EnqueueOptions | None = None) -> Job:
    payload = EnrichmentJobPayload(property_id=property_id).to_payload()
    return await queue.enqueue(ENRICHMENT_QUEUE, payload, options)


async def enqueue_matchmaking(
    queue: JobQueue,
    matchmaking_job_id: str,
    *,
    options: EnqueueOptions | None = None,
) -> Job:
    payload = MatchmakingJobPayload(matchmaking_job_id=matchmaking_job_id).to_payload()
    return await queue.enqueue(MATCHMAKING_QUEUE, payload, options)


async def enqueue_webhook_delivery(
    queue: JobQueue,
    *,
    subscription_id: str,
    event_type: str,
    payload: dict[str, Any],
    failure_id: str | None = None,
    replay_mode: str | None = None,
    options: EnqueueOptions | None = None,
) -> Job:
    body = WebhookJobPayload(
        subscription_id=subscription_id,
        event_type=event_type,
        payload=payload,
        failure_id=failure_id,
        replay_mode=replay_mode,
    ).to_payload()
    return await queue.enqueue(WEBHOOK_QUEUE, body, options)
