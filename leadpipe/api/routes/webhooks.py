import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from leadpipe.api.security import get_pipeline, require_admin_key
from leadpipe.pipeline import Pipeline
from leadpipe.schemas.webhooks import (
    DeliveryStatus,
    QueuedJobOut,
    ReplayAllOut,
    ReplayAllRequest,
    ReplayOut,
    TestEventRequest,
    WebhookDeliveryListOut,
    WebhookDeliveryOut,
    WebhookFailureListOut,
    WebhookFailureOut,
    WebhookSubscriptionCreate,
    WebhookSubscriptionCreatedOut,
    WebhookSubscriptionOut,
    WebhookSubscriptionUpdate,
)
from leadpipe.services.errors import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_key)])


def _http_error(exc: RepositoryError) -> HTTPException:
    if isinstance(exc, RepositoryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, RepositoryConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, RepositoryValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


@router.get("/webhook-failures", response_model=WebhookFailureListOut)
async def list_webhook_failures(
    pipeline: Pipeline = Depends(get_pipeline),
    subscription_id: str | None = None,
    event_type: str | None = None,
    since: datetime | None = None,
    include_resolved: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> WebhookFailureListOut:
    try:
        rows, total = await pipeline.dead_letters.list_failures(
            subscription_id=subscription_id,
            event_type=event_type,
            since=since,
            include_resolved=include_resolved,
            limit=limit,
            offset=offset,
        )
    except (RepositoryValidationError, RepositoryUnavailableError) as exc:
        raise _http_error(exc) from exc
    return WebhookFailureListOut(
        data=[WebhookFailureOut(**row) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/webhook-deliveries", response_model=WebhookDeliveryListOut)
async def list_webhook_deliveries(
    pipeline: Pipeline = Depends(get_pipeline),
    subscription_id: str | None = None,
    event_type: str | None = None,
    delivery_status: DeliveryStatus | None = Query(default=None, alias="status"),
    is_resolved: bool | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> WebhookDeliveryListOut:
    try:
        rows, total = await pipeline.dead_letters.list_deliveries(
            subscription_id=subscription_id,
            event_type=event_type,
            status=delivery_status,
            is_resolved=is_resolved,
            limit=limit,
            offset=offset,
        )
    except (RepositoryValidationError, RepositoryUnavailableError) as exc:
        raise _http_error(exc) from exc
    return WebhookDeliveryListOut(
        data=[WebhookDeliveryOut(**row) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/webhook-failures/replay-all", response_model=ReplayAllOut)
async def replay_all_webhook_failures(
    payload: ReplayAllRequest | None = None,
    pipeline: Pipeline = Depends(get_pipeline),
) -> ReplayAllOut:
    payload = payload or ReplayAllRequest()
    try:
        job_ids = await pipeline.dead_letters.replay_all(
            subscription_id=payload.subscription_id,
            event_type=payload.event_type,
            limit=payload.limit,
        )
    except (RepositoryValidationError, RepositoryUnavailableError) as exc:
        raise _http_error(exc) from exc
    return ReplayAllOut(replayed=len(job_ids), job_ids=job_ids)


@router.post("/webhook-failures/{failure_id}/replay", response_model=ReplayOut)
async def replay_webhook_failure(failure_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> ReplayOut:
    try:
        job = await pipeline.dead_letters.replay_failure(failure_id)
    except (
        RepositoryNotFoundError,
        RepositoryConflictError,
        RepositoryValidationError,
        RepositoryUnavailableError,
    ) as exc:
        raise _http_error(exc) from exc
    return ReplayOut(failure_id=failure_id, job_id=job.id)


@router.post("/webhooks/{subscription_id}/test", response_model=QueuedJobOut, status_code=status.HTTP_202_ACCEPTED)
async def send_webhook_test_event(
    subscription_id: str,
    payload: TestEventRequest | None = None,
    pipeline: Pipeline = Depends(get_pipeline),
) -> QueuedJobOut:
    payload = payload or TestEventRequest()
    try:
        job = await pipeline.dead_letters.send_test_event(
            subscription_id,
            event_type=payload.event_type,
            payload=payload.payload,
        )
    except (RepositoryNotFoundError, RepositoryValidationError, RepositoryUnavailableError) as exc:
        raise _http_error(exc) from exc
    return QueuedJobOut(job_id=job.id, queue_name=job.queue_name)


@router.post(
    "/webhook-subscriptions",
    response_model=WebhookSubscriptionCreatedOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_webhook_subscription(
    payload: WebhookSubscriptionCreate,
    pipeline: Pipeline = Depends(get_pipeline),
) -> WebhookSubscriptionCreatedOut:
    try:
        row = await pipeline.repository.create_webhook_subscription(
            target_url=payload.target_url,
            event_types=payload.event_types,
            signing_secret=payload.signing_secret,
            is_active=payload.is_active,
        )
    except (RepositoryValidationError, RepositoryUnavailableError) as exc:
        raise _http_error(exc) from exc
    logger.info(
        "webhook subscription created component=webhook_admin subscription_id=%s event_types=%s",
        row["id"],
        ",".join(row["event_types"]),
    )
    return WebhookSubscriptionCreatedOut(**row)


@router.patch("/webhook-subscriptions/{subscription_id}", response_model=WebhookSubscriptionOut)
async def update_webhook_subscription(
    subscription_id: str,
    payload: WebhookSubscriptionUpdate,
    pipeline: Pipeline = Depends(get_pipeline),
) -> WebhookSubscriptionOut:
    try:
        row = await pipeline.repository.set_webhook_subscription_active(
            subscription_id=subscription_id,
            is_active=payload.is_active,
        )
    except (RepositoryNotFoundError, RepositoryUnavailableError) as exc:
        raise _http_error(exc) from exc
    logger.info(
        "webhook subscription updated component=webhook_admin subscription_id=%s is_active=%s",
        subscription_id,
        payload.is_active,
    )
    return WebhookSubscriptionOut(**row)
