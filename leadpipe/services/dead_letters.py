from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from leadpipe.jobs.producers import enqueue_webhook_delivery
from leadpipe.services.errors import RepositoryConflictError, RepositoryNotFoundError
from leadpipe.services.metrics import MetricsCollector
from leadpipe.services.queue import Job, JobQueue

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 200
MAX_REPLAY_ALL = 500
TEST_EVENT_TYPE = "test.event"


class DeadLetterService:
    """Operator view over terminal webhook failures and their replays."""

    def __init__(self, *, repository: Any, queue: JobQueue, metrics: MetricsCollector) -> None:
        self.repository = repository
        self.queue = queue
        self.metrics = metrics

    async def list_failures(
        self,
        *,
        subscription_id: str | None = None,
        event_type: str | None = None,
        since: datetime | None = None,
        include_resolved: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        return await self.repository.list_webhook_delivery_failures(
            subscription_id=subscription_id,
            event_type=event_type,
            since=since,
            include_resolved=include_resolved,
            limit=max(1, min(limit, MAX_LIST_LIMIT)),
            offset=max(0, offset),
        )

    async def list_deliveries(
        self,
        *,
        subscription_id: str | None = None,
        event_type: str | None = None,
        status: str | None = None,
        is_resolved: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        return await self.repository.list_webhook_delivery_logs(
            subscription_id=subscription_id,
            event_type=event_type,
            status=status,
            is_resolved=is_resolved,
            limit=max(1, min(limit, MAX_LIST_LIMIT)),
            offset=max(0, offset),
        )

    async def replay_failure(self, failure_id: str) -> Job:
        failure = await self.repository.get_webhook_delivery_failure(failure_id)
        if failure is None:
            raise RepositoryNotFoundError("webhook delivery failure not found")
        if failure["is_resolved"]:
            raise RepositoryConflictError("webhook delivery failure already resolved")

        job = await self._enqueue_replay(failure, mode="single")
        logger.info(
            "webhook replay enqueued component=webhook_replay status=queued failure_id=%s job_id=%s mode=single",
            failure_id,
            job.id,
        )
        return job

    async def replay_all(
        self,
        *,
        subscription_id: str | None = None,
        event_type: str | None = None,
        limit: int = MAX_REPLAY_ALL,
    ) -> list[str]:
        failures, _ = await self.repository.list_webhook_delivery_failures(
            subscription_id=subscription_id,
            event_type=event_type,
            include_resolved=False,
            limit=max(1, min(limit, MAX_REPLAY_ALL)),
        )
        job_ids: list[str] = []
        for failure in failures:
            try:
                job = await self._enqueue_replay(failure, mode="bulk")
            except Exception as exc:
                self.metrics.increment("webhook_replay_enqueue_failures_total", mode="bulk")
                logger.warning(
                    "webhook replay enqueue failed component=webhook_replay failure_id=%s error=%s",
                    failure["id"],
                    exc,
                )
                continue
            job_ids.append(job.id)

        logger.info(
            "webhook bulk replay enqueued component=webhook_replay status=queued candidates=%s enqueued=%s",
            len(failures),
            len(job_ids),
        )
        return job_ids

    async def send_test_event(
        self,
        subscription_id: str,
        *,
        event_type: str = TEST_EVENT_TYPE,
        payload: dict[str, Any] | None = None,
    ) -> Job:
        subscription = await self.repository.get_webhook_subscription(subscription_id)
        if subscription is None:
            raise RepositoryNotFoundError("webhook subscription not found")
        return await enqueue_webhook_delivery(
            self.queue,
            subscription_id=subscription_id,
            event_type=event_type,
            payload=payload if payload is not None else {"ok": True},
        )

    async def _enqueue_replay(self, failure: dict[str, Any], *, mode: str) -> Job:
        job = await enqueue_webhook_delivery(
            self.queue,
            subscription_id=failure["subscription_id"],
            event_type=failure["event_type"],
            payload=failure["payload"],
            failure_id=failure["id"],
            replay_mode=mode,
        )
        self.metrics.increment("webhook_replay_enqueued_total", mode=mode)
        return job
