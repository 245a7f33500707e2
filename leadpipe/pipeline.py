from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from leadpipe.core.config import Settings
from leadpipe.jobs.enrichment import EnrichmentWorker
from leadpipe.jobs.lease_reaper import LeaseReaper
from leadpipe.jobs.matchmaking import MatchmakingWorker
from leadpipe.jobs.notifications import NotificationDispatcher
from leadpipe.jobs.webhooks import WebhookDeliveryWorker
from leadpipe.services.consumer import QueueWorker
from leadpipe.services.dead_letters import DeadLetterService
from leadpipe.services.metrics import MetricsCollector
from leadpipe.services.queue import (
    ENRICHMENT_QUEUE,
    MATCHMAKING_QUEUE,
    WEBHOOK_QUEUE,
    EnqueueOptions,
    JobQueue,
)
from leadpipe.services.registry import WorkerRegistry
from leadpipe.services.repository import get_repository

logger = logging.getLogger(__name__)


def queue_defaults(settings: Settings) -> dict[str, EnqueueOptions]:
    def options(attempts: int) -> EnqueueOptions:
        return EnqueueOptions(
            attempts=attempts,
            remove_on_complete=settings.remove_on_complete,
            remove_on_fail=settings.remove_on_fail,
        )

    return {
        ENRICHMENT_QUEUE: options(settings.enrichment_max_attempts),
        MATCHMAKING_QUEUE: options(settings.matchmaking_max_attempts),
        WEBHOOK_QUEUE: options(settings.webhook_max_attempts),
    }


@dataclass
class Pipeline:
    """Everything one process needs to produce and consume pipeline jobs.

    The metrics collector, queue and store are owned here and handed to each
    worker explicitly. Shutdown goes through the registry.
    """

    settings: Settings
    repository: Any
    queue: JobQueue
    metrics: MetricsCollector
    registry: WorkerRegistry
    notifier: NotificationDispatcher
    dead_letters: DeadLetterService
    workers: dict[str, QueueWorker] = field(default_factory=dict)
    reaper: LeaseReaper | None = None
    webhook_delivery: WebhookDeliveryWorker | None = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        repository: Any | None = None,
        http_client: httpx.AsyncClient | None = None,
        metrics: MetricsCollector | None = None,
    ) -> Pipeline:
        repository = repository if repository is not None else get_repository()
        metrics = metrics or MetricsCollector()
        queue = JobQueue(
            repository,
            lease_seconds=settings.queue_lease_seconds,
            retry_base_seconds=settings.job_retry_base_seconds,
            retry_max_seconds=settings.job_retry_max_seconds,
            retry_jitter_ratio=settings.job_retry_jitter_ratio,
            defaults=queue_defaults(settings),
        )
        notifier = NotificationDispatcher(repository=repository, queue=queue, metrics=metrics)
        enrichment = EnrichmentWorker(
            repository=repository,
            queue=queue,
            metrics=metrics,
            notifier=notifier,
            auto_match_score_threshold=settings.auto_match_score_threshold,
        )
        matchmaking = MatchmakingWorker(repository=repository, metrics=metrics, notifier=notifier)
        webhooks = WebhookDeliveryWorker(
            repository=repository,
            metrics=metrics,
            client=http_client,
            timeout_seconds=settings.webhook_timeout_seconds,
        )

        def consumer(queue_name: str, handler: Any, concurrency: int) -> QueueWorker:
            return QueueWorker(
                queue_name,
                handler,
                queue=queue,
                metrics=metrics,
                concurrency=concurrency,
                poll_interval_seconds=settings.queue_poll_interval_seconds,
            )

        workers = {
            ENRICHMENT_QUEUE: consumer(ENRICHMENT_QUEUE, enrichment.handle, settings.enrichment_concurrency),
            MATCHMAKING_QUEUE: consumer(MATCHMAKING_QUEUE, matchmaking.handle, settings.matchmaking_concurrency),
            WEBHOOK_QUEUE: consumer(WEBHOOK_QUEUE, webhooks.handle, settings.webhook_concurrency),
        }
        reaper = LeaseReaper(
            queue,
            interval_seconds=settings.lease_reaper_interval_seconds,
            batch_size=settings.lease_reaper_batch_size,
            on_exhausted={WEBHOOK_QUEUE: webhooks.handle_exhausted},
        )

        registry = WorkerRegistry()
        for worker in workers.values():
            registry.register_worker(worker)
        registry.register_worker(reaper)
        registry.register_resource(repository)
        registry.register_resource(webhooks)

        return cls(
            settings=settings,
            repository=repository,
            queue=queue,
            metrics=metrics,
            registry=registry,
            notifier=notifier,
            dead_letters=DeadLetterService(repository=repository, queue=queue, metrics=metrics),
            workers=workers,
            reaper=reaper,
            webhook_delivery=webhooks,
        )

    async def start(self) -> None:
        for worker in self.workers.values():
            await worker.start()
        if self.reaper is not None:
            await self.reaper.start()
        logger.info("pipeline started component=pipeline queues=%s", ",".join(self.workers))

    async def run_until_idle(self, *, max_rounds: int = 100) -> int:
        """Process due jobs on every queue in the current task until none remain."""
        processed = 0
        for _ in range(max_rounds):
            round_processed = 0
            for worker in self.workers.values():
                round_processed += await worker.drain()
            processed += round_processed
            if not round_processed:
                break
        return processed

    async def snapshot(self) -> dict[str, Any]:
        data = self.metrics.snapshot()
        data["queues"] = await self.queue.counts()
        return data

    async def shutdown(self) -> None:
        await self.registry.shutdown()
