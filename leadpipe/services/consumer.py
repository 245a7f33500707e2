from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import Any

from opentelemetry import trace

from leadpipe.core.telemetry import job_span
from leadpipe.services.metrics import MetricsCollector
from leadpipe.services.queue import Job, JobQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]


class QueueWorker:
    """Consumes one named queue with a fixed number of concurrent slots.

    A handler that returns normally completes the job. A handler that raises
    fails the attempt, and the queue decides between a delayed retry and the
    terminal ``failed`` state.
    """

    def __init__(
        self,
        queue_name: str,
        handler: JobHandler,
        *,
        queue: JobQueue,
        metrics: MetricsCollector,
        concurrency: int = 1,
        poll_interval_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.queue_name = queue_name
        self.handler = handler
        self.queue = queue
        self.metrics = metrics
        self.concurrency = max(1, concurrency)
        self.poll_interval_seconds = poll_interval_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.tracer = tracer
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._consume(slot), name=f"{self.queue_name}-consumer-{slot}")
            for slot in range(self.concurrency)
        ]
        logger.info(
            "worker started component=queue queue=%s concurrency=%s",
            self.queue_name,
            self.concurrency,
        )

    async def close(self) -> None:
        """Stop picking up jobs and wait for in-flight jobs to finish."""
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
            logger.info("worker stopped component=queue queue=%s", self.queue_name)

    async def process_next(self) -> bool:
        """Claim and run at most one job. Returns False when nothing was due."""
        job = await self.queue.claim(self.queue_name)
        if job is None:
            return False
        await self._run(job)
        return True

    async def drain(self, *, max_jobs: int = 1000) -> int:
        processed = 0
        while processed < max_jobs and await self.process_next():
            processed += 1
        return processed

    async def _consume(self, slot: int) -> None:
        backoff = self.poll_interval_seconds
        while not self._stopping.is_set():
            try:
                processed = await self.process_next()
                backoff = self.poll_interval_seconds
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                backoff = min(max(backoff, 0.1) * (2.0 + jitter), self.max_backoff_seconds)
                logger.exception(
                    "worker iteration failed component=queue queue=%s slot=%s error=%s retry_in=%.1fs",
                    self.queue_name,
                    slot,
                    exc,
                    backoff,
                )
                await self._wait(backoff)
                continue
            if not processed:
                await self._wait(self.poll_interval_seconds)

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run(self, job: Job) -> None:
        started = time.perf_counter()
        with job_span(job, tracer=self.tracer) as span:
            try:
                await self.handler(job)
            except Exception as exc:
                span.record_exception(exc)
                updated = await self.queue.fail(job, exc)
                outcome = "retried" if updated is not None and updated.status == "queued" else "failed"
                span.set_attribute("leadpipe.job.outcome", outcome)
                self.metrics.increment("queue_job_attempts_total", queue=self.queue_name, outcome=outcome)
                logger.warning(
                    "job attempt failed component=queue queue=%s job_id=%s attempt=%s max_attempts=%s outcome=%s error=%s",
                    self.queue_name,
                    job.id,
                    job.attempt,
                    job.max_attempts,
                    outcome,
                    str(exc) or type(exc).__name__,
                )
            else:
                await self.queue.complete(job)
                span.set_attribute("leadpipe.job.outcome", "completed")
                self.metrics.increment("queue_job_attempts_total", queue=self.queue_name, outcome="completed")
            finally:
                self.metrics.observe(
                    "queue_job_duration_ms",
                    (time.perf_counter() - started) * 1000.0,
                    queue=self.queue_name,
                )
