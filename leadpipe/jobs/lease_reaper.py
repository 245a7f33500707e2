from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from leadpipe.services.queue import Job, JobQueue, ReapResult

logger = logging.getLogger(__name__)

ExhaustedHandler = Callable[[Job], Awaitable[Any]]


class LeaseReaper:
    """Periodically returns jobs with expired leases to their queue.

    Jobs that lost the lease on their last attempt are failed by the queue and
    handed to the ``on_exhausted`` hook registered for their queue, if any.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        interval_seconds: float = 15.0,
        batch_size: int = 100,
        on_exhausted: dict[str, ExhaustedHandler] | None = None,
    ) -> None:
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.on_exhausted = dict(on_exhausted or {})
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="lease-reaper")

    async def reap_once(self) -> ReapResult:
        result = await self.queue.reap_expired(limit=self.batch_size)
        if result.requeued:
            logger.info("requeued expired leases component=lease_reaper count=%s", result.requeued)
        for job in result.failed:
            logger.warning(
                "lease expired on final attempt component=lease_reaper queue=%s job_id=%s attempts=%s",
                job.queue_name,
                job.id,
                job.attempts_made,
            )
            handler = self.on_exhausted.get(job.queue_name)
            if handler is None:
                continue
            try:
                await handler(job)
            except Exception:
                logger.exception(
                    "exhausted job hook failed component=lease_reaper queue=%s job_id=%s",
                    job.queue_name,
                    job.id,
                )
        return result

    async def close(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.reap_once()
            except Exception:
                logger.exception("lease reap failed component=lease_reaper")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
