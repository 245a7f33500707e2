from __future__ import annotations

import asyncio

from leadpipe.services.consumer import QueueWorker
from leadpipe.services.metrics import MetricsCollector
from leadpipe.services.queue import ENRICHMENT_QUEUE, EnqueueOptions, Job, JobQueue
from leadpipe.services.store import InMemoryRepository


def _worker(handler, *, concurrency: int = 1) -> tuple[QueueWorker, JobQueue, MetricsCollector]:
    queue = JobQueue(InMemoryRepository(), retry_base_seconds=0.0, retry_jitter_ratio=0.0)
    metrics = MetricsCollector()
    worker = QueueWorker(
        ENRICHMENT_QUEUE,
        handler,
        queue=queue,
        metrics=metrics,
        concurrency=concurrency,
        poll_interval_seconds=0.01,
    )
    return worker, queue, metrics


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def test_process_next_completes_successful_jobs() -> None:
    seen: list[str] = []

    async def handler(job: Job) -> None:
        seen.append(job.payload["propertyId"])

    worker, queue, metrics = _worker(handler)

    async def run() -> None:
        job = await queue.enqueue(ENRICHMENT_QUEUE, {"propertyId": "p-1"}, EnqueueOptions(remove_on_complete=False))
        assert await worker.process_next() is True
        assert await worker.process_next() is False
        assert (await queue.get_job(job.id)).status == "completed"

    asyncio.run(run())
    assert seen == ["p-1"]
    assert metrics.counter("queue_job_attempts_total", queue=ENRICHMENT_QUEUE, outcome="completed") == 1


def test_handler_errors_retry_then_fail() -> None:
    calls: list[int] = []

    async def handler(job: Job) -> None:
        calls.append(job.attempt)
        raise RuntimeError("store unavailable")

    worker, queue, metrics = _worker(handler)

    async def run() -> Job | None:
        job = await queue.enqueue(ENRICHMENT_QUEUE, {"propertyId": "p-1"}, EnqueueOptions(attempts=3))
        assert await worker.drain() == 3
        return await queue.get_job(job.id)

    final = asyncio.run(run())
    assert calls == [1, 2, 3]
    assert final is not None and final.status == "failed"
    assert final.last_error == "store unavailable"
    assert metrics.counter("queue_job_attempts_total", queue=ENRICHMENT_QUEUE, outcome="retried") == 2
    assert metrics.counter("queue_job_attempts_total", queue=ENRICHMENT_QUEUE, outcome="failed") == 1


def test_concurrency_bounds_in_flight_jobs() -> None:
    in_flight = 0
    peak = 0
    done: list[str] = []

    async def handler(job: Job) -> None:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.02)
        in_flight -= 1
        done.append(job.id)

    worker, queue, _ = _worker(handler, concurrency=2)

    async def run() -> None:
        for index in range(6):
            await queue.enqueue(ENRICHMENT_QUEUE, {"propertyId": f"p-{index}"})
        await worker.start()
        await _wait_for(lambda: len(done) == 6)
        await worker.close()

    asyncio.run(run())
    assert peak == 2
    assert len(set(done)) == 6


def test_close_waits_for_in_flight_job() -> None:
    started = False
    finished = False

    async def handler(job: Job) -> None:
        nonlocal started, finished
        started = True
        await asyncio.sleep(0.05)
        finished = True

    worker, queue, _ = _worker(handler)

    async def run() -> None:
        job = await queue.enqueue(ENRICHMENT_QUEUE, {"propertyId": "p-1"}, EnqueueOptions(remove_on_complete=False))
        await worker.start()
        await _wait_for(lambda: started)
        await worker.close()
        assert finished is True
        assert worker.running is False
        assert (await queue.get_job(job.id)).status == "completed"

        await queue.enqueue(ENRICHMENT_QUEUE, {"propertyId": "p-2"})
        await asyncio.sleep(0.03)
        assert (await queue.counts())[ENRICHMENT_QUEUE]["queued"] == 1

    asyncio.run(run())
