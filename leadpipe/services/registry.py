from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class Closer(Protocol):
    async def close(self) -> None: ...


class WorkerRegistry:
    """Tracks live workers and connection-holding resources for shutdown.

    Workers are closed first (stop pickup, drain in-flight jobs), then resources
    in reverse registration order. ``shutdown`` may be awaited any number of
    times, concurrently or not; the close sequence runs once.
    """

    def __init__(self) -> None:
        self._workers: list[Closer] = []
        self._resources: list[Closer] = []
        self._shutdown_task: asyncio.Task[None] | None = None

    @property
    def workers(self) -> list[Closer]:
        return list(self._workers)

    @property
    def resources(self) -> list[Closer]:
        return list(self._resources)

    @property
    def is_shut_down(self) -> bool:
        return self._shutdown_task is not None and self._shutdown_task.done()

    def register_worker(self, worker: Closer) -> None:
        if self._shutdown_task is not None:
            raise RuntimeError("registry is shutting down")
        if worker not in self._workers:
            self._workers.append(worker)

    def register_resource(self, resource: Closer) -> None:
        if self._shutdown_task is not None:
            raise RuntimeError("registry is shutting down")
        if resource not in self._resources:
            self._resources.append(resource)

    async def shutdown(self) -> None:
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._close_all())
        await self._shutdown_task

    async def _close_all(self) -> None:
        for worker in self._workers:
            await self._close_one(worker, kind="worker")
        for resource in reversed(self._resources):
            await self._close_one(resource, kind="resource")
        logger.info(
            "shutdown complete component=registry workers=%s resources=%s",
            len(self._workers),
            len(self._resources),
        )

    @staticmethod
    async def _close_one(closer: Closer, *, kind: str) -> None:
        try:
            await closer.close()
        except Exception:
            logger.exception("shutdown close failed component=registry kind=%s target=%s", kind, type(closer).__name__)
