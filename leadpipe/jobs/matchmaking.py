from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from typing import Any

from leadpipe.jobs.notifications import NotificationDispatcher
from leadpipe.schemas.jobs import MatchFilter, MatchmakingJobPayload
from leadpipe.services.errors import MATCHMAKING_TERMINAL_STATUSES, RepositoryConflictError
from leadpipe.services.metrics import MetricsCollector
from leadpipe.services.queue import Job

logger = logging.getLogger(__name__)

MATCHMAKING_COMPLETED = "matchmaking.completed"


def build_property_query(filter_json: dict[str, Any] | None) -> dict[str, Any]:
    """Translate a stored ``filterJSON`` into ``count_properties`` keyword arguments."""
    criteria = MatchFilter.model_validate(filter_json or {})
    return {
        "min_score": math.ceil(criteria.min_score),
        "source": criteria.source,
        "property_id": criteria.property_id,
    }


class MatchmakingWorker:
    """Runs a stored matchmaking job through ``queued -> running -> completed|failed``.

    Every transition is a conditional write on the current status, so a job
    that already reached a terminal state is never moved again.
    """

    def __init__(self, *, repository: Any, metrics: MetricsCollector, notifier: NotificationDispatcher) -> None:
        self.repository = repository
        self.metrics = metrics
        self.notifier = notifier

    async def handle(self, job: Job) -> dict[str, Any]:
        started = time.perf_counter()
        payload = MatchmakingJobPayload.model_validate(job.payload)
        matchmaking_job_id = payload.matchmaking_job_id

        current = await self.repository.get_matchmaking_job(matchmaking_job_id)
        if current is None:
            return self._skip(matchmaking_job_id, "matchmaking_job_not_found")
        if current["status"] in MATCHMAKING_TERMINAL_STATUSES:
            return self._skip(matchmaking_job_id, f"already_{current['status']}")

        running = await self.repository.transition_matchmaking_job(
            job_id=matchmaking_job_id,
            from_statuses={"queued", "running"},
            to_status="running",
        )
        if running is None:
            return self._skip(matchmaking_job_id, "status_changed")
        if current["status"] == "queued":
            self.metrics.increment("matchmaking_status_total", status="running")

        try:
            query = build_property_query(running.get("filter_json"))
            matched_count = await self.repository.count_properties(**query)
            completed = await self.repository.transition_matchmaking_job(
                job_id=matchmaking_job_id,
                from_statuses={"running"},
                to_status="completed",
                matched_count=matched_count,
            )
            if completed is None:
                raise RepositoryConflictError("matchmaking job left running state before completion")
        except Exception as exc:
            await self._mark_failed(matchmaking_job_id, exc)
            raise

        duration_ms = (time.perf_counter() - started) * 1000.0
        self.metrics.increment("matchmaking_status_total", status="completed")
        self.metrics.observe("matchmaking_duration_ms", duration_ms)
        logger.info(
            "matchmaking completed component=matchmaking status=completed matchmaking_job_id=%s matched_count=%s "
            "duration_ms=%.2f",
            matchmaking_job_id,
            matched_count,
            duration_ms,
        )

        await self.notifier.fan_out(
            MATCHMAKING_COMPLETED,
            {
                "jobId": matchmaking_job_id,
                "matchedCount": matched_count,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
        await self.notifier.record_activity(
            activity_type=MATCHMAKING_COMPLETED,
            metadata={"matchmakingJobId": matchmaking_job_id, "matchedCount": matched_count},
        )
        return {"handled": True, "matchmaking_job_id": matchmaking_job_id, "matched_count": matched_count}

    async def _mark_failed(self, matchmaking_job_id: str, exc: Exception) -> None:
        self.metrics.increment("matchmaking_status_total", status="failed")
        logger.error(
            "matchmaking failed component=matchmaking status=failed matchmaking_job_id=%s error=%s",
            matchmaking_job_id,
            exc,
        )
        try:
            await self.repository.transition_matchmaking_job(
                job_id=matchmaking_job_id,
                from_statuses={"running"},
                to_status="failed",
                error=str(exc) or type(exc).__name__,
            )
        except Exception:
            logger.exception(
                "matchmaking failure not recorded component=matchmaking matchmaking_job_id=%s",
                matchmaking_job_id,
            )

    def _skip(self, matchmaking_job_id: str, reason: str) -> dict[str, Any]:
        logger.info(
            "matchmaking skipped component=matchmaking status=skipped matchmaking_job_id=%s reason=%s",
            matchmaking_job_id,
            reason,
        )
        return {"handled": True, "matchmaking_job_id": matchmaking_job_id, "reason": reason}
