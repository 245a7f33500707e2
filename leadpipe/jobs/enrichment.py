from __future__ import annotations

import logging
import time
from typing import Any

from leadpipe.jobs.notifications import NotificationDispatcher
from leadpipe.jobs.producers import enqueue_matchmaking
from leadpipe.jobs.scoring import compute_score_and_tags, should_trigger_matchmaking
from leadpipe.schemas.jobs import EnrichmentJobPayload
from leadpipe.services.metrics import MetricsCollector
from leadpipe.services.queue import Job, JobQueue

logger = logging.getLogger(__name__)

ENRICHMENT_COMPLETED = "enrichment.completed"


def is_enriched(prop: dict[str, Any]) -> bool:
    return bool(prop.get("enrichment_tags")) or prop.get("investment_score") is not None


class EnrichmentWorker:
    """Scores a scraped property once and triggers follow-up work.

    Duplicate deliveries of the same job are no-ops: the property is skipped
    when it already carries enrichment fields, and the write itself only lands
    on a still-unenriched row.
    """

    def __init__(
        self,
        *,
        repository: Any,
        queue: JobQueue,
        metrics: MetricsCollector,
        notifier: NotificationDispatcher,
        auto_match_score_threshold: int = 85,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.metrics = metrics
        self.notifier = notifier
        self.auto_match_score_threshold = auto_match_score_threshold

    async def handle(self, job: Job) -> dict[str, Any]:
        started = time.perf_counter()
        payload = EnrichmentJobPayload.model_validate(job.payload)
        property_id = payload.property_id

        try:
            prop = await self.repository.get_property(property_id)
            if prop is None:
                return self._skip(property_id, "property_not_found")
            if is_enriched(prop):
                return self._skip(property_id, "already_enriched")

            result = compute_score_and_tags(price=prop.get("price"), sqft=prop.get("sqft"), condition=prop.get("condition"))
            applied = await self.repository.apply_property_enrichment(
                property_id=property_id,
                investment_score=result.score,
                enrichment_tags=result.tags,
                condition=result.condition,
                reasons=result.reasons,
                tag_reasons=result.tag_reasons,
            )
            if not applied:
                return self._skip(property_id, "already_enriched")
        except Exception as exc:
            self.metrics.increment("enrichment_jobs_total", status="failed")
            logger.error(
                "enrichment failed component=enrichment status=failed property_id=%s job_id=%s error=%s",
                property_id,
                job.id,
                exc,
            )
            raise

        await self.notifier.record_activity(
            activity_type=ENRICHMENT_COMPLETED,
            property_id=property_id,
            metadata={
                "investmentScore": result.score,
                "tags": result.tags,
                "condition": result.condition,
                "reasons": result.reasons,
                "tagReasons": result.tag_reasons,
            },
        )

        matchmaking_job_id = None
        if should_trigger_matchmaking(result.score, result.tags, threshold=self.auto_match_score_threshold):
            matchmaking_job_id = await self._trigger_matchmaking(property_id, score=result.score)

        duration_ms = (time.perf_counter() - started) * 1000.0
        self.metrics.increment("enrichment_jobs_total", status="processed")
        self.metrics.observe("enrichment_duration_ms", duration_ms)
        logger.info(
            "enrichment processed component=enrichment status=processed property_id=%s score=%s tags=%s "
            "condition=%s duration_ms=%.2f",
            property_id,
            result.score,
            ",".join(result.tags),
            result.condition,
            duration_ms,
        )
        return {
            "handled": True,
            "property_id": property_id,
            "investment_score": result.score,
            "tags": result.tags,
            "matchmaking_job_id": matchmaking_job_id,
        }

    async def _trigger_matchmaking(self, property_id: str, *, score: int) -> str | None:
        reason = "score_threshold" if score >= self.auto_match_score_threshold else "tag_match"
        matchmaking_job: dict[str, Any] | None = None
        try:
            matchmaking_job = await self.repository.create_matchmaking_job(
                filter_json={"propertyId": property_id, "source": "auto", "origin": "auto"},
            )
            await enqueue_matchmaking(self.queue, matchmaking_job["id"])
        except Exception as exc:
            self.metrics.increment("matchmaking_trigger_failures_total", origin="auto")
            logger.warning(
                "auto matchmaking trigger failed component=matchmaking status=failed property_id=%s error=%s",
                property_id,
                exc,
            )
            if matchmaking_job is not None:
                await self._abandon_matchmaking_job(matchmaking_job["id"], exc)
            return None

        try:
            await self.repository.mark_property_auto_match(property_id)
        except Exception as exc:
            logger.warning(
                "auto match flag not set component=enrichment property_id=%s error=%s",
                property_id,
                exc,
            )

        self.metrics.increment("matchmaking_triggered_total", origin="auto")
        logger.info(
            "auto matchmaking triggered component=matchmaking status=queued property_id=%s matchmaking_job_id=%s "
            "reason=%s score=%s",
            property_id,
            matchmaking_job["id"],
            reason,
            score,
        )
        return matchmaking_job["id"]

    async def _abandon_matchmaking_job(self, matchmaking_job_id: str, exc: Exception) -> None:
        """Fail a matchmaking job that was created but never reached the queue."""
        try:
            await self.repository.transition_matchmaking_job(
                job_id=matchmaking_job_id,
                from_statuses={"queued"},
                to_status="failed",
                error=f"enqueue_failed: {str(exc) or type(exc).__name__}",
            )
        except Exception:
            logger.exception(
                "orphaned matchmaking job not failed component=matchmaking matchmaking_job_id=%s",
                matchmaking_job_id,
            )

    def _skip(self, property_id: str, reason: str) -> dict[str, Any]:
        self.metrics.increment("enrichment_jobs_total", status="skipped")
        logger.info("enrichment skipped component=enrichment status=skipped property_id=%s reason=%s", property_id, reason)
        return {"handled": True, "property_id": property_id, "reason": reason}
