from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any

import httpx
from pydantic import ValidationError

from leadpipe.schemas.jobs import WebhookJobPayload
from leadpipe.services.errors import LEASE_EXPIRED_ERROR
from leadpipe.services.metrics import MetricsCollector
from leadpipe.services.queue import Job

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
WEBHOOK_ID_HEADER = "X-Webhook-Id"
EVENT_TYPE_HEADER = "X-Event-Type"


class WebhookDeliveryError(Exception):
    """Raised when a subscriber answers with a non-2xx status."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"status_{status_code}")
        self.status_code = status_code


def encode_webhook_body(event_type: str, payload: dict[str, Any]) -> bytes:
    return json.dumps({"event": event_type, "data": payload}, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign_webhook_body(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_webhook_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Check an ``X-Signature`` value the way a subscriber should."""
    if not signature:
        return False
    return hmac.compare_digest(sign_webhook_body(secret, body), signature)


def build_webhook_headers(*, signature: str, job_id: str, event_type: str, timestamp_ms: int) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: signature,
        TIMESTAMP_HEADER: str(timestamp_ms),
        WEBHOOK_ID_HEADER: job_id,
        EVENT_TYPE_HEADER: event_type,
    }


class WebhookDeliveryWorker:
    """Signs and POSTs one event to one subscriber per job.

    Retries are the queue's business: a failed attempt raises. Only the final
    failed attempt, or a final attempt whose lease expired, writes a dead-letter record, and a replay that fails again
    updates the failure it came from instead of creating a new one.
    """

    def __init__(
        self,
        *,
        repository: Any,
        metrics: MetricsCollector,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.repository = repository
        self.metrics = metrics
        self.timeout_seconds = timeout_seconds
        self._owns_client = client is None
        self.client = client if client is not None else httpx.AsyncClient(timeout=timeout_seconds)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def handle(self, job: Job) -> dict[str, Any]:
        started = time.perf_counter()
        data = WebhookJobPayload.model_validate(job.payload)

        try:
            subscription = await self.repository.get_webhook_subscription(data.subscription_id)
            if subscription is None or not subscription["is_active"]:
                self.metrics.increment("webhook_dropped_total", event_type=data.event_type)
                logger.info(
                    "webhook dropped component=webhook status=dropped subscription_id=%s event_type=%s job_id=%s",
                    data.subscription_id,
                    data.event_type,
                    job.id,
                )
                return {"handled": True, "reason": "subscription_inactive"}

            status_code = await self._post(subscription, data, job)
        except Exception as exc:
            await self._record_attempt_failure(job, data, exc, started)
            raise

        await self._record_delivery(job, data, started)
        return {"handled": True, "status_code": status_code, "attempt": job.attempt}

    async def _post(self, subscription: dict[str, Any], data: WebhookJobPayload, job: Job) -> int:
        body = encode_webhook_body(data.event_type, data.payload)
        headers = build_webhook_headers(
            signature=sign_webhook_body(subscription["signing_secret"], body),
            job_id=job.id,
            event_type=data.event_type,
            timestamp_ms=int(time.time() * 1000),
        )
        response = await self.client.post(
            subscription["target_url"],
            content=body,
            headers=headers,
            timeout=self.timeout_seconds,
        )
        if not response.is_success:
            raise WebhookDeliveryError(response.status_code)
        return response.status_code

    async def _record_delivery(self, job: Job, data: WebhookJobPayload, started: float) -> None:
        duration_ms = (time.perf_counter() - started) * 1000.0
        await self.repository.create_webhook_delivery_log(
            subscription_id=data.subscription_id,
            event_type=data.event_type,
            status="delivered",
            attempts_made=job.attempt,
            job_id=job.id,
        )
        self.metrics.increment("webhook_deliveries_total", result="delivered")
        self.metrics.observe("webhook_delivery_duration_ms", duration_ms)
        logger.info(
            "webhook delivered component=webhook status=success subscription_id=%s event_type=%s job_id=%s "
            "attempt=%s max_attempts=%s duration_ms=%.2f",
            data.subscription_id,
            data.event_type,
            job.id,
            job.attempt,
            job.max_attempts,
            duration_ms,
        )

        if data.failure_id is None:
            return

        mode = data.replay_mode or "single"
        resolved = await self.repository.resolve_webhook_delivery_failure(
            failure_id=data.failure_id,
            replay_job_id=job.id,
        )
        resolved_logs = await self.repository.resolve_failed_delivery_logs(
            subscription_id=data.subscription_id,
            event_type=data.event_type,
        )
        self.metrics.increment("webhook_replay_total", mode=mode, result="success")
        logger.info(
            "webhook replay resolved component=webhook_replay status=resolved failure_id=%s replay_job_id=%s "
            "mode=%s already_resolved=%s resolved_logs=%s",
            data.failure_id,
            job.id,
            mode,
            resolved is None,
            resolved_logs,
        )

    async def _record_attempt_failure(
        self,
        job: Job,
        data: WebhookJobPayload,
        exc: Exception,
        started: float,
    ) -> None:
        error = str(exc) or type(exc).__name__
        self.metrics.increment("webhook_attempt_failures_total", event_type=data.event_type)
        if not job.is_final_attempt:
            logger.warning(
                "webhook attempt failed component=webhook status=retrying subscription_id=%s event_type=%s job_id=%s "
                "attempt=%s max_attempts=%s error=%s",
                data.subscription_id,
                data.event_type,
                job.id,
                job.attempt,
                job.max_attempts,
                error,
            )
            return

        duration_ms = (time.perf_counter() - started) * 1000.0
        self.metrics.observe("webhook_delivery_duration_ms", duration_ms)
        await self._dead_letter(job, data, error)

    async def handle_exhausted(self, job: Job) -> None:
        """Dead-letter a delivery whose last attempt lost its lease."""
        try:
            data = WebhookJobPayload.model_validate(job.payload)
        except ValidationError:
            logger.exception("invalid webhook payload component=webhook job_id=%s", job.id)
            return
        await self._dead_letter(job, data, job.last_error or LEASE_EXPIRED_ERROR)

    async def _dead_letter(self, job: Job, data: WebhookJobPayload, error: str) -> None:
        self.metrics.increment("webhook_deliveries_total", result="failed")
        try:
            await self._write_dead_letter(job, data, error)
        except Exception:
            logger.exception(
                "dead-letter write failed component=webhook subscription_id=%s event_type=%s job_id=%s",
                data.subscription_id,
                data.event_type,
                job.id,
            )
        logger.error(
            "webhook dead-lettered component=webhook status=dead-letter subscription_id=%s event_type=%s job_id=%s "
            "attempts=%s error=%s",
            data.subscription_id,
            data.event_type,
            job.id,
            job.attempt,
            error,
        )

        if data.failure_id is not None:
            mode = data.replay_mode or "single"
            self.metrics.increment("webhook_replay_total", mode=mode, result="failed")
            logger.error(
                "webhook replay failed component=webhook_replay status=failed failure_id=%s job_id=%s mode=%s error=%s",
                data.failure_id,
                job.id,
                mode,
                error,
            )

    async def _write_dead_letter(self, job: Job, data: WebhookJobPayload, error: str) -> None:
        await self.repository.create_webhook_delivery_log(
            subscription_id=data.subscription_id,
            event_type=data.event_type,
            status="failed",
            attempts_made=job.attempt,
            job_id=job.id,
            last_error=error,
        )
        if data.failure_id is not None:
            await self.repository.record_webhook_failure_retry(
                failure_id=data.failure_id,
                additional_attempts=job.attempt,
                error=error,
            )
            return
        await self.repository.create_webhook_delivery_failure(
            subscription_id=data.subscription_id,
            event_type=data.event_type,
            payload=data.payload,
            attempts=job.attempt,
            final_error=error,
        )
