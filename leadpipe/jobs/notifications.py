from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from leadpipe.jobs.producers import enqueue_webhook_delivery
from leadpipe.services.metrics import MetricsCollector
from leadpipe.services.queue import JobQueue

logger = logging.getLogger(__name__)

CRM_ACTIVITY_EVENT = "crm.activity"


def activity_event_payload(activity: dict[str, Any]) -> dict[str, Any]:
    created_at = activity.get("created_at")
    return {
        "id": activity["id"],
        "type": activity["type"],
        "propertyId": activity.get("property_id"),
        "leadId": activity.get("lead_id"),
        "userId": activity.get("user_id"),
        "metadata": activity.get("metadata") or {},
        "createdAt": created_at.isoformat() if isinstance(created_at, datetime) else created_at,
    }


class NotificationDispatcher:
    """Non-critical side channel: CRM activity rows and webhook fan-out.

    Nothing here raises into the caller. Failures are logged and counted so a
    broken side channel is visible without touching the primary state change
    that triggered it. Delivery retries belong to the webhook queue.
    """

    def __init__(self, *, repository: Any, queue: JobQueue, metrics: MetricsCollector) -> None:
        self.repository = repository
        self.queue = queue
        self.metrics = metrics

    async def fan_out(self, event_type: str, payload: dict[str, Any]) -> int:
        """Enqueue one delivery job per active subscription listening for ``event_type``."""
        enqueued = 0
        try:
            subscriptions = await self.repository.list_active_webhook_subscriptions(event_type=event_type)
            for subscription in subscriptions:
                await enqueue_webhook_delivery(
                    self.queue,
                    subscription_id=subscription["id"],
                    event_type=event_type,
                    payload=payload,
                )
                enqueued += 1
        except Exception as exc:
            self.metrics.increment("notification_fanout_total", event_type=event_type, result="failed")
            logger.warning(
                "webhook fan-out failed component=notifications status=failed event_type=%s enqueued=%s error=%s",
                event_type,
                enqueued,
                exc,
            )
            return enqueued

        if enqueued:
            self.metrics.increment("notification_fanout_total", enqueued, event_type=event_type, result="enqueued")
        return enqueued

    async def record_activity(
        self,
        *,
        activity_type: str,
        metadata: dict[str, Any],
        property_id: str | None = None,
        lead_id: str | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Append a CRM activity row and fan it out as a ``crm.activity`` event."""
        try:
            activity = await self.repository.create_crm_activity(
                activity_type=activity_type,
                metadata=metadata,
                property_id=property_id,
                lead_id=lead_id,
                user_id=user_id,
            )
        except Exception as exc:
            self.metrics.increment("crm_activity_failures_total", type=activity_type)
            logger.warning(
                "crm activity write failed component=notifications status=failed type=%s property_id=%s error=%s",
                activity_type,
                property_id,
                exc,
            )
            return None

        self.metrics.increment("crm_activity_total", type=activity_type)
        await self.fan_out(CRM_ACTIVITY_EVENT, activity_event_payload(activity))
        return activity
