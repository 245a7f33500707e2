from __future__ import annotations

import copy
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from leadpipe.services.errors import (
    LEASE_EXPIRED_ERROR,
    MATCHMAKING_TERMINAL_STATUSES,
    RepositoryNotFoundError,
    RepositoryValidationError,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRepository:
    """Process-local store with the same async API as PostgresRepository.

    Used when no database URL is configured and as the store in tests. Every
    method runs without awaiting inside its critical section, so a single event
    loop sees each mutation as atomic.
    """

    def __init__(self) -> None:
        self.jobs: dict[str, dict[str, Any]] = {}
        self.properties: dict[str, dict[str, Any]] = {}
        self.matchmaking_jobs: dict[str, dict[str, Any]] = {}
        self.crm_activities: list[dict[str, Any]] = []
        self.webhook_subscriptions: dict[str, dict[str, Any]] = {}
        self.webhook_delivery_logs: list[dict[str, Any]] = []
        self.webhook_delivery_failures: dict[str, dict[str, Any]] = {}
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    # jobs

    async def insert_job(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        max_attempts: int,
        run_at: datetime,
        remove_on_complete: bool,
        remove_on_fail: bool,
    ) -> dict[str, Any]:
        now = _utcnow()
        job = {
            "id": str(uuid4()),
            "queue_name": queue_name,
            "payload": copy.deepcopy(payload),
            "attempts_made": 0,
            "max_attempts": max(1, max_attempts),
            "status": "queued",
            "scheduled_at": run_at,
            "lease_expires_at": None,
            "remove_on_complete": remove_on_complete,
            "remove_on_fail": remove_on_fail,
            "last_error": None,
            "created_at": now,
            "updated_at": now,
            "finished_at": None,
        }
        self.jobs[job["id"]] = job
        return dict(job)

    async def claim_next_job(self, *, queue_name: str, lease_seconds: int) -> dict[str, Any] | None:
        now = _utcnow()
        due = [
            job
            for job in self.jobs.values()
            if job["queue_name"] == queue_name and job["status"] == "queued" and job["scheduled_at"] <= now
        ]
        if not due:
            return None
        job = min(due, key=lambda item: (item["scheduled_at"], item["created_at"]))
        job["status"] = "active"
        job["attempts_made"] += 1
        job["lease_expires_at"] = now + timedelta(seconds=lease_seconds)
        job["updated_at"] = now
        return dict(job)

    async def complete_job(self, *, job_id: str, remove: bool) -> dict[str, Any] | None:
        job = self.jobs.get(job_id)
        if job is None or job["status"] != "active":
            return None
        now = _utcnow()
        job["status"] = "completed"
        job["lease_expires_at"] = None
        job["finished_at"] = now
        job["updated_at"] = now
        if remove:
            del self.jobs[job_id]
        return dict(job)

    async def fail_job(
        self,
        *,
        job_id: str,
        error: str,
        retry_at: datetime | None,
        remove: bool,
    ) -> dict[str, Any] | None:
        job = self.jobs.get(job_id)
        if job is None or job["status"] != "active":
            return None
        now = _utcnow()
        job["last_error"] = error
        job["lease_expires_at"] = None
        job["updated_at"] = now
        if retry_at is not None:
            job["status"] = "queued"
            job["scheduled_at"] = retry_at
            return dict(job)

        job["status"] = "failed"
        job["finished_at"] = now
        if remove:
            del self.jobs[job_id]
        return dict(job)

    async def remove_job(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job["status"] != "queued":
            return False
        del self.jobs[job_id]
        return True

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        job = self.jobs.get(job_id)
        return dict(job) if job is not None else None

    async def requeue_expired_jobs(self, *, limit: int) -> list[dict[str, Any]]:
        now = _utcnow()
        expired = [
            job
            for job in self.jobs.values()
            if job["status"] == "active" and job["lease_expires_at"] is not None and job["lease_expires_at"] <= now
        ]
        expired.sort(key=lambda item: item["lease_expires_at"])
        reaped: list[dict[str, Any]] = []
        for job in expired[: max(1, limit)]:
            job["lease_expires_at"] = None
            job["updated_at"] = now
            if job["attempts_made"] >= job["max_attempts"]:
                job["status"] = "failed"
                job["last_error"] = LEASE_EXPIRED_ERROR
                job["finished_at"] = now
                if job["remove_on_fail"]:
                    del self.jobs[job["id"]]
            else:
                job["status"] = "queued"
                job["scheduled_at"] = now
            reaped.append(dict(job))
        return reaped

    async def count_jobs_by_status(self) -> dict[str, dict[str, int]]:
        counts: dict[str, dict[str, int]] = {}
        for job in self.jobs.values():
            per_queue = counts.setdefault(job["queue_name"], {})
            per_queue[job["status"]] = per_queue.get(job["status"], 0) + 1
        return counts

    # properties

    def add_property(
        self,
        *,
        price: float | None,
        sqft: float | None,
        condition: str | None = None,
        source: str = "zillow",
        property_id: str | None = None,
        investment_score: int | None = None,
        enrichment_tags: list[str] | None = None,
    ) -> dict[str, Any]:
        now = _utcnow()
        row = {
            "id": property_id or str(uuid4()),
            "price": price,
            "sqft": sqft,
            "condition": condition,
            "source": source,
            "enrichment_tags": list(enrichment_tags or []),
            "investment_score": investment_score,
            "reasons": [],
            "tag_reasons": [],
            "auto_match_triggered": False,
            "created_at": now,
            "updated_at": now,
        }
        self.properties[row["id"]] = row
        return dict(row)

    async def get_property(self, property_id: str) -> dict[str, Any] | None:
        row = self.properties.get(property_id)
        return copy.deepcopy(row) if row is not None else None

    async def apply_property_enrichment(
        self,
        *,
        property_id: str,
        investment_score: int,
        enrichment_tags: list[str],
        condition: str,
        reasons: list[str],
        tag_reasons: list[str],
    ) -> bool:
        row = self.properties.get(property_id)
        if row is None:
            return False
        if row["enrichment_tags"] or row["investment_score"] is not None:
            return False
        row["investment_score"] = investment_score
        row["enrichment_tags"] = list(enrichment_tags)
        row["condition"] = condition
        row["reasons"] = list(reasons)
        row["tag_reasons"] = list(tag_reasons)
        row["updated_at"] = _utcnow()
        return True

    async def mark_property_auto_match(self, property_id: str) -> None:
        row = self.properties.get(property_id)
        if row is None:
            raise RepositoryNotFoundError("property not found")
        row["auto_match_triggered"] = True

    async def count_properties(
        self,
        *,
        min_score: int | None = None,
        source: str | None = None,
        property_id: str | None = None,
    ) -> int:
        count = 0
        for row in self.properties.values():
            if min_score is not None and (row["investment_score"] is None or row["investment_score"] < min_score):
                continue
            if source is not None and row["source"] != source:
                continue
            if property_id is not None and row["id"] != property_id:
                continue
            count += 1
        return count

    # matchmaking

    async def create_matchmaking_job(self, *, filter_json: dict[str, Any]) -> dict[str, Any]:
        row = {
            "id": str(uuid4()),
            "filter_json": copy.deepcopy(filter_json),
            "status": "queued",
            "matched_count": None,
            "error": None,
            "created_at": _utcnow(),
            "started_at": None,
            "completed_at": None,
        }
        self.matchmaking_jobs[row["id"]] = row
        return dict(row)

    async def get_matchmaking_job(self, job_id: str) -> dict[str, Any] | None:
        row = self.matchmaking_jobs.get(job_id)
        return copy.deepcopy(row) if row is not None else None

    async def transition_matchmaking_job(
        self,
        *,
        job_id: str,
        from_statuses: set[str],
        to_status: str,
        matched_count: int | None = None,
        error: str | None = None,
    ) -> dict[str, Any] | None:
        row = self.matchmaking_jobs.get(job_id)
        if row is None or row["status"] not in from_statuses:
            return None
        now = _utcnow()
        if to_status == "running" and row["started_at"] is None:
            row["started_at"] = now
        if to_status in MATCHMAKING_TERMINAL_STATUSES:
            row["completed_at"] = now
        row["status"] = to_status
        if matched_count is not None:
            row["matched_count"] = matched_count
        if error is not None:
            row["error"] = error
        return copy.deepcopy(row)

    # crm activity

    async def create_crm_activity(
        self,
        *,
        activity_type: str,
        metadata: dict[str, Any],
        property_id: str | None = None,
        lead_id: str | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        if not activity_type:
            raise RepositoryValidationError("activity type must be a non-empty string")
        row = {
            "id": str(uuid4()),
            "type": activity_type,
            "property_id": property_id,
            "lead_id": lead_id,
            "user_id": user_id,
            "metadata": copy.deepcopy(metadata),
            "created_at": _utcnow(),
        }
        self.crm_activities.append(row)
        return copy.deepcopy(row)

    async def list_crm_activities(
        self,
        *,
        activity_type: str | None = None,
        property_id: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        rows = [
            row
            for row in reversed(self.crm_activities)
            if (activity_type is None or row["type"] == activity_type)
            and (property_id is None or row["property_id"] == property_id)
        ]
        return [copy.deepcopy(row) for row in rows[:limit]]

    # webhook subscriptions

    async def create_webhook_subscription(
        self,
        *,
        target_url: str,
        event_types: list[str],
        signing_secret: str | None = None,
        is_active: bool = True,
    ) -> dict[str, Any]:
        if not target_url or not event_types:
            raise RepositoryValidationError("target_url and event_types are required")
        row = {
            "id": str(uuid4()),
            "target_url": target_url,
            "signing_secret": signing_secret or secrets.token_hex(32),
            "event_types": list(event_types),
            "is_active": is_active,
            "created_at": _utcnow(),
        }
        self.webhook_subscriptions[row["id"]] = row
        return dict(row)

    async def set_webhook_subscription_active(self, *, subscription_id: str, is_active: bool) -> dict[str, Any]:
        row = self.webhook_subscriptions.get(subscription_id)
        if row is None:
            raise RepositoryNotFoundError("webhook subscription not found")
        row["is_active"] = is_active
        return dict(row)

    async def get_webhook_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        row = self.webhook_subscriptions.get(subscription_id)
        return dict(row) if row is not None else None

    async def list_active_webhook_subscriptions(self, *, event_type: str) -> list[dict[str, Any]]:
        return [
            dict(row)
            for row in self.webhook_subscriptions.values()
            if row["is_active"] and event_type in row["event_types"]
        ]

    # delivery logs

    async def create_webhook_delivery_log(
        self,
        *,
        subscription_id: str,
        event_type: str,
        status: str,
        attempts_made: int,
        job_id: str,
        last_error: str | None = None,
    ) -> dict[str, Any]:
        now = _utcnow()
        row = {
            "id": str(uuid4()),
            "subscription_id": subscription_id,
            "event_type": event_type,
            "status": status,
            "attempts_made": attempts_made,
            "job_id": job_id,
            "last_error": last_error,
            "last_attempt_at": now,
            "is_resolved": False,
            "created_at": now,
        }
        self.webhook_delivery_logs.append(row)
        return dict(row)

    async def resolve_failed_delivery_logs(self, *, subscription_id: str, event_type: str) -> int:
        resolved = 0
        for row in self.webhook_delivery_logs:
            if (
                row["subscription_id"] == subscription_id
                and row["event_type"] == event_type
                and row["status"] == "failed"
                and not row["is_resolved"]
            ):
                row["is_resolved"] = True
                resolved += 1
        return resolved

    async def list_webhook_delivery_logs(
        self,
        *,
        subscription_id: str | None = None,
        event_type: str | None = None,
        status: str | None = None,
        is_resolved: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        rows = [
            row
            for row in reversed(self.webhook_delivery_logs)
            if (subscription_id is None or row["subscription_id"] == subscription_id)
            and (event_type is None or row["event_type"] == event_type)
            and (status is None or row["status"] == status)
            and (is_resolved is None or row["is_resolved"] == is_resolved)
        ]
        return [dict(row) for row in rows[offset : offset + limit]], len(rows)

    # delivery failures

    async def create_webhook_delivery_failure(
        self,
        *,
        subscription_id: str,
        event_type: str,
        payload: dict[str, Any],
        attempts: int,
        final_error: str,
    ) -> dict[str, Any]:
        now = _utcnow()
        row = {
            "id": str(uuid4()),
            "subscription_id": subscription_id,
            "event_type": event_type,
            "payload": copy.deepcopy(payload),
            "attempts": attempts,
            "final_error": final_error,
            "last_error": final_error,
            "last_attempt_at": now,
            "is_resolved": False,
            "replayed_at": None,
            "replay_job_id": None,
            "created_at": now,
        }
        self.webhook_delivery_failures[row["id"]] = row
        return copy.deepcopy(row)

    async def get_webhook_delivery_failure(self, failure_id: str) -> dict[str, Any] | None:
        row = self.webhook_delivery_failures.get(failure_id)
        return copy.deepcopy(row) if row is not None else None

    async def record_webhook_failure_retry(
        self,
        *,
        failure_id: str,
        additional_attempts: int,
        error: str,
    ) -> dict[str, Any] | None:
        row = self.webhook_delivery_failures.get(failure_id)
        if row is None or row["is_resolved"]:
            return None
        row["attempts"] += additional_attempts
        row["last_error"] = error
        row["last_attempt_at"] = _utcnow()
        return copy.deepcopy(row)

    async def resolve_webhook_delivery_failure(
        self,
        *,
        failure_id: str,
        replay_job_id: str,
    ) -> dict[str, Any] | None:
        row = self.webhook_delivery_failures.get(failure_id)
        if row is None or row["is_resolved"]:
            return None
        row["is_resolved"] = True
        row["replayed_at"] = _utcnow()
        row["replay_job_id"] = replay_job_id
        return copy.deepcopy(row)

    async def list_webhook_delivery_failures(
        self,
        *,
        subscription_id: str | None = None,
        event_type: str | None = None,
        since: datetime | None = None,
        include_resolved: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        rows = sorted(self.webhook_delivery_failures.values(), key=lambda row: row["created_at"], reverse=True)
        rows = [
            row
            for row in rows
            if (subscription_id is None or row["subscription_id"] == subscription_id)
            and (event_type is None or row["event_type"] == event_type)
            and (since is None or row["created_at"] >= since)
            and (include_resolved or not row["is_resolved"])
        ]
        return [copy.deepcopy(row) for row in rows[offset : offset + limit]], len(rows)
