from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from leadpipe.core.config import get_settings
from leadpipe.services.errors import (
    DELIVERY_LOG_STATUSES,
    JOB_STATUSES,
    JOB_TERMINAL_STATUSES,
    LEASE_EXPIRED_ERROR,
    MATCHMAKING_STATUSES,
    MATCHMAKING_TERMINAL_STATUSES,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from leadpipe.services.store import InMemoryRepository

logger = logging.getLogger(__name__)

__all__ = [
    "DELIVERY_LOG_STATUSES",
    "JOB_STATUSES",
    "JOB_TERMINAL_STATUSES",
    "MATCHMAKING_STATUSES",
    "MATCHMAKING_TERMINAL_STATUSES",
    "InMemoryRepository",
    "PostgresRepository",
    "RepositoryConflictError",
    "RepositoryError",
    "RepositoryNotFoundError",
    "RepositoryUnavailableError",
    "RepositoryValidationError",
    "get_repository",
]

_JOB_COLUMNS = """
  id::text as id,
  queue_name,
  payload,
  attempts_made,
  max_attempts,
  status,
  scheduled_at,
  lease_expires_at,
  remove_on_complete,
  remove_on_fail,
  last_error,
  created_at,
  updated_at,
  finished_at
"""

_CLAIMED_JOB_COLUMNS = _JOB_COLUMNS.replace("id::text as id", "j.id::text as id", 1)

_PROPERTY_COLUMNS = """
  id::text as id,
  price,
  sqft,
  condition,
  source,
  enrichment_tags,
  investment_score,
  reasons,
  tag_reasons,
  auto_match_triggered,
  created_at,
  updated_at
"""

_MATCHMAKING_COLUMNS = """
  id::text as id,
  filter_json,
  status,
  matched_count,
  error,
  created_at,
  started_at,
  completed_at
"""

_CRM_ACTIVITY_COLUMNS = """
  id::text as id,
  type,
  property_id::text as property_id,
  lead_id::text as lead_id,
  user_id::text as user_id,
  metadata,
  created_at
"""

_SUBSCRIPTION_COLUMNS = """
  id::text as id,
  target_url,
  signing_secret,
  event_types,
  is_active,
  created_at
"""

_DELIVERY_LOG_COLUMNS = """
  id::text as id,
  subscription_id::text as subscription_id,
  event_type,
  status,
  attempts_made,
  job_id,
  last_error,
  last_attempt_at,
  is_resolved,
  created_at
"""

_DELIVERY_FAILURE_COLUMNS = """
  id::text as id,
  subscription_id::text as subscription_id,
  event_type,
  payload,
  attempts,
  final_error,
  last_error,
  last_attempt_at,
  is_resolved,
  replayed_at,
  replay_job_id,
  created_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into queue_jobs (
              queue_name,
              payload,
              max_attempts,
              scheduled_at,
              remove_on_complete,
              remove_on_fail
            )
            values ($1, $2::jsonb, $3, $4, $5, $6)
            returning {_JOB_COLUMNS}
            """,
            queue_name,
            json.dumps(payload),
            max(1, max_attempts),
            run_at,
            remove_on_complete,
            remove_on_fail,
        )
        return self._job_row_to_dict(row)

    async def claim_next_job(self, *, queue_name: str, lease_seconds: int) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            with next_job as (
              select id
              from queue_jobs
              where queue_name = $1
                and status = 'queued'
                and scheduled_at <= now()
              order by scheduled_at asc, created_at asc
              limit 1
              for update skip locked
            )
            update queue_jobs j
            set
              status = 'active',
              attempts_made = j.attempts_made + 1,
              lease_expires_at = now() + ($2::int * interval '1 second'),
              updated_at = now()
            from next_job n
            where j.id = n.id
            returning {_CLAIMED_JOB_COLUMNS}
            """,
            queue_name,
            lease_seconds,
        )
        if row is None:
            return None
        return self._job_row_to_dict(row)

    async def complete_job(self, *, job_id: str, remove: bool) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update queue_jobs
                        set
                          status = 'completed',
                          lease_expires_at = null,
                          finished_at = now(),
                          updated_at = now()
                        where id = $1::uuid and status = 'active'
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                    )
                    if row is None:
                        return None
                    if remove:
                        await conn.execute("delete from queue_jobs where id = $1::uuid", job_id)
                    return self._job_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def fail_job(
        self,
        *,
        job_id: str,
        error: str,
        retry_at: datetime | None,
        remove: bool,
    ) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update queue_jobs
                        set
                          status = case when $3::timestamptz is null then 'failed' else 'queued' end,
                          last_error = $2,
                          lease_expires_at = null,
                          scheduled_at = coalesce($3::timestamptz, scheduled_at),
                          finished_at = case when $3::timestamptz is null then now() else null end,
                          updated_at = now()
                        where id = $1::uuid and status = 'active'
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                        error,
                        retry_at,
                    )
                    if row is None:
                        return None
                    if remove and row["status"] == "failed":
                        await conn.execute("delete from queue_jobs where id = $1::uuid", job_id)
                    return self._job_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def remove_job(self, job_id: str) -> bool:
        pool = await self._get_pool()
        try:
            removed = await pool.fetchval(
                """
                delete from queue_jobs
                where id = $1::uuid and status = 'queued'
                returning id::text
                """,
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return False
        return removed is not None

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_JOB_COLUMNS} from queue_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._job_row_to_dict(row) if row is not None else None

    async def requeue_expired_jobs(self, *, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    with expired as (
                      select id
                      from queue_jobs
                      where status = 'active'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $1
                      for update skip locked
                    )
                    update queue_jobs j
                    set
                      status = case when j.attempts_made >= j.max_attempts then 'failed' else 'queued' end,
                      last_error = case
                        when j.attempts_made >= j.max_attempts then $2
                        else j.last_error
                      end,
                      lease_expires_at = null,
                      scheduled_at = now(),
                      finished_at = case when j.attempts_made >= j.max_attempts then now() else null end,
                      updated_at = now()
                    from expired e
                    where j.id = e.id
                    returning {_CLAIMED_JOB_COLUMNS}
                    """,
                    bounded_limit,
                    LEASE_EXPIRED_ERROR,
                )
                removable = [row["id"] for row in rows if row["status"] == "failed" and row["remove_on_fail"]]
                if removable:
                    await conn.execute("delete from queue_jobs where id = any($1::uuid[])", removable)
        return [self._job_row_to_dict(row) for row in rows]

    async def count_jobs_by_status(self) -> dict[str, dict[str, int]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select queue_name, status, count(*)::int as total
            from queue_jobs
            group by queue_name, status
            """
        )
        counts: dict[str, dict[str, int]] = {}
        for row in rows:
            counts.setdefault(row["queue_name"], {})[row["status"]] = row["total"]
        return counts

    # properties

    async def get_property(self, property_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_PROPERTY_COLUMNS} from scraped_properties where id = $1::uuid",
                property_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._property_row_to_dict(row) if row is not None else None

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
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            update scraped_properties
            set
              investment_score = $2,
              enrichment_tags = $3::text[],
              condition = $4,
              reasons = $5::text[],
              tag_reasons = $6::text[],
              updated_at = now()
            where id = $1::uuid
              and investment_score is null
              and coalesce(cardinality(enrichment_tags), 0) = 0
            returning id::text
            """,
            property_id,
            investment_score,
            enrichment_tags,
            condition,
            reasons,
            tag_reasons,
        )
        return updated is not None

    async def mark_property_auto_match(self, property_id: str) -> None:
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            update scraped_properties
            set auto_match_triggered = true
            where id = $1::uuid
            returning id::text
            """,
            property_id,
        )
        if updated is None:
            raise RepositoryNotFoundError("property not found")

    async def count_properties(
        self,
        *,
        min_score: int | None = None,
        source: str | None = None,
        property_id: str | None = None,
    ) -> int:
        pool = await self._get_pool()
        clauses: list[str] = []
        params: list[Any] = []
        if min_score is not None:
            params.append(min_score)
            clauses.append(f"investment_score >= ${len(params)}")
        if source is not None:
            params.append(source)
            clauses.append(f"source = ${len(params)}")
        if property_id is not None:
            params.append(property_id)
            clauses.append(f"id = ${len(params)}::uuid")
        where_sql = f"where {' and '.join(clauses)}" if clauses else ""
        try:
            return int(await pool.fetchval(f"select count(*) from scraped_properties {where_sql}", *params))
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc

    # matchmaking

    async def create_matchmaking_job(self, *, filter_json: dict[str, Any]) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into matchmaking_jobs (filter_json, status)
            values ($1::jsonb, 'queued')
            returning {_MATCHMAKING_COLUMNS}
            """,
            json.dumps(filter_json),
        )
        return self._matchmaking_row_to_dict(row)

    async def get_matchmaking_job(self, job_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_MATCHMAKING_COLUMNS} from matchmaking_jobs where id = $1::uuid",
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._matchmaking_row_to_dict(row) if row is not None else None

    async def transition_matchmaking_job(
        self,
        *,
        job_id: str,
        from_statuses: set[str],
        to_status: str,
        matched_count: int | None = None,
        error: str | None = None,
    ) -> dict[str, Any] | None:
        if to_status not in MATCHMAKING_STATUSES:
            raise RepositoryValidationError(f"unknown matchmaking status: {to_status}")
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update matchmaking_jobs
            set
              status = $3,
              matched_count = coalesce($4, matched_count),
              error = coalesce($5, error),
              started_at = case when $3 = 'running' then coalesce(started_at, now()) else started_at end,
              completed_at = case when $3 = any($6::text[]) then now() else completed_at end
            where id = $1::uuid and status = any($2::text[])
            returning {_MATCHMAKING_COLUMNS}
            """,
            job_id,
            sorted(from_statuses),
            to_status,
            matched_count,
            error,
            sorted(MATCHMAKING_TERMINAL_STATUSES),
        )
        return self._matchmaking_row_to_dict(row) if row is not None else None

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
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into crm_activities (type, property_id, lead_id, user_id, metadata)
                values ($1, $2::uuid, $3::uuid, $4::uuid, $5::jsonb)
                returning {_CRM_ACTIVITY_COLUMNS}
                """,
                activity_type,
                property_id,
                lead_id,
                user_id,
                json.dumps(metadata),
            )
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc
        return self._crm_activity_row_to_dict(row)

    async def list_crm_activities(
        self,
        *,
        activity_type: str | None = None,
        property_id: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_CRM_ACTIVITY_COLUMNS}
                from crm_activities
                where ($1::text is null or type = $1)
                  and ($2::uuid is null or property_id = $2::uuid)
                order by created_at desc
                limit $3
                """,
                activity_type,
                property_id,
                max(1, min(limit, 200)),
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("property_id must be a uuid") from exc
        return [self._crm_activity_row_to_dict(row) for row in rows]

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into webhook_subscriptions (target_url, signing_secret, event_types, is_active)
            values ($1, $2, $3::text[], $4)
            returning {_SUBSCRIPTION_COLUMNS}
            """,
            target_url,
            signing_secret or secrets.token_hex(32),
            event_types,
            is_active,
        )
        return self._subscription_row_to_dict(row)

    async def set_webhook_subscription_active(self, *, subscription_id: str, is_active: bool) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update webhook_subscriptions
                set is_active = $2
                where id = $1::uuid
                returning {_SUBSCRIPTION_COLUMNS}
                """,
                subscription_id,
                is_active,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("webhook subscription not found") from exc
        if row is None:
            raise RepositoryNotFoundError("webhook subscription not found")
        return self._subscription_row_to_dict(row)

    async def get_webhook_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_SUBSCRIPTION_COLUMNS} from webhook_subscriptions where id = $1::uuid",
                subscription_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._subscription_row_to_dict(row) if row is not None else None

    async def list_active_webhook_subscriptions(self, *, event_type: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_SUBSCRIPTION_COLUMNS}
            from webhook_subscriptions
            where is_active = true and $1 = any(event_types)
            order by created_at asc
            """,
            event_type,
        )
        return [self._subscription_row_to_dict(row) for row in rows]

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
        if status not in DELIVERY_LOG_STATUSES:
            raise RepositoryValidationError(f"unknown delivery status: {status}")
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into webhook_delivery_logs (
              subscription_id,
              event_type,
              status,
              attempts_made,
              job_id,
              last_error,
              last_attempt_at
            )
            values ($1::uuid, $2, $3, $4, $5, $6, now())
            returning {_DELIVERY_LOG_COLUMNS}
            """,
            subscription_id,
            event_type,
            status,
            attempts_made,
            job_id,
            last_error,
        )
        return dict(row)

    async def resolve_failed_delivery_logs(self, *, subscription_id: str, event_type: str) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update webhook_delivery_logs
            set is_resolved = true
            where subscription_id = $1::uuid
              and event_type = $2
              and status = 'failed'
              and is_resolved = false
            returning id
            """,
            subscription_id,
            event_type,
        )
        return len(rows)

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
        pool = await self._get_pool()
        where_sql = """
            where ($1::uuid is null or subscription_id = $1::uuid)
              and ($2::text is null or event_type = $2)
              and ($3::text is null or status = $3)
              and ($4::boolean is null or is_resolved = $4)
        """
        params = (subscription_id, event_type, status, is_resolved)
        try:
            rows = await pool.fetch(
                f"""
                select {_DELIVERY_LOG_COLUMNS}
                from webhook_delivery_logs
                {where_sql}
                order by created_at desc
                limit $5 offset $6
                """,
                *params,
                limit,
                offset,
            )
            total = await pool.fetchval(f"select count(*) from webhook_delivery_logs {where_sql}", *params)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc
        return [dict(row) for row in rows], int(total)

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into webhook_delivery_failures (
              subscription_id,
              event_type,
              payload,
              attempts,
              final_error,
              last_error,
              last_attempt_at
            )
            values ($1::uuid, $2, $3::jsonb, $4, $5, $5, now())
            returning {_DELIVERY_FAILURE_COLUMNS}
            """,
            subscription_id,
            event_type,
            json.dumps(payload),
            attempts,
            final_error,
        )
        return self._delivery_failure_row_to_dict(row)

    async def get_webhook_delivery_failure(self, failure_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_DELIVERY_FAILURE_COLUMNS} from webhook_delivery_failures where id = $1::uuid",
                failure_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._delivery_failure_row_to_dict(row) if row is not None else None

    async def record_webhook_failure_retry(
        self,
        *,
        failure_id: str,
        additional_attempts: int,
        error: str,
    ) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update webhook_delivery_failures
            set attempts = attempts + $2, last_error = $3, last_attempt_at = now()
            where id = $1::uuid and is_resolved = false
            returning {_DELIVERY_FAILURE_COLUMNS}
            """,
            failure_id,
            additional_attempts,
            error,
        )
        return self._delivery_failure_row_to_dict(row) if row is not None else None

    async def resolve_webhook_delivery_failure(
        self,
        *,
        failure_id: str,
        replay_job_id: str,
    ) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update webhook_delivery_failures
            set is_resolved = true, replayed_at = now(), replay_job_id = $2
            where id = $1::uuid and is_resolved = false
            returning {_DELIVERY_FAILURE_COLUMNS}
            """,
            failure_id,
            replay_job_id,
        )
        return self._delivery_failure_row_to_dict(row) if row is not None else None

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
        pool = await self._get_pool()
        where_sql = """
            where ($1::uuid is null or subscription_id = $1::uuid)
              and ($2::text is null or event_type = $2)
              and ($3::timestamptz is null or created_at >= $3)
              and ($4::boolean or is_resolved = false)
        """
        params = (subscription_id, event_type, since, include_resolved)
        try:
            rows = await pool.fetch(
                f"""
                select {_DELIVERY_FAILURE_COLUMNS}
                from webhook_delivery_failures
                {where_sql}
                order by created_at desc
                limit $5 offset $6
                """,
                *params,
                limit,
                offset,
            )
            total = await pool.fetchval(f"select count(*) from webhook_delivery_failures {where_sql}", *params)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc
        return [self._delivery_failure_row_to_dict(row) for row in rows], int(total)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("LP_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @classmethod
    def _job_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        job = dict(row)
        job["payload"] = cls._coerce_json_dict(job.get("payload"))
        return job

    @staticmethod
    def _property_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        record = dict(row)
        for key in ("enrichment_tags", "reasons", "tag_reasons"):
            record[key] = list(record.get(key) or [])
        for key in ("price", "sqft"):
            if record.get(key) is not None:
                record[key] = float(record[key])
        return record

    @classmethod
    def _matchmaking_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        record = dict(row)
        record["filter_json"] = cls._coerce_json_dict(record.get("filter_json"))
        return record

    @classmethod
    def _crm_activity_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        record = dict(row)
        record["metadata"] = cls._coerce_json_dict(record.get("metadata"))
        return record

    @staticmethod
    def _subscription_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        record = dict(row)
        record["event_types"] = list(record.get("event_types") or [])
        return record

    @classmethod
    def _delivery_failure_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        record = dict(row)
        record["payload"] = cls._coerce_json_dict(record.get("payload"))
        return record

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    settings = get_settings()
    if not settings.database_url:
        logger.warning("LP_DATABASE_URL not set; using in-memory store environment=%s", settings.environment)
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
