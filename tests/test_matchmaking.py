from __future__ import annotations

import asyncio

import pytest

from leadpipe.jobs.matchmaking import build_property_query
from leadpipe.jobs.producers import enqueue_matchmaking
from leadpipe.pipeline import Pipeline
from leadpipe.services.queue import WEBHOOK_QUEUE


def _seed_properties(pipeline: Pipeline) -> None:
    repository = pipeline.repository
    repository.add_property(price=100000, sqft=1000, source="zillow", investment_score=90, enrichment_tags=["equity"])
    repository.add_property(price=100000, sqft=1000, source="auction", investment_score=70, enrichment_tags=["rental"])
    repository.add_property(price=100000, sqft=1000, source="zillow", investment_score=40, enrichment_tags=["rental"])
    repository.add_property(price=100000, sqft=1000, source="zillow")


def _run_matchmaking(pipeline: Pipeline, filter_json: dict) -> dict:
    async def run() -> dict:
        created = await pipeline.repository.create_matchmaking_job(filter_json=filter_json)
        await enqueue_matchmaking(pipeline.queue, created["id"])
        await pipeline.workers["matchmaking"].drain()
        return await pipeline.repository.get_matchmaking_job(created["id"])

    return asyncio.run(run())


def test_build_property_query_separates_origin_from_source() -> None:
    assert build_property_query({"propertyId": "p-1", "source": "auto"}) == {
        "min_score": 0,
        "source": None,
        "property_id": "p-1",
    }
    assert build_property_query({"source": "admin", "minScore": 60.5}) == {
        "min_score": 61,
        "source": None,
        "property_id": None,
    }
    assert build_property_query({"source": "auction", "origin": "admin"})["source"] == "auction"
    assert build_property_query(None) == {"min_score": 0, "source": None, "property_id": None}


def test_job_completes_with_matched_count(make_pipeline) -> None:
    pipeline = make_pipeline()
    _seed_properties(pipeline)

    result = _run_matchmaking(pipeline, {"minScore": 60, "source": "zillow"})

    assert result["status"] == "completed"
    assert result["matched_count"] == 1
    assert result["completed_at"] is not None
    assert result["started_at"] is not None
    assert [a["type"] for a in pipeline.repository.crm_activities] == ["matchmaking.completed"]
    assert pipeline.metrics.counter("matchmaking_status_total", status="running") == 1
    assert pipeline.metrics.counter("matchmaking_status_total", status="completed") == 1


def test_auto_origin_marker_is_not_a_source_filter(make_pipeline) -> None:
    pipeline = make_pipeline()
    _seed_properties(pipeline)

    result = _run_matchmaking(pipeline, {"source": "auto", "origin": "auto"})

    # Every enriched property matches: the unscored one fails the default minimum score.
    assert result["matched_count"] == 3


def test_failure_marks_job_failed_and_never_leaves_terminal_state(make_pipeline, monkeypatch) -> None:
    pipeline = make_pipeline(matchmaking_max_attempts=2)
    _seed_properties(pipeline)
    calls = 0

    async def broken_count(**kwargs) -> int:
        nonlocal calls
        calls += 1
        raise TimeoutError("query timed out")

    monkeypatch.setattr(pipeline.repository, "count_properties", broken_count)
    result = _run_matchmaking(pipeline, {"minScore": 10})

    assert result["status"] == "failed"
    assert result["error"] == "query timed out"
    assert result["matched_count"] is None
    assert calls == 1
    assert pipeline.metrics.counter("matchmaking_status_total", status="failed") == 1
    assert pipeline.repository.crm_activities == []


def test_terminal_job_is_not_rerun(make_pipeline) -> None:
    pipeline = make_pipeline()
    _seed_properties(pipeline)
    first = _run_matchmaking(pipeline, {"minScore": 0})

    async def rerun() -> dict:
        await enqueue_matchmaking(pipeline.queue, first["id"])
        await pipeline.workers["matchmaking"].drain()
        return await pipeline.repository.get_matchmaking_job(first["id"])

    second = asyncio.run(rerun())
    assert second == first
    assert len(pipeline.repository.crm_activities) == 1


def test_crashed_attempt_resumes_from_running(make_pipeline) -> None:
    pipeline = make_pipeline()
    _seed_properties(pipeline)

    async def run() -> dict:
        created = await pipeline.repository.create_matchmaking_job(filter_json={"minScore": 50})
        await pipeline.repository.transition_matchmaking_job(
            job_id=created["id"],
            from_statuses={"queued"},
            to_status="running",
        )
        await enqueue_matchmaking(pipeline.queue, created["id"])
        await pipeline.workers["matchmaking"].drain()
        return await pipeline.repository.get_matchmaking_job(created["id"])

    result = asyncio.run(run())
    assert result["status"] == "completed"
    assert result["matched_count"] == 2
    assert pipeline.metrics.counter("matchmaking_status_total", status="running") == 0


def test_missing_job_is_a_no_op(make_pipeline) -> None:
    pipeline = make_pipeline()

    async def run() -> None:
        await enqueue_matchmaking(pipeline.queue, "missing")
        await pipeline.workers["matchmaking"].drain()

    asyncio.run(run())
    assert pipeline.metrics.counter("queue_job_attempts_total", queue="matchmaking", outcome="completed") == 1


def test_completion_notifies_both_event_types(make_pipeline) -> None:
    pipeline = make_pipeline()
    _seed_properties(pipeline)

    async def seed() -> tuple[dict, dict]:
        completed = await pipeline.repository.create_webhook_subscription(
            target_url="https://crm.example.com/matches",
            event_types=["matchmaking.completed"],
        )
        activity = await pipeline.repository.create_webhook_subscription(
            target_url="https://crm.example.com/activity",
            event_types=["crm.activity"],
        )
        return completed, activity

    completed_sub, activity_sub = asyncio.run(seed())
    result = _run_matchmaking(pipeline, {"minScore": 50})

    payloads = [
        job["payload"]
        for job in pipeline.repository.jobs.values()
        if job["queue_name"] == WEBHOOK_QUEUE and job["status"] == "queued"
    ]
    by_event = {payload["eventType"]: payload for payload in payloads}
    assert set(by_event) == {"matchmaking.completed", "crm.activity"}
    assert by_event["matchmaking.completed"]["subscriptionId"] == completed_sub["id"]
    assert by_event["matchmaking.completed"]["payload"]["jobId"] == result["id"]
    assert by_event["matchmaking.completed"]["payload"]["matchedCount"] == 2
    assert by_event["crm.activity"]["subscriptionId"] == activity_sub["id"]
    assert by_event["crm.activity"]["payload"]["metadata"] == {"matchmakingJobId": result["id"], "matchedCount": 2}


@pytest.mark.parametrize("status", ["completed", "failed"])
def test_transitions_out_of_terminal_states_are_rejected(make_pipeline, status: str) -> None:
    pipeline = make_pipeline()

    async def run() -> dict | None:
        created = await pipeline.repository.create_matchmaking_job(filter_json={})
        await pipeline.repository.transition_matchmaking_job(
            job_id=created["id"], from_statuses={"queued"}, to_status="running"
        )
        await pipeline.repository.transition_matchmaking_job(
            job_id=created["id"], from_statuses={"running"}, to_status=status, matched_count=0
        )
        return await pipeline.repository.transition_matchmaking_job(
            job_id=created["id"], from_statuses={"queued", "running"}, to_status="running"
        )

    assert asyncio.run(run()) is None
