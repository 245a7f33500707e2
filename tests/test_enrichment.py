from __future__ import annotations

import asyncio

from leadpipe.jobs.producers import enqueue_enrichment
from leadpipe.pipeline import Pipeline
from leadpipe.services.queue import MATCHMAKING_QUEUE, WEBHOOK_QUEUE


def _queued_payloads(pipeline: Pipeline, queue_name: str) -> list[dict]:
    return [
        job["payload"]
        for job in pipeline.repository.jobs.values()
        if job["queue_name"] == queue_name and job["status"] == "queued"
    ]


def _enrich(pipeline: Pipeline, property_id: str) -> None:
    async def run() -> None:
        await enqueue_enrichment(pipeline.queue, property_id)
        await pipeline.workers["enrichment"].drain()

    asyncio.run(run())


def test_enrichment_writes_fields_and_records_activity(make_pipeline) -> None:
    pipeline = make_pipeline()
    prop = pipeline.repository.add_property(price=150000, sqft=1000, condition="fair")

    _enrich(pipeline, prop["id"])

    stored = pipeline.repository.properties[prop["id"]]
    assert stored["investment_score"] == 70
    assert stored["enrichment_tags"] == ["rental"]
    assert stored["condition"] == "Fair"
    assert stored["tag_reasons"]
    activities = pipeline.repository.crm_activities
    assert [activity["type"] for activity in activities] == ["enrichment.completed"]
    assert activities[0]["metadata"]["investmentScore"] == 70
    assert pipeline.repository.matchmaking_jobs == {}
    assert pipeline.metrics.counter("enrichment_jobs_total", status="processed") == 1


def test_duplicate_delivery_is_a_no_op(make_pipeline) -> None:
    pipeline = make_pipeline()
    prop = pipeline.repository.add_property(price=80000, sqft=1000, condition="poor")

    _enrich(pipeline, prop["id"])
    first = dict(pipeline.repository.properties[prop["id"]])
    _enrich(pipeline, prop["id"])
    second = pipeline.repository.properties[prop["id"]]

    assert second["updated_at"] == first["updated_at"]
    assert second["investment_score"] == first["investment_score"] == 100
    assert second["enrichment_tags"] == first["enrichment_tags"]
    assert len(pipeline.repository.matchmaking_jobs) == 1
    assert len([a for a in pipeline.repository.crm_activities if a["type"] == "enrichment.completed"]) == 1
    assert pipeline.metrics.counter("enrichment_jobs_total", status="skipped") == 1


def test_score_at_threshold_creates_exactly_one_auto_job(make_pipeline) -> None:
    pipeline = make_pipeline()
    prop = pipeline.repository.add_property(price=90000, sqft=1000, condition="good")

    _enrich(pipeline, prop["id"])

    assert pipeline.repository.properties[prop["id"]]["investment_score"] == 85
    jobs = list(pipeline.repository.matchmaking_jobs.values())
    assert len(jobs) == 1
    assert jobs[0]["filter_json"]["source"] == "auto"
    assert jobs[0]["filter_json"]["propertyId"] == prop["id"]
    assert _queued_payloads(pipeline, MATCHMAKING_QUEUE) == [{"matchmakingJobId": jobs[0]["id"]}]
    assert pipeline.repository.properties[prop["id"]]["auto_match_triggered"] is True
    assert pipeline.metrics.counter("matchmaking_triggered_total", origin="auto") == 1


def test_score_below_threshold_without_high_intent_creates_no_job(make_pipeline) -> None:
    pipeline = make_pipeline()
    prop = pipeline.repository.add_property(price=180000, sqft=2000, condition="good")

    _enrich(pipeline, prop["id"])

    stored = pipeline.repository.properties[prop["id"]]
    assert stored["investment_score"] == 80
    assert "highIntent" not in stored["enrichment_tags"]
    assert pipeline.repository.matchmaking_jobs == {}
    assert _queued_payloads(pipeline, MATCHMAKING_QUEUE) == []


def test_high_intent_tag_triggers_below_threshold(make_pipeline) -> None:
    pipeline = make_pipeline(auto_match_score_threshold=101)
    prop = pipeline.repository.add_property(price=80000, sqft=1000, condition="distressed")

    _enrich(pipeline, prop["id"])

    assert len(pipeline.repository.matchmaking_jobs) == 1


def test_activity_is_fanned_out_to_crm_subscribers(make_pipeline) -> None:
    pipeline = make_pipeline()
    prop = pipeline.repository.add_property(price=150000, sqft=1000, condition="fair")

    async def seed() -> tuple[dict, dict]:
        interested = await pipeline.repository.create_webhook_subscription(
            target_url="https://crm.example.com/hook",
            event_types=["crm.activity"],
        )
        other = await pipeline.repository.create_webhook_subscription(
            target_url="https://other.example.com/hook",
            event_types=["matchmaking.completed"],
        )
        return interested, other

    interested, _ = asyncio.run(seed())
    _enrich(pipeline, prop["id"])

    payloads = _queued_payloads(pipeline, WEBHOOK_QUEUE)
    assert len(payloads) == 1
    assert payloads[0]["subscriptionId"] == interested["id"]
    assert payloads[0]["eventType"] == "crm.activity"
    assert payloads[0]["payload"]["type"] == "enrichment.completed"
    assert payloads[0]["payload"]["propertyId"] == prop["id"]
    assert isinstance(payloads[0]["payload"]["createdAt"], str)


def test_fan_out_failure_does_not_undo_enrichment_or_block_matchmaking(make_pipeline, monkeypatch) -> None:
    pipeline = make_pipeline()
    prop = pipeline.repository.add_property(price=80000, sqft=1000, condition="poor")

    async def broken_lookup(*, event_type: str) -> list[dict]:
        raise ConnectionError("subscription store down")

    monkeypatch.setattr(pipeline.repository, "list_active_webhook_subscriptions", broken_lookup)
    _enrich(pipeline, prop["id"])

    assert pipeline.repository.properties[prop["id"]]["investment_score"] == 100
    assert len(pipeline.repository.matchmaking_jobs) == 1
    assert pipeline.metrics.counter("notification_fanout_total", event_type="crm.activity", result="failed") == 1
    assert pipeline.metrics.counter("enrichment_jobs_total", status="processed") == 1


def test_missing_property_is_skipped(make_pipeline) -> None:
    pipeline = make_pipeline()

    _enrich(pipeline, "does-not-exist")

    assert pipeline.metrics.counter("enrichment_jobs_total", status="skipped") == 1
    assert pipeline.metrics.counter("queue_job_attempts_total", queue="enrichment", outcome="completed") == 1


def test_store_failure_is_retried_by_the_queue(make_pipeline, monkeypatch) -> None:
    pipeline = make_pipeline(enrichment_max_attempts=2)
    prop = pipeline.repository.add_property(price=150000, sqft=1000, condition="fair")
    original = pipeline.repository.get_property
    calls = 0

    async def flaky_get_property(property_id: str):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise ConnectionError("connection reset")
        return await original(property_id)

    monkeypatch.setattr(pipeline.repository, "get_property", flaky_get_property)
    _enrich(pipeline, prop["id"])

    assert calls == 2
    assert pipeline.repository.properties[prop["id"]]["investment_score"] == 70
    assert pipeline.metrics.counter("enrichment_jobs_total", status="failed") == 1


def test_matchmaking_job_that_cannot_be_enqueued_is_failed(make_pipeline, monkeypatch) -> None:
    pipeline = make_pipeline()
    prop = pipeline.repository.add_property(price=90000, sqft=1000, condition="good")

    async def broken_enqueue(queue, matchmaking_job_id, options=None):
        raise RuntimeError("queue unavailable")

    monkeypatch.setattr("leadpipe.jobs.enrichment.enqueue_matchmaking", broken_enqueue)

    _enrich(pipeline, prop["id"])

    stored = pipeline.repository.properties[prop["id"]]
    assert stored["investment_score"] == 85
    assert stored["auto_match_triggered"] is False
    jobs = list(pipeline.repository.matchmaking_jobs.values())
    assert len(jobs) == 1
    assert jobs[0]["status"] == "failed"
    assert jobs[0]["error"] == "enqueue_failed: queue unavailable"
    assert jobs[0]["completed_at"] is not None
    assert _queued_payloads(pipeline, MATCHMAKING_QUEUE) == []
    assert pipeline.metrics.counter("matchmaking_trigger_failures_total", origin="auto") == 1
