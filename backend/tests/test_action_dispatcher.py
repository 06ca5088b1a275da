"""Tests for the action outbox: idempotent enqueue, delivery, retries and dead letters"""
import asyncio
from datetime import timedelta

import pytest

from admissions.config.settings import settings
from admissions.domain.enums import ActionKind, ActionStatus
from admissions.domain.errors import InvalidStateError
from admissions.scheduler.action_scheduler import ActionScheduler
from admissions.utils.time import utc_now


def enqueue(dispatcher, key="HIST-1:NOTIFY:application_received", kind=ActionKind.NOTIFY, tag="application_received"):
    return dispatcher.dispatch(
        kind,
        tag,
        {"application_id": "APP-1", "correlation_id": "corr-1"},
        idempotency_key=key,
        application_id="APP-1",
        history_id="HIST-1"
    )


def test_duplicate_key_is_a_noop(dispatcher):
    first = enqueue(dispatcher)
    second = enqueue(dispatcher)

    assert first is not None
    assert second is None
    assert dispatcher.count_actions() == 1


def test_delivers_with_idempotency_key(dispatcher, delivery_target):
    action = enqueue(dispatcher)

    summary = asyncio.run(dispatcher.process_pending("worker-1"))

    assert summary == {"delivered": 1, "failed": 0, "skipped": 0}
    assert len(delivery_target.received) == 1
    request = delivery_target.received[0]
    assert request["url"] == f"{settings.notification_service_url.rstrip('/')}/notifications"
    assert request["idempotency_key"] == "HIST-1:NOTIFY:application_received"
    assert request["body"]["tag"] == "application_received"
    assert dispatcher.repo.get_action(action.action_id).status == "DELIVERED"


def test_delivered_action_is_not_sent_again(dispatcher, delivery_target):
    enqueue(dispatcher)
    asyncio.run(dispatcher.process_pending("worker-1"))
    summary = asyncio.run(dispatcher.process_pending("worker-2"))

    assert summary == {"delivered": 0, "failed": 0, "skipped": 0}
    assert len(delivery_target.received) == 1


def test_endpoints_per_kind(dispatcher, delivery_target):
    enqueue(dispatcher, key="k1", kind=ActionKind.INTEGRATE, tag="student_information_system")
    enqueue(dispatcher, key="k2", kind=ActionKind.RECOMPUTE_CHECKLIST, tag="checklist")

    asyncio.run(dispatcher.process_pending("worker-1"))

    urls = sorted(r["url"] for r in delivery_target.received)
    assert urls == sorted([
        f"{settings.integration_service_url.rstrip('/')}/sync",
        f"{settings.document_service_url.rstrip('/')}/applications/APP-1/checklist/recompute",
    ])


def test_already_processed_downstream_counts_as_delivered(dispatcher, delivery_target):
    delivery_target.status_code = 409
    action = enqueue(dispatcher)

    asyncio.run(dispatcher.process_pending("worker-1"))

    assert dispatcher.repo.get_action(action.action_id).status == "DELIVERED"


def test_failure_schedules_retry_with_backoff(dispatcher, delivery_target):
    delivery_target.status_code = 500
    action = enqueue(dispatcher)

    summary = asyncio.run(dispatcher.process_pending("worker-1"))
    failed = dispatcher.repo.get_action(action.action_id)

    assert summary["failed"] == 1
    assert failed.status == "PENDING"
    assert failed.retry_count == 1
    assert "500" in failed.last_error
    delay = failed.next_retry_at - utc_now()
    assert timedelta(seconds=settings.dispatch_backoff_base_seconds - 5) < delay
    assert delay <= timedelta(seconds=settings.dispatch_backoff_base_seconds)

    # Not due yet
    assert asyncio.run(dispatcher.process_pending("worker-1")) == {"delivered": 0, "failed": 0, "skipped": 0}


def test_backoff_doubles_and_is_capped(dispatcher):
    action = enqueue(dispatcher)

    dispatcher.repo.mark_failed(action.action_id, "boom", max_retries=10, backoff_base_seconds=60, backoff_max_seconds=100)
    second = dispatcher.repo.mark_failed(action.action_id, "boom", max_retries=10, backoff_base_seconds=60, backoff_max_seconds=100)

    delay = second.next_retry_at - utc_now()
    assert timedelta(seconds=95) < delay <= timedelta(seconds=100)


def test_dead_letter_and_retry(dispatcher, delivery_target, monkeypatch):
    monkeypatch.setattr(settings, "dispatch_max_retries", 1)
    delivery_target.status_code = 503
    action = enqueue(dispatcher)

    asyncio.run(dispatcher.process_pending("worker-1"))

    dead = dispatcher.repo.get_action(action.action_id)
    assert dead.status == "DEAD_LETTER"
    assert dead.dead_lettered_at is not None
    assert [a.action_id for a in dispatcher.list_actions(status=ActionStatus.DEAD_LETTER)] == [action.action_id]

    requeued = dispatcher.retry_dead_letter(action.action_id)
    assert requeued.status == "PENDING"
    assert requeued.retry_count == 0

    delivery_target.status_code = 202
    asyncio.run(dispatcher.process_pending("worker-1"))
    assert dispatcher.repo.get_action(action.action_id).status == "DELIVERED"


def test_only_dead_letters_can_be_retried(dispatcher):
    action = enqueue(dispatcher)
    with pytest.raises(InvalidStateError):
        dispatcher.retry_dead_letter(action.action_id)


def test_leased_action_is_skipped(dispatcher, delivery_target):
    action = enqueue(dispatcher)
    assert dispatcher.repo.acquire_lock(action.action_id, "other-worker", lock_duration_seconds=60) is True

    result = asyncio.run(dispatcher.deliver_one(action, "worker-1"))

    assert result == "skipped"
    assert delivery_target.received == []


def test_delivery_failure_never_touches_workflow_state(engine, facts, delivery_target, published_workflow, applicant):
    delivery_target.status_code = 500
    engine.start_application("APP-1", "undergraduate", applicant)
    facts.records["APP-1"] = {"is_submitted": True}
    committed = engine.attempt_transition("APP-1", "submit_application", applicant)

    summary = asyncio.run(engine.dispatcher.process_pending("worker-1"))

    assert summary["failed"] == 4
    state = engine.get_state("APP-1")
    assert state.current_stage_id == "submitted"
    assert state.last_history_id == committed.entry.history_id


def test_sweep_moves_in_flight_applications(engine, dispatcher, facts, published_workflow, applicant):
    for application_id in ("APP-1", "APP-2"):
        engine.start_application(application_id, "undergraduate", applicant)
        facts.records[application_id] = {"is_submitted": True}
        engine.attempt_transition(application_id, "submit_application", applicant)
        facts.payments[application_id] = {"application_fee": "paid"}

    scheduler = ActionScheduler(dispatcher=dispatcher, engine=engine)

    assert scheduler.sweep_once() == 2
    assert scheduler.sweep_once() == 0
    assert engine.get_state("APP-2").current_stage_id == "document_verification"


def test_sweep_pages_past_applications_it_advances(engine, dispatcher, facts, published_workflow, applicant, monkeypatch):
    monkeypatch.setattr(settings, "automatic_sweep_batch_size", 2)
    application_ids = ["APP-1", "APP-2", "APP-3", "APP-4"]
    for application_id in application_ids:
        engine.start_application(application_id, "undergraduate", applicant)
        facts.records[application_id] = {"is_submitted": True}
        engine.attempt_transition(application_id, "submit_application", applicant)
        facts.payments[application_id] = {"application_fee": "paid"}

    scheduler = ActionScheduler(dispatcher=dispatcher, engine=engine)

    assert scheduler.sweep_once() == 4
    assert {engine.get_state(a).current_stage_id for a in application_ids} == {"document_verification"}
