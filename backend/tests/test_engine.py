"""Tests for the workflow engine: starting, transitions, history and locking"""
import threading
from datetime import timedelta

import pytest

from admissions.config.settings import settings
from admissions.domain.models import SYSTEM_ACTOR, HistoryEntry
from admissions.domain.errors import (
    ActiveWorkflowNotFoundError,
    AlreadyExistsError,
    ApplicationNotFoundError,
    BusyError,
    ConcurrencyError,
    ConditionNotMetError,
    ConflictError,
    FactSourceError,
    NotFromCurrentStageError,
    PermissionDeniedError,
)
from admissions.engine.definition_cache import DefinitionCache
from admissions.engine.engine import WorkflowEngine
from admissions.engine.events import StageEventBus
from admissions.repositories.action_repo import ActionRepository
from admissions.repositories.lock_repo import ApplicationLockRepository
from admissions.utils.time import utc_now

ALL_DOCUMENTS_VERIFIED = {
    "transcript": "verified",
    "personal_statement": "verified",
    "recommendation_letters": "verified",
}


@pytest.fixture
def started(engine, published_workflow, applicant):
    return engine.start_application("APP-1", "undergraduate", applicant)


def move_to_review(engine, facts, applicant):
    """Draft -> Submitted -> Document Verification -> Under Review"""
    facts.records["APP-1"] = {"is_submitted": True}
    engine.attempt_transition("APP-1", "submit_application", applicant)
    facts.payments["APP-1"] = {"application_fee": "paid"}
    engine.evaluate_automatic("APP-1")
    facts.documents["APP-1"] = dict(ALL_DOCUMENTS_VERIFIED)
    engine.evaluate_automatic("APP-1")
    assert engine.get_state("APP-1").current_stage_id == "under_review"


# ============================================================================
# Start
# ============================================================================

def test_start_binds_to_active_version(engine, published_workflow, started):
    assert started.current_stage_id == "draft"
    assert started.clock == 0
    assert started.workflow_version_id == published_workflow.workflow_version_id
    assert started.in_terminal_stage is False
    assert engine.timeline("APP-1") == []


def test_start_enqueues_start_stage_actions(started):
    actions = ActionRepository().list_actions(application_id="APP-1")
    assert [(a.kind, a.tag, a.idempotency_key) for a in actions] == [
        ("NOTIFY", "welcome_to_application", "START-APP-1:NOTIFY:welcome_to_application")
    ]


def test_start_twice_is_rejected(engine, started, applicant):
    with pytest.raises(AlreadyExistsError):
        engine.start_application("APP-1", "undergraduate", applicant)


def test_start_without_active_workflow(engine, applicant):
    with pytest.raises(ActiveWorkflowNotFoundError):
        engine.start_application("APP-9", "doctoral", applicant)


def test_binding_survives_new_publication(engine, workflow_service, published_workflow, started):
    newer = workflow_service.publish_workflow(published_workflow.workflow_id, SYSTEM_ACTOR)
    assert newer.version_number == 2

    assert engine.get_state("APP-1").workflow_version_id == published_workflow.workflow_version_id
    assert engine.get_bound_version("APP-1").version_number == 1


def test_unknown_application(engine, applicant):
    with pytest.raises(ApplicationNotFoundError):
        engine.attempt_transition("APP-404", "submit_application", applicant)


# ============================================================================
# Manual transitions
# ============================================================================

def test_manual_transition_commits(engine, facts, event_bus, started, applicant):
    events = []
    event_bus.subscribe(events.append)
    facts.records["APP-1"] = {"is_submitted": True}

    committed = engine.attempt_transition("APP-1", "submit_application", applicant, correlation_id="corr-1")

    entry = committed.entry
    assert (entry.from_stage_id, entry.to_stage_id, entry.sequence) == ("draft", "submitted", 1)
    assert entry.actor_id == "applicant-1"
    assert entry.automatic is False
    assert entry.condition_result is True
    assert entry.correlation_id == "corr-1"
    assert committed.state.current_stage_id == "submitted"
    assert committed.state.clock == 1
    assert committed.state.last_history_id == entry.history_id

    assert len(events) == 1
    assert events[0].history_id == entry.history_id
    assert events[0].to_stage_id == "submitted"


def test_commit_enqueues_target_stage_actions(engine, facts, started, applicant):
    facts.records["APP-1"] = {"is_submitted": True}
    entry = engine.attempt_transition("APP-1", "submit_application", applicant).entry

    actions = ActionRepository().list_actions(application_id="APP-1")
    keys = {a.idempotency_key for a in actions if a.history_id == entry.history_id}
    assert keys == {
        f"{entry.history_id}:NOTIFY:application_received",
        f"{entry.history_id}:INTEGRATE:student_information_system",
        f"{entry.history_id}:RECOMPUTE_CHECKLIST:checklist",
    }


def test_condition_not_met_leaves_no_history(engine, facts, started, applicant):
    facts.records["APP-1"] = {"is_submitted": False}

    with pytest.raises(ConditionNotMetError):
        engine.attempt_transition("APP-1", "submit_application", applicant)

    assert engine.timeline("APP-1") == []
    assert engine.get_state("APP-1").current_stage_id == "draft"


def test_transition_from_another_stage(engine, started, director):
    with pytest.raises(NotFromCurrentStageError):
        engine.attempt_transition("APP-1", "accept", director)


def test_permission_denied_leaves_no_history(engine, facts, started, applicant):
    move_to_review(engine, facts, applicant)
    before = len(engine.timeline("APP-1"))

    with pytest.raises(PermissionDeniedError) as exc:
        engine.attempt_transition("APP-1", "review_complete", applicant)

    assert exc.value.details["missing_permissions"] == ["complete_review"]
    assert len(engine.timeline("APP-1")) == before


def test_staff_permission_scenario(engine, publish, facts, applicant, reviewer):
    publish({
        "start_stage_id": "review",
        "stages": [
            {"stage_id": "review", "name": "Review", "sequence": 1},
            {"stage_id": "approved", "name": "Approved", "sequence": 2, "is_terminal": True},
        ],
        "transitions": [{
            "transition_id": "approve", "name": "Approve",
            "source_stage_id": "review", "target_stage_id": "approved",
            "required_permissions": ["staff.review"]
        }],
    }, category="exchange")
    engine.start_application("APP-2", "exchange", applicant)

    with pytest.raises(PermissionDeniedError):
        engine.attempt_transition("APP-2", "approve", reviewer)

    assert engine.timeline("APP-2") == []


def test_condition_not_met_names_unverified_documents(engine, publish, facts, applicant, reviewer):
    publish({
        "start_stage_id": "review",
        "stages": [
            {
                "stage_id": "review", "name": "Review", "sequence": 1,
                "required_documents": ["transcript", "recommendation_letters"]
            },
            {"stage_id": "approved", "name": "Approved", "sequence": 2, "is_terminal": True},
        ],
        "transitions": [{
            "transition_id": "approve", "name": "Approve",
            "source_stage_id": "review", "target_stage_id": "approved",
            "condition": "all_required_documents_verified == true",
            "required_permissions": ["complete_review"]
        }],
    }, category="exchange")
    engine.start_application("APP-2", "exchange", applicant)
    facts.documents["APP-2"] = {"transcript": "verified", "recommendation_letters": "pending"}

    with pytest.raises(ConditionNotMetError) as exc:
        engine.attempt_transition("APP-2", "approve", reviewer)

    assert "recommendation_letters" in exc.value.message
    assert exc.value.details["missing_documents"] == ["recommendation_letters"]

    facts.documents["APP-2"]["recommendation_letters"] = "verified"
    committed = engine.attempt_transition("APP-2", "approve", reviewer)
    assert committed.state.in_terminal_stage is True


def test_fact_source_failure_is_surfaced(engine, facts, started, applicant):
    facts.failing = True

    with pytest.raises(FactSourceError):
        engine.attempt_transition("APP-1", "submit_application", applicant)

    assert engine.timeline("APP-1") == []


def test_failing_subscriber_does_not_undo_commit(engine, facts, event_bus, started, applicant):
    def broken(event):
        raise RuntimeError("subscriber down")

    event_bus.subscribe(broken)
    facts.records["APP-1"] = {"is_submitted": True}

    committed = engine.attempt_transition("APP-1", "submit_application", applicant)

    assert engine.get_state("APP-1").last_history_id == committed.entry.history_id


# ============================================================================
# Automatic transitions
# ============================================================================

def test_no_automatic_transition_from_draft(engine, started):
    assert engine.evaluate_automatic("APP-1") is None


def test_automatic_sweep_is_idempotent(engine, facts, started, applicant):
    facts.records["APP-1"] = {"is_submitted": True}
    engine.attempt_transition("APP-1", "submit_application", applicant)
    facts.payments["APP-1"] = {"application_fee": "paid"}

    first = engine.evaluate_automatic("APP-1")
    second = engine.evaluate_automatic("APP-1")

    assert first.entry.to_stage_id == "document_verification"
    assert first.entry.automatic is True
    assert first.entry.actor_id == "system"
    assert first.entry.condition_result is True
    assert second is None
    assert len(engine.timeline("APP-1")) == 2


def test_unpaid_fee_blocks_screening(engine, facts, started, applicant):
    facts.records["APP-1"] = {"is_submitted": True}
    engine.attempt_transition("APP-1", "submit_application", applicant)

    assert engine.evaluate_automatic("APP-1") is None
    assert engine.get_state("APP-1").current_stage_id == "submitted"


def test_first_matching_automatic_transition_wins(engine, publish, facts, applicant):
    publish({
        "start_stage_id": "submitted",
        "stages": [
            {"stage_id": "submitted", "name": "Submitted", "sequence": 1, "required_documents": ["transcript"]},
            {"stage_id": "under_review", "name": "Under Review", "sequence": 2},
            {"stage_id": "incomplete", "name": "Incomplete", "sequence": 3},
            {"stage_id": "closed", "name": "Closed", "sequence": 4, "is_terminal": True},
        ],
        "transitions": [
            {
                "transition_id": "a", "name": "Documents Complete",
                "source_stage_id": "submitted", "target_stage_id": "under_review",
                "condition": "all_required_documents_verified == true", "is_automatic": True
            },
            {
                "transition_id": "b", "name": "Mark Incomplete",
                "source_stage_id": "submitted", "target_stage_id": "incomplete",
                "condition": "days_since(submitted_at) > 60", "is_automatic": True
            },
            {"transition_id": "close", "name": "Close", "source_stage_id": "under_review", "target_stage_id": "closed"},
            {"transition_id": "close_incomplete", "name": "Close", "source_stage_id": "incomplete", "target_stage_id": "closed"},
        ],
    }, category="transfer")
    engine.start_application("APP-3", "transfer", applicant)
    facts.records["APP-3"] = {"submitted_at": (utc_now() - timedelta(days=10)).isoformat()}
    facts.documents["APP-3"] = {"transcript": "verified"}

    fired = engine.evaluate_automatic("APP-3")
    assert fired.entry.transition_id == "a"

    facts.records["APP-3"]["submitted_at"] = (utc_now() - timedelta(days=61)).isoformat()
    assert engine.evaluate_automatic("APP-3") is None

    timeline = engine.timeline("APP-3")
    assert [e.transition_id for e in timeline] == ["a"]
    assert engine.get_state("APP-3").current_stage_id == "under_review"


# ============================================================================
# History
# ============================================================================

def test_full_journey_history_is_gapless_and_ordered(engine, facts, started, applicant, reviewer, director):
    move_to_review(engine, facts, applicant)
    engine.attempt_transition("APP-1", "review_complete", reviewer)
    engine.attempt_transition("APP-1", "accept", director)
    facts.payments["APP-1"]["enrollment_deposit"] = "paid"
    engine.evaluate_automatic("APP-1")

    timeline = engine.timeline("APP-1")
    state = engine.get_state("APP-1")

    assert [e.sequence for e in timeline] == list(range(1, len(timeline) + 1))
    assert [e.to_stage_id for e in timeline] == [
        "submitted", "document_verification", "under_review", "decision", "accepted", "enrollment"
    ]
    for previous, current in zip(timeline, timeline[1:]):
        assert current.from_stage_id == previous.to_stage_id
        assert current.timestamp > previous.timestamp
    assert state.current_stage_id == timeline[-1].to_stage_id
    assert state.clock == timeline[-1].sequence
    assert state.in_terminal_stage is True


def test_state_rolls_forward_from_history(engine, event_bus, started):
    entry = HistoryEntry(
        history_id="HIST-crashed",
        application_id="APP-1",
        sequence=1,
        from_stage_id="draft",
        to_stage_id="submitted",
        transition_id="submit_application",
        transition_name="Submit Application",
        actor_id="applicant-1",
        timestamp=utc_now(),
        workflow_version_id=started.workflow_version_id
    )
    engine.ledger.append(entry)

    events = []
    event_bus.subscribe(events.append)

    state = engine.get_state("APP-1")

    assert state.current_stage_id == "submitted"
    assert state.clock == 1
    assert state.last_history_id == "HIST-crashed"
    keys = {a.idempotency_key for a in ActionRepository().list_actions(application_id="APP-1")}
    assert {
        "HIST-crashed:NOTIFY:application_received",
        "HIST-crashed:INTEGRATE:student_information_system",
        "HIST-crashed:RECOMPUTE_CHECKLIST:checklist",
    } <= keys
    assert [e.history_id for e in events] == ["HIST-crashed"]

    # Already caught up: nothing is emitted again
    engine.get_state("APP-1")
    assert len(events) == 1


def test_losing_writer_retries_against_winner(engine, facts, started, applicant, monkeypatch):
    facts.records["APP-1"] = {"is_submitted": True}
    real_append = engine.ledger.append
    raced = []

    def racing_append(entry):
        if not raced:
            # Another worker commits the same slot first
            raced.append(entry)
            real_append(entry.model_copy(update={"history_id": "HIST-winner", "actor_id": "other-worker"}))
        return real_append(entry)

    monkeypatch.setattr(engine.ledger, "append", racing_append)

    with pytest.raises(NotFromCurrentStageError):
        engine.attempt_transition("APP-1", "submit_application", applicant)

    assert [e.history_id for e in engine.timeline("APP-1")] == ["HIST-winner"]
    state = engine.get_state("APP-1")
    assert (state.current_stage_id, state.clock, state.last_history_id) == ("submitted", 1, "HIST-winner")


def test_commit_rolled_forward_and_superseded_still_succeeds(
    engine, facts, dispatcher, started, applicant, mongo_db, monkeypatch
):
    facts.records["APP-1"] = {"is_submitted": True}
    facts.payments["APP-1"] = {"application_fee": "paid"}
    other = WorkflowEngine(
        cache=DefinitionCache(),
        context_builder=facts.context_builder(),
        dispatcher=dispatcher,
        event_bus=StageEventBus()
    )
    real_advance = engine.state_repo.advance
    stalled = []

    def stalled_advance(application_id, **kwargs):
        if not stalled:
            # Our lease runs out before the state write; another worker
            # rolls our entry forward and commits the next transition
            stalled.append(application_id)
            mongo_db["application_locks"].update_many(
                {}, {"$set": {"locked_until": utc_now() - timedelta(seconds=1)}}
            )
            assert other.evaluate_automatic("APP-1") is not None
        return real_advance(application_id, **kwargs)

    monkeypatch.setattr(engine.state_repo, "advance", stalled_advance)

    committed = engine.attempt_transition("APP-1", "submit_application", applicant)

    assert committed.entry.to_stage_id == "submitted"
    assert (committed.state.current_stage_id, committed.state.clock) == ("submitted", 1)
    timeline = engine.timeline("APP-1")
    assert [(e.from_stage_id, e.to_stage_id, e.actor_id) for e in timeline] == [
        ("draft", "submitted", "applicant-1"),
        ("submitted", "document_verification", "system"),
    ]
    assert timeline[0].history_id == committed.entry.history_id
    keys = {a.idempotency_key for a in ActionRepository().list_actions(application_id="APP-1")}
    assert f"{committed.entry.history_id}:NOTIFY:application_received" in keys


def test_concurrent_attempts_commit_once(engine, facts, started, applicant, monkeypatch):
    monkeypatch.setattr(settings, "transition_lock_poll_interval_seconds", 0.01)
    facts.records["APP-1"] = {"is_submitted": True}
    barrier = threading.Barrier(2)
    outcomes = []

    def attempt():
        barrier.wait()
        try:
            outcomes.append(engine.attempt_transition("APP-1", "submit_application", applicant))
        except (NotFromCurrentStageError, BusyError) as e:
            outcomes.append(e)

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    committed = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(outcomes) == 2
    assert len(committed) == 1
    timeline = engine.timeline("APP-1")
    assert [e.from_stage_id for e in timeline] == ["draft"]
    assert timeline[0].history_id == committed[0].entry.history_id
    assert engine.get_state("APP-1").clock == 1


def test_conflict_after_retries_are_exhausted(engine, facts, started, applicant, monkeypatch):
    facts.records["APP-1"] = {"is_submitted": True}
    monkeypatch.setattr(settings, "transition_max_conflict_retries", 2)
    attempts = []

    def always_taken(entry):
        attempts.append(entry.sequence)
        raise ConcurrencyError("slot taken")

    monkeypatch.setattr(engine.ledger, "append", always_taken)

    with pytest.raises(ConflictError) as exc:
        engine.attempt_transition("APP-1", "submit_application", applicant)

    assert not isinstance(exc.value, ConcurrencyError)
    assert attempts == [1, 1]
    assert engine.get_state("APP-1").clock == 0
    # The lock was released
    assert ApplicationLockRepository().try_acquire("APP-1", "next-worker", 30) is True


# ============================================================================
# Locking
# ============================================================================

def test_busy_application(engine, facts, started, applicant):
    ApplicationLockRepository().try_acquire("APP-1", "other-worker", 30)
    facts.records["APP-1"] = {"is_submitted": True}

    with pytest.raises(BusyError):
        engine.attempt_transition("APP-1", "submit_application", applicant, wait=False)

    assert engine.evaluate_automatic("APP-1") is None
    assert engine.timeline("APP-1") == []


def test_expired_lease_can_be_taken_over(engine, facts, started, applicant):
    ApplicationLockRepository().try_acquire("APP-1", "crashed-worker", 0)
    facts.records["APP-1"] = {"is_submitted": True}

    committed = engine.attempt_transition("APP-1", "submit_application", applicant, wait=False)

    assert committed.entry.sequence == 1


# ============================================================================
# Queries
# ============================================================================

def test_available_transitions_per_actor(engine, facts, started, applicant, reviewer):
    facts.records["APP-1"] = {"is_submitted": False}
    draft = engine.available_transitions("APP-1", applicant)
    assert [(t.transition_id, t.reason_code) for t in draft] == [("submit_application", "CONDITION_NOT_MET")]

    move_to_review(engine, facts, applicant)

    as_applicant = {t.transition_id: t for t in engine.available_transitions("APP-1", applicant)}
    as_reviewer = {t.transition_id: t for t in engine.available_transitions("APP-1", reviewer)}
    assert as_applicant["review_complete"].reason_code == "PERMISSION_DENIED"
    assert as_reviewer["review_complete"].available is True
    assert as_reviewer["request_information"].available is True


def test_stage_requirements(engine, facts, started, applicant):
    facts.records["APP-1"] = {"is_submitted": True, "completed_actions": ["submit_application"]}
    engine.attempt_transition("APP-1", "submit_application", applicant)

    submitted = engine.stage_requirements("APP-1")
    assert submitted.pending_actions == ["pay_application_fee"]
    assert submitted.is_complete is False

    facts.payments["APP-1"] = {"application_fee": "paid"}
    facts.documents["APP-1"] = {"transcript": "verified", "personal_statement": "pending"}
    engine.evaluate_automatic("APP-1")

    requirements = engine.stage_requirements("APP-1")
    assert requirements.stage_id == "document_verification"
    assert requirements.verified_documents == ["transcript"]
    assert requirements.missing_documents == ["personal_statement", "recommendation_letters"]
    assert requirements.is_complete is False
