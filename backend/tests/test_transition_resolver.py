"""Tests for the permission guard and transition resolution"""
import pytest

from admissions.domain.models import SYSTEM_ACTOR, ActorContext, WorkflowDefinition
from admissions.domain.errors import (
    ConditionNotMetError,
    NotFromCurrentStageError,
    PermissionDeniedError,
    TransitionNotFoundError,
)
from admissions.engine.permission_guard import PermissionGuard
from admissions.engine.transition_resolver import TransitionResolver


@pytest.fixture
def definition():
    return WorkflowDefinition.model_validate({
        "start_stage_id": "submitted",
        "stages": [
            {"stage_id": "submitted", "name": "Submitted", "sequence": 1},
            {"stage_id": "review", "name": "Review", "sequence": 2},
            {"stage_id": "fast_track", "name": "Fast Track", "sequence": 3},
            {"stage_id": "closed", "name": "Closed", "sequence": 4, "is_terminal": True},
        ],
        "transitions": [
            {
                "transition_id": "to_review", "name": "To Review",
                "source_stage_id": "submitted", "target_stage_id": "review",
                "condition": 'payment_status == "paid"', "is_automatic": True, "priority": 1
            },
            {
                "transition_id": "to_fast_track", "name": "To Fast Track",
                "source_stage_id": "submitted", "target_stage_id": "fast_track",
                "condition": 'payment_status == "paid"', "is_automatic": True, "priority": 1
            },
            {
                "transition_id": "broken", "name": "Broken",
                "source_stage_id": "submitted", "target_stage_id": "closed",
                "condition": "no_such_fact == 1", "is_automatic": True, "priority": 5
            },
            {
                "transition_id": "approve", "name": "Approve",
                "source_stage_id": "review", "target_stage_id": "closed",
                "condition": "all_required_documents_verified == true",
                "required_permissions": ["staff.review"]
            },
            {
                "transition_id": "withdraw", "name": "Withdraw",
                "source_stage_id": "review", "target_stage_id": "closed"
            },
            {
                "transition_id": "finish", "name": "Finish",
                "source_stage_id": "fast_track", "target_stage_id": "closed"
            },
        ],
    })


@pytest.fixture
def resolver():
    return TransitionResolver()


@pytest.fixture
def staff():
    return ActorContext(actor_id="staff-1", permissions=["staff.review"])


@pytest.fixture
def student():
    return ActorContext(actor_id="student-1", permissions=[])


# ============================================================================
# Permission guard
# ============================================================================

def test_guard_requires_every_tag(definition):
    guard = PermissionGuard()
    approve = definition.get_transition("approve")

    assert guard.authorize(ActorContext(actor_id="x", permissions=["staff.review"]), approve) is True
    assert guard.authorize(ActorContext(actor_id="x", permissions=["staff.other"]), approve) is False
    assert guard.missing_permissions(
        ActorContext(actor_id="x", permissions=["a"]), ["a", "b", "c"]
    ) == ["b", "c"]


def test_guard_unrestricted_transition(definition, student):
    assert PermissionGuard().authorize(student, definition.get_transition("withdraw")) is True


def test_require_transition_names_missing_tags(definition, student):
    with pytest.raises(PermissionDeniedError) as exc:
        PermissionGuard().require_transition(student, definition.get_transition("approve"))
    assert exc.value.details["missing_permissions"] == ["staff.review"]
    assert exc.value.http_status == 403


# ============================================================================
# Automatic selection
# ============================================================================

def test_equal_priority_keeps_authoring_order(resolver, definition):
    selected = resolver.select_automatic(definition, "submitted", {"payment_status": "paid"})
    assert selected.transition_id == "to_review"


def test_higher_priority_evaluated_first(resolver, definition):
    candidates = resolver.automatic_candidates(definition, "submitted")
    assert [t.transition_id for t in candidates] == ["broken", "to_review", "to_fast_track"]


def test_evaluation_error_counts_as_false(resolver, definition):
    # "broken" has the highest priority but references a missing fact
    selected = resolver.select_automatic(definition, "submitted", {"payment_status": "paid"})
    assert selected.transition_id != "broken"


def test_no_automatic_transition_applies(resolver, definition):
    assert resolver.select_automatic(definition, "submitted", {"payment_status": "unpaid"}) is None


# ============================================================================
# Manual resolution
# ============================================================================

def test_unknown_transition(resolver, definition, staff):
    with pytest.raises(TransitionNotFoundError):
        resolver.resolve_manual(definition, "review", "nope", staff)


def test_transition_from_another_stage(resolver, definition, staff):
    with pytest.raises(NotFromCurrentStageError) as exc:
        resolver.resolve_manual(definition, "submitted", "approve", staff)
    assert exc.value.details["current_stage_id"] == "submitted"
    assert exc.value.http_status == 409


def test_permission_checked_before_guard(resolver, definition, student):
    with pytest.raises(PermissionDeniedError):
        resolver.resolve_manual(definition, "review", "approve", student)


def test_system_actor_skips_permission_check(resolver, definition):
    transition = resolver.resolve_manual(definition, "review", "approve", SYSTEM_ACTOR)
    assert transition.transition_id == "approve"


def test_check_guard_reports_missing_documents(resolver, definition):
    context = {
        "all_required_documents_verified": False,
        "missing_documents": ["transcript", "recommendation_letters"],
    }
    with pytest.raises(ConditionNotMetError) as exc:
        resolver.check_guard(definition.get_transition("approve"), context)

    assert "transcript, recommendation_letters" in exc.value.message
    assert exc.value.details["missing_documents"] == ["transcript", "recommendation_letters"]
    assert exc.value.http_status == 422


def test_check_guard_results(resolver, definition):
    assert resolver.check_guard(definition.get_transition("withdraw"), {}) is None
    assert resolver.check_guard(
        definition.get_transition("approve"), {"all_required_documents_verified": True}
    ) is True


def test_check_guard_evaluation_error_is_condition_not_met(resolver, definition):
    with pytest.raises(ConditionNotMetError):
        resolver.check_guard(definition.get_transition("approve"), {})


# ============================================================================
# Availability
# ============================================================================

def test_describe_available(resolver, definition, student):
    context = {"all_required_documents_verified": False, "missing_documents": ["transcript"]}
    described = {t.transition_id: t for t in resolver.describe_available(definition, "review", student, context)}

    assert described["approve"].available is False
    assert described["approve"].reason_code == "PERMISSION_DENIED"
    assert described["approve"].missing_permissions == ["staff.review"]
    assert described["withdraw"].available is True


def test_describe_available_condition_and_automatic(resolver, definition, staff):
    context = {"all_required_documents_verified": False, "missing_documents": ["transcript"]}
    review = {t.transition_id: t for t in resolver.describe_available(definition, "review", staff, context)}
    assert review["approve"].reason_code == "CONDITION_NOT_MET"
    assert "transcript" in review["approve"].reason

    submitted = resolver.describe_available(definition, "submitted", staff, None)
    assert {t.reason_code for t in submitted} == {"AUTOMATIC_ONLY"}
