"""Tests for the guard expression language"""
from datetime import datetime, timedelta, timezone

import pytest

from admissions.domain.errors import (
    ConditionEvaluationError,
    ConditionSyntaxError,
    UnknownFactError,
)
from admissions.engine.condition_evaluator import ConditionEvaluator, parse_condition

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def evaluator():
    return ConditionEvaluator()


@pytest.fixture
def context():
    return {
        "payment_status": "paid",
        "program": "MBA",
        "gpa": 3.6,
        "documents": {"transcript": "verified", "personal_statement": "pending"},
        "payments": {"application_fee": "paid", "enrollment_deposit": "unpaid"},
        "required_actions": ["submit_application", "pay_application_fee"],
        "completed_actions": ["submit_application", "pay_application_fee", "interview"],
        "all_required_documents_verified": False,
        "submitted_at": NOW - timedelta(days=61),
        "notes": None,
        "now": NOW,
    }


@pytest.mark.parametrize("expression,expected", [
    ('payment_status == "paid"', True),
    ("payment_status != 'paid'", False),
    ("gpa >= 3.5 and gpa < 4", True),
    ('program in ["MBA", "EMBA"]', True),
    ('program not in ["MBA", "EMBA"]', False),
    ('completed_actions contains "interview"', True),
    ("all_required_documents_verified == true", False),
    ("not all_required_documents_verified", True),
    ("!all_required_documents_verified && gpa > 3", True),
    ('documents.transcript == "verified" || documents.transcript == "missing"', True),
    ('payments.enrollment_deposit == "paid"', False),
    ("days_since(submitted_at) > 60", True),
    ("hours_since(submitted_at) >= 1464", True),
    ("count(completed_actions) == 3", True),
    ('lower(program) == "mba"', True),
    ("is_subset(required_actions, completed_actions)", True),
    ("notes == null", True),
    ("(gpa > 4 OR program == 'MBA') AND NOT (gpa < 2)", True),
])
def test_evaluates_expressions(evaluator, context, expression, expected):
    assert evaluator.evaluate(expression, context) is expected


def test_missing_nested_field_resolves_to_null(evaluator, context):
    assert evaluator.evaluate("documents.recommendation_letters == null", context) is True


def test_date_fact_compares_with_iso_literal(evaluator, context):
    assert evaluator.evaluate('submitted_at < "2026-01-15T00:00:00Z"', context) is True


def test_unknown_fact_raises(evaluator, context):
    with pytest.raises(UnknownFactError) as exc:
        evaluator.evaluate("interview_score > 5", context)
    assert exc.value.details["fact"] == "interview_score"


def test_type_mismatch_raises(evaluator, context):
    with pytest.raises(ConditionEvaluationError):
        evaluator.evaluate('gpa > "high"', context)


def test_non_boolean_result_raises(evaluator, context):
    with pytest.raises(ConditionEvaluationError):
        evaluator.evaluate("gpa", context)


def test_boolean_operators_require_booleans(evaluator, context):
    with pytest.raises(ConditionEvaluationError):
        evaluator.evaluate("gpa and true", context)


def test_days_since_needs_now_in_context(evaluator, context):
    del context["now"]
    with pytest.raises(UnknownFactError):
        evaluator.evaluate("days_since(submitted_at) > 1", context)


def test_short_circuit_skips_unknown_facts(evaluator, context):
    assert evaluator.evaluate("gpa > 3 or missing_fact == 1", context) is True


@pytest.mark.parametrize("expression", [
    "",
    "gpa >",
    "gpa > 3 and",
    "(gpa > 3",
    "open(file) == 1",
    "__import__('os')",
    "gpa = 3",
    "days_since(a, b) > 1",
    "program in [\"MBA\" \"EMBA\"]",
    "gpa > 3 extra",
])
def test_rejects_invalid_syntax(evaluator, context, expression):
    with pytest.raises(ConditionSyntaxError):
        evaluator.evaluate(expression, context)


def test_check_syntax_reports_message(evaluator):
    assert evaluator.check_syntax("gpa > 3") is None
    assert "Unknown function" in evaluator.check_syntax("eval(x)")


def test_referenced_facts_are_top_level_names(evaluator):
    facts = evaluator.referenced_facts('documents.transcript == "verified" and days_since(submitted_at) > 3')
    assert facts == {"documents", "submitted_at"}


def test_parse_is_cached():
    assert parse_condition("gpa > 3") is parse_condition("gpa > 3")
