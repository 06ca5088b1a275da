"""Seed Workflows - Built-in admissions workflow templates"""
from typing import Any, Dict


def _stage(stage_id, name, sequence, description, **extra) -> Dict[str, Any]:
    stage = {
        "stage_id": stage_id,
        "name": name,
        "sequence": sequence,
        "description": description,
        "required_documents": [],
        "required_actions": [],
        "notification_triggers": [],
        "integration_triggers": [],
        "assigned_role": None,
        "is_terminal": False,
    }
    stage.update(extra)
    return stage


def _transition(transition_id, source, target, name, description, **extra) -> Dict[str, Any]:
    transition = {
        "transition_id": transition_id,
        "name": name,
        "description": description,
        "source_stage_id": source,
        "target_stage_id": target,
        "condition": None,
        "required_permissions": [],
        "is_automatic": False,
        "priority": 0,
    }
    transition.update(extra)
    return transition


UNDERGRADUATE_ADMISSIONS: Dict[str, Any] = {
    "name": "Undergraduate Admissions",
    "description": "Standard workflow for undergraduate applications",
    "applicant_category": "undergraduate",
    "definition": {
        "start_stage_id": "draft",
        "stages": [
            _stage(
                "draft", "Draft", 1,
                "Application is being prepared by the applicant",
                notification_triggers=["welcome_to_application"]
            ),
            _stage(
                "submitted", "Submitted", 2,
                "Application has been submitted and is awaiting initial screening",
                required_actions=["submit_application", "pay_application_fee"],
                notification_triggers=["application_received"],
                integration_triggers=["student_information_system"]
            ),
            _stage(
                "document_verification", "Document Verification", 3,
                "Required documents are being verified",
                required_documents=["transcript", "personal_statement", "recommendation_letters"],
                notification_triggers=["documents_required"],
                assigned_role="verification_team"
            ),
            _stage(
                "under_review", "Under Review", 4,
                "Application is being reviewed by the admissions committee",
                notification_triggers=["application_under_review"],
                assigned_role="admissions_committee"
            ),
            _stage(
                "additional_information", "Additional Information", 5,
                "Additional information has been requested from the applicant",
                required_actions=["provide_additional_info"],
                notification_triggers=["additional_information_required"]
            ),
            _stage(
                "decision", "Decision", 6,
                "Final admission decision is being made",
                assigned_role="admissions_director"
            ),
            _stage(
                "accepted", "Accepted", 7,
                "Applicant has been accepted",
                notification_triggers=["acceptance_notification"],
                integration_triggers=["student_information_system"]
            ),
            _stage(
                "waitlisted", "Waitlisted", 8,
                "Applicant has been placed on the waitlist",
                notification_triggers=["waitlist_notification"]
            ),
            _stage(
                "rejected", "Rejected", 9,
                "Application has been rejected",
                notification_triggers=["rejection_notification"],
                integration_triggers=["student_information_system"],
                is_terminal=True
            ),
            _stage(
                "enrollment", "Enrollment", 10,
                "Accepted applicant has confirmed enrollment",
                required_actions=["pay_enrollment_deposit"],
                notification_triggers=["enrollment_confirmation"],
                integration_triggers=["student_information_system"],
                is_terminal=True
            ),
        ],
        "transitions": [
            _transition(
                "submit_application", "draft", "submitted", "Submit Application",
                "Applicant submits their application",
                condition="is_submitted == true"
            ),
            _transition(
                "initial_screening_passed", "submitted", "document_verification", "Initial Screening Passed",
                "Application passes initial screening",
                condition='payments.application_fee == "paid"',
                is_automatic=True
            ),
            _transition(
                "documents_verified", "document_verification", "under_review", "Documents Verified",
                "All required documents have been verified",
                condition="all_required_documents_verified == true",
                is_automatic=True
            ),
            _transition(
                "request_information", "under_review", "additional_information", "Request Information",
                "Request additional information from applicant",
                required_permissions=["request_additional_info"]
            ),
            _transition(
                "information_provided", "additional_information", "under_review", "Information Provided",
                "Applicant has provided the requested information",
                condition="additional_info_provided == true",
                is_automatic=True
            ),
            _transition(
                "review_complete", "under_review", "decision", "Review Complete",
                "Application review is complete",
                required_permissions=["complete_review"]
            ),
            _transition(
                "accept", "decision", "accepted", "Accept",
                "Accept the applicant",
                required_permissions=["make_admission_decision"]
            ),
            _transition(
                "waitlist", "decision", "waitlisted", "Waitlist",
                "Place the applicant on the waitlist",
                required_permissions=["make_admission_decision"]
            ),
            _transition(
                "reject", "decision", "rejected", "Reject",
                "Reject the application",
                required_permissions=["make_admission_decision"]
            ),
            _transition(
                "accept_from_waitlist", "waitlisted", "accepted", "Accept from Waitlist",
                "Accept an applicant from the waitlist",
                required_permissions=["make_admission_decision"]
            ),
            _transition(
                "reject_from_waitlist", "waitlisted", "rejected", "Reject from Waitlist",
                "Reject an applicant from the waitlist",
                required_permissions=["make_admission_decision"]
            ),
            _transition(
                "confirm_enrollment", "accepted", "enrollment", "Confirm Enrollment",
                "Applicant confirms enrollment by paying deposit",
                condition='payments.enrollment_deposit == "paid"',
                is_automatic=True
            ),
        ],
    },
}

SEED_WORKFLOWS = [UNDERGRADUATE_ADMISSIONS]
