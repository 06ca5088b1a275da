"""
Seed Data Script - Publishes the built-in admissions workflows
Run: python -m scripts.seed_data
"""
import argparse
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from admissions.config.seed_workflows import SEED_WORKFLOWS
from admissions.domain.models import SYSTEM_ACTOR
from admissions.domain.errors import WorkflowValidationError
from admissions.repositories.mongo_client import create_indexes
from admissions.services.workflow_service import WorkflowService


def seed_workflows(force: bool = False) -> int:
    """
    Create, publish and activate each seed workflow.

    Categories that already have an active workflow are skipped unless force
    is set, in which case a new workflow is published over it.

    Returns:
        Number of workflows published
    """
    create_indexes()
    service = WorkflowService()
    published = 0

    for template in SEED_WORKFLOWS:
        category = template["applicant_category"]
        if service.get_active_pointer(category) and not force:
            print(f"Category '{category}' already has an active workflow. Skipping.")
            continue

        workflow = service.create_workflow(
            name=template["name"],
            description=template["description"],
            applicant_category=category,
            actor=SYSTEM_ACTOR,
            definition=template["definition"]
        )
        try:
            version = service.publish_workflow(
                workflow.workflow_id,
                SYSTEM_ACTOR,
                change_summary="Seeded built-in workflow"
            )
        except WorkflowValidationError as e:
            print(f"Seed workflow '{template['name']}' is invalid:")
            for error in e.details.get("errors", []):
                print(f"  - [{error['type']}] {error['message']}")
            continue

        published += 1
        print(f"Published '{template['name']}' as {version.workflow_version_id} for category '{category}'")

    return published


def main():
    parser = argparse.ArgumentParser(description="Seed the built-in admissions workflows")
    parser.add_argument("--force", action="store_true", help="Publish even if the category already has one")
    args = parser.parse_args()

    count = seed_workflows(force=args.force)
    print(f"Done. {count} workflow(s) published.")


if __name__ == "__main__":
    main()
