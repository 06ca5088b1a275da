"""
Validate Workflow Script - Prints a validation report

Usage:
    python -m scripts.validate_workflow WF-1234abcd
    python -m scripts.validate_workflow --file definition.json
"""
import argparse
import json
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from admissions.domain.errors import WorkflowNotFoundError
from admissions.engine.graph_validator import GraphValidator


def load_definition(workflow_id=None, path=None):
    """Draft of a stored workflow, or a definition read from a JSON file"""
    if path:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        # Accept either a bare definition or a template with a "definition" key
        return data.get("definition", data) if isinstance(data, dict) else data

    from admissions.repositories.workflow_repo import WorkflowRepository
    workflow = WorkflowRepository().get_workflow_or_raise(workflow_id)
    print(f"Found workflow: {workflow.name} ({workflow.applicant_category}, {workflow.status})")
    return workflow.definition


def print_report(result) -> None:
    print("=" * 60)
    print("VALIDATION REPORT")
    print("=" * 60)

    if result["is_valid"]:
        print("\nValid: the workflow can be published.")
    else:
        print(f"\nErrors ({len(result['errors'])}):")
        for error in result["errors"]:
            location = f" at {error['path']}" if error.get("path") else ""
            print(f"  - [{error['type']}] {error['message']}{location}")

    if result["warnings"]:
        print(f"\nWarnings ({len(result['warnings'])}):")
        for warning in result["warnings"]:
            print(f"  - [{warning['type']}] {warning['message']}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate a workflow definition")
    parser.add_argument("workflow_id", nargs="?", help="Stored workflow ID")
    parser.add_argument("--file", help="JSON file holding a definition")
    args = parser.parse_args()

    if not args.workflow_id and not args.file:
        parser.error("Give a workflow ID or --file")

    try:
        definition = load_definition(args.workflow_id, args.file)
    except WorkflowNotFoundError as e:
        print(e.message)
        return 2
    except (OSError, json.JSONDecodeError) as e:
        print(f"Cannot read definition: {e}")
        return 2

    result = GraphValidator().validate(definition)
    print_report(result)
    return 0 if result["is_valid"] else 1


if __name__ == "__main__":
    sys.exit(main())
