"""
Backend Scripts Module

Available scripts:
    - seed_data.py: Publishes the built-in admissions workflows
    - validate_workflow.py: Prints a validation report for a workflow

Usage:
    python -m scripts.seed_data
    python -m scripts.validate_workflow WF-1234abcd
"""
