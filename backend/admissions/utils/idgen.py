"""Prefixed, human-scannable IDs

    WF-3f9c0a1b2c3d     workflow (draft)
    WFV-7d1e2f3a4b5c    published workflow version
    HIST-0a1b2c3d4e5f   history entry
    ACT-9e8d7c6b5a4f    outbox action
    COR-20240101120000-1a2b3c4d   correlation ID
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

_HEX_LENGTH = 12


def generate_id(prefix: Optional[str] = None) -> str:
    """12 hex characters of a UUID4, optionally behind `PREFIX-`"""
    token = uuid.uuid4().hex[:_HEX_LENGTH]
    return f"{prefix}-{token}" if prefix else token


def generate_workflow_id() -> str:
    return generate_id("WF")


def generate_workflow_version_id() -> str:
    return generate_id("WFV")


def generate_history_id() -> str:
    return generate_id("HIST")


def generate_action_id() -> str:
    return generate_id("ACT")


def generate_correlation_id() -> str:
    """Sortable by creation second, so log searches can narrow by time"""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"COR-{stamp}-{uuid.uuid4().hex[:8]}"
