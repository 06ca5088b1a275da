"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional
from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from .enums import ActionKind, ActionStatus, WorkflowStatus
from ..utils.time import ensure_utc


# Stored dates come back naive from drivers that are not tz-aware
UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


# ============================================================================
# Actor
# ============================================================================

class ActorContext(BaseModel):
    """Actor resolved from the request header and the identity service"""
    model_config = ConfigDict(extra="forbid")

    actor_id: str = Field(..., description="Identity service actor ID")
    display_name: Optional[str] = None
    permissions: List[str] = Field(default_factory=list, description="Resolved permission tags")
    is_system: bool = Field(default=False, description="Engine-initiated (automatic sweeps)")


SYSTEM_ACTOR = ActorContext(actor_id="system", display_name="Workflow Engine", is_system=True)


# ============================================================================
# Workflow Graph
# ============================================================================

class Stage(BaseModel):
    """A state an application can occupy"""
    model_config = ConfigDict(extra="ignore")

    stage_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    sequence: int = Field(..., description="Display ordering only")
    required_documents: List[str] = Field(default_factory=list)
    required_actions: List[str] = Field(default_factory=list)
    notification_triggers: List[str] = Field(default_factory=list, description="Notification tags sent on entry")
    integration_triggers: List[str] = Field(default_factory=list, description="Integration tags synced on entry")
    assigned_role: Optional[str] = None
    is_terminal: bool = False


class Transition(BaseModel):
    """Directed, optionally guarded edge between two stages of one definition"""
    model_config = ConfigDict(extra="ignore")

    transition_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    source_stage_id: str
    target_stage_id: str
    condition: Optional[str] = Field(default=None, description="Guard expression")
    required_permissions: List[str] = Field(default_factory=list)
    is_automatic: bool = False
    priority: int = Field(default=0, description="Higher is evaluated first")


class WorkflowDefinition(BaseModel):
    """Stage/transition graph; list order of transitions is the authoring order"""
    model_config = ConfigDict(extra="ignore")

    start_stage_id: Optional[str] = None
    stages: List[Stage] = Field(default_factory=list)
    transitions: List[Transition] = Field(default_factory=list)

    def get_stage(self, stage_id: Optional[str]) -> Optional[Stage]:
        for stage in self.stages:
            if stage.stage_id == stage_id:
                return stage
        return None

    def get_transition(self, transition_id: str) -> Optional[Transition]:
        for transition in self.transitions:
            if transition.transition_id == transition_id:
                return transition
        return None

    def outgoing(self, stage_id: str) -> List[Transition]:
        """Transitions leaving a stage, in authoring order"""
        return [t for t in self.transitions if t.source_stage_id == stage_id]


class WorkflowTemplate(BaseModel):
    """Workflow template (free-form draft + metadata)"""
    model_config = ConfigDict(extra="ignore", use_enum_values=True, validate_default=True)

    workflow_id: str
    name: str
    description: Optional[str] = None
    applicant_category: str
    status: WorkflowStatus = WorkflowStatus.DRAFT
    definition: Optional[Dict[str, Any]] = Field(default=None, description="Draft body, unvalidated")
    created_by: str
    created_at: UtcDatetime
    updated_at: UtcDatetime
    current_version: Optional[int] = Field(default=None, description="Latest published version number")
    version: int = Field(default=1, description="Optimistic concurrency version")


class WorkflowVersion(BaseModel):
    """Published workflow version (immutable)"""
    model_config = ConfigDict(extra="ignore")

    workflow_version_id: str
    workflow_id: str
    version_number: int
    name: str
    description: Optional[str] = None
    applicant_category: str
    definition: WorkflowDefinition
    published_by: str
    published_at: UtcDatetime
    change_summary: Optional[str] = None


class ActiveDefinitionPointer(BaseModel):
    """The one record naming the version new applications of a category bind to"""
    model_config = ConfigDict(extra="ignore")

    applicant_category: str
    workflow_id: str
    workflow_version_id: str
    version_number: int
    activated_by: str
    activated_at: UtcDatetime


# ============================================================================
# Application Runtime
# ============================================================================

class ApplicationWorkflowState(BaseModel):
    """Current position of one application; mutated only by the engine"""
    model_config = ConfigDict(extra="ignore")

    application_id: str
    applicant_category: str
    workflow_id: str
    workflow_version_id: str
    version_number: int
    current_stage_id: str
    clock: int = Field(default=0, description="Sequence of the last applied history entry")
    entered_stage_at: UtcDatetime
    last_history_id: Optional[str] = None
    last_transition_at: Optional[UtcDatetime] = None
    in_terminal_stage: bool = False
    created_at: UtcDatetime
    updated_at: UtcDatetime


class HistoryEntry(BaseModel):
    """One realised stage change (append-only)"""
    model_config = ConfigDict(extra="ignore")

    history_id: str
    application_id: str
    sequence: int = Field(..., ge=1)
    from_stage_id: str
    to_stage_id: str
    transition_id: str
    transition_name: str
    actor_id: str
    automatic: bool = False
    timestamp: UtcDatetime
    condition_result: Optional[bool] = Field(default=None, description="None when the transition is unguarded")
    workflow_version_id: str
    correlation_id: Optional[str] = None


class StageChanged(BaseModel):
    """Event published after every committed transition"""
    application_id: str
    from_stage_id: str
    to_stage_id: str
    transition_id: str
    history_id: str
    sequence: int
    workflow_version_id: str
    automatic: bool
    occurred_at: UtcDatetime

    @classmethod
    def from_entry(cls, entry: HistoryEntry) -> "StageChanged":
        return cls(
            application_id=entry.application_id,
            from_stage_id=entry.from_stage_id,
            to_stage_id=entry.to_stage_id,
            transition_id=entry.transition_id,
            history_id=entry.history_id,
            sequence=entry.sequence,
            workflow_version_id=entry.workflow_version_id,
            automatic=entry.automatic,
            occurred_at=entry.timestamp
        )


class CommittedTransition(BaseModel):
    """Result of a successful transition attempt"""
    entry: HistoryEntry
    state: ApplicationWorkflowState


class AvailableTransition(BaseModel):
    """Outgoing transition as seen by a particular actor"""
    transition_id: str
    name: str
    target_stage_id: str
    target_stage_name: Optional[str] = None
    is_automatic: bool
    available: bool
    reason_code: Optional[str] = None
    reason: Optional[str] = None
    missing_permissions: List[str] = Field(default_factory=list)


class StageRequirements(BaseModel):
    """Document and action requirements of the current stage"""
    stage_id: str
    stage_name: str
    required_documents: List[str] = Field(default_factory=list)
    verified_documents: List[str] = Field(default_factory=list)
    missing_documents: List[str] = Field(default_factory=list)
    required_actions: List[str] = Field(default_factory=list)
    completed_actions: List[str] = Field(default_factory=list)
    pending_actions: List[str] = Field(default_factory=list)
    is_complete: bool


# ============================================================================
# Action Outbox
# ============================================================================

class ActionRecord(BaseModel):
    """Side effect in the outbox"""
    model_config = ConfigDict(extra="ignore", use_enum_values=True, validate_default=True)

    action_id: str
    idempotency_key: str
    kind: ActionKind
    tag: str
    application_id: Optional[str] = None
    history_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: ActionStatus = ActionStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[UtcDatetime] = None
    locked_until: Optional[UtcDatetime] = None
    locked_by: Optional[str] = None
    lock_acquired_at: Optional[UtcDatetime] = None
    created_at: UtcDatetime
    delivered_at: Optional[UtcDatetime] = None
    dead_lettered_at: Optional[UtcDatetime] = None
