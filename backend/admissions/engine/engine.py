"""
Workflow Engine - State machine executor for admissions applications

This module contains the WorkflowEngine class, the only writer of
application workflow state.

=============================================================================
MODULE STRUCTURE
=============================================================================

1. INITIALIZATION
   - Constructor with repository, cache and service dependencies

2. APPLICATION START
   - start_application: Bind an application to the active version

3. TRANSITIONS
   - attempt_transition: Lock, resolve, commit, publish
   - evaluate_automatic: Non-blocking automatic sweep
   - _attempt_locked: Resolve and commit under the application lock
   - _load_state: Load state, rolling forward a committed history entry

4. QUERIES
   - get_state, timeline, available_transitions, stage_requirements

=============================================================================
COMMIT PROTOCOL
=============================================================================

A transition commits in two writes:
    1. Append HistoryEntry(sequence = clock + 1). The unique
       (application_id, sequence) index makes this the commit point.
    2. Advance the state with a compare-and-set on clock.

A worker that dies between the writes leaves history one entry ahead of the
state; the next reader rolls the state forward from history and enqueues
the actions the dead writer never got to. Idempotency keys derive from the
history entry, so enqueueing twice is harmless.
"""
import os
import socket
from datetime import timedelta
from typing import List, Optional

from ..config.settings import settings
from ..domain.models import (
    SYSTEM_ACTOR,
    ActorContext,
    ApplicationWorkflowState,
    AvailableTransition,
    CommittedTransition,
    HistoryEntry,
    StageChanged,
    StageRequirements,
    Transition,
    WorkflowDefinition,
    WorkflowVersion,
)
from ..domain.enums import DocumentStatus
from ..domain.errors import (
    BusyError,
    ConcurrencyError,
    ConflictError,
    InvalidStateError,
)
from ..repositories.application_state_repo import ApplicationStateRepository
from ..repositories.lock_repo import ApplicationLockRepository
from .action_dispatcher import ActionDispatcher
from .definition_cache import DefinitionCache, get_definition_cache
from .events import StageEventBus, get_event_bus
from .history_ledger import HistoryLedger
from .transition_resolver import TransitionResolver
from ..services.context_builder import ContextBuilder
from ..utils.idgen import generate_history_id, generate_id
from ..utils.logger import get_correlation_id, get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class WorkflowEngine:
    """
    The Workflow Engine - moves applications between stages

    Responsibilities:
    - Bind new applications to the active workflow version of their category
    - Fire manual transitions after stage, permission and guard checks
    - Fire at most one automatic transition per sweep
    - Keep history gapless and strictly ordered per application
    - Enqueue stage-entry actions and publish StageChanged after commit
    """

    def __init__(
        self,
        state_repo: Optional[ApplicationStateRepository] = None,
        ledger: Optional[HistoryLedger] = None,
        lock_repo: Optional[ApplicationLockRepository] = None,
        cache: Optional[DefinitionCache] = None,
        context_builder: Optional[ContextBuilder] = None,
        dispatcher: Optional[ActionDispatcher] = None,
        resolver: Optional[TransitionResolver] = None,
        event_bus: Optional[StageEventBus] = None
    ):
        self.state_repo = state_repo or ApplicationStateRepository()
        self.ledger = ledger or HistoryLedger()
        self.lock_repo = lock_repo or ApplicationLockRepository()
        self.cache = cache or get_definition_cache()
        self.context_builder = context_builder or ContextBuilder()
        self.dispatcher = dispatcher or ActionDispatcher()
        self.resolver = resolver or TransitionResolver()
        self.event_bus = event_bus or get_event_bus()
        self._server_id = f"{socket.gethostname()}-{os.getpid()}"

    # =========================================================================
    # Application Start
    # =========================================================================

    def start_application(
        self,
        application_id: str,
        applicant_category: str,
        actor: ActorContext,
        correlation_id: Optional[str] = None
    ) -> ApplicationWorkflowState:
        """
        Put an application at the start stage of its category's active version.

        The binding is permanent: later publications do not move it.

        Raises:
            ActiveWorkflowNotFoundError: Nothing is active for the category
            AlreadyExistsError: The application already has workflow state
        """
        correlation_id = correlation_id or get_correlation_id()
        version = self.cache.get_active_version(applicant_category)
        definition = version.definition
        start_stage = definition.get_stage(definition.start_stage_id)
        if start_stage is None:
            raise InvalidStateError(
                f"Workflow version {version.workflow_version_id} has no start stage",
                details={"workflow_version_id": version.workflow_version_id}
            )

        now = utc_now()
        state = ApplicationWorkflowState(
            application_id=application_id,
            applicant_category=applicant_category,
            workflow_id=version.workflow_id,
            workflow_version_id=version.workflow_version_id,
            version_number=version.version_number,
            current_stage_id=start_stage.stage_id,
            clock=0,
            entered_stage_at=now,
            in_terminal_stage=start_stage.is_terminal,
            created_at=now,
            updated_at=now
        )
        self.state_repo.create_state(state)

        logger.info(
            f"Application started workflow {version.workflow_id} v{version.version_number}",
            extra={
                "application_id": application_id,
                "applicant_category": applicant_category,
                "workflow_version_id": version.workflow_version_id,
                "actor_id": actor.actor_id
            }
        )

        try:
            self.dispatcher.enqueue_stage_actions(
                start_stage,
                application_id,
                key_prefix=f"START-{application_id}",
                payload={
                    "application_id": application_id,
                    "to_stage_id": start_stage.stage_id,
                    "stage_name": start_stage.name,
                    "workflow_version_id": version.workflow_version_id,
                    "correlation_id": correlation_id,
                }
            )
        except Exception as e:
            # State is already committed; a missed start notification must not undo it
            logger.error(
                f"Failed to enqueue start-stage actions: {e}",
                extra={"application_id": application_id},
                exc_info=True
            )

        return state

    # =========================================================================
    # Transitions
    # =========================================================================

    def attempt_transition(
        self,
        application_id: str,
        transition_id: Optional[str] = None,
        actor: ActorContext = SYSTEM_ACTOR,
        correlation_id: Optional[str] = None,
        wait: bool = True
    ) -> Optional[CommittedTransition]:
        """
        Fire a transition for an application.

        With a transition_id the transition is manual; without one the
        automatic transitions of the current stage are evaluated and at most
        one fires.

        Returns:
            The committed transition, or None when no automatic transition applies

        Raises:
            ApplicationNotFoundError: No workflow state for the application
            BusyError: The application lock could not be acquired in time
            TransitionNotFoundError, NotFromCurrentStageError,
            PermissionDeniedError, ConditionNotMetError: Manual trigger refused
            ConflictError: Concurrent writers kept winning
            FactSourceError: Facts could not be fetched
        """
        correlation_id = correlation_id or get_correlation_id()
        self.state_repo.get_state_or_raise(application_id)

        lock_id = f"{self._server_id}-{generate_id()[:8]}"
        acquired = self.lock_repo.acquire(
            application_id,
            lock_id,
            lease_seconds=settings.transition_lock_lease_seconds,
            wait_seconds=settings.transition_lock_wait_seconds if wait else 0,
            poll_interval_seconds=settings.transition_lock_poll_interval_seconds
        )
        if not acquired:
            raise BusyError(
                f"Application {application_id} is being updated, try again shortly",
                details={"application_id": application_id}
            )

        try:
            result = self._attempt_locked(application_id, transition_id, actor, correlation_id)
        finally:
            self.lock_repo.release(application_id, lock_id)

        if result is None:
            return None

        committed, definition = result
        self._after_commit(committed, definition, correlation_id)
        return committed

    def evaluate_automatic(
        self,
        application_id: str,
        correlation_id: Optional[str] = None,
        wait: bool = False
    ) -> Optional[CommittedTransition]:
        """
        Automatic sweep. Does not wait for the lock and drops silently when busy.

        Calling it again without a change in facts fires nothing more than
        the stage the first call left the application in allows.
        """
        try:
            return self.attempt_transition(
                application_id,
                transition_id=None,
                actor=SYSTEM_ACTOR,
                correlation_id=correlation_id,
                wait=wait
            )
        except BusyError:
            logger.debug(
                f"Automatic sweep skipped, application {application_id} is busy",
                extra={"application_id": application_id}
            )
            return None

    def _attempt_locked(
        self,
        application_id: str,
        transition_id: Optional[str],
        actor: ActorContext,
        correlation_id: Optional[str]
    ) -> Optional[tuple]:
        """Resolve and commit; returns (CommittedTransition, definition) or None"""
        max_attempts = max(settings.transition_max_conflict_retries, 1)

        for attempt in range(1, max_attempts + 1):
            state = self._load_state(application_id)
            version = self.cache.get_version(state.workflow_version_id)
            definition = version.definition

            if transition_id is not None:
                transition = self.resolver.resolve_manual(
                    definition, state.current_stage_id, transition_id, actor
                )
                condition_result = None
                if self._is_guarded(transition):
                    context = self.context_builder.build(state, definition)
                    condition_result = self.resolver.check_guard(transition, context)
                automatic = False
            else:
                candidates = self.resolver.automatic_candidates(definition, state.current_stage_id)
                if not candidates:
                    return None
                context = {"application_id": application_id}
                if any(self._is_guarded(t) for t in candidates):
                    context = self.context_builder.build(state, definition)
                transition = self.resolver.select_automatic(definition, state.current_stage_id, context)
                if transition is None:
                    return None
                condition_result = True if self._is_guarded(transition) else None
                automatic = True

            entry = HistoryEntry(
                history_id=generate_history_id(),
                application_id=application_id,
                sequence=state.clock + 1,
                from_stage_id=state.current_stage_id,
                to_stage_id=transition.target_stage_id,
                transition_id=transition.transition_id,
                transition_name=transition.name,
                actor_id=actor.actor_id,
                automatic=automatic,
                timestamp=self._next_timestamp(state),
                condition_result=condition_result,
                workflow_version_id=state.workflow_version_id,
                correlation_id=correlation_id
            )

            try:
                self.ledger.append(entry)
            except ConcurrencyError:
                logger.warning(
                    f"History slot {entry.sequence} taken, retrying ({attempt}/{max_attempts})",
                    extra={"application_id": application_id, "transition_id": transition.transition_id}
                )
                continue

            new_state = self._advance(state, entry, definition)
            if new_state is None:
                logger.warning(
                    f"State moved concurrently, retrying ({attempt}/{max_attempts})",
                    extra={"application_id": application_id, "transition_id": transition.transition_id}
                )
                continue

            logger.info(
                f"Transition {transition.name}: {entry.from_stage_id} -> {entry.to_stage_id}",
                extra={
                    "application_id": application_id,
                    "transition_id": transition.transition_id,
                    "history_id": entry.history_id,
                    "actor_id": actor.actor_id,
                    "stage_id": entry.to_stage_id
                }
            )
            return CommittedTransition(entry=entry, state=new_state), definition

        raise ConflictError(
            f"Application {application_id} kept changing concurrently, giving up after {max_attempts} attempts",
            details={"application_id": application_id, "attempts": max_attempts}
        )

    def _advance(
        self,
        state: ApplicationWorkflowState,
        entry: HistoryEntry,
        definition: WorkflowDefinition
    ) -> Optional[ApplicationWorkflowState]:
        """
        Apply our freshly appended history entry to the state.

        A failed compare-and-set still counts as committed when the entry
        made it into the state anyway: a reader rolled it forward, possibly
        with later transitions on top.

        Returns:
            The state as of entry, or None if the entry was superseded
        """
        try:
            return self.state_repo.advance(
                state.application_id,
                expected_clock=state.clock,
                entry=entry,
                in_terminal_stage=self._is_terminal(definition, entry.to_stage_id)
            )
        except ConcurrencyError:
            current = self.state_repo.get_state_or_raise(state.application_id)
            if current.clock == entry.sequence and current.last_history_id == entry.history_id:
                return current
            if current.clock > entry.sequence:
                recorded = self.ledger.at_sequence(entry.application_id, entry.sequence)
                if recorded is not None and recorded.history_id == entry.history_id:
                    return state.model_copy(update={
                        "current_stage_id": entry.to_stage_id,
                        "clock": entry.sequence,
                        "entered_stage_at": entry.timestamp,
                        "last_history_id": entry.history_id,
                        "last_transition_at": entry.timestamp,
                        "in_terminal_stage": self._is_terminal(definition, entry.to_stage_id)
                    })
            return None

    def _load_state(self, application_id: str) -> ApplicationWorkflowState:
        """
        Load state, applying any history entries it lags behind.

        Entries rolled forward here belong to a writer that died before
        advancing the state, so their actions and event are emitted here.
        """
        state = self.state_repo.get_state_or_raise(application_id)
        latest = self.ledger.latest(application_id)
        if latest is None or latest.sequence <= state.clock:
            return state

        definition = self.cache.get_version(state.workflow_version_id).definition
        for entry in self.ledger.timeline(application_id):
            if entry.sequence <= state.clock:
                continue
            logger.warning(
                f"Rolling state forward to history sequence {entry.sequence}",
                extra={"application_id": application_id, "history_id": entry.history_id}
            )
            try:
                state = self.state_repo.advance(
                    application_id,
                    expected_clock=state.clock,
                    entry=entry,
                    in_terminal_stage=self._is_terminal(definition, entry.to_stage_id)
                )
            except ConcurrencyError:
                # Another reader is rolling forward too
                state = self.state_repo.get_state_or_raise(application_id)
                continue
            self._after_commit(CommittedTransition(entry=entry, state=state), definition, entry.correlation_id)
        return state

    def _after_commit(
        self,
        committed: CommittedTransition,
        definition: WorkflowDefinition,
        correlation_id: Optional[str]
    ) -> None:
        """Enqueue stage-entry actions and notify subscribers"""
        event = StageChanged.from_entry(committed.entry)
        target = definition.get_stage(committed.entry.to_stage_id)

        if target is not None:
            try:
                self.dispatcher.on_stage_changed(event, target, correlation_id)
            except Exception as e:
                logger.error(
                    f"Failed to enqueue actions for stage {target.stage_id}: {e}",
                    extra={"application_id": event.application_id, "history_id": event.history_id},
                    exc_info=True
                )

        self.event_bus.publish(event)

    @staticmethod
    def _is_terminal(definition: WorkflowDefinition, stage_id: str) -> bool:
        stage = definition.get_stage(stage_id)
        return bool(stage and stage.is_terminal)

    @staticmethod
    def _is_guarded(transition: Transition) -> bool:
        return bool(transition.condition and transition.condition.strip())

    @staticmethod
    def _next_timestamp(state: ApplicationWorkflowState):
        """Now, or 1ms after the previous transition if the clock has not moved past it"""
        now = utc_now()
        if state.last_transition_at is not None and now <= state.last_transition_at:
            return state.last_transition_at + timedelta(milliseconds=1)
        return now

    # =========================================================================
    # Queries
    # =========================================================================

    def get_state(self, application_id: str) -> ApplicationWorkflowState:
        return self._load_state(application_id)

    def get_bound_version(self, application_id: str) -> WorkflowVersion:
        state = self.state_repo.get_state_or_raise(application_id)
        return self.cache.get_version(state.workflow_version_id)

    def timeline(self, application_id: str) -> List[HistoryEntry]:
        """Stage changes ordered by sequence"""
        self.state_repo.get_state_or_raise(application_id)
        return self.ledger.timeline(application_id)

    def available_transitions(self, application_id: str, actor: ActorContext) -> List[AvailableTransition]:
        """
        Outgoing transitions of the current stage with availability for actor.

        Guards are evaluated only when a manual transition the actor may
        take has one.
        """
        state = self._load_state(application_id)
        definition = self.cache.get_version(state.workflow_version_id).definition

        needs_context = any(
            not t.is_automatic
            and self._is_guarded(t)
            and self.resolver.permission_guard.authorize(actor, t)
            for t in definition.outgoing(state.current_stage_id)
        )
        context = self.context_builder.build(state, definition) if needs_context else None
        return self.resolver.describe_available(definition, state.current_stage_id, actor, context)

    def stage_requirements(self, application_id: str) -> StageRequirements:
        """Which required documents and actions of the current stage are outstanding"""
        state = self._load_state(application_id)
        definition = self.cache.get_version(state.workflow_version_id).definition
        stage = definition.get_stage(state.current_stage_id)
        context = self.context_builder.build(state, definition)

        documents = context["documents"]
        verified = [
            tag for tag in stage.required_documents
            if documents.get(tag) == DocumentStatus.VERIFIED.value
        ]
        missing = [tag for tag in stage.required_documents if tag not in verified]

        completed_actions = set(context.get("completed_actions") or [])
        completed = [a for a in stage.required_actions if a in completed_actions]
        pending = [a for a in stage.required_actions if a not in completed_actions]

        return StageRequirements(
            stage_id=stage.stage_id,
            stage_name=stage.name,
            required_documents=list(stage.required_documents),
            verified_documents=verified,
            missing_documents=missing,
            required_actions=list(stage.required_actions),
            completed_actions=completed,
            pending_actions=pending,
            is_complete=not missing and not pending
        )
