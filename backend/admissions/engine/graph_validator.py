"""Graph Validator - Structural soundness checks before a definition is published"""
from collections import deque
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError

from ..domain.models import WorkflowDefinition
from .condition_evaluator import ConditionEvaluator
from ..utils.logger import get_logger

logger = get_logger(__name__)


class GraphValidator:
    """
    Validate a workflow definition and report every problem at once.

    Errors block publishing; warnings are advisory. Each issue is a dict:
    {"type", "message", "path"} plus "stage_id" / "transition_id" where one
    element is at fault.

    A stage is terminal only when flagged is_terminal. A stage with no
    outgoing transitions that is not flagged is reported as a dead end.
    """

    def __init__(self):
        self.condition_evaluator = ConditionEvaluator()

    def validate(self, definition: Union[WorkflowDefinition, Dict[str, Any], None]) -> Dict[str, Any]:
        """
        Validate a definition (parsed model or raw draft body)

        Returns:
            {"is_valid": bool, "errors": [...], "warnings": [...]}
        """
        errors: List[Dict[str, Any]] = []
        warnings: List[Dict[str, Any]] = []

        if definition is None:
            errors.append(self._issue("NO_DEFINITION", "Workflow has no definition", None))
            return self._result(errors, warnings)

        if not isinstance(definition, WorkflowDefinition):
            try:
                definition = WorkflowDefinition.model_validate(definition)
            except PydanticValidationError as e:
                for err in e.errors():
                    path = ".".join(str(part) for part in err.get("loc", ()))
                    errors.append(self._issue("SCHEMA_ERROR", f"Invalid definition: {path}: {err.get('msg')}", path))
                return self._result(errors, warnings)

        stage_ids = self._check_stages(definition, errors)
        self._check_start(definition, stage_ids, errors)
        self._check_transitions(definition, stage_ids, errors, warnings)
        dead_ends = self._check_terminals(definition, errors)
        self._check_paths(definition, stage_ids, dead_ends, errors)

        result = self._result(errors, warnings)
        logger.debug(
            f"Validated definition: {len(errors)} errors, {len(warnings)} warnings",
            extra={"status": "valid" if result["is_valid"] else "invalid"}
        )
        return result

    # =========================================================================
    # Checks
    # =========================================================================

    def _check_stages(self, definition: WorkflowDefinition, errors: List[Dict[str, Any]]) -> Set[str]:
        stage_ids: Set[str] = set()
        sequences: Dict[int, str] = {}

        if not definition.stages:
            errors.append(self._issue("EMPTY_STAGES", "Workflow must have at least one stage", "stages"))

        for i, stage in enumerate(definition.stages):
            if stage.stage_id in stage_ids:
                errors.append(self._issue(
                    "DUPLICATE_STAGE_ID",
                    f"Stage ID '{stage.stage_id}' is used more than once",
                    f"stages[{i}].stage_id",
                    stage_id=stage.stage_id
                ))
            stage_ids.add(stage.stage_id)

            if stage.sequence in sequences:
                errors.append(self._issue(
                    "DUPLICATE_SEQUENCE",
                    f"Stage '{stage.stage_id}' reuses sequence {stage.sequence} of stage '{sequences[stage.sequence]}'",
                    f"stages[{i}].sequence",
                    stage_id=stage.stage_id
                ))
            else:
                sequences[stage.sequence] = stage.stage_id

        return stage_ids

    def _check_start(
        self,
        definition: WorkflowDefinition,
        stage_ids: Set[str],
        errors: List[Dict[str, Any]]
    ) -> None:
        if not definition.start_stage_id:
            errors.append(self._issue("MISSING_START", "Workflow must have a start stage", "start_stage_id"))
        elif definition.start_stage_id not in stage_ids:
            errors.append(self._issue(
                "INVALID_START",
                f"Start stage '{definition.start_stage_id}' does not exist",
                "start_stage_id",
                stage_id=definition.start_stage_id
            ))

    def _check_transitions(
        self,
        definition: WorkflowDefinition,
        stage_ids: Set[str],
        errors: List[Dict[str, Any]],
        warnings: List[Dict[str, Any]]
    ) -> None:
        transition_ids: Set[str] = set()
        names_by_source: Dict[str, Set[str]] = {}

        for i, transition in enumerate(definition.transitions):
            path = f"transitions[{i}]"
            tid = transition.transition_id

            if tid in transition_ids:
                errors.append(self._issue(
                    "DUPLICATE_TRANSITION_ID",
                    f"Transition ID '{tid}' is used more than once",
                    f"{path}.transition_id",
                    transition_id=tid
                ))
            transition_ids.add(tid)

            if transition.source_stage_id not in stage_ids:
                errors.append(self._issue(
                    "INVALID_TRANSITION_SOURCE",
                    f"Transition '{tid}' starts at unknown stage '{transition.source_stage_id}'",
                    f"{path}.source_stage_id",
                    transition_id=tid
                ))
            if transition.target_stage_id not in stage_ids:
                errors.append(self._issue(
                    "INVALID_TRANSITION_TARGET",
                    f"Transition '{tid}' points to unknown stage '{transition.target_stage_id}'",
                    f"{path}.target_stage_id",
                    transition_id=tid
                ))

            normalised = transition.name.strip().lower()
            seen = names_by_source.setdefault(transition.source_stage_id, set())
            if normalised in seen:
                errors.append(self._issue(
                    "DUPLICATE_TRANSITION_NAME",
                    f"Stage '{transition.source_stage_id}' has more than one transition named '{transition.name}'",
                    f"{path}.name",
                    transition_id=tid,
                    stage_id=transition.source_stage_id
                ))
            seen.add(normalised)

            has_condition = bool(transition.condition and transition.condition.strip())
            if has_condition:
                syntax_error = self.condition_evaluator.check_syntax(transition.condition)
                if syntax_error:
                    errors.append(self._issue(
                        "INVALID_CONDITION",
                        f"Condition of transition '{tid}' does not parse: {syntax_error}",
                        f"{path}.condition",
                        transition_id=tid
                    ))

            if transition.is_automatic and not has_condition:
                warnings.append(self._issue(
                    "AUTOMATIC_WITHOUT_CONDITION",
                    f"Automatic transition '{tid}' has no condition and fires on the next sweep",
                    f"{path}.condition",
                    transition_id=tid
                ))
            if transition.is_automatic and transition.required_permissions:
                warnings.append(self._issue(
                    "AUTOMATIC_PERMISSIONS_IGNORED",
                    f"Automatic transition '{tid}' lists permissions that automatic sweeps do not check",
                    f"{path}.required_permissions",
                    transition_id=tid
                ))

    def _check_terminals(self, definition: WorkflowDefinition, errors: List[Dict[str, Any]]) -> Set[str]:
        """Returns the dead-end stage IDs so path checks do not report them twice"""
        dead_ends: Set[str] = set()
        has_terminal = False

        for i, stage in enumerate(definition.stages):
            outgoing = definition.outgoing(stage.stage_id)
            if stage.is_terminal:
                has_terminal = True
                if outgoing:
                    errors.append(self._issue(
                        "TERMINAL_HAS_OUTGOING",
                        f"Terminal stage '{stage.stage_id}' has {len(outgoing)} outgoing transition(s)",
                        f"stages[{i}].is_terminal",
                        stage_id=stage.stage_id
                    ))
            elif not outgoing:
                dead_ends.add(stage.stage_id)
                errors.append(self._issue(
                    "DEAD_END_STAGE",
                    f"Stage '{stage.stage_id}' has no outgoing transitions and is not marked terminal",
                    f"stages[{i}]",
                    stage_id=stage.stage_id
                ))

        if definition.stages and not has_terminal:
            errors.append(self._issue("NO_TERMINAL", "Workflow must have at least one terminal stage", "stages"))

        return dead_ends

    def _check_paths(
        self,
        definition: WorkflowDefinition,
        stage_ids: Set[str],
        dead_ends: Set[str],
        errors: List[Dict[str, Any]]
    ) -> None:
        edges = [
            (t.source_stage_id, t.target_stage_id)
            for t in definition.transitions
            if t.source_stage_id in stage_ids and t.target_stage_id in stage_ids
        ]

        if definition.start_stage_id in stage_ids:
            reachable = self._find_reachable([definition.start_stage_id], edges)
            for i, stage in enumerate(definition.stages):
                if stage.stage_id not in reachable:
                    errors.append(self._issue(
                        "UNREACHABLE_STAGE",
                        f"Stage '{stage.stage_id}' is not reachable from start stage '{definition.start_stage_id}'",
                        f"stages[{i}]",
                        stage_id=stage.stage_id
                    ))

        terminals = [s.stage_id for s in definition.stages if s.is_terminal]
        if not terminals:
            return  # NO_TERMINAL already covers every stage

        reversed_edges = [(target, source) for source, target in edges]
        can_finish = self._find_reachable(terminals, reversed_edges)
        for i, stage in enumerate(definition.stages):
            if stage.stage_id not in can_finish and stage.stage_id not in dead_ends:
                errors.append(self._issue(
                    "NO_PATH_TO_TERMINAL",
                    f"Stage '{stage.stage_id}' has no path to a terminal stage",
                    f"stages[{i}]",
                    stage_id=stage.stage_id
                ))

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _find_reachable(starts: Iterable[str], edges: List[tuple]) -> Set[str]:
        """Breadth-first closure over (from, to) edges"""
        adjacency: Dict[str, List[str]] = {}
        for source, target in edges:
            adjacency.setdefault(source, []).append(target)

        reachable = set(starts)
        queue = deque(reachable)
        while queue:
            current = queue.popleft()
            for nxt in adjacency.get(current, []):
                if nxt not in reachable:
                    reachable.add(nxt)
                    queue.append(nxt)
        return reachable

    @staticmethod
    def _issue(
        issue_type: str,
        message: str,
        path: Optional[str],
        stage_id: Optional[str] = None,
        transition_id: Optional[str] = None
    ) -> Dict[str, Any]:
        issue: Dict[str, Any] = {"type": issue_type, "message": message, "path": path}
        if stage_id is not None:
            issue["stage_id"] = stage_id
        if transition_id is not None:
            issue["transition_id"] = transition_id
        return issue

    @staticmethod
    def _result(errors: List[Dict[str, Any]], warnings: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {"is_valid": not errors, "errors": errors, "warnings": warnings}
