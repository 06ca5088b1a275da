"""Workflow Engine - The brain of the system"""
from .engine import WorkflowEngine
from .permission_guard import PermissionGuard
from .transition_resolver import TransitionResolver
from .condition_evaluator import ConditionEvaluator
from .graph_validator import GraphValidator
from .history_ledger import HistoryLedger
from .action_dispatcher import ActionDispatcher
from .definition_cache import DefinitionCache, get_definition_cache
from .events import StageEventBus, get_event_bus

__all__ = [
    "WorkflowEngine",
    "PermissionGuard",
    "TransitionResolver",
    "ConditionEvaluator",
    "GraphValidator",
    "HistoryLedger",
    "ActionDispatcher",
    "DefinitionCache",
    "get_definition_cache",
    "StageEventBus",
    "get_event_bus",
]
