"""Orchestrator: execution state, subscriptions, run launching and plan mode."""

from .launcher import RunLauncher
from .plan_mode import PlanModeController, transition
from .service import OrchestratorService, build_runtime
from .store import ExecutionStore
from .subscriptions import SubscriptionManager
from .validator import HeadlessPrompts, RepositoryAccessValidator, UserPrompts

__all__ = [
    "ExecutionStore",
    "HeadlessPrompts",
    "OrchestratorService",
    "PlanModeController",
    "RepositoryAccessValidator",
    "RunLauncher",
    "SubscriptionManager",
    "UserPrompts",
    "build_runtime",
    "transition",
]
