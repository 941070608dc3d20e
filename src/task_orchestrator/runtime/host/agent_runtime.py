"""Agent runtime protocol and the fallback used when none is configured."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Optional, Protocol

from ...config import DEFAULT_PERMISSION_MODE
from ..domain.models import Credentials
from .sessions import CancellationToken

RunPurpose = Literal["workflow", "research", "planning"]
Emit = Callable[[dict[str, Any]], None]


class AgentRuntimeError(RuntimeError):
    """Raised when the agent runtime fails to complete a run."""


def _ignore_stderr(line: str) -> None:
    return None


@dataclass
class RuntimeRequest:
    """Everything an agent runtime needs to execute one run.

    ``env`` already holds the credential variables; ``stderr`` receives raw
    diagnostic lines and ``token`` is set when the run is cancelled.
    """
    task_id: str
    repo_path: str
    credentials: Credentials
    purpose: RunPurpose = "workflow"
    workflow_id: Optional[str] = None
    permission_mode: str = DEFAULT_PERMISSION_MODE
    auto_progress: bool = True
    create_pr: bool = True
    model: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)
    token: CancellationToken = field(default_factory=CancellationToken)
    stderr: Callable[[str], None] = _ignore_stderr


class AgentRuntime(Protocol):
    """Contract of the external component that plans and edits code."""
    async def run_workflow(self, request: RuntimeRequest, emit: Emit) -> None:
        """Execute the task's workflow, emitting agent events until it finishes.

        Args:
            request (RuntimeRequest): Run parameters, environment and cancellation token.
            emit (Emit): Sink for agent events produced while the run is live.

        Raises:
            AgentRuntimeError: If the run fails.
        """
        ...

    async def run_prompt(self, request: RuntimeRequest, prompt: str, emit: Emit) -> str:
        """Run a single prompt and return the agent's final text.

        Args:
            request (RuntimeRequest): Run parameters, environment and cancellation token.
            prompt (str): Fully rendered prompt.
            emit (Emit): Sink for agent events produced while the run is live.

        Returns:
            str: Final text answer of the agent.
        """
        ...

    def cancel_task(self, task_id: str) -> None:
        """Best-effort request to stop whatever the runtime is doing for ``task_id``."""
        ...



NO_RUNTIME_MESSAGE = "No agent runtime configured; set runtime.command in config.yaml"


class UnconfiguredAgentRuntime:
    """Runtime in place when no agent command is configured; every run fails."""
    async def run_workflow(self, request: RuntimeRequest, emit: Emit) -> None:
        raise AgentRuntimeError(NO_RUNTIME_MESSAGE)

    async def run_prompt(self, request: RuntimeRequest, prompt: str, emit: Emit) -> str:
        raise AgentRuntimeError(NO_RUNTIME_MESSAGE)

    def cancel_task(self, task_id: str) -> None:
        return None
