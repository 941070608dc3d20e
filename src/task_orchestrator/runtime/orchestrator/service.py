"""Orchestrator service wiring the store, host, launcher and plan mode together."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Mapping, Optional

from ...config import OrchestratorSettings
from .. import artifacts
from ..domain.models import ExecutionMode, ExecutionState, QuestionAnswer, RunMode, TaskSpec
from ..events.hub import ChannelHub
from ..events.ws import hub
from ..host.agent_runtime import AgentRuntime, UnconfiguredAgentRuntime
from ..host.command_runtime import CommandAgentRuntime
from ..host.service import AgentHost
from ..remote.auth import AuthProvider
from ..remote.client import TaskApiClient
from ..storage.container import Container
from .launcher import RemoteClientFactory, RunLauncher
from .plan_mode import PlanModeController
from .store import ExecutionStore
from .subscriptions import SubscriptionManager
from .validator import HeadlessPrompts, RepositoryAccessValidator, UserPrompts, has_write_access, is_git_work_tree

logger = logging.getLogger(__name__)


def build_runtime(settings: OrchestratorSettings) -> AgentRuntime:
    """Pick the external command runtime; without one every run fails with a clear error."""
    if settings.runtime_command:
        return CommandAgentRuntime(settings.runtime_command)
    return UnconfiguredAgentRuntime()


class OrchestratorService:
    """Entry point for every user action on task execution."""
    def __init__(
        self,
        container: Container,
        *,
        runtime: Optional[AgentRuntime] = None,
        prompts: Optional[UserPrompts] = None,
        remote_clients: RemoteClientFactory = TaskApiClient,
        is_repository: Callable[[str], bool] = is_git_work_tree,
        can_write: Callable[[str], bool] = has_write_access,
        environ: Optional[Mapping[str, str]] = None,
        with_host: bool = True,
    ) -> None:
        """Initialize the OrchestratorService.

        Args:
            container (Container): Storage and configuration for the project.
            runtime (Optional[AgentRuntime]): Agent runtime; built from settings when omitted.
            prompts (Optional[UserPrompts]): User interaction; headless when omitted.
            remote_clients (RemoteClientFactory): Builds remote API clients per credential pair.
            is_repository (Callable[[str], bool]): Version-control check for working directories.
            can_write (Callable[[str], bool]): Write-access check for working directories.
            environ (Optional[Mapping[str, str]]): Environment consulted for credential overrides.
            with_host (bool): When false no execution host is available and local runs fail to start.
        """
        self.container = container
        settings = container.settings()
        self.channels = ChannelHub()
        self.host: Optional[AgentHost] = None
        if with_host:
            self.host = AgentHost(
                self.channels,
                runtime or build_runtime(settings),
                progress_sources=remote_clients,
                poll_interval=settings.poll_interval_seconds,
            )
        self.store = ExecutionStore(
            container.execution_states,
            container.task_logs,
            default_run_mode=settings.execution.default_run_mode,
        )
        self.store.on_change(hub.publish_sync)
        self.prompts = prompts or HeadlessPrompts()
        self.subscriptions = SubscriptionManager(self.store, self.channels)
        self.validator = RepositoryAccessValidator(
            self.store, self.prompts, is_repository=is_repository, can_write=can_write
        )
        self.auth = AuthProvider(container.settings, environ)
        self.launcher = RunLauncher(
            self.store,
            self.subscriptions,
            self.validator,
            self.prompts,
            self.auth,
            self.host,
            settings=container.settings,
            remote_clients=remote_clients,
        )
        self.plan = PlanModeController(self.store, self.launcher.run_task)
        self.subscriptions.add_hook(self.plan.observe)

    def recover(self) -> list[str]:
        """Reset runs interrupted by a restart and settle their plan phase."""
        recovered = self.store.recover_interrupted()
        for task_id in recovered:
            self.plan.reconcile(task_id)
        return recovered

    def get_execution(self, task_id: str) -> ExecutionState:
        return self.store.get(task_id)

    async def run_task(self, task_id: str, task: TaskSpec) -> ExecutionState:
        await self.launcher.run_task(task_id, task)
        return self.store.get(task_id)

    def cancel_task(self, task_id: str) -> bool:
        cancelled = self.launcher.cancel_task(task_id)
        if cancelled:
            self.plan.on_run_stopped(task_id)
        return cancelled

    def clear_logs(self, task_id: str) -> ExecutionState:
        self.store.clear_logs(task_id)
        return self.store.get(task_id)

    def set_run_mode(self, task_id: str, mode: RunMode) -> ExecutionState:
        return self.launcher.set_run_mode(task_id, mode)

    def set_execution_mode(self, task_id: str, mode: ExecutionMode, task: Optional[TaskSpec] = None) -> ExecutionState:
        return self.launcher.set_execution_mode(task_id, mode, task)

    async def set_repo_path(self, task_id: str, path: str, repo_key: Optional[str] = None) -> ExecutionState:
        """Validate and store a working directory chosen outside the prompt flow.

        Raises:
            ValueError: If the directory fails validation.
        """
        if not await self.launcher.use_repository(task_id, path, repo_key):
            raise ValueError(f"Folder cannot be used as a working directory: {path}")
        return self.store.get(task_id)

    async def submit_answers(self, task_id: str, task: TaskSpec, answers: list[QuestionAnswer]) -> ExecutionState:
        return await self.plan.submit_answers(task_id, task, answers)

    def close_plan(self, task_id: str) -> ExecutionState:
        return self.plan.close_plan(task_id)

    async def load_plan(self, task_id: str) -> Optional[str]:
        return await self.plan.load_plan(task_id)

    async def save_plan(self, task_id: str, content: str) -> ExecutionState:
        return await self.plan.save_plan(task_id, content)

    async def list_artifacts(self, task_id: str) -> list[dict[str, Any]]:
        repo_path = self.store.get(task_id).repo_path
        if not repo_path:
            return []
        return await asyncio.to_thread(artifacts.list_artifacts, repo_path, task_id)

    async def read_artifact(self, task_id: str, file_name: str) -> str:
        repo_path = self.store.get(task_id).repo_path
        if not repo_path:
            raise ValueError(f"Task {task_id} has no repository folder selected")
        return await asyncio.to_thread(artifacts.read_artifact, repo_path, task_id, file_name)

    async def select_artifact(self, task_id: str, file_name: str) -> tuple[ExecutionState, str]:
        return await self.plan.select_artifact(task_id, file_name)

    def sessions(self) -> list[dict[str, Any]]:
        return self.host.sessions() if self.host is not None else []

    async def shutdown(self) -> None:
        """Cancel live runs and release their subscriptions."""
        if self.host is None:
            return
        sessions = self.host.registry.snapshot()
        for session in sessions:
            self.cancel_task(session.owner_task_id)
        await self.host.shutdown()
        pending = [session.run_task for session in sessions if session.run_task is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
