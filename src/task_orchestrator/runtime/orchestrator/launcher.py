"""Run launcher: routes a run request to the local host or the remote executor."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from ...config import OrchestratorSettings
from ..domain.events import done_event, error_event, status_event
from ..domain.models import Credentials, ExecutionMode, ExecutionState, RunMode, TaskSpec
from ..host.service import AgentHost, StartedRun
from ..remote.auth import AuthProvider
from ..remote.client import TaskApiClient, TaskApiError
from .store import ExecutionStore
from .subscriptions import SubscriptionManager
from .validator import RepositoryAccessValidator, UserPrompts

logger = logging.getLogger(__name__)

RemoteClientFactory = Callable[[Credentials], TaskApiClient]

MISSING_CREDENTIALS_MESSAGE = "No API key found. Set auth.api_key in config.yaml or POSTHOG_API_KEY to run tasks."


class RunLauncher:
    """Start, route and cancel runs for tasks.

    Starting a task that is already running, whose start is still being
    prepared, or whose previous run session is still live, is a no-op. Cloud runs are a single remote trigger; local runs
    go through repository validation, the execution host and a channel
    subscription.
    """
    def __init__(
        self,
        store: ExecutionStore,
        subscriptions: SubscriptionManager,
        validator: RepositoryAccessValidator,
        prompts: UserPrompts,
        auth: AuthProvider,
        host: Optional[AgentHost],
        *,
        settings: Callable[[], OrchestratorSettings],
        remote_clients: RemoteClientFactory = TaskApiClient,
    ) -> None:
        self._store = store
        self._subscriptions = subscriptions
        self._validator = validator
        self._prompts = prompts
        self._auth = auth
        self.host = host
        self._settings = settings
        self._remote_clients = remote_clients
        self._starting: set[str] = set()

    def _log_error(self, task_id: str, message: str) -> None:
        self._store.append_log(task_id, error_event(message))

    async def run_task(self, task_id: str, task: TaskSpec) -> None:
        """Start a run of ``task`` in the task's current run mode."""
        if task_id in self._starting or self._store.get(task_id).is_running:
            logger.debug("Ignoring run request for task %s: already running", task_id)
            return
        if self.host is not None and self.host.registry.find_by_task(task_id):
            # an error event stopped the task but its run has not sent done yet
            logger.debug("Ignoring run request for task %s: previous run still winding down", task_id)
            return
        self._starting.add(task_id)
        try:
            credentials = self._auth.credentials()
            if credentials is None:
                self._log_error(task_id, MISSING_CREDENTIALS_MESSAGE)
                return
            if self._store.get(task_id).run_mode == "cloud":
                await self._run_cloud(task_id, credentials)
            else:
                await self._run_local(task_id, task, credentials)
        finally:
            self._starting.discard(task_id)

    async def _run_cloud(self, task_id: str, credentials: Credentials) -> None:
        self._store.set_progress(task_id, None)
        self._store.update(task_id, is_running=True, current_run_id=None)
        self._store.set_logs(task_id, [status_event("task_start", content="Starting task run in cloud...")])
        client = self._remote_clients(credentials)
        try:
            await client.run_task(task_id)
            self._store.append_log(task_id, status_event("task_started", content="Task started in cloud successfully"))
        except TaskApiError as exc:
            self._log_error(task_id, f"Error starting cloud task: {exc}")
        finally:
            await client.aclose()
            self._store.set_running(task_id, False)

    async def _resolve_repo_path(self, task_id: str, task: TaskSpec) -> Optional[str]:
        state = self._store.get(task_id)
        repo_path = state.repo_path or self._store.get_repo_working_dir(task.repository)
        if not repo_path:
            return await self.select_repository_for_task(task_id, task.repository)
        return await self.use_repository(task_id, repo_path, None if state.repo_path else task.repository)

    async def _run_local(self, task_id: str, task: TaskSpec, credentials: Credentials) -> None:
        repo_path = await self._resolve_repo_path(task_id, task)
        if not repo_path:
            self._log_error(task_id, "No repository folder selected.")
            return

        state = self._coerce_execution_mode(task_id, task)
        settings = self._settings()
        permission_mode = settings.execution.permission_mode
        self._store.set_progress(task_id, None)
        self._store.update(task_id, is_running=True)
        self._store.set_logs(
            task_id,
            [
                status_event("task_start", content="Starting task run..."),
                status_event("permission_mode", content=f"Permission mode: {permission_mode}"),
                status_event("repo_path", content=f"Repo: {repo_path}"),
            ],
        )

        if self.host is None:
            self._log_error(task_id, "Failed to start agent: execution host not available")
            self._store.set_running(task_id, False)
            return
        try:
            started = await self._start_on_host(self.host, state, task, repo_path, credentials, settings)
        except Exception as exc:
            logger.warning("Host refused to start task %s: %s", task_id, exc)
            self._log_error(task_id, f"Error starting agent: {exc}")
            self._store.set_running(task_id, False)
            return

        self._store.update(task_id, current_run_id=started.run_id)
        self._subscriptions.subscribe(task_id, started.channel)

    async def _start_on_host(
        self,
        host: AgentHost,
        state: ExecutionState,
        task: TaskSpec,
        repo_path: str,
        credentials: Credentials,
        settings: OrchestratorSettings,
    ) -> StartedRun:
        task_id = state.task_id
        if state.plan_mode_phase == "planning":
            return await host.generate_plan(
                task_id, task.title, task.description, repo_path, state.question_answers, credentials
            )
        if state.execution_mode == "workflow":
            return await host.start(
                task_id,
                task.workflow or "",
                repo_path,
                credentials,
                permission_mode=settings.execution.permission_mode,
                auto_progress=settings.execution.auto_progress,
                create_pr=settings.execution.create_pr,
                model=settings.execution.model,
            )
        self._store.update(
            task_id,
            clarifying_questions=[],
            question_answers=[],
            plan_content=None,
            plan_mode_phase="idle",
        )
        return await host.start_plan_research(task_id, task.title, task.description, repo_path, credentials)

    def cancel_task(self, task_id: str) -> bool:
        """Cancel the task's active local run.

        A run whose error already stopped the task is still cancelled while its
        session is live.

        Returns:
            bool: ``False`` with no state change when nothing is running.
        """
        state = self._store.get(task_id)
        if not state.current_run_id:
            return False
        live = self.host is not None and self.host.registry.get(state.current_run_id) is not None
        if not state.is_running and not live:
            return False
        if self.host is not None:
            try:
                self.host.cancel(state.current_run_id)
            except Exception:
                logger.warning("Host cancel failed for task %s", task_id, exc_info=True)
        self._subscriptions.unsubscribe(task_id)
        self._store.set_running(task_id, False)
        self._store.append_log(task_id, status_event("canceled", content="Run cancelled"))
        self._store.append_log(task_id, done_event(False))
        return True

    async def select_repository_for_task(self, task_id: str, repo_key: Optional[str] = None) -> Optional[str]:
        """Ask the user for a working directory and store it once it validates.

        A valid selection is also remembered for ``repo_key`` so later tasks of
        the same repository reuse it.
        """
        try:
            selected = await self._prompts.select_directory(task_id)
        except Exception as exc:
            logger.warning("Directory selection failed for task %s", task_id, exc_info=True)
            self._log_error(task_id, f"Error selecting directory: {exc}")
            return None
        if not selected:
            return None
        return await self.use_repository(task_id, selected, repo_key)

    async def use_repository(self, task_id: str, path: str, repo_key: Optional[str] = None) -> Optional[str]:
        """Validate ``path`` and make it the task's working directory."""
        reselected: list[str] = []

        async def retry() -> bool:
            again = await self.select_repository_for_task(task_id, repo_key)
            if again:
                reselected.append(again)
            return again is not None

        if not await self._validator.validate(task_id, path, on_retry_select=retry):
            return None
        if reselected:
            return reselected[-1]
        self._store.update(task_id, repo_path=path)
        if repo_key:
            self._store.set_repo_working_dir(repo_key, path)
        return path

    def set_run_mode(self, task_id: str, mode: RunMode) -> ExecutionState:
        if mode not in ("local", "cloud"):
            raise ValueError(f"Unknown run mode: {mode}")
        return self._store.update(task_id, run_mode=mode)

    def set_execution_mode(self, task_id: str, mode: ExecutionMode, task: Optional[TaskSpec] = None) -> ExecutionState:
        """Switch execution mode; tasks without a workflow stay in ``plan``."""
        if mode not in ("plan", "workflow"):
            raise ValueError(f"Unknown execution mode: {mode}")
        if mode == "workflow" and (task is None or not task.workflow):
            mode = "plan"
        return self._store.update(task_id, execution_mode=mode)

    def _coerce_execution_mode(self, task_id: str, task: TaskSpec) -> ExecutionState:
        state = self._store.get(task_id)
        if state.execution_mode == "workflow" and not task.workflow:
            return self._store.update(task_id, execution_mode="plan")
        return state
