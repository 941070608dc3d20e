"""Per-task execution state store with write-through persistence."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Optional

from ..domain.events import progress_signature, status_event
from ..domain.models import ExecutionState, RunMode
from ..storage.interfaces import ExecutionStateRepository, TaskLogRepository

logger = logging.getLogger(__name__)

ChangeListener = Callable[[dict[str, Any]], None]

_FIELDS = {item.name for item in dataclasses.fields(ExecutionState)} - {"task_id", "logs", "updated_at"}


class ExecutionStore:
    """Keyed table of :class:`ExecutionState` records, one per task.

    Every mutation is a whole-record merge applied without yielding to the event
    loop, persisted immediately and announced to change listeners as a
    ``tasks`` channel notification. Records returned by :meth:`get` are copies.
    """
    def __init__(
        self,
        states: ExecutionStateRepository,
        logs: TaskLogRepository,
        *,
        default_run_mode: RunMode = "local",
    ) -> None:
        """Initialize the ExecutionStore.

        Args:
            states (ExecutionStateRepository): Persistence for state records.
            logs (TaskLogRepository): Persistence for per-task event logs.
            default_run_mode (RunMode): Run mode of tasks seen for the first time.
        """
        self._states = states
        self._logs = logs
        self._default_run_mode = default_run_mode
        self._cache: dict[str, ExecutionState] = {}
        self._listeners: list[ChangeListener] = []

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener and return a callable that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self, event_type: str, task_id: str, payload: dict[str, Any]) -> None:
        message = {"channel": "tasks", "type": event_type, "task_id": task_id, "payload": payload}
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("Execution state listener failed for %s", event_type)

    def _load(self, task_id: str) -> ExecutionState:
        if not task_id:
            raise ValueError("task_id is required")
        state = self._cache.get(task_id)
        if state is None:
            state = self._states.get(task_id) or ExecutionState(task_id=task_id, run_mode=self._default_run_mode)
            state.logs = self._logs.read(task_id)
            self._cache[task_id] = state
        return state

    @staticmethod
    def _copy(state: ExecutionState) -> ExecutionState:
        return dataclasses.replace(state, logs=list(state.logs))

    def get(self, task_id: str) -> ExecutionState:
        """Return a copy of the task's state, defaults included for unseen tasks."""
        return self._copy(self._load(task_id))

    def list(self) -> list[ExecutionState]:
        """Return copies of every persisted state."""
        return [self.get(state.task_id) for state in self._states.list()]

    def update(self, task_id: str, **changes: Any) -> ExecutionState:
        """Merge ``changes`` into the task's record and persist it.

        Raises:
            ValueError: If a change names an unknown or read-only field.
        """
        unknown = set(changes) - _FIELDS
        if unknown:
            raise ValueError(f"Unknown execution state fields: {', '.join(sorted(unknown))}")
        current = self._load(task_id)
        merged = dataclasses.replace(current, **changes)
        self._states.upsert(merged)
        self._cache[task_id] = merged
        self._notify("execution.updated", task_id, {key: _plain(value) for key, value in changes.items()})
        return self._copy(merged)

    def set_running(self, task_id: str, is_running: bool) -> ExecutionState:
        return self.update(task_id, is_running=is_running)

    def append_log(self, task_id: str, event: dict[str, Any]) -> None:
        state = self._load(task_id)
        self._logs.append(task_id, event)
        state.logs = [*state.logs, event]
        self._notify("execution.log", task_id, {"event": event})

    def set_logs(self, task_id: str, events: list[dict[str, Any]]) -> None:
        state = self._load(task_id)
        self._logs.replace(task_id, list(events))
        state.logs = list(events)
        self._notify("execution.logs_reset", task_id, {"count": len(events)})

    def clear_logs(self, task_id: str) -> None:
        self.set_logs(task_id, [])

    def set_progress(self, task_id: str, progress: Optional[dict[str, Any]]) -> bool:
        """Store a progress snapshot and its signature.

        Returns:
            bool: Whether the signature differs from the previously stored one.
        """
        previous = self._load(task_id).progress_signature
        signature = progress_signature(progress)
        self.update(task_id, progress=progress, progress_signature=signature)
        return signature != previous

    def clear(self, task_id: str) -> None:
        """Forget a task's state and log entirely."""
        self._cache.pop(task_id, None)
        self._states.delete(task_id)
        self._logs.delete(task_id)
        self._notify("execution.cleared", task_id, {})

    def get_repo_working_dir(self, repo_key: Optional[str]) -> Optional[str]:
        if not repo_key:
            return None
        return self._states.load_repo_map().get(repo_key)

    def set_repo_working_dir(self, repo_key: str, path: str) -> None:
        mapping = self._states.load_repo_map()
        mapping[repo_key] = path
        self._states.save_repo_map(mapping)

    def recover_interrupted(self) -> list[str]:
        """Reset records persisted as running; no run session survives a restart.

        Returns:
            list[str]: Task ids that were reset.
        """
        recovered = []
        for state in self._states.list():
            if not state.is_running:
                continue
            self.update(state.task_id, is_running=False, current_run_id=None)
            self.append_log(
                state.task_id,
                status_event("recovered", content="Run interrupted by orchestrator restart"),
            )
            recovered.append(state.task_id)
        if recovered:
            logger.info("Recovered %d interrupted run(s): %s", len(recovered), ", ".join(recovered))
        return recovered


def _plain(value: Any) -> Any:
    if isinstance(value, list):
        return [_plain(item) for item in value]
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    return value
