"""Repository interfaces for runtime persistence abstractions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Optional

from ..domain.models import ExecutionState


class ExecutionStateRepository(ABC):
    """Persistence contract for per-task execution state records."""
    @abstractmethod
    def list(self) -> List[ExecutionState]:
        """List every persisted execution state (without logs).

        Returns:
            List[ExecutionState]: All stored execution states.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, task_id: str) -> Optional[ExecutionState]:
        """Fetch the execution state of one task, or ``None`` when absent.

        Args:
            task_id (str): Identifier for the target task.

        Returns:
            Optional[ExecutionState]: Requested value when available; otherwise `None`.
        """
        raise NotImplementedError

    @abstractmethod
    def upsert(self, state: ExecutionState) -> ExecutionState:
        """Create or replace the execution state of ``state.task_id``.

        Args:
            state (ExecutionState): State record to persist.

        Returns:
            ExecutionState: Persisted record.
        """
        raise NotImplementedError

    @abstractmethod
    def delete(self, task_id: str) -> bool:
        """Delete one task's execution state and return whether anything was removed.

        Args:
            task_id (str): Identifier for the target task.

        Returns:
            bool: `True` when a record was removed, otherwise `False`.
        """
        raise NotImplementedError

    @abstractmethod
    def load_repo_map(self) -> dict[str, str]:
        """Load the repository key to working directory mapping."""
        raise NotImplementedError

    @abstractmethod
    def save_repo_map(self, mapping: dict[str, str]) -> None:
        """Persist the repository key to working directory mapping."""
        raise NotImplementedError


class TaskLogRepository(ABC):
    """Persistence contract for append-only per-task event logs."""
    @abstractmethod
    def read(self, task_id: str) -> List[dict[str, Any]]:
        """Read every logged event of a task in append order."""
        raise NotImplementedError

    @abstractmethod
    def append(self, task_id: str, event: dict[str, Any]) -> None:
        """Append one event to a task's log."""
        raise NotImplementedError

    @abstractmethod
    def replace(self, task_id: str, events: List[dict[str, Any]]) -> None:
        """Replace a task's log, used when a run starts or logs are cleared."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, task_id: str) -> None:
        """Remove a task's log entirely."""
        raise NotImplementedError
