"""Dependency container for runtime repositories."""

from __future__ import annotations

from pathlib import Path

from ...config import OrchestratorSettings, load_settings
from .bootstrap import LOGS_DIR_NAME, ensure_state_root
from .file_repos import FileConfigRepository, FileExecutionStateRepository, FileTaskLogRepository


class Container:
    """Wire file-backed repositories and process-wide runtime settings."""
    def __init__(self, project_dir: Path) -> None:
        """Initialize the Container.

        Args:
            project_dir (Path): Directory that holds the orchestrator state root.
        """
        self.project_dir = project_dir.resolve()
        self.state_root = ensure_state_root(self.project_dir)

        self.execution_states = FileExecutionStateRepository(
            self.state_root / "execution_state.yaml",
            self.state_root / "execution_state.lock",
        )
        self.task_logs = FileTaskLogRepository(self.state_root / LOGS_DIR_NAME, self.state_root / "logs.lock")
        self.config = FileConfigRepository(self.state_root / "config.yaml", self.state_root / "config.lock")

    def settings(self) -> OrchestratorSettings:
        """Load the current settings from ``config.yaml``.

        Returns:
            OrchestratorSettings: Parsed settings; re-read on every call so edits apply
            to the next run without a restart.
        """
        return load_settings(self.config.load())
