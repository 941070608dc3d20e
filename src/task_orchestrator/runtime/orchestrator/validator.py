"""Repository access validation and the user prompts it depends on."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Literal, Optional, Protocol

from ..domain.events import error_event
from .store import ExecutionStore

logger = logging.getLogger(__name__)

AccessChoice = Literal["grant", "cancel"]
RetrySelect = Callable[[], Awaitable[bool]]


class UserPrompts(Protocol):
    """Blocking interactions with the user."""
    async def select_directory(self, task_id: str) -> Optional[str]:
        """Ask for a working directory; ``None`` means the user cancelled."""
        ...

    async def confirm_write_access(self, task_id: str, path: str) -> AccessChoice:
        """Ask whether to grant access (pick another folder) or cancel."""
        ...


class HeadlessPrompts:
    """Prompts for processes without a user attached: every question is declined."""
    async def select_directory(self, task_id: str) -> Optional[str]:
        return None

    async def confirm_write_access(self, task_id: str, path: str) -> AccessChoice:
        return "cancel"


def is_git_work_tree(path: str) -> bool:
    """Return whether ``path`` is inside a git working tree."""
    if not Path(path).is_dir():
        return False
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--is-inside-work-tree"],
            cwd=path,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        logger.warning("git is not available to validate %s", path)
        return False
    return result.returncode == 0 and result.stdout.strip() == "true"


def has_write_access(path: str) -> bool:
    """Return whether the process can create files in ``path``."""
    if not os.access(path, os.W_OK):
        return False
    try:
        with tempfile.NamedTemporaryFile(dir=path, prefix=".write-check-"):
            pass
    except OSError:
        return False
    return True


class RepositoryAccessValidator:
    """Gate runs on a version-controlled, writable working directory.

    The checks run in order and short-circuit. Failures are appended to the
    task's log as ``error`` events. A write failure asks the user to grant
    access; granting re-runs directory selection through ``on_retry_select``.
    """
    def __init__(
        self,
        store: ExecutionStore,
        prompts: UserPrompts,
        *,
        is_repository: Callable[[str], bool] = is_git_work_tree,
        can_write: Callable[[str], bool] = has_write_access,
    ) -> None:
        self._store = store
        self._prompts = prompts
        self._is_repository = is_repository
        self._can_write = can_write

    async def validate(
        self,
        task_id: str,
        path: str,
        *,
        on_retry_select: Optional[RetrySelect] = None,
    ) -> bool:
        """Check ``path`` for ``task_id``.

        Args:
            task_id (str): Task whose log receives failures.
            path (str): Candidate working directory.
            on_retry_select (Optional[RetrySelect]): Re-runs directory selection after
                the user grants access; its result is returned as-is.

        Returns:
            bool: Whether the caller may proceed with ``path``.
        """
        if not await asyncio.to_thread(self._is_repository, path):
            self._store.append_log(task_id, error_event(f"Selected folder is not a git repository: {path}"))
            return False
        if await asyncio.to_thread(self._can_write, path):
            return True

        self._store.append_log(task_id, error_event(f"No write permission in selected folder: {path}"))
        choice = await self._prompts.confirm_write_access(task_id, path)
        if choice == "grant" and on_retry_select is not None:
            return await on_retry_select()
        return False
