"""File-backed repository implementations for runtime state."""

from __future__ import annotations

import json
import os
import re
import threading
from pathlib import Path
from typing import Any, Optional

import yaml

from ...io_utils import FileLock
from ..domain.models import ExecutionState, now_iso
from .interfaces import ExecutionStateRepository, TaskLogRepository

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class FileExecutionStateRepository(ExecutionStateRepository):
    """YAML-backed execution state repository with coarse file/process locking."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        """Initialize the FileExecutionStateRepository.

        Args:
            path (Path): YAML file path holding task states and the repository map.
            lock_path (Path): Lock file path used for cross-process synchronization.
        """
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def _load_raw(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        return raw if isinstance(raw, dict) else {}

    def _save_raw(self, raw: dict[str, Any]) -> None:
        payload = {"version": 1, "task_states": raw.get("task_states") or [], "repo_to_cwd": raw.get("repo_to_cwd") or {}}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(payload, handle, sort_keys=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self._path)

    def _load_states(self, raw: dict[str, Any]) -> list[ExecutionState]:
        items = raw.get("task_states", [])
        if not isinstance(items, list):
            return []
        return [ExecutionState.from_dict(item) for item in items if isinstance(item, dict)]

    def list(self) -> list[ExecutionState]:
        """Load all persisted execution states.

        Returns:
            list[ExecutionState]: All persisted states, logs excluded.
        """
        with self._thread_lock:
            with self._lock:
                return self._load_states(self._load_raw())

    def get(self, task_id: str) -> Optional[ExecutionState]:
        """Fetch a single execution state by task id.

        Args:
            task_id (str): Identifier for the target task.

        Returns:
            Optional[ExecutionState]: Requested value when available; otherwise `None`.
        """
        for state in self.list():
            if state.task_id == task_id:
                return state
        return None

    def upsert(self, state: ExecutionState) -> ExecutionState:
        """Insert or replace a task's execution state and refresh ``updated_at``.

        Args:
            state (ExecutionState): State to persist, keyed by ``task_id``.

        Returns:
            ExecutionState: Persisted state.
        """
        with self._thread_lock:
            with self._lock:
                raw = self._load_raw()
                states = self._load_states(raw)
                state.updated_at = now_iso()
                for idx, existing in enumerate(states):
                    if existing.task_id == state.task_id:
                        states[idx] = state
                        break
                else:
                    states.append(state)
                raw["task_states"] = [item.to_dict(include_logs=False) for item in states]
                self._save_raw(raw)
        return state

    def delete(self, task_id: str) -> bool:
        """Delete one task's execution state.

        Args:
            task_id (str): Identifier for the target task.

        Returns:
            bool: `True` when the operation succeeds, otherwise `False`.
        """
        with self._thread_lock:
            with self._lock:
                raw = self._load_raw()
                states = self._load_states(raw)
                keep = [item for item in states if item.task_id != task_id]
                if len(keep) == len(states):
                    return False
                raw["task_states"] = [item.to_dict(include_logs=False) for item in keep]
                self._save_raw(raw)
        return True

    def load_repo_map(self) -> dict[str, str]:
        """Load the repository key to working directory mapping.

        Returns:
            dict[str, str]: Mapping of ``organization/repository`` keys to paths.
        """
        with self._thread_lock:
            with self._lock:
                mapping = self._load_raw().get("repo_to_cwd")
        if not isinstance(mapping, dict):
            return {}
        return {str(key): str(value) for key, value in mapping.items() if key and value}

    def save_repo_map(self, mapping: dict[str, str]) -> None:
        """Persist the repository key to working directory mapping.

        Args:
            mapping (dict[str, str]): Complete mapping to store.
        """
        with self._thread_lock:
            with self._lock:
                raw = self._load_raw()
                raw["repo_to_cwd"] = dict(mapping)
                self._save_raw(raw)


class FileTaskLogRepository(TaskLogRepository):
    """JSONL-backed task event logs, one file per task."""
    def __init__(self, logs_dir: Path, lock_path: Path) -> None:
        """Initialize the FileTaskLogRepository.

        Args:
            logs_dir (Path): Directory holding ``<task_id>.jsonl`` files.
            lock_path (Path): Lock file path used while writing or reading logs.
        """
        self._dir = logs_dir
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def _path(self, task_id: str) -> Path:
        safe = _UNSAFE_FILENAME_CHARS.sub("_", task_id) or "_"
        return self._dir / f"{safe}.jsonl"

    def read(self, task_id: str) -> list[dict[str, Any]]:
        """Read a task's events in append order, skipping corrupt lines.

        Args:
            task_id (str): Identifier for the target task.

        Returns:
            list[dict[str, Any]]: Parsed events.
        """
        path = self._path(task_id)
        if not path.exists():
            return []
        with self._thread_lock:
            with self._lock:
                lines = path.read_text(encoding="utf-8").splitlines()
        events: list[dict[str, Any]] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        return events

    def append(self, task_id: str, event: dict[str, Any]) -> None:
        """Append one event to the task's JSONL log.

        Args:
            task_id (str): Identifier for the target task.
            event (dict[str, Any]): JSON-serializable event.
        """
        path = self._path(task_id)
        with self._thread_lock:
            with self._lock:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(event, default=str) + "\n")
                    handle.flush()

    def replace(self, task_id: str, events: list[dict[str, Any]]) -> None:
        """Rewrite the task's log with ``events``.

        Args:
            task_id (str): Identifier for the target task.
            events (list[dict[str, Any]]): Events that make up the new log.
        """
        path = self._path(task_id)
        with self._thread_lock:
            with self._lock:
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = path.with_suffix(".jsonl.tmp")
                with tmp_path.open("w", encoding="utf-8") as handle:
                    for event in events:
                        handle.write(json.dumps(event, default=str) + "\n")
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_path, path)

    def delete(self, task_id: str) -> None:
        """Remove a task's log file when it exists.

        Args:
            task_id (str): Identifier for the target task.
        """
        with self._thread_lock:
            with self._lock:
                self._path(task_id).unlink(missing_ok=True)


class FileConfigRepository:
    """YAML-backed repository for runtime configuration."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        """Initialize the FileConfigRepository.

        Args:
            path (Path): YAML file path for runtime configuration.
            lock_path (Path): Lock file path used while reading or writing config.
        """
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def load(self) -> dict[str, Any]:
        """Load configuration from disk.

        Returns:
            dict[str, Any]: Configuration mapping from disk, or an empty mapping.
        """
        with self._thread_lock:
            with self._lock:
                if not self._path.exists():
                    return {}
                raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
                return raw if isinstance(raw, dict) else {}

    def save(self, config: dict[str, Any]) -> dict[str, Any]:
        """Persist configuration to disk atomically.

        Args:
            config (dict[str, Any]): Configuration mapping to persist.

        Returns:
            dict[str, Any]: Saved configuration mapping.
        """
        with self._thread_lock:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
                with tmp_path.open("w", encoding="utf-8") as handle:
                    yaml.safe_dump(config, handle, sort_keys=False)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_path, self._path)
        return config
