"""Per-task artifact files stored under ``<repo>/.posthog/<task_id>/``."""

from __future__ import annotations

import json
import logging
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from ..io_utils import atomic_write_text
from .domain.models import QuestionAnswer

logger = logging.getLogger(__name__)

ARTIFACTS_DIR_NAME = ".posthog"
PLAN_FILE_NAME = "plan.md"
QUESTIONS_FILE_NAME = "questions.json"


def task_dir(repo_path: str | Path, task_id: str) -> Path:
    """Directory that holds every artifact of ``task_id`` inside ``repo_path``."""
    if not task_id or "/" in task_id or "\\" in task_id or task_id in {".", ".."}:
        raise ValueError(f"Invalid task id for artifact storage: {task_id!r}")
    return Path(repo_path) / ARTIFACTS_DIR_NAME / task_id


def plan_path(repo_path: str | Path, task_id: str) -> Path:
    return task_dir(repo_path, task_id) / PLAN_FILE_NAME


def _artifact_path(repo_path: str | Path, task_id: str, file_name: str) -> Path:
    base = task_dir(repo_path, task_id).resolve()
    target = (base / file_name).resolve()
    if target.parent != base:
        raise ValueError(f"Artifact name escapes the task directory: {file_name!r}")
    return target


def read_plan(repo_path: str | Path, task_id: str) -> Optional[str]:
    """Return the plan document, or ``None`` when it has not been written yet."""
    path = plan_path(repo_path, task_id)
    if not path.is_file():
        return None
    with path.open("r", encoding="utf-8", newline="") as handle:
        return handle.read()


def write_plan(repo_path: str | Path, task_id: str, content: str) -> Path:
    """Write the plan document exactly as given (no newline translation)."""
    path = plan_path(repo_path, task_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        handle.write(content)
    return path


def list_artifacts(repo_path: str | Path, task_id: str) -> list[dict[str, Any]]:
    """List the markdown artifacts of a task, sorted by name."""
    base = task_dir(repo_path, task_id)
    if not base.is_dir():
        return []
    artifacts: list[dict[str, Any]] = []
    for entry in sorted(base.iterdir()):
        if not entry.is_file() or entry.suffix != ".md":
            continue
        stats = entry.stat()
        artifacts.append(
            {
                "name": entry.name,
                "path": str(entry),
                "size": stats.st_size,
                "modified_at": datetime.fromtimestamp(stats.st_mtime, timezone.utc).isoformat(),
            }
        )
    return artifacts


def read_artifact(repo_path: str | Path, task_id: str, file_name: str) -> str:
    """Read one artifact file.

    Raises:
        FileNotFoundError: If the artifact does not exist.
    """
    path = _artifact_path(repo_path, task_id, file_name)
    if not path.is_file():
        raise FileNotFoundError(f"Artifact {file_name} does not exist for task {task_id}")
    with path.open("r", encoding="utf-8", newline="") as handle:
        return handle.read()


def append_to_artifact(repo_path: str | Path, task_id: str, file_name: str, content: str) -> None:
    """Append text to an existing artifact.

    Raises:
        FileNotFoundError: If the artifact does not exist.
    """
    path = _artifact_path(repo_path, task_id, file_name)
    if not path.is_file():
        raise FileNotFoundError(f"File {file_name} does not exist for task {task_id}")
    with path.open("a", encoding="utf-8", newline="") as handle:
        handle.write(content)


def write_questions(repo_path: str | Path, task_id: str, questions: list[dict[str, Any]]) -> Path:
    """Write the research questions left by a research run."""
    path = task_dir(repo_path, task_id) / QUESTIONS_FILE_NAME
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"questions": questions, "answered": False, "answers": []}
    atomic_write_text(path, json.dumps(payload, indent=2))
    return path


def _git(repo_path: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=str(repo_path),
        capture_output=True,
        text=True,
        check=True,
    )


def save_question_answers(repo_path: str | Path, task_id: str, answers: Iterable[QuestionAnswer]) -> Path:
    """Record answers in ``questions.json`` and commit the artifact directory.

    The commit is best effort: a missing repository or an empty diff is logged and
    the saved answers are kept.
    """
    path = task_dir(repo_path, task_id) / QUESTIONS_FILE_NAME
    data: dict[str, Any] = {}
    if path.is_file():
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Replacing unreadable %s for task %s", QUESTIONS_FILE_NAME, task_id)
            loaded = {}
        data = loaded if isinstance(loaded, dict) else {}
    data["answered"] = True
    data["answers"] = [answer.to_file_dict() for answer in answers]
    path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_text(path, json.dumps(data, indent=2))

    repo = Path(repo_path)
    try:
        _git(repo, "add", f"{ARTIFACTS_DIR_NAME}/")
        _git(repo, "commit", "-m", f"Answer research questions for task {task_id}")
    except (OSError, subprocess.CalledProcessError) as exc:
        detail = getattr(exc, "stderr", None) or str(exc)
        logger.warning("Failed to commit answers for task %s: %s", task_id, str(detail).strip())
    return path
