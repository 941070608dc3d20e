"""Domain model dataclasses and normalization helpers."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional, cast

RunMode = Literal["local", "cloud"]
ExecutionMode = Literal["plan", "workflow"]
PlanModePhase = Literal["idle", "questions", "planning", "review"]
_VALID_RUN_MODES = {"local", "cloud"}
_VALID_EXECUTION_MODES = {"plan", "workflow"}
_VALID_PLAN_MODE_PHASES = {"idle", "questions", "planning", "review"}

FREE_FORM_OPTION_MARKER = "something else"


def now_iso() -> str:
    """Get the current UTC timestamp formatted as ISO-8601 text."""
    return datetime.now(timezone.utc).isoformat()


def new_run_id() -> str:
    """Allocate an opaque identifier for one run session."""
    return str(uuid.uuid4())


def _opt_str(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


@dataclass(frozen=True)
class Credentials:
    """API key and host pair handed to the remote API and the agent runtime."""
    api_key: str
    api_host: str

    @property
    def auth_header(self) -> str:
        return f"Bearer {self.api_key}"


@dataclass
class TaskSpec:
    """The slice of a remote task record needed to start a run."""
    id: str
    title: str = ""
    description: str = ""
    workflow: Optional[str] = None
    repository: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskSpec":
        """Deserialize a task payload, accepting ``repository_config`` objects."""
        repository = data.get("repository")
        config = data.get("repository_config")
        if not repository and isinstance(config, dict):
            org = str(config.get("organization") or "").strip()
            repo = str(config.get("repository") or "").strip()
            repository = f"{org}/{repo}" if org and repo else None
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            workflow=_opt_str(data.get("workflow")),
            repository=_opt_str(repository),
        )


@dataclass
class ClarifyingQuestion:
    """One research question the user must answer before planning starts."""
    id: str
    question: str
    options: list[str] = field(default_factory=list)
    requires_input: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_artifact(cls, data: dict[str, Any]) -> "ClarifyingQuestion":
        """Build a question from a ``research_questions`` artifact entry.

        ``requires_input`` is derived from the options: it is true exactly when one
        option offers a free-form "something else" choice.
        """
        options = [str(option) for option in list(data.get("options") or [])]
        return cls(
            id=str(data.get("id") or ""),
            question=str(data.get("question") or ""),
            options=options,
            requires_input=any(FREE_FORM_OPTION_MARKER in option.lower() for option in options),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClarifyingQuestion":
        if "requires_input" not in data:
            return cls.from_artifact(data)
        return cls(
            id=str(data.get("id") or ""),
            question=str(data.get("question") or ""),
            options=[str(option) for option in list(data.get("options") or [])],
            requires_input=bool(data.get("requires_input")),
        )


@dataclass
class QuestionAnswer:
    """The user's answer to one :class:`ClarifyingQuestion`."""
    question_id: str
    selected_option: str
    custom_input: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_file_dict(self) -> dict[str, Any]:
        """Serialize using the camelCase keys stored in ``questions.json``."""
        data: dict[str, Any] = {"questionId": self.question_id, "selectedOption": self.selected_option}
        if self.custom_input:
            data["customInput"] = self.custom_input
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QuestionAnswer":
        """Deserialize an answer from either snake_case or camelCase keys."""
        return cls(
            question_id=str(data.get("question_id") or data.get("questionId") or ""),
            selected_option=str(data.get("selected_option") or data.get("selectedOption") or ""),
            custom_input=_opt_str(data.get("custom_input") or data.get("customInput")),
        )


@dataclass
class ExecutionState:
    """Per-task execution state read by the presentation layer.

    ``logs`` is append-only while a run is live; it is replaced only when a new run
    starts or the user clears it.
    """
    task_id: str = ""
    is_running: bool = False
    logs: list[dict[str, Any]] = field(default_factory=list)
    repo_path: Optional[str] = None
    current_run_id: Optional[str] = None
    run_mode: RunMode = "local"
    progress: Optional[dict[str, Any]] = None
    progress_signature: Optional[str] = None
    execution_mode: ExecutionMode = "plan"
    plan_mode_phase: PlanModePhase = "idle"
    clarifying_questions: list[ClarifyingQuestion] = field(default_factory=list)
    question_answers: list[QuestionAnswer] = field(default_factory=list)
    plan_content: Optional[str] = None
    selected_artifact: Optional[str] = None
    current_phase: Optional[str] = None
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self, *, include_logs: bool = True) -> dict[str, Any]:
        """Serialize the state; persistence omits logs, which live in JSONL files."""
        data = asdict(self)
        if not include_logs:
            data.pop("logs", None)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionState":
        """Deserialize and normalize a persisted execution state."""
        run_mode = str(data.get("run_mode") or "local")
        if run_mode not in _VALID_RUN_MODES:
            run_mode = "local"
        execution_mode = str(data.get("execution_mode") or "plan")
        if execution_mode not in _VALID_EXECUTION_MODES:
            execution_mode = "plan"
        phase = str(data.get("plan_mode_phase") or "idle")
        if phase not in _VALID_PLAN_MODE_PHASES:
            phase = "idle"
        progress = data.get("progress")
        return cls(
            task_id=str(data.get("task_id") or ""),
            is_running=bool(data.get("is_running")),
            logs=[item for item in list(data.get("logs") or []) if isinstance(item, dict)],
            repo_path=_opt_str(data.get("repo_path")),
            current_run_id=_opt_str(data.get("current_run_id")),
            run_mode=cast(RunMode, run_mode),
            progress=dict(progress) if isinstance(progress, dict) else None,
            progress_signature=_opt_str(data.get("progress_signature")),
            execution_mode=cast(ExecutionMode, execution_mode),
            plan_mode_phase=cast(PlanModePhase, phase),
            clarifying_questions=[
                ClarifyingQuestion.from_dict(item)
                for item in list(data.get("clarifying_questions") or [])
                if isinstance(item, dict)
            ],
            question_answers=[
                QuestionAnswer.from_dict(item)
                for item in list(data.get("question_answers") or [])
                if isinstance(item, dict)
            ],
            plan_content=(str(data["plan_content"]) if data.get("plan_content") is not None else None),
            selected_artifact=_opt_str(data.get("selected_artifact")),
            current_phase=_opt_str(data.get("current_phase")),
            updated_at=str(data.get("updated_at") or now_iso()),
        )
