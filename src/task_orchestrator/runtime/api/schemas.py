"""Pydantic request/response schemas for runtime API routes."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from ..domain.models import QuestionAnswer, TaskSpec


class RepositoryConfig(BaseModel):
    """Remote repository a task is bound to."""

    organization: str
    repository: str


class TaskPayload(BaseModel):
    """The fields of a remote task record needed to run it."""

    id: Optional[str] = None
    title: str = ""
    description: str = ""
    workflow: Optional[str] = None
    repository: Optional[str] = None
    repository_config: Optional[RepositoryConfig] = None

    def to_spec(self, task_id: str) -> TaskSpec:
        data = self.model_dump()
        data["id"] = task_id
        return TaskSpec.from_dict(data)


class RunTaskRequest(BaseModel):
    """Payload for starting a run."""

    task: TaskPayload = Field(default_factory=TaskPayload)


class RunModeRequest(BaseModel):
    """Payload for switching between local and cloud runs."""

    mode: Literal["local", "cloud"]


class ExecutionModeRequest(BaseModel):
    """Payload for switching between plan and workflow execution."""

    mode: Literal["plan", "workflow"]
    task: Optional[TaskPayload] = None


class RepoPathRequest(BaseModel):
    """Payload for choosing a task's working directory."""

    path: str
    repo_key: Optional[str] = None


class AnswerPayload(BaseModel):
    """One answer to a clarifying question."""

    question_id: str
    selected_option: str
    custom_input: Optional[str] = None

    def to_answer(self) -> QuestionAnswer:
        return QuestionAnswer(
            question_id=self.question_id,
            selected_option=self.selected_option,
            custom_input=self.custom_input or None,
        )


class SubmitAnswersRequest(BaseModel):
    """Payload for answering the research questions and starting planning."""

    answers: list[AnswerPayload]
    task: TaskPayload = Field(default_factory=TaskPayload)


class SavePlanRequest(BaseModel):
    """Payload for saving an edited plan document."""

    content: str


class SelectArtifactRequest(BaseModel):
    """Payload for opening an artifact."""

    file_name: str


class ExecutionStateResponse(BaseModel):
    """Serialized execution state of one task."""

    task_id: str
    is_running: bool
    logs: list[dict[str, Any]] = Field(default_factory=list)
    repo_path: Optional[str] = None
    current_run_id: Optional[str] = None
    run_mode: str
    progress: Optional[dict[str, Any]] = None
    progress_signature: Optional[str] = None
    execution_mode: str
    plan_mode_phase: str
    clarifying_questions: list[dict[str, Any]] = Field(default_factory=list)
    question_answers: list[dict[str, Any]] = Field(default_factory=list)
    plan_content: Optional[str] = None
    selected_artifact: Optional[str] = None
    current_phase: Optional[str] = None
    updated_at: str
