"""Plan-mode phase machine: idle -> questions -> planning -> review."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Literal, Optional

from .. import artifacts
from ..domain.events import error_event, is_plan_artifact, is_research_questions
from ..domain.models import (
    FREE_FORM_OPTION_MARKER,
    ClarifyingQuestion,
    ExecutionState,
    PlanModePhase,
    QuestionAnswer,
    TaskSpec,
)
from .store import ExecutionStore

logger = logging.getLogger(__name__)

PlanTrigger = Literal[
    "questions_received",
    "answers_submitted",
    "plan_ready",
    "plan_missing",
    "closed",
]

_TRANSITIONS: dict[tuple[PlanModePhase, PlanTrigger], PlanModePhase] = {
    ("idle", "questions_received"): "questions",
    ("questions", "answers_submitted"): "planning",
    ("planning", "plan_ready"): "review",
    ("planning", "plan_missing"): "questions",
}

RunTask = Callable[[str, TaskSpec], Awaitable[None]]


def transition(phase: PlanModePhase, trigger: PlanTrigger) -> Optional[PlanModePhase]:
    """Return the phase reached from ``phase`` on ``trigger``.

    ``closed`` returns to ``idle`` from any phase. Pairs without a transition
    return ``None``.
    """
    if trigger == "closed":
        return "idle"
    return _TRANSITIONS.get((phase, trigger))


def validate_answers(questions: list[ClarifyingQuestion], answers: list[QuestionAnswer]) -> None:
    """Require exactly one answer per question.

    Raises:
        ValueError: If an answer is missing, duplicated, unknown, or lacks the
            free text its option asks for.
    """
    expected = [question.id for question in questions]
    given = [answer.question_id for answer in answers]
    if len(given) != len(set(given)):
        raise ValueError("Each question may be answered only once")
    missing = set(expected) - set(given)
    if missing:
        raise ValueError(f"Missing answers for: {', '.join(sorted(missing))}")
    unknown = set(given) - set(expected)
    if unknown:
        raise ValueError(f"Unknown questions: {', '.join(sorted(unknown))}")
    for answer in answers:
        if not answer.selected_option:
            raise ValueError(f"No option selected for {answer.question_id}")
        if FREE_FORM_OPTION_MARKER in answer.selected_option.lower() and not answer.custom_input:
            raise ValueError(f"Answer to {answer.question_id} needs custom input")


def _merge_answers(current: Iterable[QuestionAnswer], incoming: Iterable[QuestionAnswer]) -> list[QuestionAnswer]:
    merged = {answer.question_id: answer for answer in current}
    for answer in incoming:
        merged[answer.question_id] = answer
    return list(merged.values())


def plan_written_by_last_planning_run(logs: Iterable[dict[str, Any]]) -> bool:
    """Return whether the latest planning run in ``logs`` reported a plan document.

    A ``plan.md`` left on disk by an earlier cycle does not count.
    """
    written = False
    for event in logs:
        if event.get("type") == "status" and event.get("phase") == "planning_start":
            written = False
        elif is_plan_artifact(event):
            written = True
    return written


def _require_repo(state: ExecutionState) -> str:
    if not state.repo_path:
        raise ValueError(f"Task {state.task_id} has no repository folder selected")
    return state.repo_path


class PlanModeController:
    """Apply plan-mode transitions to the execution store.

    Observes run events through :meth:`observe` and carries out the user
    actions of the plan view. Starting a run is delegated to ``run_task``.
    """
    def __init__(self, store: ExecutionStore, run_task: RunTask) -> None:
        self._store = store
        self._run_task = run_task

    def _advance(self, task_id: str, trigger: PlanTrigger, **changes: Any) -> bool:
        state = self._store.get(task_id)
        target = transition(state.plan_mode_phase, trigger)
        if target is None:
            return False
        self._store.update(task_id, plan_mode_phase=target, **changes)
        logger.info("Task %s plan phase %s -> %s", task_id, state.plan_mode_phase, target)
        return True

    def observe(self, task_id: str, event: dict[str, Any]) -> None:
        """Subscription hook applied after each inbound event."""
        if is_research_questions(event):
            self._receive_questions(task_id, event)
        elif event.get("type") in {"error", "done"}:
            self.on_run_stopped(task_id)

    def _receive_questions(self, task_id: str, event: dict[str, Any]) -> bool:
        if self._store.get(task_id).clarifying_questions:
            return False
        content = event.get("content")
        if not isinstance(content, list):
            return False
        questions = [ClarifyingQuestion.from_artifact(item) for item in content if isinstance(item, dict)]
        if not questions:
            return False
        return self._advance(task_id, "questions_received", clarifying_questions=questions)

    def reconcile(self, task_id: str) -> ExecutionState:
        """Re-derive the phase from the stored log and the plan file.

        Used after a restart, where live events were missed. A questions artifact
        already applied is not applied twice.
        """
        state = self._store.get(task_id)
        if not state.clarifying_questions:
            for event in state.logs:
                if is_research_questions(event):
                    self._receive_questions(task_id, event)
                    break
        self.on_run_stopped(task_id)
        return self._store.get(task_id)

    def on_run_stopped(self, task_id: str) -> None:
        """Leave ``planning`` once the planning run is no longer running.

        A plan document reported by the last planning run moves the task to
        ``review``. Otherwise the task goes back to ``questions`` with its
        answers kept, and an error is logged.
        """
        state = self._store.get(task_id)
        if state.plan_mode_phase != "planning" or state.is_running or not state.repo_path:
            return
        content = None
        if plan_written_by_last_planning_run(state.logs):
            content = artifacts.read_plan(state.repo_path, task_id)
        if content:
            self._advance(task_id, "plan_ready", plan_content=content)
            return
        path = artifacts.plan_path(state.repo_path, task_id)
        self._store.append_log(
            task_id,
            error_event(f"Planning ended without a plan document at {path}; submit the answers again to retry"),
        )
        self._advance(task_id, "plan_missing")

    async def submit_answers(self, task_id: str, task: TaskSpec, answers: list[QuestionAnswer]) -> ExecutionState:
        """Store answers, save them next to the questions and launch the planning run.

        Raises:
            ValueError: If the task is not waiting for answers, has no repository,
                or the answers do not cover each question exactly once.
        """
        state = self._store.get(task_id)
        if state.plan_mode_phase != "questions":
            raise ValueError(f"Task {task_id} is not waiting for answers (phase {state.plan_mode_phase})")
        repo_path = _require_repo(state)
        validate_answers(state.clarifying_questions, answers)

        merged = _merge_answers(state.question_answers, answers)
        self._store.update(task_id, question_answers=merged)
        await asyncio.to_thread(artifacts.save_question_answers, repo_path, task_id, merged)
        self._advance(task_id, "answers_submitted", execution_mode="plan")
        await self._run_task(task_id, task)
        # a launch that never got running produces no events to observe
        self.on_run_stopped(task_id)
        return self._store.get(task_id)

    def close_plan(self, task_id: str) -> ExecutionState:
        self._advance(task_id, "closed", selected_artifact=None)
        return self._store.get(task_id)

    async def load_plan(self, task_id: str) -> Optional[str]:
        state = self._store.get(task_id)
        return await asyncio.to_thread(artifacts.read_plan, _require_repo(state), task_id)

    async def save_plan(self, task_id: str, content: str) -> ExecutionState:
        """Overwrite the plan document with the user's edit."""
        state = self._store.get(task_id)
        await asyncio.to_thread(artifacts.write_plan, _require_repo(state), task_id, content)
        return self._store.update(task_id, plan_content=content)

    async def select_artifact(self, task_id: str, file_name: str) -> tuple[ExecutionState, str]:
        """Open an artifact for viewing; the plan phase is left untouched.

        Raises:
            ValueError: If no repository is selected or the name is invalid.
            FileNotFoundError: If the artifact does not exist.
        """
        state = self._store.get(task_id)
        content = await asyncio.to_thread(artifacts.read_artifact, _require_repo(state), task_id, file_name)
        return self._store.update(task_id, selected_artifact=file_name), content
