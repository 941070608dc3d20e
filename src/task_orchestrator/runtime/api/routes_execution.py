"""Task execution, plan-mode and artifact routes for the runtime API."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional

from fastapi import APIRouter, HTTPException, Query

from ..domain.models import ExecutionState
from .deps import RouteDeps
from .schemas import (
    ExecutionModeRequest,
    ExecutionStateResponse,
    RepoPathRequest,
    RunModeRequest,
    RunTaskRequest,
    SavePlanRequest,
    SelectArtifactRequest,
    SubmitAnswersRequest,
)


@contextmanager
def _http_errors() -> Iterator[None]:
    try:
        yield
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _state_payload(state: ExecutionState) -> dict[str, Any]:
    return ExecutionStateResponse(**state.to_dict()).model_dump()


def register_execution_routes(router: APIRouter, deps: RouteDeps) -> None:
    """Register execution state, run control, plan-mode and artifact routes."""
    @router.get("/tasks/{task_id}/execution")
    async def get_execution(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        """Return the execution state of a task, logs included."""
        orchestrator = deps.resolve_orchestrator(project_dir)
        with _http_errors():
            return {"execution": _state_payload(orchestrator.get_execution(task_id))}

    @router.post("/tasks/{task_id}/run")
    async def run_task(
        task_id: str,
        body: Optional[RunTaskRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        """Start a run; a task that is already running is left untouched.

        Precondition failures are reported in the execution log, not as HTTP errors.
        """
        orchestrator = deps.resolve_orchestrator(project_dir)
        request = body or RunTaskRequest()
        with _http_errors():
            state = await orchestrator.run_task(task_id, request.task.to_spec(task_id))
        return {"execution": _state_payload(state)}

    @router.post("/tasks/{task_id}/cancel")
    async def cancel_task(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        orchestrator = deps.resolve_orchestrator(project_dir)
        cancelled = orchestrator.cancel_task(task_id)
        return {"cancelled": cancelled, "execution": _state_payload(orchestrator.get_execution(task_id))}

    @router.post("/tasks/{task_id}/logs/clear")
    async def clear_logs(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        orchestrator = deps.resolve_orchestrator(project_dir)
        return {"execution": _state_payload(orchestrator.clear_logs(task_id))}

    @router.put("/tasks/{task_id}/run-mode")
    async def set_run_mode(
        task_id: str, body: RunModeRequest, project_dir: Optional[str] = Query(None)
    ) -> dict[str, Any]:
        orchestrator = deps.resolve_orchestrator(project_dir)
        with _http_errors():
            state = orchestrator.set_run_mode(task_id, body.mode)
        return {"execution": _state_payload(state)}

    @router.put("/tasks/{task_id}/execution-mode")
    async def set_execution_mode(
        task_id: str, body: ExecutionModeRequest, project_dir: Optional[str] = Query(None)
    ) -> dict[str, Any]:
        """Switch execution mode; tasks without a workflow are kept in plan mode."""
        orchestrator = deps.resolve_orchestrator(project_dir)
        task = body.task.to_spec(task_id) if body.task is not None else None
        with _http_errors():
            state = orchestrator.set_execution_mode(task_id, body.mode, task)
        return {"execution": _state_payload(state)}

    @router.put("/tasks/{task_id}/repo-path")
    async def set_repo_path(
        task_id: str, body: RepoPathRequest, project_dir: Optional[str] = Query(None)
    ) -> dict[str, Any]:
        """Validate and store the task's working directory."""
        orchestrator = deps.resolve_orchestrator(project_dir)
        with _http_errors():
            state = await orchestrator.set_repo_path(task_id, body.path, body.repo_key)
        return {"execution": _state_payload(state)}

    @router.post("/tasks/{task_id}/plan/answers")
    async def submit_answers(
        task_id: str, body: SubmitAnswersRequest, project_dir: Optional[str] = Query(None)
    ) -> dict[str, Any]:
        """Answer the clarifying questions and launch the planning run."""
        orchestrator = deps.resolve_orchestrator(project_dir)
        answers = [answer.to_answer() for answer in body.answers]
        with _http_errors():
            state = await orchestrator.submit_answers(task_id, body.task.to_spec(task_id), answers)
        return {"execution": _state_payload(state)}

    @router.post("/tasks/{task_id}/plan/close")
    async def close_plan(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        orchestrator = deps.resolve_orchestrator(project_dir)
        return {"execution": _state_payload(orchestrator.close_plan(task_id))}

    @router.get("/tasks/{task_id}/plan")
    async def get_plan(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        """Read the plan document from the working directory."""
        orchestrator = deps.resolve_orchestrator(project_dir)
        with _http_errors():
            content = await orchestrator.load_plan(task_id)
        if content is None:
            raise HTTPException(status_code=404, detail=f"No plan document for task {task_id}")
        return {"content": content}

    @router.put("/tasks/{task_id}/plan")
    async def save_plan(
        task_id: str, body: SavePlanRequest, project_dir: Optional[str] = Query(None)
    ) -> dict[str, Any]:
        orchestrator = deps.resolve_orchestrator(project_dir)
        with _http_errors():
            state = await orchestrator.save_plan(task_id, body.content)
        return {"execution": _state_payload(state)}

    @router.get("/tasks/{task_id}/artifacts")
    async def list_artifacts(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        orchestrator = deps.resolve_orchestrator(project_dir)
        with _http_errors():
            return {"artifacts": await orchestrator.list_artifacts(task_id)}

    @router.get("/tasks/{task_id}/artifacts/{file_name}")
    async def read_artifact(task_id: str, file_name: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        orchestrator = deps.resolve_orchestrator(project_dir)
        with _http_errors():
            content = await orchestrator.read_artifact(task_id, file_name)
        return {"name": file_name, "content": content}

    @router.post("/tasks/{task_id}/artifacts/select")
    async def select_artifact(
        task_id: str, body: SelectArtifactRequest, project_dir: Optional[str] = Query(None)
    ) -> dict[str, Any]:
        """Open an artifact; plan-mode phase is not affected."""
        orchestrator = deps.resolve_orchestrator(project_dir)
        with _http_errors():
            state, content = await orchestrator.select_artifact(task_id, body.file_name)
        return {"execution": _state_payload(state), "content": content}

    @router.get("/sessions")
    async def list_sessions(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        """List the live run sessions of the execution host."""
        orchestrator = deps.resolve_orchestrator(project_dir)
        return {"sessions": orchestrator.sessions()}
