from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from task_orchestrator.config import OrchestratorSettings
from task_orchestrator.runtime.domain.events import error_event, text_event
from task_orchestrator.runtime.domain.models import QuestionAnswer, TaskSpec
from task_orchestrator.runtime.host import CommandAgentRuntime, ScriptedAgentRuntime, UnconfiguredAgentRuntime
from task_orchestrator.runtime.orchestrator import OrchestratorService, build_runtime
from task_orchestrator.runtime.orchestrator.launcher import MISSING_CREDENTIALS_MESSAGE
from task_orchestrator.runtime.remote import TaskApiError
from task_orchestrator.runtime.storage import Container

ENV = {"POSTHOG_API_KEY": "phx_test", "POSTHOG_API_HOST": "https://app.example.test"}

QUESTIONS_OUTPUT = """```json
{"questions": [
  {"id": "q1", "question": "Where do sessions live?", "options": ["a) Redis", "c) Something else (please specify)"]},
  {"id": "q2", "question": "Add tests?", "options": ["a) Yes", "b) No"]}
]}
```"""


class FakeRemote:
    def __init__(self, fail: Optional[str] = None) -> None:
        self.fail = fail
        self.started: list[str] = []
        self.progress_calls = 0
        self.closed = 0

    async def run_task(self, task_id: str) -> dict[str, Any]:
        if self.fail:
            raise TaskApiError(self.fail)
        self.started.append(task_id)
        return {"id": task_id}

    async def get_task_progress(self, task_id: str) -> dict[str, Any]:
        self.progress_calls += 1
        return {"has_progress": False}

    async def aclose(self) -> None:
        self.closed += 1


class ScriptedPrompts:
    def __init__(self, directory: Optional[str] = None, choice: str = "cancel") -> None:
        self.directory = directory
        self.choice = choice
        self.selections: list[str] = []

    async def select_directory(self, task_id: str) -> Optional[str]:
        self.selections.append(task_id)
        return self.directory

    async def confirm_write_access(self, task_id: str, path: str) -> str:
        return self.choice


def _service(
    tmp_path: Path,
    runtime: Optional[ScriptedAgentRuntime] = None,
    *,
    prompts: Optional[ScriptedPrompts] = None,
    remote: Optional[FakeRemote] = None,
    environ: Optional[dict[str, str]] = None,
    with_host: bool = True,
    can_write: Callable[[str], bool] = lambda path: True,
) -> tuple[OrchestratorService, FakeRemote]:
    remote = remote or FakeRemote()
    service = OrchestratorService(
        Container(tmp_path / "project"),
        runtime=runtime or ScriptedAgentRuntime(),
        prompts=prompts,
        remote_clients=lambda creds: remote,
        is_repository=lambda path: True,
        can_write=can_write,
        environ=ENV if environ is None else environ,
        with_host=with_host,
    )
    return service, remote


def _repo(tmp_path: Path, name: str = "repo") -> Path:
    path = tmp_path / name
    path.mkdir()
    return path


async def _settle(turns: int = 40) -> None:
    for _ in range(turns):
        await asyncio.sleep(0)


def _workflow_task(task_id: str = "T-1", repository: Optional[str] = None) -> TaskSpec:
    return TaskSpec(id=task_id, title="Add login", description="OAuth", workflow="wf-1", repository=repository)


def _phases(service: OrchestratorService, task_id: str) -> list[Any]:
    return [event.get("phase", event["type"]) for event in service.get_execution(task_id).logs]


def test_missing_credentials_logs_error_and_does_not_start(tmp_path: Path) -> None:
    runtime = ScriptedAgentRuntime()
    service, _ = _service(tmp_path, runtime, environ={})

    state = asyncio.run(service.run_task("T-1", _workflow_task()))

    assert state.is_running is False
    assert state.logs[-1]["message"] == MISSING_CREDENTIALS_MESSAGE
    assert runtime.requests == []


def test_cancelled_directory_prompt_aborts_before_start(tmp_path: Path) -> None:
    runtime = ScriptedAgentRuntime()
    prompts = ScriptedPrompts(directory=None)
    service, _ = _service(tmp_path, runtime, prompts=prompts)

    state = asyncio.run(service.run_task("T-1", _workflow_task()))

    assert prompts.selections == ["T-1"]
    assert state.is_running is False
    assert state.logs[-1]["message"] == "No repository folder selected."
    assert runtime.requests == []


def test_local_workflow_run_completes_and_remembers_repository(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    runtime = ScriptedAgentRuntime()
    runtime.script("T-1", events=[text_event("editing files")])
    prompts = ScriptedPrompts(directory=str(repo))
    service, _ = _service(tmp_path, runtime, prompts=prompts)
    task = _workflow_task(repository="acme/web")
    service.set_execution_mode("T-1", "workflow", task)

    async def scenario() -> tuple[Any, Any]:
        started = await service.run_task("T-1", task)
        await _settle()
        return started, service.get_execution("T-1")

    started, finished = asyncio.run(scenario())

    assert started.is_running is True
    assert started.current_run_id
    assert [event["content"] for event in started.logs] == [
        "Starting task run...",
        "Permission mode: acceptEdits",
        f"Repo: {repo}",
    ]
    assert finished.is_running is False
    assert _phases(service, "T-1") == ["task_start", "permission_mode", "repo_path", "workflow_start", "text", "done"]
    assert finished.repo_path == str(repo)
    assert service.store.get_repo_working_dir("acme/web") == str(repo)
    assert service.subscriptions.is_subscribed("T-1") is False
    assert service.sessions() == []

    other = _workflow_task("T-2", repository="acme/web")
    service.set_execution_mode("T-2", "workflow", other)
    asyncio.run(service.run_task("T-2", other))
    assert prompts.selections == ["T-1"]
    assert service.get_execution("T-2").repo_path == str(repo)


def test_run_request_while_running_is_a_no_op(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    runtime = ScriptedAgentRuntime()
    runtime.script("T-1", events=[text_event("working")], block=True)
    service, _ = _service(tmp_path, runtime)
    task = _workflow_task()

    async def scenario() -> tuple[int, int]:
        await service.set_repo_path("T-1", str(repo))
        service.set_execution_mode("T-1", "workflow", task)
        await service.run_task("T-1", task)
        await _settle()
        before = len(service.get_execution("T-1").logs)
        await service.run_task("T-1", task)
        after = len(service.get_execution("T-1").logs)
        await service.shutdown()
        return before, after

    before, after = asyncio.run(scenario())

    assert len(runtime.requests) == 1
    assert before == after


def test_concurrent_tasks_keep_isolated_logs(tmp_path: Path) -> None:
    repo_a = _repo(tmp_path, "repo-a")
    repo_b = _repo(tmp_path, "repo-b")
    runtime = ScriptedAgentRuntime()
    runtime.script("T-A", events=[text_event("A1"), text_event("A2")], block=True)
    runtime.script("T-B", events=[text_event("B1")], block=True)
    service, _ = _service(tmp_path, runtime)

    async def scenario() -> None:
        for task_id, repo in (("T-A", repo_a), ("T-B", repo_b)):
            task = _workflow_task(task_id)
            await service.set_repo_path(task_id, str(repo))
            service.set_execution_mode(task_id, "workflow", task)
            await service.run_task(task_id, task)
        await _settle()
        assert len(service.host.registry.find_by_task("T-A")) == 1
        assert len(service.host.registry.find_by_task("T-B")) == 1
        assert service.cancel_task("T-A") is True
        await _settle()
        assert service.get_execution("T-B").is_running is True
        await service.shutdown()

    asyncio.run(scenario())

    texts_a = [event["content"] for event in service.get_execution("T-A").logs if event["type"] == "text"]
    texts_b = [event["content"] for event in service.get_execution("T-B").logs if event["type"] == "text"]
    assert texts_a == ["A1", "A2"]
    assert texts_b == ["B1"]
    assert service.get_execution("T-A").current_run_id != service.get_execution("T-B").current_run_id


def test_cancel_stops_run_poller_and_later_events(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    runtime = ScriptedAgentRuntime()
    runtime.script("T-1", events=[text_event("step 1")], block=True)
    service, remote = _service(tmp_path, runtime)
    task = _workflow_task()

    async def scenario() -> tuple[bool, bool, int, int]:
        await service.set_repo_path("T-1", str(repo))
        service.set_execution_mode("T-1", "workflow", task)
        await service.run_task("T-1", task)
        await _settle()
        cancelled = service.cancel_task("T-1")
        logs_after_cancel = len(service.get_execution("T-1").logs)
        polls = remote.progress_calls
        await _settle()
        await asyncio.sleep(0.02)
        assert remote.progress_calls == polls
        return cancelled, service.cancel_task("T-1"), logs_after_cancel, len(service.get_execution("T-1").logs)

    cancelled, cancelled_again, logs_after_cancel, logs_later = asyncio.run(scenario())

    state = service.get_execution("T-1")
    assert cancelled is True
    assert cancelled_again is False
    assert state.is_running is False
    assert [event.get("phase", event["type"]) for event in state.logs[-2:]] == ["canceled", "done"]
    assert state.logs[-2]["content"] == "Run cancelled"
    assert state.logs[-1]["success"] is False
    assert len([event for event in state.logs if event["type"] == "done"]) == 1
    assert logs_after_cancel == logs_later
    assert service.subscriptions.is_subscribed("T-1") is False
    assert service.sessions() == []
    assert runtime.cancelled == ["T-1"]
    assert remote.progress_calls >= 1


def test_cancel_without_run_is_a_no_op(tmp_path: Path) -> None:
    service, _ = _service(tmp_path)

    assert service.cancel_task("T-1") is False
    assert service.get_execution("T-1").logs == []


def test_cloud_run_triggers_remote_executor(tmp_path: Path) -> None:
    runtime = ScriptedAgentRuntime()
    service, remote = _service(tmp_path, runtime)
    service.set_run_mode("T-1", "cloud")

    state = asyncio.run(service.run_task("T-1", _workflow_task()))

    assert remote.started == ["T-1"]
    assert remote.closed == 1
    assert state.is_running is False
    assert [event["phase"] for event in state.logs] == ["task_start", "task_started"]
    assert state.logs[0]["content"] == "Starting task run in cloud..."
    assert runtime.requests == []


def test_cloud_run_failure_is_logged(tmp_path: Path) -> None:
    service, remote = _service(tmp_path, remote=FakeRemote(fail="PATCH returned 403"))
    service.set_run_mode("T-1", "cloud")

    state = asyncio.run(service.run_task("T-1", _workflow_task()))

    assert state.is_running is False
    assert state.logs[-1]["message"] == "Error starting cloud task: PATCH returned 403"
    assert remote.closed == 1


def test_missing_host_fails_local_start(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    service, _ = _service(tmp_path, with_host=False)

    async def scenario() -> Any:
        await service.set_repo_path("T-1", str(repo))
        return await service.run_task("T-1", _workflow_task())

    state = asyncio.run(scenario())

    assert state.is_running is False
    assert state.logs[-1]["message"] == "Failed to start agent: execution host not available"


def test_host_start_failure_is_logged(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = _repo(tmp_path)
    service, _ = _service(tmp_path)

    async def refuse(*args: Any, **kwargs: Any) -> Any:
        raise RuntimeError("spawn failed")

    monkeypatch.setattr(service.host, "start_plan_research", refuse)

    async def scenario() -> Any:
        await service.set_repo_path("T-1", str(repo))
        return await service.run_task("T-1", TaskSpec(id="T-1", title="t"))

    state = asyncio.run(scenario())

    assert state.is_running is False
    assert state.logs[-1]["message"] == "Error starting agent: spawn failed"


def test_workflow_mode_requires_a_workflow(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    runtime = ScriptedAgentRuntime()
    service, _ = _service(tmp_path, runtime)

    assert service.set_execution_mode("T-1", "workflow", TaskSpec(id="T-1")).execution_mode == "plan"
    assert service.set_execution_mode("T-1", "workflow", _workflow_task()).execution_mode == "workflow"
    with pytest.raises(ValueError):
        service.set_run_mode("T-1", "satellite")  # type: ignore[arg-type]

    async def scenario() -> None:
        await service.set_repo_path("T-1", str(repo))
        await service.run_task("T-1", TaskSpec(id="T-1", title="No workflow"))
        await _settle()

    asyncio.run(scenario())

    assert service.get_execution("T-1").execution_mode == "plan"
    assert runtime.requests[0].purpose == "research"


def test_write_denied_folder_can_be_reselected(tmp_path: Path) -> None:
    read_only = _repo(tmp_path, "read-only")
    writable = _repo(tmp_path, "writable")
    prompts = ScriptedPrompts(directory=str(writable), choice="grant")
    service, _ = _service(tmp_path, prompts=prompts, can_write=lambda path: path != str(read_only))

    state = asyncio.run(service.set_repo_path("T-1", str(read_only), "acme/web"))

    assert state.repo_path == str(writable)
    assert service.store.get_repo_working_dir("acme/web") == str(writable)
    assert state.logs[-1]["message"] == f"No write permission in selected folder: {read_only}"


def test_invalid_repo_path_is_rejected(tmp_path: Path) -> None:
    service, _ = _service(tmp_path, can_write=lambda path: False)

    with pytest.raises(ValueError, match="cannot be used"):
        asyncio.run(service.set_repo_path("T-1", str(tmp_path)))
    assert service.get_execution("T-1").repo_path is None


def test_plan_mode_flow_from_research_to_review(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    plan = "# Plan\r\n\r\n1. Store sessions in SQLite\n"
    runtime = ScriptedAgentRuntime()
    runtime.script("T-1:research", output=QUESTIONS_OUTPUT)
    runtime.script("T-1:planning", output=plan)
    service, _ = _service(tmp_path, runtime)
    task = TaskSpec(id="T-1", title="Add login", description="OAuth login page")
    answers = [QuestionAnswer("q1", "c) Something else (please specify)", "SQLite"), QuestionAnswer("q2", "a) Yes")]

    async def scenario() -> Any:
        await service.set_repo_path("T-1", str(repo))
        await service.run_task("T-1", task)
        await _settle()
        questions = service.get_execution("T-1")
        assert questions.plan_mode_phase == "questions"
        assert questions.is_running is False
        assert [question.id for question in questions.clarifying_questions] == ["q1", "q2"]

        planning = await service.submit_answers("T-1", task, answers)
        assert planning.plan_mode_phase == "planning"
        assert planning.is_running is True
        await _settle()
        return service.get_execution("T-1")

    reviewed = asyncio.run(scenario())

    assert reviewed.plan_mode_phase == "review"
    assert reviewed.plan_content == plan
    assert reviewed.is_running is False
    assert [request.purpose for request in runtime.requests] == ["research", "planning"]
    assert "SQLite" in runtime.prompts[1]
    assert asyncio.run(service.load_plan("T-1")) == plan
    assert [item["name"] for item in asyncio.run(service.list_artifacts("T-1"))] == ["plan.md"]

    closed = service.close_plan("T-1")
    assert closed.plan_mode_phase == "idle"
    assert asyncio.run(service.read_artifact("T-1", "plan.md")) == plan


def test_failed_planning_returns_to_questions_with_answers(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    runtime = ScriptedAgentRuntime()
    runtime.script("T-1:research", output=QUESTIONS_OUTPUT)
    runtime.script("T-1:planning", error="model overloaded")
    service, _ = _service(tmp_path, runtime)
    task = TaskSpec(id="T-1", title="Add login")
    answers = [QuestionAnswer("q1", "a) Redis"), QuestionAnswer("q2", "b) No")]

    async def scenario() -> Any:
        await service.set_repo_path("T-1", str(repo))
        await service.run_task("T-1", task)
        await _settle()
        await service.submit_answers("T-1", task, answers)
        await _settle()
        return service.get_execution("T-1")

    state = asyncio.run(scenario())

    assert state.plan_mode_phase == "questions"
    assert state.question_answers == answers
    assert state.is_running is False
    messages = [event.get("message", "") for event in state.logs if event["type"] == "error"]
    assert messages[0].startswith("model overloaded")
    assert "Planning ended without a plan document" in messages[1]


def test_cancel_during_planning_returns_to_questions(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    runtime = ScriptedAgentRuntime()
    runtime.script("T-1:research", output=QUESTIONS_OUTPUT)
    runtime.script("T-1:planning", block=True)
    service, _ = _service(tmp_path, runtime)
    task = TaskSpec(id="T-1", title="Add login")

    async def scenario() -> Any:
        await service.set_repo_path("T-1", str(repo))
        await service.run_task("T-1", task)
        await _settle()
        await service.submit_answers("T-1", task, [QuestionAnswer("q1", "a) Redis"), QuestionAnswer("q2", "a) Yes")])
        await _settle()
        assert service.cancel_task("T-1") is True
        await _settle()
        return service.get_execution("T-1")

    state = asyncio.run(scenario())

    assert state.plan_mode_phase == "questions"
    assert state.is_running is False
    assert len(state.question_answers) == 2


def test_recover_resets_runs_interrupted_by_restart(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    service, _ = _service(tmp_path)
    service.store.update(
        "T-1",
        repo_path=str(repo),
        is_running=True,
        current_run_id="run-before-restart",
        plan_mode_phase="planning",
    )

    restarted, _ = _service(tmp_path)
    recovered = restarted.recover()

    state = restarted.get_execution("T-1")
    assert recovered == ["T-1"]
    assert state.is_running is False
    assert state.current_run_id is None
    assert state.plan_mode_phase == "questions"
    assert [event.get("phase", event["type"]) for event in state.logs] == ["recovered", "error"]


def test_build_runtime_follows_runtime_command() -> None:
    assert isinstance(build_runtime(OrchestratorSettings()), UnconfiguredAgentRuntime)
    command = build_runtime(OrchestratorSettings(runtime_command="agent-runner --jsonl"))
    assert isinstance(command, CommandAgentRuntime)
    assert command.argv == ["agent-runner", "--jsonl"]


def test_failed_replanning_ignores_plan_from_earlier_cycle(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    runtime = ScriptedAgentRuntime()
    runtime.script("T-1:research", output=QUESTIONS_OUTPUT)
    runtime.script("T-1:planning", output="# OLD PLAN\n")
    service, _ = _service(tmp_path, runtime)
    task = TaskSpec(id="T-1", title="Add login")
    answers = [QuestionAnswer("q1", "a) Redis"), QuestionAnswer("q2", "a) Yes")]

    async def scenario() -> Any:
        await service.set_repo_path("T-1", str(repo))
        await service.run_task("T-1", task)
        await _settle()
        await service.submit_answers("T-1", task, answers)
        await _settle()
        assert service.get_execution("T-1").plan_mode_phase == "review"
        service.close_plan("T-1")

        runtime.script("T-1:planning", error="model overloaded")
        await service.run_task("T-1", task)
        await _settle()
        await service.submit_answers("T-1", task, answers)
        await _settle()
        return service.get_execution("T-1")

    state = asyncio.run(scenario())

    assert state.plan_mode_phase == "questions"
    assert state.plan_content is None
    messages = [event["message"] for event in state.logs if event["type"] == "error"]
    assert messages[0].startswith("model overloaded")
    assert "Planning ended without a plan document" in messages[-1]


def test_planning_launch_failure_returns_to_questions(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = _repo(tmp_path)
    runtime = ScriptedAgentRuntime()
    runtime.script("T-1:research", output=QUESTIONS_OUTPUT)
    service, _ = _service(tmp_path, runtime)
    task = TaskSpec(id="T-1", title="Add login")

    async def refuse(*args: Any, **kwargs: Any) -> Any:
        raise RuntimeError("spawn failed")

    async def scenario() -> Any:
        await service.set_repo_path("T-1", str(repo))
        await service.run_task("T-1", task)
        await _settle()
        monkeypatch.setattr(service.host, "generate_plan", refuse)
        return await service.submit_answers("T-1", task, [QuestionAnswer("q1", "a) Redis"), QuestionAnswer("q2", "a) Yes")])

    state = asyncio.run(scenario())

    assert state.plan_mode_phase == "questions"
    assert state.is_running is False
    messages = [event["message"] for event in state.logs if event["type"] == "error"]
    assert messages[0] == "Error starting agent: spawn failed"
    assert "Planning ended without a plan document" in messages[1]


def test_planning_runs_even_after_switching_to_workflow_mode(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    runtime = ScriptedAgentRuntime()
    runtime.script("T-1:research", output=QUESTIONS_OUTPUT)
    runtime.script("T-1:planning", output="# Plan\n")
    service, _ = _service(tmp_path, runtime)
    task = _workflow_task()

    async def scenario() -> Any:
        await service.set_repo_path("T-1", str(repo))
        await service.run_task("T-1", task)
        await _settle()
        service.set_execution_mode("T-1", "workflow", task)
        await service.submit_answers("T-1", task, [QuestionAnswer("q1", "a) Redis"), QuestionAnswer("q2", "a) Yes")])
        await _settle()
        return service.get_execution("T-1")

    state = asyncio.run(scenario())

    assert [request.purpose for request in runtime.requests] == ["research", "planning"]
    assert state.execution_mode == "plan"
    assert state.plan_mode_phase == "review"


def test_run_request_waits_for_errored_run_session_to_end(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    runtime = ScriptedAgentRuntime()
    runtime.script("T-1", events=[error_event("tool crashed")], block=True)
    service, _ = _service(tmp_path, runtime)
    task = _workflow_task()

    async def scenario() -> tuple[bool, int, bool]:
        await service.set_repo_path("T-1", str(repo))
        service.set_execution_mode("T-1", "workflow", task)
        await service.run_task("T-1", task)
        await _settle()
        stopped = service.get_execution("T-1").is_running
        await service.run_task("T-1", task)
        requests = len(runtime.requests)
        cancelled = service.cancel_task("T-1")
        await _settle()
        return stopped, requests, cancelled

    stopped, requests, cancelled = asyncio.run(scenario())

    assert stopped is False
    assert requests == 1
    assert cancelled is True
    assert service.sessions() == []
