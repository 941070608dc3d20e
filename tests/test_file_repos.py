from __future__ import annotations

from pathlib import Path

from task_orchestrator.runtime.domain.events import progress_event, status_event, text_event
from task_orchestrator.runtime.domain.models import ClarifyingQuestion, ExecutionState
from task_orchestrator.runtime.orchestrator.store import ExecutionStore
from task_orchestrator.runtime.storage.container import Container


def _store(project_dir: Path) -> ExecutionStore:
    container = Container(project_dir)
    return ExecutionStore(container.execution_states, container.task_logs)


def test_state_repository_upsert_get_delete(tmp_path: Path) -> None:
    container = Container(tmp_path)
    repo = container.execution_states

    repo.upsert(ExecutionState(task_id="T-1", repo_path="/work/web", plan_mode_phase="questions"))
    repo.upsert(ExecutionState(task_id="T-2"))
    repo.upsert(ExecutionState(task_id="T-1", repo_path="/work/api"))

    assert [state.task_id for state in repo.list()] == ["T-1", "T-2"]
    loaded = repo.get("T-1")
    assert loaded is not None and loaded.repo_path == "/work/api"
    assert repo.delete("T-2") is True
    assert repo.delete("T-2") is False
    assert repo.get("T-2") is None


def test_log_repository_skips_corrupt_lines(tmp_path: Path) -> None:
    container = Container(tmp_path)
    logs = container.task_logs

    logs.append("T/1", text_event("first"))
    log_file = container.state_root / "logs" / "T_1.jsonl"
    with log_file.open("a", encoding="utf-8") as handle:
        handle.write("{not json\n")
    logs.append("T/1", text_event("second"))

    assert [event["content"] for event in logs.read("T/1")] == ["first", "second"]

    logs.replace("T/1", [status_event("task_start")])
    assert [event["type"] for event in logs.read("T/1")] == ["status"]
    logs.delete("T/1")
    assert logs.read("T/1") == []


def test_store_returns_defaults_for_unseen_tasks(tmp_path: Path) -> None:
    store = _store(tmp_path)

    state = store.get("T-new")

    assert state.is_running is False
    assert state.run_mode == "local"
    assert state.execution_mode == "plan"
    assert state.plan_mode_phase == "idle"
    assert state.logs == []


def test_store_update_merges_and_persists(tmp_path: Path) -> None:
    store = _store(tmp_path)
    questions = [ClarifyingQuestion(id="q1", question="Which cache?", options=["a) Redis"])]

    store.update("T-1", repo_path="/work/web")
    store.update("T-1", plan_mode_phase="questions", clarifying_questions=questions)
    store.append_log("T-1", text_event("hello"))

    reloaded = _store(tmp_path).get("T-1")
    assert reloaded.repo_path == "/work/web"
    assert reloaded.plan_mode_phase == "questions"
    assert reloaded.clarifying_questions[0].question == "Which cache?"
    assert [event["content"] for event in reloaded.logs] == ["hello"]


def test_store_rejects_unknown_fields(tmp_path: Path) -> None:
    store = _store(tmp_path)

    try:
        store.update("T-1", colour="blue")
    except ValueError as exc:
        assert "colour" in str(exc)
    else:
        raise AssertionError("expected ValueError")


def test_store_get_returns_copies(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.append_log("T-1", text_event("one"))

    copy = store.get("T-1")
    copy.logs.append(text_event("injected"))
    copy.is_running = True

    state = store.get("T-1")
    assert len(state.logs) == 1
    assert state.is_running is False


def test_store_notifies_listeners_on_every_mutation(tmp_path: Path) -> None:
    store = _store(tmp_path)
    seen: list[tuple[str, str]] = []
    remove = store.on_change(lambda message: seen.append((message["type"], message["task_id"])))

    store.set_running("T-1", True)
    store.append_log("T-1", text_event("x"))
    store.clear_logs("T-1")
    store.clear("T-1")
    remove()
    store.set_running("T-1", False)

    assert seen == [
        ("execution.updated", "T-1"),
        ("execution.log", "T-1"),
        ("execution.logs_reset", "T-1"),
        ("execution.cleared", "T-1"),
    ]


def test_store_set_progress_reports_signature_change(tmp_path: Path) -> None:
    store = _store(tmp_path)
    snapshot = {"status": "in_progress", "updated_at": "2024-01-01T00:00:00Z", "has_progress": True}

    assert store.set_progress("T-1", snapshot) is True
    assert store.set_progress("T-1", dict(snapshot, completed_steps=2)) is False
    assert store.get("T-1").progress["completed_steps"] == 2
    assert store.set_progress("T-1", dict(snapshot, status="completed")) is True
    assert store.get("T-1").progress_signature == "completed|2024-01-01T00:00:00Z"


def test_store_repo_working_dir_mapping(tmp_path: Path) -> None:
    store = _store(tmp_path)

    assert store.get_repo_working_dir(None) is None
    assert store.get_repo_working_dir("acme/web") is None
    store.set_repo_working_dir("acme/web", "/work/web")

    assert _store(tmp_path).get_repo_working_dir("acme/web") == "/work/web"


def test_recover_interrupted_resets_running_records(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.update("T-1", is_running=True, current_run_id="run-1")
    store.update("T-2", is_running=False)
    store.append_log("T-1", progress_event({"status": "in_progress"}))

    restarted = _store(tmp_path)
    recovered = restarted.recover_interrupted()

    assert recovered == ["T-1"]
    state = restarted.get("T-1")
    assert state.is_running is False
    assert state.current_run_id is None
    assert state.logs[-1]["phase"] == "recovered"
