"""Deterministic agent runtime replaying canned runs, for tests and demos."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from .agent_runtime import AgentRuntimeError, Emit, RuntimeRequest


@dataclass
class ScriptedRun:
    """Canned behaviour of one run of :class:`ScriptedAgentRuntime`.

    Attributes:
        events: Events emitted in order, one per scheduling turn.
        output: Final text returned by prompt runs.
        stderr: Diagnostic lines written before the events.
        error: When set, the run fails with this message after the events.
        block: When true, the run waits for cancellation after the events.
    """
    events: list[dict[str, Any]] = field(default_factory=list)
    output: str = ""
    stderr: list[str] = field(default_factory=list)
    error: Optional[str] = None
    block: bool = False


class ScriptedAgentRuntime:
    """Runtime that replays scripted events instead of driving a real agent.

    Scripts are looked up by ``"<task_id>:<purpose>"`` first and by ``task_id``
    second. Unscripted workflow runs finish immediately; unscripted prompt runs
    return an empty string.
    """
    def __init__(self, scripts: Optional[dict[str, ScriptedRun]] = None) -> None:
        self._scripts: dict[str, ScriptedRun] = dict(scripts or {})
        self.requests: list[RuntimeRequest] = []
        self.prompts: list[str] = []
        self.cancelled: list[str] = []

    def script(self, key: str, **kwargs: Any) -> ScriptedRun:
        run = ScriptedRun(**kwargs)
        self._scripts[key] = run
        return run

    def _lookup(self, request: RuntimeRequest) -> ScriptedRun:
        return (
            self._scripts.get(f"{request.task_id}:{request.purpose}")
            or self._scripts.get(request.task_id)
            or ScriptedRun()
        )

    async def _play(self, request: RuntimeRequest, emit: Emit) -> ScriptedRun:
        self.requests.append(request)
        run = self._lookup(request)
        for line in run.stderr:
            request.stderr(line)
        for event in run.events:
            await asyncio.sleep(0)
            emit(dict(event))
        if run.block:
            await request.token.wait()
        if request.token.is_set():
            raise AgentRuntimeError("Run aborted")
        if run.error:
            raise AgentRuntimeError(run.error)
        return run

    async def run_workflow(self, request: RuntimeRequest, emit: Emit) -> None:
        await self._play(request, emit)

    async def run_prompt(self, request: RuntimeRequest, prompt: str, emit: Emit) -> str:
        self.prompts.append(prompt)
        run = await self._play(request, emit)
        return run.output

    def cancel_task(self, task_id: str) -> None:
        self.cancelled.append(task_id)
