"""Agent runtime that drives an external command over a JSON-lines protocol.

The command receives one JSON request object on stdin and writes agent events,
one JSON object per line, on stdout. Lines written to stderr are diagnostics.
For prompt runs the content of the last ``text`` event is the final answer.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
from typing import Any, Optional

from ..domain.events import normalize_event, text_event
from .agent_runtime import AgentRuntimeError, Emit, RuntimeRequest

logger = logging.getLogger(__name__)


class CommandAgentRuntime:
    """Spawn ``command`` once per run inside the task's working directory."""
    def __init__(self, command: str | list[str]) -> None:
        self.argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.argv:
            raise ValueError("Agent runtime command must not be empty")
        self._processes: dict[str, asyncio.subprocess.Process] = {}

    def _payload(self, request: RuntimeRequest, prompt: Optional[str]) -> dict[str, Any]:
        return {
            "mode": "prompt" if prompt is not None else "workflow",
            "purpose": request.purpose,
            "task_id": request.task_id,
            "workflow_id": request.workflow_id,
            "repo_path": request.repo_path,
            "permission_mode": request.permission_mode,
            "auto_progress": request.auto_progress,
            "create_pr": request.create_pr,
            "model": request.model,
            "prompt": prompt,
        }

    async def run_workflow(self, request: RuntimeRequest, emit: Emit) -> None:
        await self._run(request, None, emit)

    async def run_prompt(self, request: RuntimeRequest, prompt: str, emit: Emit) -> str:
        return await self._run(request, prompt, emit)

    def cancel_task(self, task_id: str) -> None:
        process = self._processes.get(task_id)
        if process is not None and process.returncode is None:
            process.terminate()

    async def _run(self, request: RuntimeRequest, prompt: Optional[str], emit: Emit) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv,
                cwd=request.repo_path,
                env=request.env or None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AgentRuntimeError(f"Agent runtime command not found: {self.argv[0]}") from exc

        self._processes[request.task_id] = process
        watcher = asyncio.create_task(self._terminate_on_cancel(request, process))
        try:
            if process.stdin is not None:
                process.stdin.write((json.dumps(self._payload(request, prompt)) + "\n").encode("utf-8"))
                await process.stdin.drain()
                process.stdin.close()

            final_text, _ = await asyncio.gather(
                self._read_events(process, emit),
                self._read_stderr(process, request),
            )
            return_code = await process.wait()
        finally:
            watcher.cancel()
            if process.returncode is None:
                process.terminate()
            if self._processes.get(request.task_id) is process:
                self._processes.pop(request.task_id, None)

        if request.token.is_set():
            raise AgentRuntimeError("Run aborted")
        if return_code != 0:
            raise AgentRuntimeError(f"Agent runtime exited with code {return_code}")
        return final_text

    async def _terminate_on_cancel(self, request: RuntimeRequest, process: asyncio.subprocess.Process) -> None:
        await request.token.wait()
        if process.returncode is None:
            logger.info("Terminating agent runtime for task %s", request.task_id)
            process.terminate()

    async def _read_events(self, process: asyncio.subprocess.Process, emit: Emit) -> str:
        final_text = ""
        if process.stdout is None:
            return final_text
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                event = normalize_event(json.loads(line))
            except (json.JSONDecodeError, ValueError):
                logger.debug("Forwarding non-event runtime output: %s", line)
                event = text_event(line)
            if event["type"] == "text":
                final_text = str(event.get("content") or "")
            emit(event)
        return final_text

    async def _read_stderr(self, process: asyncio.subprocess.Process, request: RuntimeRequest) -> None:
        if process.stderr is None:
            return
        async for raw_line in process.stderr:
            request.stderr(raw_line.decode("utf-8", errors="replace"))
