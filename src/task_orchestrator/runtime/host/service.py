"""Execution host: supervised local runs of the agent runtime."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from ... import prompts
from ...config import DEFAULT_POLL_INTERVAL_SECONDS, resolve_permission_mode
from .. import artifacts
from ..domain.events import (
    PLAN_KIND,
    RESEARCH_QUESTIONS_KIND,
    artifact_event,
    done_event,
    error_event,
    normalize_event,
    status_event,
)
from ..domain.models import Credentials, QuestionAnswer, new_run_id
from ..events.hub import ChannelHub, channel_name
from .agent_runtime import AgentRuntime, AgentRuntimeError, Emit, RuntimeRequest
from .poller import ProgressPoller, ProgressSource
from .sessions import RunSession, SessionRegistry

logger = logging.getLogger(__name__)

STDERR_BUFFER_LINES = 50
STDERR_TAIL_LINES = 5
STDERR_PREFIX = "[agent stderr]"

_JSON_BLOCK = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL)

ProgressSourceFactory = Callable[[Credentials], ProgressSource]
RunBody = Callable[[RuntimeRequest, Emit], Awaitable[None]]


@dataclass(frozen=True)
class StartedRun:
    """Handles returned to the caller of a start operation."""
    run_id: str
    channel: str

    def to_dict(self) -> dict[str, str]:
        return {"run_id": self.run_id, "channel": self.channel}


def runtime_env(credentials: Credentials, base: Optional[dict[str, str]] = None) -> dict[str, str]:
    """Process environment handed to the agent runtime, with credential variables on top."""
    env = dict(os.environ if base is None else base)
    env["POSTHOG_API_KEY"] = credentials.api_key
    env["POSTHOG_API_HOST"] = credentials.api_host
    env["POSTHOG_AUTH_HEADER"] = credentials.auth_header
    return env


def parse_research_questions(output: str) -> list[dict[str, Any]]:
    """Extract the question list from the fenced JSON block of a research answer.

    The last parseable block wins. Each question keeps ``id``, ``question`` and
    ``options``.

    Raises:
        AgentRuntimeError: If no block with a non-empty ``questions`` list exists.
    """
    for block in reversed(_JSON_BLOCK.findall(output or "")):
        try:
            data = json.loads(block)
        except json.JSONDecodeError:
            continue
        questions = data.get("questions") if isinstance(data, dict) else None
        if not isinstance(questions, list) or not questions:
            continue
        parsed = []
        for idx, item in enumerate(questions, start=1):
            if not isinstance(item, dict) or not item.get("question"):
                raise AgentRuntimeError(f"Research question {idx} is malformed")
            parsed.append(
                {
                    "id": str(item.get("id") or f"q{idx}"),
                    "question": str(item["question"]),
                    "options": [str(option) for option in list(item.get("options") or [])],
                }
            )
        return parsed
    raise AgentRuntimeError("Research run did not produce a questions JSON block")


def _require(**values: Any) -> None:
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ValueError(f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required")


def _require_credentials(credentials: Optional[Credentials]) -> Credentials:
    if credentials is None or not credentials.api_key or not credentials.api_host:
        raise ValueError("API credentials are required")
    return credentials


class AgentHost:
    """Own the session registry and supervise runs of the agent runtime.

    Every run publishes its events on ``agent-event:<run_id>`` and ends with
    exactly one ``done`` event. A failing run publishes one ``error`` before it;
    a cancelled run publishes ``status(canceled)`` instead. Registry entries and
    pollers are released in a ``finally`` step whatever the outcome.
    """
    def __init__(
        self,
        channels: ChannelHub,
        runtime: AgentRuntime,
        *,
        progress_sources: Optional[ProgressSourceFactory] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the AgentHost.

        Args:
            channels (ChannelHub): Hub the run events are published on.
            runtime (AgentRuntime): Agent runtime executing the runs.
            progress_sources (Optional[ProgressSourceFactory]): Builds the remote
                progress collaborator for a credential pair; ``None`` disables polling.
            poll_interval (float): Seconds between progress polls.
        """
        self.channels = channels
        self.runtime = runtime
        self.registry = SessionRegistry()
        self._progress_sources = progress_sources
        self._poll_interval = poll_interval

    async def start(
        self,
        task_id: str,
        workflow_id: str,
        repo_path: str,
        credentials: Optional[Credentials],
        *,
        permission_mode: Optional[str] = None,
        auto_progress: bool = True,
        create_pr: bool = True,
        model: Optional[str] = None,
    ) -> StartedRun:
        """Begin a supervised workflow run.

        Raises:
            ValueError: If an identifier or the credentials are missing.
        """
        _require(task_id=task_id, workflow_id=workflow_id, repo_path=repo_path)
        creds = _require_credentials(credentials)
        request = RuntimeRequest(
            task_id=task_id,
            repo_path=repo_path,
            credentials=creds,
            purpose="workflow",
            workflow_id=workflow_id,
            permission_mode=resolve_permission_mode(permission_mode),
            auto_progress=auto_progress,
            create_pr=create_pr,
            model=model,
            env=runtime_env(creds),
        )

        async def body(req: RuntimeRequest, forward: Emit) -> None:
            await self.runtime.run_workflow(req, forward)

        return self._launch(
            request,
            status_event("workflow_start", workflowId=workflow_id, taskId=task_id),
            body,
            poll=True,
        )

    async def start_plan_research(
        self,
        task_id: str,
        title: str,
        description: str,
        repo_path: str,
        credentials: Optional[Credentials],
    ) -> StartedRun:
        """Begin the research sub-run that produces clarifying questions.

        Raises:
            ValueError: If an identifier or the credentials are missing.
        """
        _require(task_id=task_id, repo_path=repo_path)
        creds = _require_credentials(credentials)
        request = RuntimeRequest(
            task_id=task_id,
            repo_path=repo_path,
            credentials=creds,
            purpose="research",
            permission_mode="plan",
            env=runtime_env(creds),
        )
        prompt = prompts.build_research_prompt(title, description)

        async def body(req: RuntimeRequest, forward: Emit) -> None:
            output = await self.runtime.run_prompt(req, prompt, forward)
            questions = parse_research_questions(output)
            artifacts.write_questions(req.repo_path, req.task_id, questions)
            forward(artifact_event(RESEARCH_QUESTIONS_KIND, questions))

        return self._launch(request, status_event("research_start", taskId=task_id), body)

    async def generate_plan(
        self,
        task_id: str,
        title: str,
        description: str,
        repo_path: str,
        answers: Iterable[QuestionAnswer],
        credentials: Optional[Credentials],
    ) -> StartedRun:
        """Begin the planning sub-run that writes ``plan.md``.

        Raises:
            ValueError: If an identifier or the credentials are missing.
        """
        _require(task_id=task_id, repo_path=repo_path)
        creds = _require_credentials(credentials)
        request = RuntimeRequest(
            task_id=task_id,
            repo_path=repo_path,
            credentials=creds,
            purpose="planning",
            permission_mode="plan",
            env=runtime_env(creds),
        )
        prompt = prompts.build_planning_prompt(title, description, list(answers))

        async def body(req: RuntimeRequest, forward: Emit) -> None:
            output = await self.runtime.run_prompt(req, prompt, forward)
            if not output.strip():
                raise AgentRuntimeError("Planning run returned an empty plan")
            path = artifacts.write_plan(req.repo_path, req.task_id, output)
            forward(artifact_event(PLAN_KIND, str(path)))

        return self._launch(request, status_event("planning_start", taskId=task_id), body)

    def cancel(self, run_id: str) -> bool:
        """Cancel one run without suspending the caller.

        The token is set, the runtime is asked to stop, the poller is stopped and
        the registry entry is removed before this returns.

        Returns:
            bool: Whether an active session matched ``run_id``.
        """
        session = self.registry.get(run_id)
        if session is None:
            return False
        try:
            session.token.set()
            try:
                self.runtime.cancel_task(session.owner_task_id)
            except Exception:
                logger.warning("Runtime cancel failed for run %s", run_id, exc_info=True)
            if session.poller is not None:
                session.poller.stop()
            if session.run_task is not None and not session.run_task.done():
                session.run_task.cancel()
            return True
        finally:
            self.registry.remove(run_id)

    def cancel_task(self, task_id: str) -> bool:
        """Cancel every run owned by ``task_id``."""
        cancelled = [self.cancel(session.run_id) for session in self.registry.find_by_task(task_id)]
        return any(cancelled)

    def sessions(self) -> list[dict[str, Any]]:
        return [session.to_dict() for session in self.registry.snapshot()]

    async def shutdown(self) -> None:
        """Cancel every live session and wait for their run tasks to unwind."""
        pending = []
        for session in self.registry.snapshot():
            if session.run_task is not None:
                pending.append(session.run_task)
            self.cancel(session.run_id)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _launch(
        self,
        request: RuntimeRequest,
        start_status: dict[str, Any],
        body: RunBody,
        *,
        poll: bool = False,
    ) -> StartedRun:
        run_id = new_run_id()
        session = RunSession(
            run_id=run_id,
            owner_task_id=request.task_id,
            channel=channel_name(run_id),
            purpose=request.purpose,
            token=request.token,
        )
        if poll and self._progress_sources is not None:
            session.poller = ProgressPoller(
                request.task_id,
                self._progress_sources(request.credentials),
                lambda event: self._forward(session, event),
                session.token,
                interval=self._poll_interval,
            )
        self.registry.register(session)
        session.run_task = asyncio.get_running_loop().create_task(
            self._supervise(session, request, start_status, body),
            name=f"agent-run-{run_id}",
        )
        logger.info("Started %s run %s for task %s", request.purpose, run_id, request.task_id)
        return StartedRun(run_id=run_id, channel=session.channel)

    def _publish(self, session: RunSession, event: dict[str, Any]) -> None:
        self.channels.publish(session.channel, event)

    def _forward(self, session: RunSession, raw: dict[str, Any]) -> None:
        if session.token.is_set():
            return
        try:
            event = normalize_event(raw)
        except ValueError as exc:
            logger.warning("Dropping malformed event on %s: %s", session.channel, exc)
            return
        if event["type"] == "done":
            return
        self._publish(session, event)

    async def _supervise(
        self,
        session: RunSession,
        request: RuntimeRequest,
        start_status: dict[str, Any],
        body: RunBody,
    ) -> None:
        stderr_lines: deque[str] = deque(maxlen=STDERR_BUFFER_LINES)

        def on_stderr(line: str) -> None:
            text = line.strip()
            if not text:
                return
            stderr_lines.append(text)
            logger.debug("%s %s", STDERR_PREFIX, text)
            self._forward(session, status_event("agent_stderr", message=f"{STDERR_PREFIX} {text}"))

        request.stderr = on_stderr
        try:
            self._publish(session, start_status)
            if session.poller is not None:
                session.poller.start()
            await body(request, lambda event: self._forward(session, event))
            if session.token.is_set():
                self._publish_cancelled(session)
            else:
                self._publish(session, done_event(True))
        except asyncio.CancelledError:
            self._publish_cancelled(session)
            raise
        except Exception as exc:
            if session.token.is_set():
                self._publish_cancelled(session)
            else:
                logger.error("%s run %s failed: %s", request.purpose, session.run_id, exc)
                self._publish(session, error_event(_failure_message(exc, stderr_lines), _cause(exc)))
                self._publish(session, done_event(False))
        finally:
            if session.poller is not None:
                session.poller.stop()
            self.registry.remove(session.run_id)

    def _publish_cancelled(self, session: RunSession) -> None:
        self._publish(session, status_event("canceled"))
        self._publish(session, done_event(False))


def _cause(exc: BaseException) -> Optional[str]:
    cause = exc.__cause__ or exc.__context__
    return str(cause) if cause is not None and str(cause) else None


def _failure_message(exc: BaseException, stderr_lines: Iterable[str]) -> str:
    message = str(exc) or exc.__class__.__name__
    tail = list(stderr_lines)[-STDERR_TAIL_LINES:]
    if tail:
        message += "\nLast agent stderr:\n" + "\n".join(tail)
    cause = _cause(exc)
    if cause:
        message += f" (cause: {cause})"
    return message
