"""Run sessions and the registry that owns their lifecycle."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .poller import ProgressPoller


class CancellationToken:
    """Cooperative cancellation signal shared by a run, its runtime and its poller."""
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class RunSession:
    """Control handles of one supervised local run."""
    run_id: str
    owner_task_id: str
    channel: str
    purpose: str = "workflow"
    token: CancellationToken = field(default_factory=CancellationToken)
    poller: Optional["ProgressPoller"] = None
    run_task: Optional["asyncio.Task[None]"] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "task_id": self.owner_task_id,
            "channel": self.channel,
            "purpose": self.purpose,
            "polling": self.poller is not None and self.poller.running,
            "cancelled": self.token.is_set(),
        }


class SessionRegistry:
    """Process-wide map from run id to :class:`RunSession`.

    Removal is idempotent so that cancellation and natural completion can both
    release the same entry.
    """
    def __init__(self) -> None:
        self._sessions: dict[str, RunSession] = {}

    def register(self, session: RunSession) -> RunSession:
        if session.run_id in self._sessions:
            raise ValueError(f"Run {session.run_id} is already registered")
        self._sessions[session.run_id] = session
        return session

    def get(self, run_id: str) -> Optional[RunSession]:
        return self._sessions.get(run_id)

    def find_by_task(self, task_id: str) -> list[RunSession]:
        return [session for session in self._sessions.values() if session.owner_task_id == task_id]

    def remove(self, run_id: str) -> Optional[RunSession]:
        return self._sessions.pop(run_id, None)

    def snapshot(self) -> list[RunSession]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._sessions
