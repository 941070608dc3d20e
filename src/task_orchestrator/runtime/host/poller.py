"""Background progress polling scoped to one run session."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol

from ..domain.events import progress_event
from .sessions import CancellationToken

logger = logging.getLogger(__name__)


class ProgressSource(Protocol):
    """Remote collaborator that reports the progress of a task."""
    async def get_task_progress(self, task_id: str) -> Optional[dict[str, Any]]:
        ...

    async def aclose(self) -> None:
        ...


class ProgressPoller:
    """Poll a :class:`ProgressSource` immediately, then on a fixed interval.

    Snapshots flagged ``has_progress`` are handed to ``publish`` as ``progress``
    events. A failed poll is logged and the loop keeps going; the first failure
    of a streak is a warning, repeats are debug noise.
    """
    def __init__(
        self,
        task_id: str,
        source: ProgressSource,
        publish: Callable[[dict[str, Any]], Any],
        token: CancellationToken,
        *,
        interval: float = 5.0,
    ) -> None:
        self.task_id = task_id
        self._source = source
        self._publish = publish
        self._token = token
        self._interval = interval
        self._task: Optional[asyncio.Task[None]] = None
        self._closer: Optional[asyncio.Task[None]] = None
        self._entered = False
        self._stopped = False
        self._failures = 0
        self.polls = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None and not self._stopped:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        """Stop polling without waiting; safe to call more than once.

        A poller stopped before its loop first ran closes the source in the
        background, and cannot be started again.
        """
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if not self._entered and self._closer is None:
            self._closer = asyncio.get_running_loop().create_task(_close_quietly(self._source.aclose))

    async def wait_stopped(self) -> None:
        for task in (self._task, self._closer):
            if task is None:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def poll_once(self) -> None:
        self.polls += 1
        try:
            progress = await self._source.get_task_progress(self.task_id)
        except Exception as exc:
            self._failures += 1
            log = logger.warning if self._failures == 1 else logger.debug
            log("Failed to fetch progress for task %s (attempt %d): %s", self.task_id, self._failures, exc)
            return
        self._failures = 0
        if self._token.is_set():
            return
        if isinstance(progress, dict) and progress.get("has_progress"):
            self._publish(progress_event(progress))

    async def _run(self) -> None:
        self._entered = True
        try:
            while not self._token.is_set():
                await self.poll_once()
                try:
                    await asyncio.wait_for(self._token.wait(), timeout=self._interval)
                except asyncio.TimeoutError:
                    continue
        finally:
            await _close_quietly(self._source.aclose)


async def _close_quietly(close: Callable[[], Awaitable[None]]) -> None:
    try:
        await close()
    except Exception:
        logger.debug("Progress source close failed", exc_info=True)
