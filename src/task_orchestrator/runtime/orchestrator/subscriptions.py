"""Per-task subscriptions to run channels."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from ..events.hub import ChannelHub, Unsubscribe
from .store import ExecutionStore

logger = logging.getLogger(__name__)

EventHook = Callable[[str, dict[str, Any]], None]


class SubscriptionManager:
    """Keep at most one live channel subscription per task and apply its events.

    ``progress`` events always replace the stored snapshot but are logged only
    when their signature changes. ``error`` and ``done`` stop the run; ``done``
    also releases the subscription. Everything else is appended verbatim.
    """
    def __init__(self, store: ExecutionStore, channels: ChannelHub) -> None:
        self._store = store
        self._channels = channels
        self._handles: dict[str, Unsubscribe] = {}
        self._channel_of: dict[str, str] = {}
        self._hooks: list[EventHook] = []

    def add_hook(self, hook: EventHook) -> None:
        """Call ``hook(task_id, event)`` after each event has been applied."""
        self._hooks.append(hook)

    def subscribe(self, task_id: str, channel: str) -> None:
        self.unsubscribe(task_id)
        self._handles[task_id] = self._channels.subscribe(channel, lambda event: self.dispatch(task_id, event))
        self._channel_of[task_id] = channel
        logger.debug("Task %s subscribed to %s", task_id, channel)

    def unsubscribe(self, task_id: str) -> bool:
        """Tear down the task's subscription; a no-op when none exists."""
        handle = self._handles.pop(task_id, None)
        self._channel_of.pop(task_id, None)
        if handle is None:
            return False
        handle()
        return True

    def is_subscribed(self, task_id: str) -> bool:
        return task_id in self._handles

    def channel_for(self, task_id: str) -> Optional[str]:
        return self._channel_of.get(task_id)

    def dispatch(self, task_id: str, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        if event_type == "progress":
            progress = event.get("progress")
            if isinstance(progress, dict) and self._store.set_progress(task_id, progress):
                self._store.append_log(task_id, event)
        else:
            if event_type in {"error", "done"}:
                self._store.set_running(task_id, False)
            self._store.append_log(task_id, event)
            if event_type == "done":
                self.unsubscribe(task_id)
        for hook in list(self._hooks):
            hook(task_id, event)
