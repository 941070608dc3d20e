"""In-process channel hub carrying agent events from the host to subscribers."""

from __future__ import annotations

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "agent-event:"

Listener = Callable[[dict[str, Any]], None]
Unsubscribe = Callable[[], None]


def channel_name(run_id: str) -> str:
    """Name of the channel that carries events for ``run_id``."""
    return f"{CHANNEL_PREFIX}{run_id}"


class ChannelHub:
    """Route events published on a named channel to that channel's listeners.

    Delivery is synchronous and in publish order, so a listener observes the events
    of one run exactly in the order the host emitted them. Events published to a
    channel with no listener are dropped.
    """
    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, channel: str, listener: Listener) -> Unsubscribe:
        """Register ``listener`` on ``channel`` and return its idempotent teardown."""
        self._listeners.setdefault(channel, []).append(listener)
        removed = False

        def _unsubscribe() -> None:
            nonlocal removed
            if removed:
                return
            removed = True
            listeners = self._listeners.get(channel)
            if not listeners:
                return
            try:
                listeners.remove(listener)
            except ValueError:
                return
            if not listeners:
                self._listeners.pop(channel, None)

        return _unsubscribe

    def publish(self, channel: str, event: dict[str, Any]) -> int:
        """Deliver ``event`` to every current listener of ``channel``.

        Returns:
            int: Number of listeners the event was delivered to.
        """
        listeners = list(self._listeners.get(channel, ()))
        delivered = 0
        for listener in listeners:
            try:
                listener(event)
                delivered += 1
            except Exception:
                logger.exception("Listener on %s failed for %s event", channel, event.get("type"))
        return delivered

    def listener_count(self, channel: str) -> int:
        return len(self._listeners.get(channel, ()))

    def channels(self) -> list[str]:
        return sorted(self._listeners)
