"""Channel hub and websocket hub exports."""

from .hub import ChannelHub, channel_name
from .ws import hub

__all__ = ["ChannelHub", "channel_name", "hub"]
