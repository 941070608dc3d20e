"""Remote task API access."""

from .auth import AuthProvider
from .client import TaskApiClient, TaskApiError

__all__ = ["AuthProvider", "TaskApiClient", "TaskApiError"]
