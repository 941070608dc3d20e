"""Async client for the remote task API."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..domain.models import Credentials

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class TaskApiError(RuntimeError):
    """Raised when the remote task API cannot be reached or rejects a request."""
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TaskApiClient:
    """Thin wrapper around :class:`httpx.AsyncClient` with bearer authentication.

    The team id needed by project-scoped endpoints is looked up once from the
    current user and cached for the lifetime of the client.
    """
    def __init__(
        self,
        credentials: Credentials,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.credentials = credentials
        self._client = httpx.AsyncClient(
            base_url=credentials.api_host.rstrip("/"),
            headers={"Authorization": credentials.auth_header},
            timeout=timeout,
            transport=transport,
        )
        self._team_id: Optional[int] = None

    async def __aenter__(self) -> "TaskApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise TaskApiError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise TaskApiError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise TaskApiError(f"{method} {path} returned invalid JSON") from exc

    async def get_team_id(self) -> int:
        """Return the id of the current user's team, fetching it on first use.

        Raises:
            TaskApiError: If the lookup fails or the response has no team.
        """
        if self._team_id is not None:
            return self._team_id
        data = await self._request("GET", "/api/users/@me/")
        team = data.get("team") if isinstance(data, dict) else None
        team_id = team.get("id") if isinstance(team, dict) else None
        if team_id is None:
            raise TaskApiError("Current user has no team")
        self._team_id = int(team_id)
        return self._team_id

    async def run_task(self, task_id: str) -> dict[str, Any]:
        """Ask the remote executor to start ``task_id`` by moving it to the running stage."""
        team_id = await self.get_team_id()
        data = await self._request(
            "PATCH",
            f"/api/projects/{team_id}/tasks/{task_id}/update_stage/",
            json={"current_stage": "running"},
        )
        logger.info("Triggered remote run for task %s", task_id)
        return data if isinstance(data, dict) else {}

    async def get_task_progress(self, task_id: str) -> dict[str, Any]:
        """Fetch the progress snapshot of ``task_id``."""
        team_id = await self.get_team_id()
        data = await self._request("GET", f"/api/projects/{team_id}/tasks/{task_id}/progress/")
        return data if isinstance(data, dict) else {}
