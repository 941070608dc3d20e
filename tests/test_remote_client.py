from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from task_orchestrator.config import OrchestratorSettings
from task_orchestrator.runtime.domain.models import Credentials
from task_orchestrator.runtime.remote import AuthProvider, TaskApiClient, TaskApiError

CREDS = Credentials("phx_test", "https://app.example.test/")


def _transport(requests: list[httpx.Request], routes: dict[tuple[str, str], Any]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        result = routes.get((request.method, request.url.path))
        if result is None:
            return httpx.Response(404, json={"detail": "Not found."})
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=result)

    return httpx.MockTransport(handler)


def test_run_task_looks_up_team_once_and_patches_stage() -> None:
    requests: list[httpx.Request] = []
    routes = {
        ("GET", "/api/users/@me/"): {"team": {"id": 42}},
        ("PATCH", "/api/projects/42/tasks/T-1/update_stage/"): {"id": "T-1", "current_stage": "running"},
        ("GET", "/api/projects/42/tasks/T-1/progress/"): {"has_progress": True, "status": "in_progress"},
    }

    async def scenario() -> tuple[dict[str, Any], dict[str, Any]]:
        async with TaskApiClient(CREDS, transport=_transport(requests, routes)) as client:
            started = await client.run_task("T-1")
            progress = await client.get_task_progress("T-1")
        return started, progress

    started, progress = asyncio.run(scenario())

    assert started["current_stage"] == "running"
    assert progress["status"] == "in_progress"
    assert [(request.method, request.url.path) for request in requests] == [
        ("GET", "/api/users/@me/"),
        ("PATCH", "/api/projects/42/tasks/T-1/update_stage/"),
        ("GET", "/api/projects/42/tasks/T-1/progress/"),
    ]
    assert all(request.headers["Authorization"] == "Bearer phx_test" for request in requests)
    assert json.loads(requests[1].content) == {"current_stage": "running"}
    assert str(requests[0].url).startswith("https://app.example.test/api/")


def test_error_status_raises_task_api_error() -> None:
    routes = {
        ("GET", "/api/users/@me/"): {"team": {"id": 7}},
        ("PATCH", "/api/projects/7/tasks/T-1/update_stage/"): httpx.Response(403, json={"detail": "forbidden"}),
    }

    async def scenario() -> None:
        async with TaskApiClient(CREDS, transport=_transport([], routes)) as client:
            await client.run_task("T-1")

    with pytest.raises(TaskApiError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.status_code == 403


def test_user_without_team_is_an_error() -> None:
    routes = {("GET", "/api/users/@me/"): {"team": None}}

    async def scenario() -> None:
        async with TaskApiClient(CREDS, transport=_transport([], routes)) as client:
            await client.get_team_id()

    with pytest.raises(TaskApiError, match="no team"):
        asyncio.run(scenario())


def test_transport_failure_is_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario() -> None:
        async with TaskApiClient(CREDS, transport=httpx.MockTransport(handler)) as client:
            await client.get_task_progress("T-1")

    with pytest.raises(TaskApiError, match="connection refused"):
        asyncio.run(scenario())


def test_auth_provider_prefers_environment() -> None:
    settings = OrchestratorSettings(api_key="phx_config", api_host="https://config.example.test")

    from_config = AuthProvider(lambda: settings, environ={}).credentials()
    from_env = AuthProvider(
        lambda: settings,
        environ={"POSTHOG_API_KEY": "phx_env", "POSTHOG_API_HOST": "https://env.example.test/"},
    ).credentials()

    assert from_config == Credentials("phx_config", "https://config.example.test")
    assert from_env == Credentials("phx_env", "https://env.example.test")


def test_auth_provider_without_key_returns_none() -> None:
    assert AuthProvider(lambda: OrchestratorSettings(), environ={}).credentials() is None
