"""FastAPI router factory for the runtime API."""

from __future__ import annotations

import dataclasses
from typing import Any, Optional

from fastapi import APIRouter, Query

from .deps import RouteDeps
from .routes_execution import register_execution_routes


def create_router(resolve_container: Any, resolve_orchestrator: Any) -> APIRouter:
    """Create the runtime API router.

    Args:
        resolve_container (Any): Callable that resolves and returns the
            project-scoped ``Container`` for an optional ``project_dir`` value.
        resolve_orchestrator (Any): Callable that resolves and returns the
            project-scoped ``OrchestratorService`` for an optional
            ``project_dir`` value.

    Returns:
        APIRouter: Router exposing task execution, plan-mode, artifact and
        session endpoints under ``/api``.
    """
    router = APIRouter(prefix="/api", tags=["api"])
    deps = RouteDeps(resolve_container=resolve_container, resolve_orchestrator=resolve_orchestrator)
    register_execution_routes(router, deps)

    @router.get("/settings")
    async def get_settings(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        """Return the effective settings of a project, API key masked."""
        settings = deps.resolve_container(project_dir).settings()
        return {
            "api_host": settings.api_host,
            "api_key_configured": bool(settings.api_key),
            "execution": dataclasses.asdict(settings.execution),
            "poll_interval_seconds": settings.poll_interval_seconds,
            "runtime_command": settings.runtime_command,
        }

    return router
