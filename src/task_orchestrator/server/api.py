"""FastAPI app wiring for the task execution orchestrator."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, cast

from fastapi import FastAPI, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..runtime.api import create_router
from ..runtime.events import hub
from ..runtime.orchestrator import OrchestratorService
from ..runtime.storage import Container

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[Container], OrchestratorService]


def create_app(
    project_dir: Optional[Path] = None,
    enable_cors: bool = True,
    orchestrator_factory: Optional[OrchestratorFactory] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        project_dir (Optional[Path]): Default project directory used when request-level
            ``project_dir`` query parameters are not provided.
        enable_cors (bool): Whether to install permissive CORS middleware for browser
            clients.
        orchestrator_factory (Optional[OrchestratorFactory]): Builds the orchestrator
            of a project; defaults to :class:`OrchestratorService` with settings-driven
            runtime selection.

    Returns:
        FastAPI: Configured application instance with router endpoints, websocket
        bridge, and per-project container/orchestrator caches stored on
        ``app.state``.
    """
    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        hub.attach_loop(asyncio.get_running_loop())
        try:
            yield
        finally:
            orchestrators = list(getattr(app.state, "orchestrators", {}).values())
            for orchestrator in orchestrators:
                try:
                    await orchestrator.shutdown()
                except Exception:
                    logger.exception("Orchestrator shutdown failed")
            app.state.orchestrators = {}
            app.state.containers = {}

    app = FastAPI(
        title="Task Orchestrator",
        description="Supervised local and cloud agent runs with plan mode",
        version=__version__,
        lifespan=_lifespan,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.default_project_dir = project_dir
    app.state.containers = {}
    app.state.orchestrators = {}
    factory: OrchestratorFactory = orchestrator_factory or OrchestratorService

    def _resolve_project_dir(project_dir_param: Optional[str] = None) -> Path:
        if project_dir_param:
            return Path(project_dir_param).expanduser().resolve()
        if app.state.default_project_dir:
            return Path(app.state.default_project_dir).resolve()
        return Path.cwd().resolve()

    def _resolve_container(project_dir_param: Optional[str] = None) -> Container:
        resolved = _resolve_project_dir(project_dir_param)
        key = str(resolved)
        cache = cast(dict[str, Container], app.state.containers)
        if key not in cache:
            cache[key] = Container(resolved)
        return cache[key]

    def _resolve_orchestrator(project_dir_param: Optional[str] = None) -> OrchestratorService:
        resolved = _resolve_project_dir(project_dir_param)
        key = str(resolved)
        cache = cast(dict[str, OrchestratorService], app.state.orchestrators)
        if key not in cache:
            orchestrator = factory(_resolve_container(project_dir_param))
            orchestrator.recover()
            cache[key] = orchestrator
        return cache[key]

    app.include_router(create_router(_resolve_container, _resolve_orchestrator))

    @app.get("/")
    async def root(project_dir: Optional[str] = Query(None)) -> dict[str, object]:
        """Return basic service metadata for the selected project context."""
        container = _resolve_container(project_dir)
        return {
            "name": "Task Orchestrator",
            "version": __version__,
            "project": str(container.project_dir),
        }

    @app.get("/healthz")
    async def healthz() -> dict[str, object]:
        """Expose liveness status for process-level health checks."""
        return {"status": "ok", "version": __version__}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """Bridge websocket clients to the shared event hub handler."""
        await hub.handle_connection(websocket)

    return app
