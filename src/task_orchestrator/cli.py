"""Command-line entry point."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional, Sequence

import uvicorn

from .runtime.storage.bootstrap import ensure_state_root

LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="task-orchestrator",
        description="Task Orchestrator - supervised agent runs with plan mode",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP/websocket API")
    serve.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory holding .task_orchestrator/ (default: current directory)",
    )
    serve.add_argument("--host", type=str, default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8080, help="Bind port (default: 8080)")
    serve.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default="info",
        help="Log level for the application and the server (default: info)",
    )

    init = subparsers.add_parser("init", help="Create the state directory and default config.yaml")
    init.add_argument("--project-dir", type=Path, default=Path("."), help="Project directory")
    return parser.parse_args(argv)


def serve(project_dir: Path, host: str, port: int, log_level: str) -> None:
    from .server.api import create_app

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(project_dir=project_dir.resolve())
    uvicorn.run(app, host=host, port=port, log_level=log_level)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    if args.command == "init":
        state_root = ensure_state_root(args.project_dir.resolve())
        print(f"Initialized {state_root}")
        return
    serve(args.project_dir, args.host, args.port, args.log_level)


if __name__ == "__main__":
    main()
