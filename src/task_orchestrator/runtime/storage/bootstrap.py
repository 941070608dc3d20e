from __future__ import annotations

import copy
from pathlib import Path

from ...config import DEFAULT_CONFIG
from .file_repos import FileConfigRepository

STATE_DIR_NAME = ".task_orchestrator"
SCHEMA_VERSION = 1

STATE_FILES = {
    "execution_state": "execution_state.yaml",
    "config": "config.yaml",
}
LOGS_DIR_NAME = "logs"


def _ensure_gitignored(project_dir: Path) -> None:
    """Add the state directory to the project's .gitignore if not already present."""
    gitignore = project_dir / ".gitignore"
    entry = f"{STATE_DIR_NAME}/"
    if gitignore.exists():
        content = gitignore.read_text(encoding="utf-8")
        existing_stripped = {line.strip() for line in content.splitlines()}
        if entry in existing_stripped or entry.rstrip("/") in existing_stripped:
            return
        if content and not content.endswith("\n"):
            content += "\n"
        content += f"\n# Task orchestrator runtime data\n{entry}\n"
        gitignore.write_text(content, encoding="utf-8")
    else:
        gitignore.write_text(f"# Task orchestrator runtime data\n{entry}\n", encoding="utf-8")


def _merge_defaults(config: dict, defaults: dict) -> dict:
    for key, value in defaults.items():
        if key not in config:
            config[key] = copy.deepcopy(value)
        elif isinstance(value, dict) and isinstance(config[key], dict):
            _merge_defaults(config[key], value)
    return config


def ensure_state_root(project_dir: Path) -> Path:
    state_root = project_dir / STATE_DIR_NAME
    state_root.mkdir(parents=True, exist_ok=True)
    _ensure_gitignored(project_dir)

    for file_name in STATE_FILES.values():
        target = state_root / file_name
        if not target.exists():
            target.write_text(f"version: {SCHEMA_VERSION}\n", encoding="utf-8")

    (state_root / LOGS_DIR_NAME).mkdir(parents=True, exist_ok=True)

    config_repo = FileConfigRepository(state_root / "config.yaml", state_root / "config.lock")
    config = config_repo.load()
    config.pop("version", None)
    config["schema_version"] = SCHEMA_VERSION
    _merge_defaults(config, DEFAULT_CONFIG)
    config_repo.save(config)

    return state_root
