"""Parse runtime configuration into typed settings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Optional, cast

RunMode = Literal["local", "cloud"]

PERMISSION_MODES = ("default", "acceptEdits", "bypassPermissions", "plan")
DEFAULT_PERMISSION_MODE = "acceptEdits"
DEFAULT_API_HOST = "https://us.posthog.com"
DEFAULT_POLL_INTERVAL_SECONDS = 5.0

DEFAULT_CONFIG: dict[str, Any] = {
    "auth": {"api_key": "", "api_host": DEFAULT_API_HOST},
    "execution": {
        "permission_mode": DEFAULT_PERMISSION_MODE,
        "auto_progress": True,
        "create_pr": True,
        "model": None,
        "default_run_mode": "local",
    },
    "polling": {"interval_seconds": DEFAULT_POLL_INTERVAL_SECONDS},
    "runtime": {"command": None},
}


@dataclass(frozen=True)
class ExecutionSettings:
    """Defaults applied to every local run.

    Attributes:
        permission_mode: Permission mode handed to the agent runtime.
        auto_progress: Whether the runtime may advance workflow stages on its own.
        create_pr: Whether a merge/PR step is attempted when a run completes.
        model: Optional model override for the agent runtime.
        default_run_mode: Run mode assigned to tasks without stored state.
    """

    permission_mode: str = DEFAULT_PERMISSION_MODE
    auto_progress: bool = True
    create_pr: bool = True
    model: Optional[str] = None
    default_run_mode: RunMode = "local"


@dataclass(frozen=True)
class OrchestratorSettings:
    """Fully resolved settings for one orchestrator process.

    Attributes:
        api_key: Personal API key used for the remote task API and the runtime.
        api_host: Base URL of the remote task API.
        execution: Run defaults.
        poll_interval_seconds: Progress poll period for local runs.
        runtime_command: Shell command of the external agent runtime, or ``None``
            when none is configured (runs then fail with a configuration error).
    """

    api_key: str = ""
    api_host: str = DEFAULT_API_HOST
    execution: ExecutionSettings = ExecutionSettings()
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    runtime_command: Optional[str] = None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default


def _as_optional_str(value: Any) -> Optional[str]:
    text = str(value or "").strip()
    return text or None


def resolve_permission_mode(mode: Any) -> str:
    """Match ``mode`` case-insensitively against the known permission modes.

    Args:
        mode (Any): Requested permission mode, possibly missing or malformed.

    Returns:
        str: Canonical permission mode, ``acceptEdits`` when nothing matches.
    """
    normalized = str(mode or "").strip().lower()
    if not normalized:
        return DEFAULT_PERMISSION_MODE
    for candidate in PERMISSION_MODES:
        if candidate.lower() == normalized:
            return candidate
    return DEFAULT_PERMISSION_MODE


def load_settings(config: dict[str, Any]) -> OrchestratorSettings:
    """Build :class:`OrchestratorSettings` from a raw config mapping.

    Invalid values fall back to their defaults instead of raising so that a
    hand-edited ``config.yaml`` never prevents the service from starting.

    Args:
        config (dict[str, Any]): Mapping loaded from ``config.yaml``.

    Returns:
        OrchestratorSettings: Normalized settings.
    """
    auth = _as_dict(config.get("auth"))
    execution = _as_dict(config.get("execution"))
    polling = _as_dict(config.get("polling"))
    runtime = _as_dict(config.get("runtime"))

    run_mode = str(execution.get("default_run_mode") or "local").strip().lower()
    if run_mode not in {"local", "cloud"}:
        run_mode = "local"

    try:
        interval = float(polling.get("interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS))
    except (TypeError, ValueError):
        interval = DEFAULT_POLL_INTERVAL_SECONDS
    if interval <= 0:
        interval = DEFAULT_POLL_INTERVAL_SECONDS

    return OrchestratorSettings(
        api_key=str(auth.get("api_key") or "").strip(),
        api_host=str(auth.get("api_host") or DEFAULT_API_HOST).strip().rstrip("/"),
        execution=ExecutionSettings(
            permission_mode=resolve_permission_mode(execution.get("permission_mode")),
            auto_progress=_as_bool(execution.get("auto_progress"), True),
            create_pr=_as_bool(execution.get("create_pr"), True),
            model=_as_optional_str(execution.get("model")),
            default_run_mode=cast(RunMode, run_mode),
        ),
        poll_interval_seconds=interval,
        runtime_command=_as_optional_str(runtime.get("command")),
    )
