"""Agent event constructors.

Events travel as plain JSON-compatible dicts tagged by ``type`` and stamped with
``ts`` (milliseconds since the epoch), so they can be persisted to JSONL and sent
over websockets without conversion.
"""

from __future__ import annotations

import time
from typing import Any, Optional

EVENT_TYPES = {
    "status",
    "token",
    "text",
    "tool_call",
    "tool_result",
    "diff",
    "file_write",
    "metric",
    "artifact",
    "progress",
    "error",
    "done",
}
LOG_LEVELS = {"info", "warn", "error"}
RESEARCH_QUESTIONS_KIND = "research_questions"
PLAN_KIND = "plan"


def _ts() -> int:
    return int(time.time() * 1000)


def normalize_event(raw: Any) -> dict[str, Any]:
    """Validate an inbound event and return a copy stamped with ``ts``.

    Raises:
        ValueError: If ``raw`` is not a mapping or carries an unknown ``type``.
    """
    if not isinstance(raw, dict):
        raise ValueError("Agent event must be an object")
    event_type = str(raw.get("type") or "")
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown agent event type: {event_type!r}")
    event = dict(raw)
    event.setdefault("ts", _ts())
    return event


def status_event(phase: str, **meta: Any) -> dict[str, Any]:
    return {"type": "status", "ts": _ts(), "phase": phase, **meta}


def text_event(content: str, *, level: str = "info") -> dict[str, Any]:
    return {"type": "text", "ts": _ts(), "content": content, "level": level if level in LOG_LEVELS else "info"}


def token_event(content: str) -> dict[str, Any]:
    return {"type": "token", "ts": _ts(), "content": content}


def tool_call_event(name: str, call_id: str, args: Any = None) -> dict[str, Any]:
    return {"type": "tool_call", "ts": _ts(), "toolName": name, "callId": call_id, "args": args}


def tool_result_event(name: str, call_id: str, result: Any = None) -> dict[str, Any]:
    return {"type": "tool_result", "ts": _ts(), "toolName": name, "callId": call_id, "result": result}


def diff_event(file: str, patch: str, *, added: int = 0, removed: int = 0) -> dict[str, Any]:
    return {"type": "diff", "ts": _ts(), "file": file, "patch": patch, "summary": {"added": added, "removed": removed}}


def file_write_event(path: str, num_bytes: int) -> dict[str, Any]:
    return {"type": "file_write", "ts": _ts(), "path": path, "bytes": num_bytes}


def metric_event(key: str, value: float, unit: Optional[str] = None) -> dict[str, Any]:
    return {"type": "metric", "ts": _ts(), "key": key, "value": value, "unit": unit}


def artifact_event(kind: str, content: Any) -> dict[str, Any]:
    return {"type": "artifact", "ts": _ts(), "kind": kind, "content": content}


def progress_event(progress: dict[str, Any]) -> dict[str, Any]:
    return {"type": "progress", "ts": _ts(), "progress": dict(progress)}


def error_event(message: str, cause: Optional[str] = None) -> dict[str, Any]:
    event: dict[str, Any] = {"type": "error", "ts": _ts(), "message": message}
    if cause:
        event["cause"] = cause
    return event


def done_event(success: bool) -> dict[str, Any]:
    return {"type": "done", "ts": _ts(), "success": bool(success)}


def progress_signature(progress: Optional[dict[str, Any]]) -> Optional[str]:
    """Identify a progress snapshot by its status and update time."""
    if progress is None:
        return None
    return "|".join([str(progress.get("status") or ""), str(progress.get("updated_at") or "")])


def is_plan_artifact(event: dict[str, Any]) -> bool:
    return event.get("type") == "artifact" and event.get("kind") == PLAN_KIND


def is_research_questions(event: dict[str, Any]) -> bool:
    """Return whether ``event`` is a non-empty research questions artifact."""
    return (
        event.get("type") == "artifact"
        and event.get("kind") == RESEARCH_QUESTIONS_KIND
        and bool(event.get("content"))
    )
