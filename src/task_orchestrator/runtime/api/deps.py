"""Shared dependency context for runtime API route registration."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from ..orchestrator.service import OrchestratorService
from ..storage.container import Container


@dataclass(frozen=True)
class RouteDeps:
    """Route registration dependency bundle."""

    resolve_container: Callable[[Optional[str]], Container]
    resolve_orchestrator: Callable[[Optional[str]], OrchestratorService]
