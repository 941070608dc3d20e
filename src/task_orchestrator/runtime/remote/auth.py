"""Resolve API credentials for runs."""

from __future__ import annotations

import os
from typing import Callable, Mapping, Optional

from ...config import DEFAULT_API_HOST, OrchestratorSettings
from ..domain.models import Credentials

API_KEY_ENV = "POSTHOG_API_KEY"
API_HOST_ENV = "POSTHOG_API_HOST"


class AuthProvider:
    """Read the credential pair from settings, with environment overrides.

    ``settings`` is called on every lookup so edits to ``config.yaml`` apply to
    the next run without a restart.
    """
    def __init__(
        self,
        settings: Callable[[], OrchestratorSettings],
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._settings = settings
        self._environ = os.environ if environ is None else environ

    def credentials(self) -> Optional[Credentials]:
        """Return the current credentials, or ``None`` when the key or host is missing."""
        settings = self._settings()
        api_key = (self._environ.get(API_KEY_ENV) or settings.api_key or "").strip()
        api_host = (self._environ.get(API_HOST_ENV) or settings.api_host or DEFAULT_API_HOST).strip().rstrip("/")
        if not api_key or not api_host:
            return None
        return Credentials(api_key=api_key, api_host=api_host)
