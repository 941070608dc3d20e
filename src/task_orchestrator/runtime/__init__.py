"""Execution host, orchestrator, storage, and API runtime packages."""
