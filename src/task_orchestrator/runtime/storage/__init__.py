"""File-backed storage for execution state, task logs, and configuration."""

from .container import Container

__all__ = ["Container"]
