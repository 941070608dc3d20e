"""HTTP API for task execution."""

from .router import create_router

__all__ = ["create_router"]
