"""Task execution orchestrator for local and cloud agent runs."""

__version__ = "0.4.0"
