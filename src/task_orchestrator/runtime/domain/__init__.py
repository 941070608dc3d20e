"""Domain models for task execution state."""

from .models import ClarifyingQuestion, Credentials, ExecutionState, QuestionAnswer, TaskSpec

__all__ = [
    "ExecutionState",
    "ClarifyingQuestion",
    "QuestionAnswer",
    "TaskSpec",
    "Credentials",
]
