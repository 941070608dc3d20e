"""Prompt template loader with caching."""

from pathlib import Path
from string import Template
from typing import Any, Iterable

_DIR = Path(__file__).parent
_cache: dict[str, str] = {}


def load(name: str) -> str:
    """Load a prompt template by relative path (e.g. 'research_questions.md')."""
    if name not in _cache:
        _cache[name] = (_DIR / name).read_text(encoding="utf-8").strip()
    return _cache[name]


def render(name: str, **values: str) -> str:
    """Load a template and substitute ``$placeholders`` from ``values``."""
    return Template(load(name)).safe_substitute(values)


def format_answers(answers: Iterable[Any]) -> str:
    """Render answers as ``- <question_id>: <option>`` lines for the planning prompt."""
    lines = []
    for answer in answers:
        details = f" (Details: {answer.custom_input})" if answer.custom_input else ""
        lines.append(f"- {answer.question_id}: {answer.selected_option}{details}")
    return "\n".join(lines)


def build_research_prompt(title: str, description: str) -> str:
    return render("research_questions.md", title=title, description=description)


def build_planning_prompt(title: str, description: str, answers: Iterable[Any]) -> str:
    return render("generate_plan.md", title=title, description=description, answers=format_answers(answers))
