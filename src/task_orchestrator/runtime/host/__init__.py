"""Execution host: run sessions, progress polling and agent runtime adapters."""

from .agent_runtime import AgentRuntime, AgentRuntimeError, RuntimeRequest, UnconfiguredAgentRuntime
from .command_runtime import CommandAgentRuntime
from .poller import ProgressPoller, ProgressSource
from .scripted import ScriptedAgentRuntime, ScriptedRun
from .service import AgentHost, StartedRun, parse_research_questions, runtime_env
from .sessions import CancellationToken, RunSession, SessionRegistry

__all__ = [
    "AgentHost",
    "AgentRuntime",
    "AgentRuntimeError",
    "CancellationToken",
    "CommandAgentRuntime",
    "ProgressPoller",
    "ProgressSource",
    "RunSession",
    "RuntimeRequest",
    "ScriptedAgentRuntime",
    "ScriptedRun",
    "SessionRegistry",
    "StartedRun",
    "UnconfiguredAgentRuntime",
    "parse_research_questions",
    "runtime_env",
]
