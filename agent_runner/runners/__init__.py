"""CLI runners for code agents."""

from agent_runner.runners.errors import (
    AgentRunnerError,
    AlreadyRunning,
    ExecutionFailure,
    ProcessSpawnFailure,
    UnsupportedMode,
)
from agent_runner.runners.formatter import MessageFormatter
from agent_runner.runners.opencode import OpenCodeConfig, OpenCodeRunner
from agent_runner.runners.ports import AgentRunner, RunnerEvent
from agent_runner.runners.session_log import FileSessionLog, NullSessionLog, SessionLogSink

__all__ = [
    "AgentRunner",
    "AgentRunnerError",
    "AlreadyRunning",
    "ExecutionFailure",
    "FileSessionLog",
    "MessageFormatter",
    "NullSessionLog",
    "OpenCodeConfig",
    "OpenCodeRunner",
    "ProcessSpawnFailure",
    "RunnerEvent",
    "SessionLogSink",
    "UnsupportedMode",
]
