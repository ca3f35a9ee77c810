"""Enumerated-response agent queries."""

from agent_runner.simple.base import (
    InvalidResponseError,
    NoResponseError,
    ProgressEvent,
    QueryTimeoutError,
    SessionError,
    SimpleAgentConfig,
    SimpleAgentError,
    SimpleAgentResult,
    SimpleAgentRunner,
)
from agent_runner.simple.opencode import SimpleOpenCodeRunner

__all__ = [
    "InvalidResponseError",
    "NoResponseError",
    "ProgressEvent",
    "QueryTimeoutError",
    "SessionError",
    "SimpleAgentConfig",
    "SimpleAgentError",
    "SimpleAgentResult",
    "SimpleAgentRunner",
    "SimpleOpenCodeRunner",
]
