"""OpenCode runner package."""

from agent_runner.runners.opencode.config import OpenCodeConfig
from agent_runner.runners.opencode.models import (
    AssistantMessage,
    ErrorMessage,
    Message,
    ResultMessage,
    SessionInfo,
    SessionState,
    TextDeltaMessage,
    ToolUseMessage,
    Usage,
)
from agent_runner.runners.opencode.runner import OpenCodeRunner

__all__ = [
    "AssistantMessage",
    "ErrorMessage",
    "Message",
    "OpenCodeConfig",
    "OpenCodeRunner",
    "ResultMessage",
    "SessionInfo",
    "SessionState",
    "TextDeltaMessage",
    "ToolUseMessage",
    "Usage",
]
