"""Shared OpenCode data structures."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, Union
from uuid import uuid4

PENDING_SESSION_ID = "pending"


class SessionState(str, enum.Enum):
    """Runner lifecycle states."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class SessionInfo:
    """One agent invocation, from prompt to terminal result."""

    session_id: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    is_running: bool = True
    opencode_session_id: str | None = None
    server_url: str | None = None
    server_ready: bool | None = None
    outcome: SessionState | None = None


@dataclass
class Usage:
    """Token counters for a session."""

    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0

    def add(self, other: Usage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.reasoning_tokens += other.reasoning_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens


@dataclass
class _Message:
    session_id: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AssistantMessage(_Message):
    """Full assistant reply, synthesized from the streamed text."""

    text: str = ""
    type: Literal["assistant"] = "assistant"


@dataclass
class TextDeltaMessage(_Message):
    """One streamed text fragment."""

    text: str = ""
    type: Literal["text-delta"] = "text-delta"


@dataclass
class ToolUseMessage(_Message):
    """A tool invocation or its result."""

    tool_name: str = "unknown"
    tool_input: Any = None
    tool_output: Any = None
    call_id: str | None = None
    is_result: bool = False
    type: Literal["tool-use"] = "tool-use"


@dataclass
class ErrorMessage(_Message):
    """An error reported by the agent in its event stream."""

    error: str = ""
    type: Literal["error"] = "error"


@dataclass
class ResultMessage(_Message):
    """Terminal result of a session. Exactly one per session."""

    subtype: Literal["success", "error_during_execution"] = "success"
    is_error: bool = False
    result: str = ""
    errors: list[str] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    total_cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0
    uuid: str = field(default_factory=lambda: str(uuid4()))
    type: Literal["result"] = "result"


Message = Union[
    AssistantMessage, TextDeltaMessage, ToolUseMessage, ErrorMessage, ResultMessage
]
