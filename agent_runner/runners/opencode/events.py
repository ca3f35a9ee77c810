"""OpenCode event normalization helpers.

``opencode run --format json`` writes one JSON object per line. Each object has
a ``type`` discriminator and, for most types, a ``part`` sub-object:

    {"type": "step_start", "sessionID": "ses_..."}
    {"type": "text", "part": {"text": "Hi "}}
    {"type": "tool_call", "part": {"tool": "bash", "state": {"input": {...}}}}
    {"type": "tool_result", "part": {"tool": "bash", "state": {"output": "..."}}}
    {"type": "step_finish", "part": {"tokens": {"input": 10, "output": 5}, "cost": 0.002}}
    {"type": "error", "part": {"message": "..."}}
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from agent_runner.runners.opencode.models import (
    ErrorMessage,
    Message,
    TextDeltaMessage,
    ToolUseMessage,
    Usage,
)

log = logging.getLogger("opencode")

_SESSION_ID_KEYS = ("sessionID", "sessionId", "session_id")


class EventKind(str, enum.Enum):
    SESSION_STARTED = "session-started"
    TEXT_FRAGMENT = "text-fragment"
    TOOL_INVOKED = "tool-invoked"
    TOOL_RESULT = "tool-result"
    STEP_FINISHED = "step-finished"
    ERROR = "error"
    UNKNOWN = "unknown"


_KINDS_BY_TYPE = {
    "step_start": EventKind.SESSION_STARTED,
    "text": EventKind.TEXT_FRAGMENT,
    "tool_call": EventKind.TOOL_INVOKED,
    "tool_use": EventKind.TOOL_INVOKED,
    "tool_result": EventKind.TOOL_RESULT,
    "step_finish": EventKind.STEP_FINISHED,
    "error": EventKind.ERROR,
}


@dataclass
class RawEvent:
    """One parsed output line."""

    type: str
    payload: dict[str, Any]


@dataclass
class ProviderEvent:
    """A raw event classified into one of the recognized variants."""

    kind: EventKind
    raw_type: str
    session_id: str | None = None
    text: str = ""
    tool_name: str | None = None
    tool_input: Any = None
    tool_output: Any = None
    call_id: str | None = None
    usage: Usage | None = None
    cost: float = 0.0
    error: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def to_message(self, session_id: str) -> Message | None:
        """Build the normalized message for this event, if it has one."""
        if self.kind is EventKind.TEXT_FRAGMENT:
            if not self.text:
                return None
            return TextDeltaMessage(session_id=session_id, text=self.text)
        if self.kind in (EventKind.TOOL_INVOKED, EventKind.TOOL_RESULT):
            return ToolUseMessage(
                session_id=session_id,
                tool_name=self.tool_name or "unknown",
                tool_input=self.tool_input,
                tool_output=self.tool_output,
                call_id=self.call_id,
                is_result=self.kind is EventKind.TOOL_RESULT,
            )
        if self.kind is EventKind.ERROR:
            return ErrorMessage(session_id=session_id, error=self.error or "Unknown error")
        return None


def parse_line(line: str) -> RawEvent | None:
    """Parse one output line. Returns None (skip) for anything unusable."""
    line = line.strip()
    if not line:
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as e:
        log.warning(f"Failed to parse line: {line[:100]}... ({e})")
        return None
    if not isinstance(payload, dict):
        log.warning(f"Skipping non-object line: {line[:100]}")
        return None
    event_type = payload.get("type")
    if not isinstance(event_type, str):
        log.warning(f"Skipping line without type: {line[:100]}")
        return None
    return RawEvent(type=event_type, payload=payload)


def extract_session_id(payload: dict) -> str | None:
    for container in (payload, payload.get("part"), payload.get("properties")):
        if not isinstance(container, dict):
            continue
        for key in _SESSION_ID_KEYS:
            value = container.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def _as_dict(value: object) -> dict:
    return value if isinstance(value, dict) else {}


def _as_int(value: object) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _as_float(value: object) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


class EventNormalizer:
    """Dispatches raw events by type into ``ProviderEvent`` variants.

    Unknown types are accepted as ``EventKind.UNKNOWN`` so newer agent
    versions don't break parsing.
    """

    def normalize(self, raw: RawEvent) -> ProviderEvent:
        kind = _KINDS_BY_TYPE.get(raw.type, EventKind.UNKNOWN)
        event = ProviderEvent(
            kind=kind,
            raw_type=raw.type,
            session_id=extract_session_id(raw.payload),
            raw=raw.payload,
        )
        handler = {
            EventKind.TEXT_FRAGMENT: self._handle_text,
            EventKind.TOOL_INVOKED: self._handle_tool,
            EventKind.TOOL_RESULT: self._handle_tool,
            EventKind.STEP_FINISHED: self._handle_step_finish,
            EventKind.ERROR: self._handle_error,
        }.get(kind)
        if handler:
            handler(raw.payload, event)
        else:
            log.debug(f"Event: {raw.type}")
        return event

    def _handle_text(self, payload: dict, event: ProviderEvent) -> None:
        text = _as_dict(payload.get("part")).get("text")
        if isinstance(text, str):
            event.text = text

    def _handle_tool(self, payload: dict, event: ProviderEvent) -> None:
        part = _as_dict(payload.get("part"))
        tool_state = _as_dict(part.get("state"))
        name = part.get("tool") or part.get("name")
        event.tool_name = str(name) if name else "unknown"
        event.tool_input = tool_state.get("input", part.get("input"))
        event.tool_output = tool_state.get("output", part.get("output"))
        call_id = part.get("callID") or part.get("id")
        event.call_id = str(call_id) if call_id else None
        log.debug(f"Tool {event.raw_type}: {event.tool_name}")

    def _handle_step_finish(self, payload: dict, event: ProviderEvent) -> None:
        part = _as_dict(payload.get("part"))
        tokens = _as_dict(part.get("tokens"))
        cache = _as_dict(tokens.get("cache"))
        event.usage = Usage(
            input_tokens=_as_int(tokens.get("input")),
            output_tokens=_as_int(tokens.get("output")),
            reasoning_tokens=_as_int(tokens.get("reasoning")),
            cache_read_input_tokens=_as_int(cache.get("read")),
            cache_creation_input_tokens=_as_int(cache.get("write")),
        )
        event.cost = _as_float(part.get("cost"))

    def _handle_error(self, payload: dict, event: ProviderEvent) -> None:
        part = _as_dict(payload.get("part"))
        message = part.get("error") or part.get("message") or payload.get("error")
        if not message:
            message = payload.get("message")
        # message can be nested
        if isinstance(message, dict):
            message = _as_dict(message.get("data")).get("message") or message.get("message")
        event.error = str(message or "Unknown error")
        log.warning(f"Error event: {event.error}")
