"""Tool message formatting for display in the issue tracker and readable logs.

OpenCode uses lowercase tool names that mostly match Claude Code's, so the
output looks like:
  Read file: src/app.py
  Failed: Run command: make test
"""

from __future__ import annotations

import json
from typing import Any

_REDACT_KEYS = ("key", "token", "secret", "password", "auth", "cookie")

_DISPLAY_NAMES = {
    "read": "Read",
    "edit": "Edit",
    "write": "Write",
    "bash": "Bash",
    "glob": "Glob",
    "grep": "Grep",
    "todowrite": "TodoWrite",
    "todoread": "TodoRead",
    "task": "Task",
    "webfetch": "WebFetch",
    "skill": "Skill",
}

_ACTION_NAMES = {
    "read": "Read file",
    "edit": "Edit file",
    "write": "Write file",
    "bash": "Run command",
    "glob": "Search files",
    "grep": "Search content",
    "todowrite": "Update tasks",
    "task": "Spawn agent",
}


def redact_tool_input(obj: object) -> object:
    if isinstance(obj, dict):
        out: dict[object, object] = {}
        for k, v in obj.items():
            ks = str(k).lower()
            if any(rk in ks for rk in _REDACT_KEYS):
                out[k] = "[REDACTED]"
            else:
                out[k] = redact_tool_input(v)
        return out
    if isinstance(obj, list):
        return [redact_tool_input(x) for x in obj]
    return obj


def _first(data: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if value:
            return str(value)
    return ""


class MessageFormatter:
    """Formats tool invocations into one-line descriptions."""

    def normalize_tool_name(self, tool_name: str) -> str:
        return _DISPLAY_NAMES.get(tool_name.lower(), tool_name)

    def format_todo_write_parameter(self, json_content: str) -> str:
        try:
            parsed = json.loads(json_content)
        except json.JSONDecodeError:
            return json_content
        if not isinstance(parsed, list):
            return json_content
        lines = []
        for item in parsed:
            item = item if isinstance(item, dict) else {}
            status = "[x]" if item.get("status") == "completed" else "[ ]"
            lines.append(f"{status} {item.get('content') or ''}")
        return "\n".join(lines)

    def format_tool_parameter(self, tool_name: str, tool_input: Any) -> str:
        if not tool_input or not isinstance(tool_input, dict):
            return "" if tool_input is None else str(tool_input)

        name = tool_name.lower()
        if name in ("read", "edit", "write"):
            return _first(tool_input, "file_path", "filePath")
        if name == "bash":
            return _first(tool_input, "command")
        if name in ("glob", "grep"):
            return _first(tool_input, "pattern")
        if name == "todowrite":
            todos = tool_input.get("todos")
            if todos:
                return self.format_todo_write_parameter(json.dumps(todos))
            return ""
        if name == "task":
            return _first(tool_input, "description", "prompt")[:100]

        common = _first(tool_input, "file_path", "filePath", "path", "command", "query")
        if common:
            return common
        redacted = redact_tool_input(tool_input)
        return json.dumps(redacted, ensure_ascii=True, sort_keys=True, default=str)

    def format_tool_action_name(
        self, tool_name: str, tool_input: Any, is_error: bool
    ) -> str:
        prefix = "Failed: " if is_error else ""
        action = _ACTION_NAMES.get(tool_name.lower())
        return f"{prefix}{action or self.normalize_tool_name(tool_name)}"

    def format_tool_result(
        self, tool_name: str, tool_input: Any, result: str, is_error: bool
    ) -> str:
        action_name = self.format_tool_action_name(tool_name, tool_input, is_error)
        param = self.format_tool_parameter(tool_name, tool_input)
        if param:
            return f"{action_name}: {param}"
        return action_name
