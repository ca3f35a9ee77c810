"""Simple runner backed by OpenCode (CLI mode)."""

from __future__ import annotations

import asyncio
import re

from agent_runner.runners.opencode.config import OpenCodeConfig
from agent_runner.runners.opencode.models import (
    AssistantMessage,
    Message,
    ToolUseMessage,
)
from agent_runner.runners.opencode.runner import OpenCodeRunner
from agent_runner.runners.session_log import SessionLogSink
from agent_runner.simple.base import (
    NoResponseError,
    ProgressEvent,
    QueryOptions,
    SessionError,
    SimpleAgentRunner,
    T,
)

_CODE_BLOCK = re.compile(r"```[\s\S]*?```")
_INLINE_CODE = re.compile(r"`([^`]+)`")
_EDGE_QUOTES = re.compile(r"^[\"']|[\"']$")


class SimpleOpenCodeRunner(SimpleAgentRunner[T]):
    """Enumerated-response queries answered by OpenCode.

        runner = SimpleOpenCodeRunner(SimpleAgentConfig(
            valid_responses=["BUG", "FEATURE", "QUESTION"],
            working_directory="/path/to/repo",
        ))
        result = await runner.query("Classify this issue: button doesn't work")
        result.response  # "BUG"
    """

    def __init__(self, config, sink: SessionLogSink | None = None):
        super().__init__(config)
        self.sink = sink

    def create_runner(self) -> OpenCodeRunner:
        overrides = {
            "working_directory": self.config.working_directory,
            "use_server_mode": False,  # CLI mode starts faster
            "append_system_prompt": self.build_system_prompt(),
        }
        if self.config.model:
            overrides["model"] = self.config.model
        if self.config.home_dir:
            overrides["home_dir"] = self.config.home_dir
        return OpenCodeRunner(OpenCodeConfig.from_env(**overrides), sink=self.sink)

    async def execute_agent(self, prompt: str, options: QueryOptions) -> list[Message]:
        messages: list[Message] = []
        errors: list[BaseException] = []

        full_prompt = f"{options.context}\n\n{prompt}" if options.context else prompt

        runner = self.create_runner()
        runner.on("message", lambda message: self._handle_message(messages, message))
        runner.on("error", errors.append)

        self.emit_progress(ProgressEvent(type="started"))
        try:
            session = await runner.start(full_prompt)
        except asyncio.CancelledError:
            runner.stop()
            raise

        if session.session_id:
            self.emit_progress(ProgressEvent(type="started", session_id=session.session_id))
        if errors:
            raise SessionError(errors[0], messages)
        return messages

    def _handle_message(self, messages: list[Message], message: Message) -> None:
        messages.append(message)
        if isinstance(message, AssistantMessage):
            self.emit_progress(ProgressEvent(type="thinking", text=message.text))
        elif isinstance(message, ToolUseMessage) and not message.is_result:
            self.emit_progress(
                ProgressEvent(
                    type="tool-use",
                    tool_name=message.tool_name,
                    tool_input=message.tool_input,
                )
            )

    def extract_response(self, messages: list[Message]) -> str:
        """Take the last assistant message with usable text."""
        for message in reversed(messages):
            if not isinstance(message, AssistantMessage):
                continue
            cleaned = self.clean_response(message.text)
            if cleaned:
                self.emit_progress(ProgressEvent(type="response-detected", response=cleaned))
                return cleaned
        raise NoResponseError(messages)

    def clean_response(self, text: str) -> str:
        cleaned = _CODE_BLOCK.sub("", text)
        cleaned = _INLINE_CODE.sub(r"\1", cleaned)
        cleaned = _EDGE_QUOTES.sub("", cleaned.strip()).strip()

        # Multi-line answers: pick the first line that is a valid value.
        for line in cleaned.split("\n"):
            if self.is_valid_response(line.strip()):
                return line.strip()
        return cleaned
