"""Ports (interfaces) for runner implementations.

Callers (the simple runner, scripts) should depend on these contracts
rather than concrete runner implementations.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol, runtime_checkable

from agent_runner.runners.emitter import RunnerEvent, Subscription
from agent_runner.runners.formatter import MessageFormatter
from agent_runner.runners.opencode.models import Message, SessionInfo


@runtime_checkable
class AgentRunner(Protocol):
    """A session runner (engine adapter)."""

    supports_streaming_input: bool

    async def start(self, prompt: str) -> SessionInfo:
        ...

    async def start_streaming(self, initial_prompt: str | None = None) -> SessionInfo:
        ...

    def add_stream_message(self, content: str) -> None:
        ...

    def complete_stream(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def is_running(self) -> bool:
        ...

    def get_messages(self) -> list[Message]:
        ...

    def get_formatter(self) -> MessageFormatter:
        ...

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        ...

    def subscribe(self, *events: str) -> Subscription:
        ...


__all__ = ["AgentRunner", "RunnerEvent"]
