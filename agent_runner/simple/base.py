"""Simple agent runner: one-shot queries constrained to a set of answers.

Used for decisions like triage ("BUG" / "FEATURE" / "QUESTION") where the
agent must reply with exactly one of the allowed values.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Generic, TypeVar

from agent_runner.runners.errors import AgentRunnerError
from agent_runner.runners.opencode.models import Message, ResultMessage

log = logging.getLogger(__name__)

T = TypeVar("T", bound=str)


class SimpleAgentError(AgentRunnerError):
    """Base class for simple runner errors."""


class NoResponseError(SimpleAgentError):
    """The agent finished without any usable text."""

    def __init__(self, messages: list[Message]):
        super().__init__("Agent returned no response")
        self.messages = messages


class InvalidResponseError(SimpleAgentError):
    """The agent answered with something outside the allowed set."""

    def __init__(self, response: str, valid_responses: list[str]):
        super().__init__(
            f"Invalid response {response!r}, expected one of: {', '.join(valid_responses)}"
        )
        self.response = response
        self.valid_responses = valid_responses


class SessionError(SimpleAgentError):
    """The underlying agent session failed."""

    def __init__(self, cause: BaseException, messages: list[Message]):
        super().__init__(f"Agent session failed: {cause}")
        self.cause = cause
        self.messages = messages


class QueryTimeoutError(SimpleAgentError):
    """The query took longer than the configured timeout."""


@dataclass(frozen=True)
class SimpleAgentConfig:
    valid_responses: list[str]
    working_directory: str | None = None
    home_dir: Path | None = None
    model: str | None = None
    system_prompt: str | None = None
    timeout_s: float | None = None
    on_progress: Callable[["ProgressEvent"], Any] | None = None


@dataclass
class ProgressEvent:
    type: str  # started | thinking | tool-use | response-detected | validating
    session_id: str | None = None
    text: str | None = None
    tool_name: str | None = None
    tool_input: Any = None
    response: str | None = None


@dataclass
class SimpleAgentResult(Generic[T]):
    response: T
    messages: list[Message] = field(default_factory=list)
    session_id: str | None = None
    cost_usd: float = 0.0
    duration_ms: int = 0


@dataclass
class QueryOptions:
    context: str | None = None


class SimpleAgentRunner(ABC, Generic[T]):
    """Template for enumerated-response queries.

    Subclasses run the agent (``execute_agent``) and pull the answer out of
    its messages (``extract_response``); this class validates it.
    """

    def __init__(self, config: SimpleAgentConfig):
        if not config.valid_responses:
            raise ValueError("valid_responses must not be empty")
        self.config = config

    async def query(self, prompt: str, context: str | None = None) -> SimpleAgentResult[T]:
        options = QueryOptions(context=context)
        if self.config.timeout_s:
            try:
                messages = await asyncio.wait_for(
                    self.execute_agent(prompt, options), timeout=self.config.timeout_s
                )
            except asyncio.TimeoutError as e:
                raise QueryTimeoutError(
                    f"Query timed out after {self.config.timeout_s:.1f}s"
                ) from e
        else:
            messages = await self.execute_agent(prompt, options)

        response = self.extract_response(messages)
        self.emit_progress(ProgressEvent(type="validating", response=response))
        if not self.is_valid_response(response):
            raise InvalidResponseError(response, self.config.valid_responses)

        result = next((m for m in reversed(messages) if isinstance(m, ResultMessage)), None)
        return SimpleAgentResult(
            response=response,  # type: ignore[arg-type]
            messages=messages,
            session_id=result.session_id if result else None,
            cost_usd=result.total_cost_usd if result else 0.0,
            duration_ms=result.duration_ms if result else 0,
        )

    def is_valid_response(self, response: str) -> bool:
        return response in self.config.valid_responses

    def build_system_prompt(self) -> str:
        choices = "\n".join(f"- {r}" for r in self.config.valid_responses)
        prompt = (
            "You must respond with EXACTLY one of the following values and nothing else:\n"
            f"{choices}\n"
            "Do not add explanations, punctuation, or formatting."
        )
        if self.config.system_prompt:
            return f"{self.config.system_prompt}\n\n{prompt}"
        return prompt

    def emit_progress(self, event: ProgressEvent) -> None:
        if not self.config.on_progress:
            return
        try:
            self.config.on_progress(event)
        except Exception:
            log.exception("Progress callback failed")

    @abstractmethod
    async def execute_agent(self, prompt: str, options: QueryOptions) -> list[Message]:
        ...

    @abstractmethod
    def extract_response(self, messages: list[Message]) -> str:
        ...
