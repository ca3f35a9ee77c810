"""Folds streamed OpenCode events into one terminal result."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

from agent_runner.runners.opencode.events import EventKind, ProviderEvent
from agent_runner.runners.opencode.models import (
    AssistantMessage,
    Message,
    ResultMessage,
    Usage,
)


@dataclass
class ResultAccumulator:
    """Accumulates text, usage and cost during a run.

    ``finalize`` produces the terminal messages the first time it is called
    and nothing afterwards.
    """

    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    fragments: list[str] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    cost: float = 0.0
    steps: int = 0
    tool_count: int = 0
    errors: list[str] = field(default_factory=list)
    finalized: bool = False

    @property
    def text(self) -> str:
        return "".join(self.fragments)

    @property
    def duration_ms(self) -> int:
        return int((datetime.now(UTC) - self.started_at).total_seconds() * 1000)

    def add(self, event: ProviderEvent) -> None:
        if self.finalized:
            return
        if event.kind is EventKind.TEXT_FRAGMENT and event.text:
            self.fragments.append(event.text)
        elif event.kind is EventKind.TOOL_INVOKED:
            self.tool_count += 1
        elif event.kind is EventKind.STEP_FINISHED:
            self.steps += 1
            if event.usage:
                self.usage.add(event.usage)
            self.cost += event.cost
        elif event.kind is EventKind.ERROR and event.error:
            self.errors.append(event.error)

    def finalize(
        self,
        session_id: str,
        *,
        is_error: bool = False,
        errors: list[str] | None = None,
    ) -> list[Message]:
        """Return ``[assistant?, result]`` once; ``[]`` on any later call."""
        if self.finalized:
            return []
        self.finalized = True

        text = self.text
        messages: list[Message] = []
        if text:
            messages.append(AssistantMessage(session_id=session_id, text=text))
        messages.append(
            ResultMessage(
                session_id=session_id,
                subtype="error_during_execution" if is_error else "success",
                is_error=is_error,
                result=text,
                errors=list(self.errors) + list(errors or []),
                usage=Usage(**vars(self.usage)),
                total_cost_usd=self.cost,
                duration_ms=self.duration_ms,
                num_turns=max(1, self.steps),
            )
        )
        return messages

    def error_result(self, session_id: str, error_text: str) -> ResultMessage | None:
        """Synthetic terminal result for a failed session: usage and cost zeroed."""
        if self.finalized:
            return None
        self.finalized = True
        return ResultMessage(
            session_id=session_id,
            subtype="error_during_execution",
            is_error=True,
            errors=[error_text],
            duration_ms=self.duration_ms,
            num_turns=0,
        )
