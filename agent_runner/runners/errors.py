"""Runner error taxonomy.

Precondition errors (``AlreadyRunning``, ``UnsupportedMode``) are raised to the
caller. Process-level errors are caught by the runner and turned into a
terminal error result.
"""

from __future__ import annotations


class AgentRunnerError(RuntimeError):
    """Base class for runner errors."""


class AlreadyRunning(AgentRunnerError):
    """A session is already active on this runner."""

    def __init__(self, message: str = "OpenCode session already running") -> None:
        super().__init__(message)


class UnsupportedMode(AgentRunnerError):
    """Streaming operation requested outside server mode."""


class ProcessSpawnFailure(AgentRunnerError):
    """The agent executable could not be launched."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class ExecutionFailure(AgentRunnerError):
    """The agent process exited unsuccessfully."""

    def __init__(
        self, exit_code: int, diagnostic: str = "", *, message: str | None = None
    ) -> None:
        self.exit_code = exit_code
        self.diagnostic = diagnostic
        if message is None:
            detail = diagnostic.strip() or "Unknown error"
            message = f"OpenCode exited with code {exit_code}: {detail}"
        super().__init__(message)
