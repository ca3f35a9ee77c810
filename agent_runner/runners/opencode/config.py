"""OpenCode runner configuration.

Configuration lives at the adapter boundary so higher-level code doesn't grow a
dependency on OpenCodeRunner's internal constructor signature. The process
environment is only assembled at spawn time (``process_env``); ``os.environ``
itself is never modified.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from agent_runner.runners.opencode.models import Message

DEFAULT_HOME = Path("~/.opencode-runner")


@dataclass(frozen=True)
class OpenCodeConfig:
    working_directory: str | None = None
    home_dir: Path = DEFAULT_HOME
    workspace_name: str | None = None
    opencode_path: str = "opencode"
    model: str | None = None
    config_path: str | None = None

    # Server mode runs the embedded server and allows streaming input.
    use_server_mode: bool = False
    server_port: int = 0  # 0 picks a free port
    server_timeout_s: float = 10.0

    append_system_prompt: str | None = None
    debug: bool = False
    extra_env: Mapping[str, str] = field(default_factory=dict)

    on_message: Callable[["Message"], Any] | None = None
    on_error: Callable[[BaseException], Any] | None = None
    on_complete: Callable[[list["Message"]], Any] | None = None

    @classmethod
    def from_env(cls, **overrides: Any) -> OpenCodeConfig:
        """Build a config with defaults taken from the environment."""
        config = cls(
            home_dir=Path(os.getenv("OPENCODE_RUNNER_HOME", str(DEFAULT_HOME))),
            opencode_path=os.getenv("OPENCODE_PATH", "opencode"),
            model=os.getenv("OPENCODE_MODEL") or None,
            config_path=os.getenv("OPENCODE_CONFIG") or None,
            server_port=int(os.getenv("OPENCODE_SERVER_PORT", "0") or 0),
        )
        return replace(config, **overrides)

    @property
    def logs_dir(self) -> Path:
        workspace = self.workspace_name
        if not workspace and self.working_directory:
            workspace = Path(self.working_directory).name
        return self.home_dir.expanduser() / "logs" / (workspace or "default")

    def process_env(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Environment for the child process: inherited env plus overrides."""
        env = dict(os.environ if base is None else base)
        if self.config_path:
            env["OPENCODE_CONFIG"] = self.config_path
        env.update(self.extra_env)
        return env
