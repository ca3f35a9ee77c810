"""Session log sink.

The runner hands every normalized message to a sink. The default sink appends
to two files per session under ``<home>/logs/<workspace>/``:
- ``<stamp>.ndjson``: one JSON entry per line (``session-start``, ``sdk-message``)
- ``<stamp>.log``: a human-readable transcript

A sink must never fail the session. ``FileSessionLog`` logs the first write
error and stops writing.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, TYPE_CHECKING, Protocol

from agent_runner.runners.formatter import MessageFormatter

if TYPE_CHECKING:
    from agent_runner.runners.opencode.config import OpenCodeConfig
    from agent_runner.runners.opencode.models import Message, SessionInfo

log = logging.getLogger(__name__)


class SessionLogSink(Protocol):
    def open(self, session: "SessionInfo", config: "OpenCodeConfig") -> None: ...

    def write(self, message: "Message", timestamp: datetime) -> None: ...

    def close(self) -> None: ...


class NullSessionLog:
    """Sink that drops everything."""

    def open(self, session: "SessionInfo", config: "OpenCodeConfig") -> None:
        pass

    def write(self, message: "Message", timestamp: datetime) -> None:
        pass

    def close(self) -> None:
        pass


class FileSessionLog:
    def __init__(self, formatter: MessageFormatter | None = None):
        self.formatter = formatter or MessageFormatter()
        self.log_path: Path | None = None
        self.readable_log_path: Path | None = None
        self._log: IO[str] | None = None
        self._readable: IO[str] | None = None

    def open(self, session: "SessionInfo", config: "OpenCodeConfig") -> None:
        self.close()
        stamp = session.started_at.strftime("%Y%m%d-%H%M%S-%f")
        logs_dir = config.logs_dir
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            self.log_path = logs_dir / f"{stamp}.ndjson"
            self.readable_log_path = logs_dir / f"{stamp}.log"
            self._log = open(self.log_path, "a", encoding="utf-8")
            self._readable = open(self.readable_log_path, "a", encoding="utf-8")
        except OSError as e:
            log.warning(f"Session logging disabled: {e}")
            self.close()
            return

        log.info(f"Logging to: {self.log_path}")
        start_entry = {
            "type": "session-start",
            "sessionId": session.session_id or "pending",
            "timestamp": session.started_at.isoformat(),
            "config": {
                "model": config.model,
                "workingDirectory": config.working_directory,
                "useServerMode": config.use_server_mode,
            },
        }
        self._append(
            json.dumps(start_entry) + "\n",
            f"=== OpenCode Session started at {session.started_at.isoformat()} ===\n\n",
        )

    def write(self, message: "Message", timestamp: datetime | None = None) -> None:
        if self._log is None:
            return
        timestamp = timestamp or datetime.now(UTC)
        entry = {
            "type": "sdk-message",
            "message": message.to_dict(),
            "timestamp": timestamp.isoformat(),
        }
        self._append(
            json.dumps(entry, default=str) + "\n",
            f"[{timestamp.isoformat()}] {message.type}\n{self._readable_body(message)}\n\n",
        )

    def _readable_body(self, message: "Message") -> str:
        if message.type in ("assistant", "text-delta"):
            return message.text  # type: ignore[union-attr]
        if message.type == "tool-use":
            return self.formatter.format_tool_result(
                message.tool_name,  # type: ignore[union-attr]
                message.tool_input,  # type: ignore[union-attr]
                "",
                False,
            )
        return json.dumps(message.to_dict(), indent=2, default=str)

    def _append(self, ndjson: str, readable: str) -> None:
        try:
            if self._log:
                self._log.write(ndjson)
                self._log.flush()
            if self._readable:
                self._readable.write(readable)
                self._readable.flush()
        except (OSError, ValueError) as e:
            log.warning(f"Session log write failed, disabling: {e}")
            self.close()

    def close(self) -> None:
        for handle in (self._log, self._readable):
            if handle is None:
                continue
            try:
                handle.close()
            except OSError as e:
                log.debug(f"Failed to close session log: {e}")
        self._log = None
        self._readable = None
