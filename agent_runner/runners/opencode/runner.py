"""OpenCode CLI runner.

Spawns ``opencode run --format json``, normalizes its event stream as lines
arrive and finishes every session with exactly one terminal ``result``
message, whether the process succeeded, failed, or never started.

    runner = OpenCodeRunner(OpenCodeConfig(working_directory="/path/to/repo"))
    runner.on("message", print)
    session = await runner.start("Fix the bug in auth.py")
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Union
from uuid import uuid4

from agent_runner.runners.emitter import EventEmitter, Subscription
from agent_runner.runners.errors import (
    AlreadyRunning,
    ExecutionFailure,
    ProcessSpawnFailure,
    UnsupportedMode,
)
from agent_runner.runners.formatter import MessageFormatter
from agent_runner.runners.opencode.accumulator import ResultAccumulator
from agent_runner.runners.opencode.client import OpenCodeClient, find_free_port
from agent_runner.runners.opencode.config import OpenCodeConfig
from agent_runner.runners.opencode.events import (
    EventKind,
    EventNormalizer,
    RawEvent,
    parse_line,
)
from agent_runner.runners.opencode.models import (
    PENDING_SESSION_ID,
    Message,
    ResultMessage,
    SessionInfo,
    SessionState,
)
from agent_runner.runners.pipeline import JSONLineStats, iter_json_line_pipeline
from agent_runner.runners.session_log import FileSessionLog, SessionLogSink

log = logging.getLogger("opencode")

_STDOUT_LIMIT = 10 * 1024 * 1024  # large JSON lines (tool output)
_STDERR_TAIL_BYTES = 16 * 1024
_STDERR_MAX_LINES = 500
_REAP_TIMEOUT_S = 5.0


@dataclass
class PendingResult:
    """Session is live; the terminal result has not been produced yet."""

    accumulator: ResultAccumulator


@dataclass
class Finalized:
    """The terminal result has been emitted."""

    result: ResultMessage


CompletionPhase = Union[PendingResult, Finalized]


class OpenCodeRunner:
    """Runs one OpenCode session at a time.

    Events (``on`` / ``subscribe``):
        ("message", Message)       - every normalized message
        ("text", str)              - streamed text fragment
        ("tool-use", (name, input))- tool invocation
        ("assistant", str)         - full reply text at the end of a session
        ("error", Exception)       - fatal session error
        ("complete", list[Message])- final message list
        ("opencode-event", dict)   - raw agent event
    """

    def __init__(self, config: OpenCodeConfig, sink: SessionLogSink | None = None):
        self.config = config
        # Only server mode accepts prompts after the session has started.
        self.supports_streaming_input = config.use_server_mode
        self.sink: SessionLogSink = sink if sink is not None else FileSessionLog()
        self.formatter = MessageFormatter()
        self.normalizer = EventNormalizer()
        self.state = SessionState.IDLE
        self.session: SessionInfo | None = None
        self.process: asyncio.subprocess.Process | None = None
        self.stats = JSONLineStats()

        self._events = EventEmitter()
        self._messages: list[Message] = []
        self._phase: CompletionPhase | None = None
        self._cancelled = False
        self._io_task: asyncio.Task | None = None
        self._stderr: deque[str] = deque(maxlen=_STDERR_MAX_LINES)
        self._pending_input: list[str] = []
        self._input_closed = False
        self._input_ready = asyncio.Event()
        self._writer_task: asyncio.Task | None = None

        if config.on_message:
            self.on("message", config.on_message)
        if config.on_error:
            self.on("error", config.on_error)
        if config.on_complete:
            self.on("complete", config.on_complete)

    # -- caller surface ---------------------------------------------------

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        self._events.on(event, callback)

    def off(self, event: str, callback: Callable[..., Any]) -> None:
        self._events.off(event, callback)

    def subscribe(self, *events: str) -> Subscription:
        return self._events.subscribe(*events)

    def is_running(self) -> bool:
        return self.session.is_running if self.session else False

    def get_messages(self) -> list[Message]:
        return list(self._messages)

    def get_formatter(self) -> MessageFormatter:
        return self.formatter

    # -- session control --------------------------------------------------

    async def start(self, prompt: str) -> SessionInfo:
        """Run a session to completion and return its final info."""
        return await self._start_session(prompt, streaming=False)

    async def start_streaming(self, initial_prompt: str | None = None) -> SessionInfo:
        """Run a session whose prompt is fed through stdin."""
        if not self.supports_streaming_input:
            raise UnsupportedMode(
                "Streaming input is only supported in server mode. Set use_server_mode=True"
            )
        return await self._start_session(initial_prompt, streaming=True)

    def add_stream_message(self, content: str) -> None:
        if not self.supports_streaming_input:
            raise UnsupportedMode("add_stream_message is only supported in server mode")
        if self._input_closed:
            log.warning("Stream already completed, dropping message")
            return
        self._pending_input.append(content)
        self._input_ready.set()

    def complete_stream(self) -> None:
        """Close stdin to end the turn. The process keeps running."""
        if not self.supports_streaming_input:
            return
        self._input_closed = True
        self._input_ready.set()

    def stop(self) -> None:
        """Cancel the session and terminate the process without waiting."""
        if self.state is SessionState.IDLE and not self.is_running():
            return

        self._cancelled = True
        if self._io_task and not self._io_task.done():
            self._io_task.cancel()

        process = self.process
        if process and process.returncode is None:
            log.info("Stopping OpenCode process")
            with contextlib.suppress(ProcessLookupError):
                process.terminate()

        if self.session:
            self.session.is_running = False

    # -- lifecycle ----------------------------------------------------------

    async def _start_session(self, prompt: str | None, *, streaming: bool) -> SessionInfo:
        # The previous session must be fully cleaned up, not only marked stopped.
        if self.is_running() or self.state is not SessionState.IDLE:
            raise AlreadyRunning()

        session = SessionInfo()
        self.session = session
        self.state = SessionState.STARTING
        self._messages = []
        self._stderr.clear()
        self._cancelled = False
        self.stats = JSONLineStats()
        accumulator = ResultAccumulator(started_at=session.started_at)
        self._phase = PendingResult(accumulator)

        log.info("Starting new session")
        log.info(f"Working directory: {self.config.working_directory}")
        log.info(f"Model: {self.config.model or '(default)'}")

        try:
            self._prepare_working_directory()
            self._open_sink(session)
            if streaming and prompt:
                self._pending_input.insert(0, self._compose_prompt(prompt))

            await self._run_process(session, prompt or "", streaming)

            if self._cancelled:
                self._mark_stopped(session)
            else:
                self._complete(session, accumulator)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if not self._cancelled or (task and task.cancelling()):
                raise
            self._mark_stopped(session)
        except Exception as e:
            if self._cancelled:
                self._mark_stopped(session)
            else:
                log.exception("OpenCode runner error")
                self._fail(session, accumulator, e)
        finally:
            await self._cleanup()

        return session

    async def _run_process(self, session: SessionInfo, prompt: str, streaming: bool) -> None:
        port = None
        server_url = None
        if self.config.use_server_mode:
            port = self.config.server_port or find_free_port()
            server_url = f"http://127.0.0.1:{port}"
            session.server_url = server_url

        cmd = self._build_command(prompt, streaming, port)
        log.info(f"Spawning: {self.config.opencode_path} run --format json \"<prompt>\"")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if streaming else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.config.working_directory or None,
                env=self.config.process_env(),
                limit=_STDOUT_LIMIT,
            )
        except FileNotFoundError as e:
            raise ProcessSpawnFailure(
                f"OpenCode executable not found: {self.config.opencode_path}",
                transient=False,
            ) from e
        except OSError as e:
            raise ProcessSpawnFailure(f"OpenCode failed to start: {e}", transient=True) from e

        process = self.process
        if self._cancelled:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            return

        self.state = SessionState.RUNNING
        if streaming and process.stdin is not None:
            self._writer_task = asyncio.create_task(self._write_input(process.stdin))

        probe_task: asyncio.Task | None = None
        if server_url:
            probe_task = asyncio.create_task(self._probe_server(session, server_url))

        self._io_task = asyncio.create_task(self._consume(process))
        try:
            await self._io_task
        finally:
            if probe_task:
                probe_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await probe_task

        if self._cancelled:
            return

        log.info(f"Process exited with code {process.returncode}")
        if process.returncode != 0:
            raise ExecutionFailure(process.returncode, self._stderr_tail())
        if self.stats.all_skipped:
            preview = " | ".join(self.stats.non_json_lines)
            raise ExecutionFailure(
                0, preview, message=f"OpenCode output (non-JSON): {preview}"
            )
        if self.stats.lines == 0:
            log.warning("Empty output from OpenCode")

    async def _consume(self, process: asyncio.subprocess.Process) -> None:
        if process.stdout is None:
            raise RuntimeError("OpenCode process stdout missing")

        stderr_task = asyncio.create_task(self._drain_stderr(process))
        try:
            async for raw in iter_json_line_pipeline(
                byte_stream=process.stdout,
                parse_line=parse_line,
                stats=self.stats,
            ):
                if self._cancelled:
                    break
                self._handle_event(raw)
            await stderr_task
            await process.wait()
        finally:
            if not stderr_task.done():
                stderr_task.cancel()

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        if process.stderr is None:
            return
        while True:
            try:
                raw_line = await process.stderr.readline()
            except ValueError as e:
                log.debug(f"Dropping oversized stderr line: {e}")
                continue
            if not raw_line:
                break
            chunk = raw_line.decode(errors="replace")
            self._stderr.append(chunk[-_STDERR_TAIL_BYTES:])
            if self.config.debug:
                log.info(f"stderr: {chunk.rstrip()}")
            else:
                log.debug(f"stderr: {chunk.rstrip()}")

    def _stderr_tail(self) -> str:
        """Last ``_STDERR_TAIL_BYTES`` characters of stderr."""
        return "".join(self._stderr)[-_STDERR_TAIL_BYTES:]

    async def _write_input(self, stdin: asyncio.StreamWriter) -> None:
        """Feed buffered prompts to stdin, honoring pipe flow control."""
        try:
            while True:
                while self._pending_input:
                    text = self._pending_input.pop(0)
                    if not text.endswith("\n"):
                        text += "\n"
                    stdin.write(text.encode())
                    await stdin.drain()
                if self._input_closed:
                    if not stdin.is_closing():
                        stdin.close()
                    return
                self._input_ready.clear()
                await self._input_ready.wait()
        except (BrokenPipeError, ConnectionResetError) as e:
            log.warning(f"Failed to write to OpenCode stdin: {e}")

    async def _probe_server(self, session: SessionInfo, server_url: str) -> None:
        client = OpenCodeClient(server_url)
        try:
            ready = await client.wait_until_healthy(self.config.server_timeout_s)
        except Exception as e:
            log.warning(f"OpenCode server probe failed: {e}")
            ready = False
        session.server_ready = ready
        if ready:
            log.info(f"OpenCode server ready at {server_url}")
        else:
            log.warning(f"OpenCode server not healthy at {server_url}")

    def _handle_event(self, raw: RawEvent) -> None:
        if not isinstance(self._phase, PendingResult):
            return
        event = self.normalizer.normalize(raw)
        self._events.emit("opencode-event", raw.payload)
        self._latch_session_id(event.kind, event.session_id)
        self._phase.accumulator.add(event)

        message = event.to_message(self._current_session_id())
        if message:
            self._emit_message(message)
        if event.kind is EventKind.TEXT_FRAGMENT and event.text:
            self._events.emit("text", event.text)
        elif event.kind is EventKind.TOOL_INVOKED:
            self._events.emit("tool-use", event.tool_name, event.tool_input)

    def _latch_session_id(self, kind: EventKind, session_id: str | None) -> None:
        """First id seen wins, but a step_start re-announcing an id replaces it."""
        session = self.session
        if not session or not session_id:
            return
        if session.session_id is not None and kind is not EventKind.SESSION_STARTED:
            return
        if session.session_id != session_id:
            log.info(f"Session ID: {session_id}")
        session.session_id = session_id
        session.opencode_session_id = session_id

    def _current_session_id(self) -> str:
        if self.session and self.session.session_id:
            return self.session.session_id
        return PENDING_SESSION_ID

    # -- terminal paths -----------------------------------------------------

    def _complete(self, session: SessionInfo, accumulator: ResultAccumulator) -> None:
        if not session.session_id:
            session.session_id = f"opencode-{uuid4().hex}"
        self.state = SessionState.COMPLETED
        self._finish(accumulator.finalize(session.session_id))
        if accumulator.text:
            self._events.emit("assistant", accumulator.text)
        session.is_running = False
        session.outcome = SessionState.COMPLETED
        log.info(f"Session completed with {len(self._messages)} messages")
        self._events.emit("complete", self.get_messages())

    def _fail(
        self, session: SessionInfo, accumulator: ResultAccumulator, error: Exception
    ) -> None:
        self.state = SessionState.FAILED
        result = accumulator.error_result(
            session.session_id or PENDING_SESSION_ID, str(error)
        )
        if result:
            self._finish([result])
        session.is_running = False
        session.outcome = SessionState.FAILED
        self._events.emit("error", error)

    def _mark_stopped(self, session: SessionInfo) -> None:
        self.state = SessionState.STOPPED
        session.is_running = False
        session.outcome = SessionState.STOPPED
        log.info(f"Session stopped with {len(self._messages)} messages")

    def _finish(self, messages: list[Message]) -> None:
        """Emit the terminal messages; the last one must be the result."""
        if not isinstance(self._phase, PendingResult):
            log.warning("Terminal result already emitted, ignoring")
            return
        result = messages[-1]
        if not isinstance(result, ResultMessage):
            raise RuntimeError(f"Terminal message must be a result, got {result.type}")
        for message in messages:
            self._emit_message(message)
        self._phase = Finalized(result)

    def _emit_message(self, message: Message) -> None:
        self._messages.append(message)
        try:
            self.sink.write(message, datetime.now(UTC))
        except Exception as e:
            log.warning(f"Session log sink failed: {e}")
        self._events.emit("message", message)

    async def _cleanup(self) -> None:
        if self._writer_task and not self._writer_task.done():
            self._writer_task.cancel()
        self._close_stdin()
        if self.process:
            await self._reap(self.process)
        try:
            self.sink.close()
        except Exception as e:
            log.warning(f"Failed to close session log: {e}")
        if self.session:
            self.session.is_running = False
        self.process = None
        self._io_task = None
        self._writer_task = None
        self._phase = None
        self._cancelled = False
        self._pending_input = []
        self._input_closed = False
        self._input_ready.clear()
        self.state = SessionState.IDLE

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the process if needed and wait for it so the transport is released."""
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=_REAP_TIMEOUT_S)
        except asyncio.TimeoutError:
            log.warning("OpenCode process ignored SIGTERM, killing")
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    # -- helpers ------------------------------------------------------------

    def _build_command(self, prompt: str, streaming: bool, port: int | None) -> list[str]:
        """Build the opencode command line."""
        cmd = [self.config.opencode_path, "run", "--format", "json"]
        if self.config.model:
            cmd.extend(["--model", self.config.model])
        if port:
            cmd.extend(["--port", str(port)])
        if not streaming:
            cmd.extend(["--", self._compose_prompt(prompt)])
        return cmd

    def _compose_prompt(self, prompt: str) -> str:
        if self.config.append_system_prompt:
            return f"{prompt}\n\n{self.config.append_system_prompt}"
        return prompt

    def _prepare_working_directory(self) -> None:
        if not self.config.working_directory:
            return
        try:
            Path(self.config.working_directory).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.error(f"Failed to create working directory: {e}")

    def _open_sink(self, session: SessionInfo) -> None:
        try:
            self.sink.open(session, self.config)
        except Exception as e:
            log.warning(f"Failed to open session log: {e}")

    def _close_stdin(self) -> None:
        stdin = self.process.stdin if self.process else None
        if stdin is not None and not stdin.is_closing():
            stdin.close()
