"""Tests for OpenCodeRunner session lifecycle."""

import asyncio
import json

import pytest

from agent_runner.runners.errors import (
    AlreadyRunning,
    ExecutionFailure,
    ProcessSpawnFailure,
    UnsupportedMode,
)
from agent_runner.runners.opencode.accumulator import ResultAccumulator
from agent_runner.runners.opencode.models import (
    AssistantMessage,
    ResultMessage,
    SessionState,
    TextDeltaMessage,
    ToolUseMessage,
)
from agent_runner.runners.opencode.runner import OpenCodeRunner
from agent_runner.runners.ports import AgentRunner
from conftest import step_finish_line, step_start_line, text_line


def _results(runner: OpenCodeRunner) -> list[ResultMessage]:
    return [m for m in runner.get_messages() if isinstance(m, ResultMessage)]


@pytest.mark.asyncio
async def test_text_fragments_become_one_assistant_message(
    fake_opencode, make_config, null_sink
) -> None:
    path = fake_opencode([text_line("Hi "), text_line("there")])
    runner = OpenCodeRunner(make_config(path), sink=null_sink)

    session = await runner.start("say hi")

    messages = runner.get_messages()
    assert [m.type for m in messages] == ["text-delta", "text-delta", "assistant", "result"]
    assistant = messages[2]
    assert isinstance(assistant, AssistantMessage)
    assert assistant.text == "Hi there"
    (result,) = _results(runner)
    assert result.is_error is False
    assert result.subtype == "success"
    assert result.result == "Hi there"
    assert session.is_running is False
    assert session.outcome is SessionState.COMPLETED
    assert runner.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_fragment_order_is_arrival_order(fake_opencode, make_config, null_sink) -> None:
    fragments = ["one ", "two ", "three ", "four"]
    path = fake_opencode([text_line(f) for f in fragments])
    runner = OpenCodeRunner(make_config(path), sink=null_sink)

    await runner.start("count")

    deltas = [m.text for m in runner.get_messages() if isinstance(m, TextDeltaMessage)]
    assert deltas == fragments
    (assistant,) = [m for m in runner.get_messages() if isinstance(m, AssistantMessage)]
    assert assistant.text == "".join(fragments)


@pytest.mark.asyncio
async def test_usage_totals_are_summed(fake_opencode, make_config, null_sink) -> None:
    path = fake_opencode(
        [
            step_finish_line({"input": 10, "output": 5}, cost=0.002),
            step_finish_line({"input": 3, "output": 1}),
        ]
    )
    runner = OpenCodeRunner(make_config(path), sink=null_sink)

    await runner.start("usage")

    (result,) = _results(runner)
    assert result.usage.input_tokens == 13
    assert result.usage.output_tokens == 6
    assert result.total_cost_usd == pytest.approx(0.002)
    assert result.num_turns == 2


@pytest.mark.asyncio
async def test_step_start_reannouncing_session_id_wins(
    fake_opencode, make_config, null_sink
) -> None:
    path = fake_opencode(
        [
            step_start_line("abc"),
            text_line("hello"),
            step_start_line("xyz"),
            text_line(" again"),
        ]
    )
    runner = OpenCodeRunner(make_config(path), sink=null_sink)

    session = await runner.start("ids")

    assert session.session_id == "xyz"
    assert session.opencode_session_id == "xyz"
    messages = runner.get_messages()
    assert messages[0].session_id == "abc"
    assert messages[-1].session_id == "xyz"


@pytest.mark.asyncio
async def test_first_session_id_is_not_replaced_by_other_events(
    fake_opencode, make_config, null_sink
) -> None:
    path = fake_opencode(
        [
            text_line("a", sessionID="first"),
            text_line("b", sessionID="second"),
        ]
    )
    runner = OpenCodeRunner(make_config(path), sink=null_sink)

    session = await runner.start("ids")

    assert session.session_id == "first"


@pytest.mark.asyncio
async def test_session_id_synthesized_when_none_arrives(
    fake_opencode, make_config, null_sink
) -> None:
    path = fake_opencode([text_line("no id here")])
    first = OpenCodeRunner(make_config(path), sink=null_sink)
    second = OpenCodeRunner(make_config(path), sink=null_sink)

    one = await first.start("a")
    two = await second.start("b")

    assert one.session_id and two.session_id
    assert one.session_id != two.session_id
    assert _results(first)[0].session_id == one.session_id
    # Messages emitted before any id was known carry the placeholder.
    assert first.get_messages()[0].session_id == "pending"


@pytest.mark.asyncio
async def test_invalid_lines_are_skipped(fake_opencode, make_config, null_sink) -> None:
    path = fake_opencode(["not json", text_line("a"), "{broken", "[1, 2]", text_line("b")])
    runner = OpenCodeRunner(make_config(path), sink=null_sink)

    await runner.start("skip")

    (result,) = _results(runner)
    assert result.is_error is False
    assert result.result == "ab"
    assert runner.stats.skipped == 3
    assert runner.stats.parsed == 2


@pytest.mark.asyncio
async def test_unknown_event_types_are_ignored(fake_opencode, make_config, null_sink) -> None:
    path = fake_opencode([json.dumps({"type": "reasoning", "part": {}}), text_line("ok")])
    runner = OpenCodeRunner(make_config(path), sink=null_sink)

    await runner.start("unknown")

    assert [m.type for m in runner.get_messages()] == ["text-delta", "assistant", "result"]


@pytest.mark.asyncio
async def test_tool_events_become_tool_use_messages(
    fake_opencode, make_config, null_sink
) -> None:
    path = fake_opencode(
        [
            json.dumps(
                {
                    "type": "tool_call",
                    "part": {"tool": "bash", "callID": "c1", "state": {"input": {"command": "ls"}}},
                }
            ),
            json.dumps(
                {
                    "type": "tool_result",
                    "part": {"tool": "bash", "callID": "c1", "state": {"output": "a.txt"}},
                }
            ),
        ]
    )
    runner = OpenCodeRunner(make_config(path), sink=null_sink)
    tool_events = []
    runner.on("tool-use", lambda name, tool_input: tool_events.append((name, tool_input)))

    await runner.start("tools")

    call, result = [m for m in runner.get_messages() if isinstance(m, ToolUseMessage)]
    assert call.tool_name == "bash"
    assert call.tool_input == {"command": "ls"}
    assert call.is_result is False
    assert result.is_result is True
    assert result.tool_output == "a.txt"
    assert tool_events == [("bash", {"command": "ls"})]


@pytest.mark.asyncio
async def test_nonzero_exit_produces_error_result(fake_opencode, make_config, null_sink) -> None:
    path = fake_opencode(
        [text_line("partial"), step_finish_line({"input": 10, "output": 5}, cost=0.5)],
        exit_code=137,
        stderr="killed",
    )
    runner = OpenCodeRunner(make_config(path), sink=null_sink)
    errors = []
    runner.on("error", errors.append)

    session = await runner.start("fail")

    (result,) = _results(runner)
    assert result.is_error is True
    assert result.subtype == "error_during_execution"
    assert "137" in result.errors[0]
    assert "killed" in result.errors[0]
    assert result.usage.input_tokens == 0
    assert result.usage.output_tokens == 0
    assert result.total_cost_usd == 0
    assert not any(isinstance(m, AssistantMessage) for m in runner.get_messages())
    assert session.is_running is False
    assert session.outcome is SessionState.FAILED
    assert len(errors) == 1
    assert isinstance(errors[0], ExecutionFailure)
    assert errors[0].exit_code == 137


@pytest.mark.asyncio
async def test_error_result_uses_pending_id_without_provider_id(
    fake_opencode, make_config, null_sink
) -> None:
    path = fake_opencode([], exit_code=1)
    runner = OpenCodeRunner(make_config(path), sink=null_sink)

    await runner.start("fail")

    (result,) = _results(runner)
    assert result.session_id == "pending"


@pytest.mark.asyncio
async def test_missing_executable_is_a_spawn_failure(tmp_path, make_config, null_sink) -> None:
    runner = OpenCodeRunner(make_config(str(tmp_path / "no-such-opencode")), sink=null_sink)
    errors = []
    runner.on("error", errors.append)

    session = await runner.start("hello")

    (result,) = _results(runner)
    assert result.is_error is True
    assert "not found" in result.errors[0]
    assert isinstance(errors[0], ProcessSpawnFailure)
    assert errors[0].transient is False
    assert session.is_running is False


@pytest.mark.asyncio
async def test_entirely_unparseable_output_fails(fake_opencode, make_config, null_sink) -> None:
    path = fake_opencode(["Error: no provider configured", "see docs"])
    runner = OpenCodeRunner(make_config(path), sink=null_sink)

    await runner.start("hello")

    (result,) = _results(runner)
    assert result.is_error is True
    assert "non-JSON" in result.errors[0]
    assert "no provider configured" in result.errors[0]


@pytest.mark.asyncio
async def test_empty_output_still_yields_one_result(fake_opencode, make_config, null_sink) -> None:
    runner = OpenCodeRunner(make_config(fake_opencode([])), sink=null_sink)

    await runner.start("quiet")

    assert [m.type for m in runner.get_messages()] == ["result"]
    assert _results(runner)[0].is_error is False


@pytest.mark.asyncio
async def test_complete_event_carries_final_messages(
    fake_opencode, make_config, null_sink
) -> None:
    runner = OpenCodeRunner(make_config(fake_opencode([text_line("done")])), sink=null_sink)
    sub = runner.subscribe()

    await runner.start("go")

    events = sub.drain()
    names = [name for name, _ in events]
    assert names[-1] == "complete"
    assert names.count("complete") == 1
    assert "text" in names
    assert "assistant" in names
    assert events[-1][1] == runner.get_messages()


@pytest.mark.asyncio
async def test_config_callbacks_are_forwarded(fake_opencode, make_config, null_sink) -> None:
    seen = []
    completed = []
    config = make_config(
        fake_opencode([text_line("x")]),
        on_message=seen.append,
        on_complete=completed.append,
    )
    runner = OpenCodeRunner(config, sink=null_sink)

    await runner.start("go")

    assert [m.type for m in seen] == ["text-delta", "assistant", "result"]
    assert len(completed) == 1


@pytest.mark.asyncio
async def test_prompt_is_passed_as_positional_argument(
    fake_opencode, make_config, null_sink, calls_file
) -> None:
    config = make_config(fake_opencode([]), model="groq/llama", append_system_prompt="Be brief.")
    runner = OpenCodeRunner(config, sink=null_sink)

    await runner.start("fix the bug")

    args = calls_file.read_text()
    assert args.startswith("run --format json --model groq/llama -- fix the bug")
    assert "Be brief." in args


@pytest.mark.asyncio
async def test_working_directory_is_created(fake_opencode, make_config, null_sink, tmp_path) -> None:
    runner = OpenCodeRunner(make_config(fake_opencode([])), sink=null_sink)

    await runner.start("hi")

    assert (tmp_path / "work").is_dir()


@pytest.mark.asyncio
async def test_start_while_running_fails_fast(
    fake_opencode, make_config, null_sink, calls_file
) -> None:
    path = fake_opencode([text_line("working")], tail="exec sleep 30")
    runner = OpenCodeRunner(make_config(path), sink=null_sink)
    sub = runner.subscribe("message")

    task = asyncio.create_task(runner.start("first"))
    await asyncio.wait_for(sub.get(), timeout=5)
    assert runner.is_running()

    with pytest.raises(AlreadyRunning):
        await runner.start("second")

    runner.stop()
    await asyncio.wait_for(task, timeout=5)
    assert len(calls_file.read_text().splitlines()) == 1


@pytest.mark.asyncio
async def test_stop_interrupts_running_session(fake_opencode, make_config, null_sink) -> None:
    path = fake_opencode([step_start_line("ses_1"), text_line("working")], tail="exec sleep 30")
    runner = OpenCodeRunner(make_config(path), sink=null_sink)
    sub = runner.subscribe("text")
    errors = []
    runner.on("error", errors.append)

    task = asyncio.create_task(runner.start("long job"))
    await asyncio.wait_for(sub.get(), timeout=5)

    runner.stop()
    assert runner.is_running() is False
    session = await asyncio.wait_for(task, timeout=5)

    assert session.outcome is SessionState.STOPPED
    assert session.session_id == "ses_1"
    assert _results(runner) == []
    assert errors == []
    assert runner.state is SessionState.IDLE
    assert runner.process is None


@pytest.mark.asyncio
async def test_runner_is_reusable_after_stop(fake_opencode, make_config, null_sink) -> None:
    slow = fake_opencode([text_line("working")], tail="exec sleep 30")
    runner = OpenCodeRunner(make_config(slow), sink=null_sink)
    sub = runner.subscribe("text")
    task = asyncio.create_task(runner.start("slow"))
    await asyncio.wait_for(sub.get(), timeout=5)
    runner.stop()
    await asyncio.wait_for(task, timeout=5)

    runner.config = make_config(fake_opencode([text_line("fresh")]))
    await runner.start("fast")

    assert [m.type for m in runner.get_messages()] == ["text-delta", "assistant", "result"]


def test_stop_when_idle_is_a_noop(make_config, null_sink) -> None:
    runner = OpenCodeRunner(make_config("opencode"), sink=null_sink)

    runner.stop()
    runner.stop()

    assert runner.is_running() is False
    assert runner.state is SessionState.IDLE


def test_runner_satisfies_agent_runner_port(make_config, null_sink) -> None:
    runner = OpenCodeRunner(make_config("opencode"), sink=null_sink)
    assert isinstance(runner, AgentRunner)
    assert runner.get_formatter().format_tool_result("read", {"filePath": "a"}, "", False) == (
        "Read file: a"
    )


@pytest.mark.asyncio
async def test_streaming_requires_server_mode(make_config, null_sink) -> None:
    runner = OpenCodeRunner(make_config("opencode"), sink=null_sink)

    assert runner.supports_streaming_input is False
    with pytest.raises(UnsupportedMode):
        await runner.start_streaming("hello")
    with pytest.raises(UnsupportedMode):
        runner.add_stream_message("more")
    assert runner.is_running() is False


@pytest.mark.asyncio
async def test_streaming_input_is_fed_through_stdin(
    fake_opencode, make_config, null_sink, calls_file
) -> None:
    echo = (
        'while IFS= read -r line; do '
        'printf \'{"type":"text","part":{"text":"%s"}}\\n\' "$line"; done'
    )
    path = fake_opencode(tail=echo)
    config = make_config(path, use_server_mode=True, server_timeout_s=0.1)
    runner = OpenCodeRunner(config, sink=null_sink)

    task = asyncio.create_task(runner.start_streaming("hello"))
    runner.add_stream_message("world")
    runner.complete_stream()
    session = await asyncio.wait_for(task, timeout=5)

    (assistant,) = [m for m in runner.get_messages() if isinstance(m, AssistantMessage)]
    assert assistant.text == "helloworld"
    assert session.server_url and session.server_url.startswith("http://127.0.0.1:")
    args = calls_file.read_text()
    assert "--port" in args
    assert "hello" not in args


@pytest.mark.asyncio
async def test_failing_sink_does_not_fail_session(fake_opencode, make_config) -> None:
    class BrokenSink:
        def open(self, session, config):
            raise OSError("disk full")

        def write(self, message, timestamp):
            raise OSError("disk full")

        def close(self):
            raise OSError("disk full")

    runner = OpenCodeRunner(make_config(fake_opencode([text_line("ok")])), sink=BrokenSink())

    await runner.start("hi")

    (result,) = _results(runner)
    assert result.is_error is False


@pytest.mark.asyncio
async def test_failing_listener_does_not_fail_session(
    fake_opencode, make_config, null_sink
) -> None:
    runner = OpenCodeRunner(make_config(fake_opencode([text_line("ok")])), sink=null_sink)

    def explode(_message):
        raise RuntimeError("listener bug")

    runner.on("message", explode)

    await runner.start("hi")

    assert _results(runner)[0].is_error is False


@pytest.mark.asyncio
async def test_oversized_line_is_skipped_without_failing_session(
    fake_opencode, make_config, null_sink
) -> None:
    oversized = 11 * 1024 * 1024
    tail = "\n".join(
        [
            f"head -c {oversized} /dev/zero | tr '\\0' x",
            "echo",
            f"printf '%s\\n' '{text_line('after')}'",
        ]
    )
    path = fake_opencode([text_line("before ")], tail=tail)
    runner = OpenCodeRunner(make_config(path), sink=null_sink)

    session = await asyncio.wait_for(runner.start("big output"), timeout=30)

    (result,) = _results(runner)
    assert result.is_error is False
    assert result.result == "before after"
    assert runner.stats.parsed == 2
    assert runner.stats.skipped >= 1
    assert session.outcome is SessionState.COMPLETED
    assert runner.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_failure_while_finalizing_still_cleans_up(
    fake_opencode, make_config, null_sink, monkeypatch
) -> None:
    def broken_finalize(self, session_id, **kwargs):
        raise RuntimeError("finalize failed")

    monkeypatch.setattr(ResultAccumulator, "finalize", broken_finalize)
    runner = OpenCodeRunner(make_config(fake_opencode([text_line("hi")])), sink=null_sink)
    errors = []
    runner.on("error", errors.append)

    session = await runner.start("hi")

    (result,) = _results(runner)
    assert result.is_error is True
    assert result.errors == ["finalize failed"]
    assert [str(e) for e in errors] == ["finalize failed"]
    assert session.outcome is SessionState.FAILED
    assert session.is_running is False
    assert runner.state is SessionState.IDLE
    assert runner.process is None

    monkeypatch.undo()
    await runner.start("again")
    assert _results(runner)[0].is_error is False


@pytest.mark.asyncio
async def test_stop_after_process_exit_is_harmless(
    fake_opencode, make_config, null_sink
) -> None:
    runner = OpenCodeRunner(make_config(fake_opencode([text_line("done")])), sink=null_sink)
    runner.on("complete", lambda _messages: runner.stop())

    session = await asyncio.wait_for(runner.start("hi"), timeout=5)

    assert len(_results(runner)) == 1
    assert session.outcome is SessionState.COMPLETED
    assert session.is_running is False
    assert runner.state is SessionState.IDLE
    runner.stop()
    assert runner.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_stderr_diagnostic_keeps_only_the_tail(
    fake_opencode, make_config, null_sink
) -> None:
    noisy = 'i=0; while [ $i -lt 3000 ]; do echo "stderr line $i" >&2; i=$((i+1)); done'
    path = fake_opencode([text_line("x")], exit_code=2, tail=noisy)
    runner = OpenCodeRunner(make_config(path), sink=null_sink)
    errors = []
    runner.on("error", errors.append)

    await runner.start("noisy")

    (error,) = errors
    assert isinstance(error, ExecutionFailure)
    assert error.exit_code == 2
    assert len(error.diagnostic) <= 16 * 1024
    assert "stderr line 2999" in error.diagnostic
    assert "stderr line 0\n" not in error.diagnostic


@pytest.mark.asyncio
async def test_large_streamed_message_is_delivered_whole(
    fake_opencode, make_config, null_sink
) -> None:
    count_bytes = (
        'n=$(wc -c | tr -d " "); '
        'printf \'{"type":"text","part":{"text":"%s"}}\\n\' "$n"'
    )
    config = make_config(fake_opencode(tail=count_bytes), use_server_mode=True, server_timeout_s=0.1)
    runner = OpenCodeRunner(config, sink=null_sink)
    payload = "y" * (4 * 1024 * 1024)

    task = asyncio.create_task(runner.start_streaming())
    runner.add_stream_message(payload)
    runner.complete_stream()
    await asyncio.wait_for(task, timeout=15)

    (assistant,) = [m for m in runner.get_messages() if isinstance(m, AssistantMessage)]
    assert assistant.text == str(len(payload) + 1)
