#!/usr/bin/env python3
"""Run a prompt through OpenCode and print the answer.

Text is printed as it streams; a usage line goes to stderr at the end.

Usage:
    ask-agent.py [--cwd DIR] [--model M] <prompt...>
    ask-agent.py --choices BUG,FEATURE,QUESTION "Classify: button doesn't work"
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Allow running this script directly from a checkout.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from agent_runner.runners import OpenCodeConfig, OpenCodeRunner
from agent_runner.runners.opencode.models import ResultMessage
from agent_runner.simple import (
    SimpleAgentConfig,
    SimpleAgentError,
    SimpleOpenCodeRunner,
)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a prompt through OpenCode")
    parser.add_argument("prompt", nargs="+", help="prompt for the agent")
    parser.add_argument("--cwd", default=None, help="working directory for the agent")
    parser.add_argument("--model", default=None, help="model, e.g. groq/llama-3.3-70b-versatile")
    parser.add_argument(
        "--choices",
        default=None,
        help="comma-separated list of allowed answers (simple runner)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="max seconds to wait for an answer (with --choices)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    return parser.parse_args(argv)


async def _ask(args: argparse.Namespace, prompt: str) -> int:
    overrides = {"working_directory": args.cwd}
    if args.model:
        overrides["model"] = args.model
    runner = OpenCodeRunner(OpenCodeConfig.from_env(**overrides))
    runner.on("text", lambda text: print(text, end="", flush=True))

    await runner.start(prompt)
    print()

    result = next(
        (m for m in reversed(runner.get_messages()) if isinstance(m, ResultMessage)), None
    )
    if result is None:
        print("Error: session was stopped", file=sys.stderr)
        return 1
    usage = result.usage
    print(
        f"[{result.num_turns}t ${result.total_cost_usd:.3f} {result.duration_ms / 1000:.1f}s"
        f" | in {usage.input_tokens} out {usage.output_tokens}]",
        file=sys.stderr,
    )
    if result.is_error:
        print(f"Error: {'; '.join(result.errors)}", file=sys.stderr)
        return 1
    return 0


async def _choose(args: argparse.Namespace, prompt: str) -> int:
    choices = [c.strip() for c in args.choices.split(",") if c.strip()]
    if not choices:
        print("Error: --choices is empty", file=sys.stderr)
        return 2
    runner = SimpleOpenCodeRunner(
        SimpleAgentConfig(
            valid_responses=choices,
            working_directory=args.cwd,
            model=args.model,
            timeout_s=args.timeout,
        )
    )
    try:
        result = await runner.query(prompt)
    except SimpleAgentError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(result.response)
    return 0


async def main(argv: list[str]) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    prompt = " ".join(args.prompt).strip()
    if not prompt:
        print("Error: empty prompt", file=sys.stderr)
        return 1

    if args.choices:
        return await _choose(args, prompt)
    return await _ask(args, prompt)


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main(sys.argv[1:])))
