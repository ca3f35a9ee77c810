"""Shared runner pipeline helpers.

Turns a byte stream of JSON lines (a subprocess stdout) into parsed events as
the lines arrive. Lines that don't parse are skipped and counted; they never
stop the stream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class JSONLineStats:
    lines: int = 0
    parsed: int = 0
    skipped: int = 0
    non_json_lines: list[str] = field(default_factory=list)

    @property
    def all_skipped(self) -> bool:
        """True when there was output but none of it parsed."""
        return self.lines > 0 and self.parsed == 0


async def iter_json_line_pipeline(
    *,
    byte_stream: AsyncIterator[bytes],
    parse_line: Callable[[str], T | None],
    stats: JSONLineStats,
    non_json_limit: int = 5,
) -> AsyncIterator[T]:
    """Parse a JSON-lines byte stream and yield parsed events."""

    while True:
        try:
            raw_line = await anext(byte_stream)
        except StopAsyncIteration:
            break
        except ValueError as e:
            # StreamReader.readline drops the oversized chunk before raising.
            stats.lines += 1
            stats.skipped += 1
            log.warning(f"Skipping oversized output line: {e}")
            continue

        line = raw_line.decode(errors="replace").strip()
        if not line:
            continue

        stats.lines += 1
        event = parse_line(line)
        if event is None:
            stats.skipped += 1
            if len(stats.non_json_lines) < non_json_limit:
                stats.non_json_lines.append(line[:200])
            continue

        stats.parsed += 1
        yield event
