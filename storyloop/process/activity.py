"""
Activity monitor for the agent's stderr stream.

Each diagnostic line is matched against an ordered table of pattern
families. A line can count toward several families. The resulting
statistics feed the verifier (heavy exploration with no writes) and the
next iteration's prompt.
"""

import logging
import re
import time
from dataclasses import dataclass, asdict
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# (counter name, pattern). Order is the evaluation order.
ACTIVITY_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    ("tool_calls", re.compile(r"\b(Running|Executing|command_execution|mcp_tool_call|item\.completed)\b")),
    ("file_explorations", re.compile(r"\b(cat|rg|grep|find|ls|head|tail|less|tree|fd)\b")),
    ("file_writes", re.compile(r"\b(write|edit|patch|create|mkdir|touch|mv|cp|sed|awk)\b")),
    ("test_runs", re.compile(r"\b(vitest|jest|pytest|test|npm test|pnpm test|bun test)\b")),
    ("errors_hit", re.compile(r"\b(error|Error|ERROR|failed|FAILED|exception|panic)\b")),
)

HEAVY_EXPLORATION_THRESHOLD = 5


@dataclass(frozen=True)
class ActivityStats:
    """Snapshot of what the agent did, as seen on stderr."""
    total_seconds: float = 0.0
    time_to_first_tool_call: Optional[float] = None
    tool_calls: int = 0
    file_explorations: int = 0
    file_writes: int = 0
    test_runs: int = 0
    errors_hit: int = 0
    lines_processed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ActivityStats"]:
        if not data:
            return None
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)

    @property
    def heavy_exploration_without_writes(self) -> bool:
        return self.file_explorations > HEAVY_EXPLORATION_THRESHOLD and self.file_writes == 0


class ActivityMonitor:
    """Accumulates counters from stderr lines."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._started = clock()
        self._first_tool_call: Optional[float] = None
        self._counts = {name: 0 for name, _ in ACTIVITY_PATTERNS}
        self._lines = 0

    def feed_line(self, line: str) -> None:
        if not line.strip():
            return
        self._lines += 1
        for name, pattern in ACTIVITY_PATTERNS:
            if pattern.search(line):
                self._counts[name] += 1
                if name == "tool_calls" and self._first_tool_call is None:
                    self._first_tool_call = self._clock()

    def snapshot(self) -> ActivityStats:
        now = self._clock()
        ttfc = None
        if self._first_tool_call is not None:
            ttfc = self._first_tool_call - self._started
        return ActivityStats(
            total_seconds=now - self._started,
            time_to_first_tool_call=ttfc,
            lines_processed=self._lines,
            **self._counts,
        )

    def insights(self) -> str:
        """One-line human-readable summary of the session so far."""
        stats = self.snapshot()
        parts = [f"Duration: {round(stats.total_seconds)}s"]

        if stats.time_to_first_tool_call is not None:
            parts.append(f"Time to first tool call: {round(stats.time_to_first_tool_call)}s")
        else:
            parts.append("No tool calls detected in stderr")

        parts.append(f"Tool calls: {stats.tool_calls}")
        parts.append(
            f"File explorations: {stats.file_explorations}, writes: {stats.file_writes}, "
            f"test runs: {stats.test_runs}"
        )
        if stats.errors_hit > 0:
            parts.append(f"Errors encountered: {stats.errors_hit}")
        if stats.heavy_exploration_without_writes:
            parts.append(
                f"Heavy exploration ({stats.file_explorations} reads) with no writes, "
                f"codebase map may need enrichment"
            )
        return ". ".join(parts)


def format_iteration_behavior(stats: Optional[ActivityStats]) -> str:
    """Markdown block describing the previous iteration, or "" if nothing useful."""
    if stats is None or stats.lines_processed == 0:
        return ""

    lines = ["## Previous Iteration Behavior"]

    if stats.time_to_first_tool_call is not None:
        ttfc = round(stats.time_to_first_tool_call)
        slow = " (slow, the codebase map should reduce exploration)" if ttfc > 30 else ""
        lines.append(f"- Time to first tool call: {ttfc}s{slow}")
    if stats.file_explorations > 0:
        excessive = " (excessive, trust the codebase map)" if stats.file_explorations > 8 else ""
        lines.append(f"- Explored {stats.file_explorations} files before/during work{excessive}")
    if stats.file_writes > 0:
        lines.append(f"- Wrote/edited {stats.file_writes} files")
    if stats.test_runs > 0:
        lines.append(f"- Ran tests {stats.test_runs} times")
    if stats.errors_hit > 0:
        lines.append(f"- Hit {stats.errors_hit} errors")

    ratio = stats.file_explorations / stats.tool_calls if stats.tool_calls > 0 else 0
    if ratio > 0.5:
        lines.append(
            f"- Exploration ratio: {ratio:.1f} (high, the codebase reference above "
            f"has your file tree, types, and imports)"
        )

    if len(lines) <= 1:
        return ""
    return "\n".join(lines)
