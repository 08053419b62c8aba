"""
Agent stdout decoding and stall detection.

The agent writes newline-delimited JSON events to stdout. Each line decodes
to either an AgentEvent or a MalformedLine; malformed lines are counted and
dropped, never fatal.

The StallDetector is a liveness heuristic: it fires when no "item.completed"
event has been seen for the configured window. It does not detect crashes.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)

PROGRESS_EVENT = "item.completed"
DEFAULT_STALL_SECONDS = 120.0


@dataclass(frozen=True)
class AgentEvent:
    """One well-formed event from the agent's JSON stream."""
    type: str  # thread.started, turn.completed, item.started, item.completed, error
    thread_id: Optional[str] = None
    item: dict = field(default_factory=dict)
    usage: Optional[dict] = None
    error: Optional[str] = None

    @property
    def item_type(self) -> Optional[str]:
        return self.item.get("type")


@dataclass(frozen=True)
class MalformedLine:
    """A stdout line that was not a JSON event."""
    line: str
    reason: str


DecodedLine = Union[AgentEvent, MalformedLine]


def decode_line(line: str) -> Optional[DecodedLine]:
    """Decode one stdout line. Blank lines decode to None."""
    text = line.strip()
    if not text:
        return None

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        return MalformedLine(line=text[:200], reason=str(e))

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        return MalformedLine(line=text[:200], reason="missing event type")

    item = data.get("item")
    usage = data.get("usage")
    error = data.get("error")
    return AgentEvent(
        type=data["type"],
        thread_id=data.get("thread_id") if isinstance(data.get("thread_id"), str) else None,
        item=item if isinstance(item, dict) else {},
        usage=usage if isinstance(usage, dict) else None,
        error=error if isinstance(error, str) else None,
    )


class EventStream:
    """Accumulates the agent's stdout: raw text, decoded events, malformed count."""

    def __init__(self):
        self.events: list[AgentEvent] = []
        self.malformed = 0
        self._raw: list[str] = []

    def feed(self, line: str) -> Optional[DecodedLine]:
        self._raw.append(line if line.endswith("\n") else line + "\n")
        decoded = decode_line(line)
        if isinstance(decoded, AgentEvent):
            self.events.append(decoded)
        elif isinstance(decoded, MalformedLine):
            self.malformed += 1
            logger.debug(f"Discarding malformed agent output line: {decoded.reason}")
        return decoded

    def feed_text(self, text: str) -> None:
        for line in text.splitlines():
            self.feed(line)

    @property
    def text(self) -> str:
        return "".join(self._raw)


class StallDetector:
    """Fires on_stall once per stall episode.

    An episode starts at start() or at each progress event; it ends either
    with the next progress event or with exactly one on_stall call. Must be
    used from inside a running event loop.
    """

    def __init__(self, timeout: float, on_stall: Callable[[], None]):
        self.timeout = timeout
        self.on_stall = on_stall
        self.stalls = 0
        self._handle: Optional[asyncio.TimerHandle] = None
        self._stopped = False

    def start(self) -> None:
        self._arm()

    def observe(self, decoded: Optional[DecodedLine]) -> None:
        if isinstance(decoded, AgentEvent) and decoded.type == PROGRESS_EVENT:
            self.progress()

    def progress(self) -> None:
        if not self._stopped:
            self._arm()

    def cancel(self) -> None:
        self._stopped = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def _arm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self.stalls += 1
        logger.warning(f"No {PROGRESS_EVENT} event for {self.timeout}s, agent looks stalled")
        self.on_stall()
