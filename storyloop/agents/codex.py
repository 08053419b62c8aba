"""
Codex agent integration.

Runs one `codex exec --json` session for an iteration. The child is
supervised while it runs:
- stdout is decoded as NDJSON events; each item.completed resets the
  stall detector
- stderr lines feed the activity monitor
- a hard wall-clock timeout bounds the whole run

Whichever of stall or hard timeout fires first terminates the process
and tags the result. Both paths keep whatever output was captured so far.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from storyloop.git import get_files_modified
from storyloop.lib import validate
from storyloop.lib.agents_config import AgentsConfig, build_command
from storyloop.process.activity import ActivityMonitor, ActivityStats
from storyloop.process.registry import ProcessRegistry
from storyloop.process.stall import AgentEvent, EventStream, StallDetector
from storyloop.runner.errors import SpawnError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600
STREAM_LIMIT = 16 * 1024 * 1024  # single JSON events can carry whole file contents
RAW_OUTPUT_LIMIT = 5000
OUTPUT_FILE_PREFIX = ".storyloop-last-message-"

TOOL_ITEM_TYPES = ("command_execution", "mcp_tool_call")
ITEM_EVENTS = ("item.started", "item.completed")

_SHELL_WRAPPED = re.compile(r'-lc\s+"(?:cd\s+[^&]+&&\s*)?(.+?)"')


@dataclass
class AgentResult:
    success: bool
    output: str
    final_message: str = ""
    structured: Optional[dict] = None
    session_id: Optional[str] = None
    tool_calls: int = 0
    tool_names: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    exit_code: Optional[int] = None
    termination: Optional[str] = None  # "timeout" | "stall"
    malformed_events: int = 0
    activity: Optional[ActivityStats] = None
    activity_insights: str = ""
    spawn_failed: bool = False

    @property
    def summary(self) -> Optional[str]:
        """Structured summary when the agent replied with JSON, else the final message."""
        if self.structured and isinstance(self.structured.get("summary"), str):
            return self.structured["summary"]
        return self.final_message.strip() or None

    @classmethod
    def spawn_error(cls, error: SpawnError) -> "AgentResult":
        return cls(success=False, output=str(error), spawn_failed=True)


def _tool_name(item: dict) -> Optional[str]:
    item_type = item.get("type")
    if item_type == "command_execution" and item.get("command"):
        command = item["command"]
        wrapped = _SHELL_WRAPPED.search(command)
        base = wrapped.group(1) if wrapped else command
        return " ".join(base.split()[:2])
    if item_type == "file_change" and item.get("path"):
        return "file_change"
    if item_type == "mcp_tool_call":
        return "mcp_tool_call"
    return None


def summarize_events(events: list[AgentEvent]) -> dict:
    """Session id, tool usage, touched files and last agent message from an event list.

    A tool item is counted once even when both its started and completed
    events are present. Items without an id count on item.completed only.
    """
    session_id = None
    tool_calls = 0
    seen_ids: set = set()
    tool_names: list[str] = []
    files: list[str] = []
    last_message = ""

    for event in events:
        if event.type == "thread.started" and event.thread_id:
            session_id = event.thread_id
        if event.type not in ITEM_EVENTS or not event.item:
            continue

        item = event.item
        if event.item_type in TOOL_ITEM_TYPES:
            item_id = item.get("id")
            if item_id is not None:
                if item_id not in seen_ids:
                    seen_ids.add(item_id)
                    tool_calls += 1
            elif event.type == "item.completed":
                tool_calls += 1

        name = _tool_name(item)
        if name and name not in tool_names:
            tool_names.append(name)

        if event.item_type == "file_change" and item.get("path") and item["path"] not in files:
            files.append(item["path"])
        if event.item_type == "agent_message" and item.get("text"):
            last_message = item["text"]

    return {
        "session_id": session_id,
        "tool_calls": tool_calls,
        "tool_names": tool_names,
        "files_modified": files,
        "last_message": last_message,
    }


def parse_structured(final_message: str) -> Optional[dict]:
    """The agent's JSON reply, or None if the message is free text."""
    if not final_message:
        return None
    try:
        data = json.loads(final_message)
    except json.JSONDecodeError:
        return None
    if isinstance(data, dict) and validate.is_valid(data, "agent_output"):
        return data
    logger.debug("Final message is JSON but not a valid agent reply, treating as text")
    return None


def _read_output_file(path: Path) -> str:
    """Read and remove the agent's final-message file."""
    if not path.exists():
        return ""
    try:
        return path.read_text()
    except OSError as e:
        logger.warning(f"Failed to read agent output file {path}: {e}")
        return ""
    finally:
        path.unlink(missing_ok=True)


async def _pump(reader: asyncio.StreamReader, handle) -> None:
    while True:
        try:
            raw = await reader.readline()
        except ValueError as e:
            logger.warning(f"Dropping oversized agent output line: {e}")
            continue
        if not raw:
            return
        handle(raw.decode(errors="replace"))


class CodexAgent:
    """Runs the coding agent for one iteration under supervision."""

    def __init__(
        self,
        registry: ProcessRegistry,
        agents_config: Optional[AgentsConfig] = None,
        timeout: float = DEFAULT_TIMEOUT,
        stall_timeout: float = 120,
    ):
        self.registry = registry
        self.agents_config = agents_config or AgentsConfig()
        self.timeout = timeout
        self.stall_timeout = stall_timeout

    def build_argv(self, prompt: str, workdir: Path, model: str, sandbox: str, output_file: Path) -> list[str]:
        return build_command(self.agents_config, "iterate", {
            "prompt": prompt,
            "workdir": str(workdir),
            "model": model,
            "sandbox": sandbox,
            "schema": str(validate.schema_path("agent_output")),
            "output_file": str(output_file),
        })

    async def run(self, prompt: str, workdir: Path, model: str, sandbox: str) -> AgentResult:
        """Run one agent session. Never raises for process-level failures."""
        workdir = Path(workdir)
        output_file = workdir / f"{OUTPUT_FILE_PREFIX}{int(time.time() * 1000)}.txt"
        started = time.monotonic()

        try:
            argv = self.build_argv(prompt, workdir, model, sandbox, output_file)
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=workdir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except (OSError, ValueError) as e:
            error = SpawnError(command=self.agents_config.commands["iterate"].split()[0], message=str(e))
            logger.error(f"Failed to start agent: {error}")
            return AgentResult.spawn_error(error)

        self.registry.register(proc, "codex-iteration")
        logger.debug(f"Agent started (pid {proc.pid}) in {workdir}")

        stream = EventStream()
        monitor = ActivityMonitor()
        termination: Optional[str] = None

        def stop(reason: str) -> None:
            nonlocal termination
            if termination is not None:
                return
            termination = reason
            logger.warning(f"Terminating agent (pid {proc.pid}): {reason}")
            self.registry.terminate(proc)

        stall = StallDetector(self.stall_timeout, lambda: stop("stall"))
        stall.start()

        work = asyncio.ensure_future(asyncio.gather(
            _pump(proc.stdout, lambda line: stall.observe(stream.feed(line))),
            _pump(proc.stderr, monitor.feed_line),
            self.registry.wait(proc),
        ))

        try:
            done, _ = await asyncio.wait({work}, timeout=self.timeout)
            if not done:
                stop("timeout")
                try:
                    # Drain what the dying process still writes
                    await asyncio.wait_for(work, timeout=self.registry.grace_period + 1)
                except asyncio.TimeoutError:
                    logger.warning(f"Agent (pid {proc.pid}) did not exit after termination")
            else:
                work.result()
        finally:
            stall.cancel()

        return await self._build_result(
            proc, workdir, output_file, stream, monitor, termination,
            time.monotonic() - started,
        )

    async def _build_result(
        self,
        proc,
        workdir: Path,
        output_file: Path,
        stream: EventStream,
        monitor: ActivityMonitor,
        termination: Optional[str],
        elapsed: float,
    ) -> AgentResult:
        parsed = summarize_events(stream.events)
        final_message = _read_output_file(output_file) or parsed["last_message"]
        structured = parse_structured(final_message)
        files = list(parsed["files_modified"])

        body = final_message or stream.text[:RAW_OUTPUT_LIMIT]
        if termination == "timeout":
            output = f"Timeout: iteration exceeded {round(self.timeout)}s\n{body}"
            success = False
        elif termination == "stall":
            output = f"Timeout: agent stalled with no progress for {round(self.stall_timeout)}s\n{body}"
            success = False
        else:
            output = body
            success = proc.returncode == 0
            if success:
                for path in await asyncio.to_thread(get_files_modified, workdir):
                    if path not in files:
                        files.append(path)

        stats = monitor.snapshot()
        if stream.malformed:
            logger.debug(f"Agent emitted {stream.malformed} malformed event line(s)")

        return AgentResult(
            success=success,
            output=output,
            final_message=final_message,
            structured=structured,
            session_id=parsed["session_id"],
            tool_calls=parsed["tool_calls"],
            tool_names=parsed["tool_names"],
            files_modified=files,
            duration_seconds=round(elapsed, 3),
            exit_code=proc.returncode,
            termination=termination,
            malformed_events=stream.malformed,
            activity=stats,
            activity_insights=monitor.insights(),
        )
