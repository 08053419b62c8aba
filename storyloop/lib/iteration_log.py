"""
Durable iteration log and persisted prompts.

Each working directory has one append-only JSONL file. Every iteration
outcome is one line, written with a single write() so concurrent jobs
interleave whole records, never partial ones. Readers skip corrupted
lines.

The full prompt for each iteration is stored separately under the state
directory and referenced from the log entry by path and short hash.
"""

import hashlib
import json
import logging
import threading
import time
from pathlib import Path
from typing import Iterable, Optional

from storyloop.lib.validate import validate_before_write

logger = logging.getLogger(__name__)

LOG_FILENAME = ".storyloop-iterations.jsonl"
PROMPTS_SUBDIR = "prompts"
PROMPT_HASH_LENGTH = 16
DEFAULT_QUERY_LIMIT = 20

_append_lock = threading.Lock()


def log_path(workdir: Path) -> Path:
    return Path(workdir) / LOG_FILENAME


def append_entry(workdir: Path, entry: dict) -> None:
    """Validate and append one entry.

    Raises:
        ValidationError: entry doesn't match the log schema
        OSError: the log could not be written
    """
    path = log_path(workdir)
    validate_before_write(entry, "iteration_log_entry", path)
    line = json.dumps(entry) + "\n"
    with _append_lock:
        with open(path, "a") as f:
            f.write(line)
            f.flush()


def read_entries(workdir: Path) -> list[dict]:
    """All entries in file order. Skips corrupted lines."""
    path = log_path(workdir)
    if not path.exists():
        return []

    entries = []
    for line_num, line in enumerate(path.read_text().splitlines(), 1):
        if not line.strip():
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping corrupted log line {line_num} in {path}: {e}")
            continue
        if isinstance(data, dict):
            entries.append(data)
        else:
            logger.warning(f"Skipping non-object log line {line_num} in {path}")
    return entries


def query_entries(
    entries: Iterable[dict],
    since: Optional[int] = None,
    story_id: Optional[str] = None,
    job_id: Optional[str] = None,
    failures_only: bool = False,
    limit: int = DEFAULT_QUERY_LIMIT,
) -> list[dict]:
    """Filter log entries. Returns at most `limit`, most recent last.

    since is an epoch in milliseconds.
    """
    selected = []
    for entry in entries:
        if since is not None and entry.get("epoch", 0) < since:
            continue
        if story_id and entry.get("story_id") != story_id:
            continue
        if job_id and entry.get("job_id") != job_id:
            continue
        if failures_only and entry.get("success") is not False:
            continue
        selected.append(entry)
    return selected[-limit:] if limit > 0 else selected


def hash_prompt(prompt: str) -> str:
    return hashlib.sha256(prompt.encode()).hexdigest()[:PROMPT_HASH_LENGTH]


def prompts_dir(state_dir: Path) -> Path:
    return Path(state_dir) / PROMPTS_SUBDIR


def persist_prompt(state_dir: Path, job_id: str, story_id: str, prompt: str) -> tuple[Path, str]:
    """Write the prompt to <state>/prompts/<ms>-<job>-<story>.md. Returns (path, hash)."""
    directory = prompts_dir(state_dir)
    directory.mkdir(parents=True, exist_ok=True)
    ms = int(time.time() * 1000)
    path = directory / f"{ms}-{job_id}-{story_id}.md"
    while path.exists():
        ms += 1
        path = directory / f"{ms}-{job_id}-{story_id}.md"
    path.write_text(prompt)
    return path, hash_prompt(prompt)


def cleanup_old_prompts(state_dir: Path, retention_days: int) -> int:
    """Delete persisted prompts older than retention_days. Returns the count removed."""
    directory = prompts_dir(state_dir)
    if not directory.exists():
        return 0

    cutoff = time.time() - retention_days * 86400
    removed = 0
    for path in directory.glob("*.md"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError as e:
            logger.debug(f"Could not remove old prompt {path}: {e}")
    if removed:
        logger.info(f"Removed {removed} persisted prompt(s) older than {retention_days} days")
    return removed


def latest_prompt_for_story(entries: list[dict], story_id: str) -> Optional[str]:
    """Text of the most recent persisted prompt for a story, if it still exists."""
    for entry in reversed(entries):
        if entry.get("story_id") != story_id or not entry.get("prompt_file"):
            continue
        path = Path(entry["prompt_file"])
        if path.exists():
            return path.read_text()
        logger.debug(f"Prompt file for {story_id} no longer exists: {path}")
    return None
