"""
Retry tracking and skip policy.

Two implementations share one counting rule: a failure is a recorded
attempt for exactly this story id with success == False. RetryTracker
keeps the counts in memory for one job run. count_failures_in_log()
rebuilds the same count from the durable iteration log, which is what a
cold start (or a one-off `sloop iterate`) has to use.

The engine seeds a tracker from the log at job start so both views agree
from the first iteration on.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


@dataclass
class RetryState:
    """Attempt and failure counts for one story. failures <= attempts."""
    attempts: int = 0
    failures: int = 0


class RetryTracker:
    """In-memory retry counts scoped to one job run."""

    def __init__(self, max_retries: int = DEFAULT_MAX_RETRIES):
        self.max_retries = max_retries
        self._states: dict[str, RetryState] = {}

    @classmethod
    def from_log(cls, entries: Iterable[dict], max_retries: int = DEFAULT_MAX_RETRIES) -> "RetryTracker":
        """Rebuild a tracker by replaying durable log entries in order."""
        tracker = cls(max_retries)
        for entry in entries:
            story_id = entry.get("story_id")
            success = entry.get("success")
            if not story_id or not isinstance(success, bool):
                continue
            tracker.record_attempt(story_id, success)
        return tracker

    def record_attempt(self, story_id: str, success: bool) -> None:
        state = self._states.setdefault(story_id, RetryState())
        state.attempts += 1
        if not success:
            state.failures += 1

    def attempt_count(self, story_id: str) -> int:
        state = self._states.get(story_id)
        return state.attempts if state else 0

    def failure_count(self, story_id: str) -> int:
        state = self._states.get(story_id)
        return state.failures if state else 0

    def should_skip(self, story_id: str) -> bool:
        return self.failure_count(story_id) >= self.max_retries

    def skipped_stories(self) -> list[str]:
        return [sid for sid in self._states if self.should_skip(sid)]

    def reset(self, story_id: Optional[str] = None) -> None:
        if story_id is None:
            self._states.clear()
        else:
            self._states.pop(story_id, None)


def count_failures_in_log(entries: Iterable[dict], story_id: str) -> int:
    """Failed attempts for story_id in the log (exact id match, success is False)."""
    return sum(
        1 for entry in entries
        if entry.get("story_id") == story_id and entry.get("success") is False
    )


def should_skip_story(
    entries: Iterable[dict],
    story_id: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> bool:
    """Stateless skip decision from durable log contents."""
    return count_failures_in_log(entries, story_id) >= max_retries


def format_skip_notice(story_id: str, title: str, failures: int, max_retries: int) -> str:
    return (
        f"Skipping {story_id} ({title}): failed {failures} time(s), "
        f"max retries is {max_retries}. Needs manual attention."
    )


def format_skipped_summary(skipped: dict[str, str]) -> str:
    """Warning text for a job that ended with only skipped stories left.

    skipped maps story id -> title.
    """
    if not skipped:
        return ""
    names = ", ".join(f"{title} ({sid})" for sid, title in skipped.items())
    return f"{len(skipped)} story(ies) skipped after exceeding max retries: {names}"
