"""
Job model and job table.

A Job is one run of the loop over one working directory. Only the job's
own task mutates it; pollers read snapshots. The JobTable is owned by
whoever creates it (normally the JobEngine), so tests can build an
isolated instance.
"""

import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from storyloop.runner.iteration import IterationResult
from storyloop.workflow.fsm import JobFSM


def generate_job_id() -> str:
    return f"loop-{int(time.time() * 1000):x}-{secrets.token_hex(3)}"


@dataclass
class Job:
    id: str
    workdir: Path
    max_iterations: int
    fsm: Optional[JobFSM] = field(default=None, repr=False)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    current_iteration: int = 0
    current_story: Optional[str] = None
    stories_completed: int = 0
    total_stories: int = 0
    results: list[IterationResult] = field(default_factory=list)
    error: Optional[str] = None
    warning: Optional[str] = None
    skipped: dict[str, str] = field(default_factory=dict)  # story id -> title
    model: Optional[str] = None
    sandbox: Optional[str] = None

    def __post_init__(self):
        if self.fsm is None:
            self.fsm = JobFSM(self.id)

    @property
    def status(self) -> str:
        return self.fsm.state

    @property
    def is_running(self) -> bool:
        return self.fsm.state == "running"

    @property
    def iterations_run(self) -> int:
        return len(self.results)

    def finish(self, trigger: str, error: Optional[str] = None, warning: Optional[str] = None) -> bool:
        """Move to a terminal state if still running. Returns False if already terminal."""
        if not self.fsm.can(trigger):
            return False
        if error is not None:
            self.error = error
        if warning is not None:
            self.warning = warning
        self.completed_at = datetime.now()
        getattr(self.fsm, trigger)()
        return True

    def snapshot(self) -> dict:
        """Plain-data view for status queries."""
        return {
            "id": self.id,
            "workdir": str(self.workdir),
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "current_iteration": self.current_iteration,
            "max_iterations": self.max_iterations,
            "iterations_run": self.iterations_run,
            "current_story": self.current_story,
            "stories_completed": self.stories_completed,
            "total_stories": self.total_stories,
            "error": self.error,
            "warning": self.warning,
            "skipped": dict(self.skipped),
            "model": self.model,
            "sandbox": self.sandbox,
            "results": [r.to_dict() for r in self.results],
        }


class JobTable:
    """Jobs keyed by id. Add/get/remove are atomic; no cross-entry invariants."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def add(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.id] = job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def remove(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.pop(job_id, None)

    def all(self) -> list[Job]:
        with self._lock:
            return list(self._jobs.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
