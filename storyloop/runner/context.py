"""
Per-iteration context.

Everything one iteration needs to know about where it is running and
what it was asked to do, plus the timings that end up in the log entry.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from storyloop.lib.config import LoopConfig
from storyloop.lib.prd import Prd, Story


@dataclass
class IterationContext:
    """Context for a single iteration."""
    job_id: str
    iteration_number: int
    workdir: Path
    config: LoopConfig
    prd: Prd
    story: Story
    prompt: str = ""
    prompt_file: str = ""
    prompt_hash: str = ""
    started_at: datetime = field(default_factory=datetime.now)
    _started_monotonic: float = field(default_factory=time.monotonic, repr=False)

    def elapsed(self) -> float:
        return time.monotonic() - self._started_monotonic
