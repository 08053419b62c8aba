"""Human-readable progress record (progress.txt).

Append-only. Each entry is a timestamped block separated by `---` lines.
The tail of this file is included in the next iteration's prompt.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

PROGRESS_FILENAME = "progress.txt"


def progress_path(workdir: Path) -> Path:
    return Path(workdir) / PROGRESS_FILENAME


def init_progress(workdir: Path, project_name: str) -> None:
    path = progress_path(workdir)
    if not path.exists():
        path.write_text(f"# Progress: {project_name}\n\nStarted {datetime.now().isoformat()}\n")


def append_progress(workdir: Path, text: str) -> None:
    """Append one entry. Failures are logged, never raised."""
    entry = f"\n---\n[{datetime.now().isoformat()}] {text.rstrip()}\n"
    try:
        with open(progress_path(workdir), "a") as f:
            f.write(entry)
    except OSError as e:
        logger.warning(f"Failed to append to {PROGRESS_FILENAME}: {e}")


def read_progress_tail(workdir: Path, max_chars: int = 2000) -> str:
    path = progress_path(workdir)
    if not path.exists():
        return ""
    try:
        text = path.read_text()
    except OSError as e:
        logger.warning(f"Failed to read {PROGRESS_FILENAME}: {e}")
        return ""
    return text[-max_chars:]


def record_completion(
    workdir: Path,
    story_id: str,
    title: str,
    summary: Optional[str],
    learnings: Optional[str],
    commit_hash: Optional[str],
) -> None:
    lines = [f"Completed {story_id}: {title}"]
    if commit_hash:
        lines.append(f"Commit: {commit_hash}")
    if summary:
        lines.append(f"Summary: {summary}")
    if learnings:
        lines.append(f"Learnings:\n{learnings}")
    append_progress(workdir, "\n".join(lines))


def record_failure(workdir: Path, story_id: str, title: str, category: str, detail: str = "") -> None:
    text = f"Failed {story_id}: {title} [{category}]"
    if detail:
        text += f"\n{detail[:500]}"
    append_progress(workdir, text)
