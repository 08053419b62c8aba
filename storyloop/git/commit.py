"""Git commit operations."""

import logging
from pathlib import Path
from typing import Optional

from storyloop.git.runner import run_git, GitResult

logger = logging.getLogger(__name__)

COMMIT_TIMEOUT = 60


def stage_all(workdir: Path) -> GitResult:
    """Stage all changes (new, modified, deleted)."""
    return run_git(["add", "-A"], workdir, timeout=COMMIT_TIMEOUT)


def commit(workdir: Path, message: str) -> GitResult:
    """Create a commit with the given message."""
    return run_git(["commit", "-m", message], workdir, timeout=COMMIT_TIMEOUT)


def get_short_head(workdir: Path) -> Optional[str]:
    result = run_git(["rev-parse", "--short", "HEAD"], workdir)
    return result.stdout.strip() if result.success else None


def commit_all(workdir: Path, message: str) -> Optional[str]:
    """Stage everything and commit. Returns the short hash, or None on failure."""
    staged = stage_all(workdir)
    if not staged.success:
        logger.warning(f"git add failed in {workdir}: {staged.stderr.strip()}")
        return None

    result = commit(workdir, message)
    if not result.success:
        logger.warning(f"git commit failed in {workdir}: {(result.stderr or result.stdout).strip()}")
        return None

    return get_short_head(workdir)
