"""Working-tree diff queries used by the output verifier."""

from dataclasses import dataclass, field
from pathlib import Path

from storyloop.git.runner import run_git

DIFF_CONTENT_LIMIT = 5000

# Files the loop itself writes. They never count as agent output.
BOOKKEEPING_FILES = {"prd.json", "progress.txt", "loop.env", "agents.yaml"}
BOOKKEEPING_PREFIX = ".storyloop-"


@dataclass
class DiffStats:
    """Aggregate diff numbers plus the changed file list."""
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0
    files: list[str] = field(default_factory=list)

    @property
    def total_lines(self) -> int:
        return self.insertions + self.deletions


def is_bookkeeping_file(path: str) -> bool:
    name = Path(path).name
    return name in BOOKKEEPING_FILES or name.startswith(BOOKKEEPING_PREFIX)


def _numstat(workdir: Path) -> list[str]:
    # Against HEAD covers staged and unstaged; plain diff covers repos with no commits.
    result = run_git(["diff", "--numstat", "HEAD"], workdir)
    if not result.success:
        result = run_git(["diff", "--numstat"], workdir)
    return result.lines()


def get_untracked_files(workdir: Path) -> list[str]:
    """Untracked files that are not ignored."""
    return run_git(["ls-files", "--others", "--exclude-standard"], workdir).lines()


def get_diff_stats(workdir: Path) -> DiffStats:
    """Diff stats of the working tree vs HEAD plus untracked files.

    Returns zeroed stats when git is unavailable or workdir is not a repo.
    """
    stats = DiffStats()

    for line in _numstat(workdir):
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        added, removed, path = parts[0], parts[1], parts[-1]
        if is_bookkeeping_file(path):
            continue
        stats.files.append(path)
        # Binary files report "-"
        if added.isdigit():
            stats.insertions += int(added)
        if removed.isdigit():
            stats.deletions += int(removed)

    for path in get_untracked_files(workdir):
        if not is_bookkeeping_file(path) and path not in stats.files:
            stats.files.append(path)

    stats.files_changed = len(stats.files)
    return stats


def get_diff_content(workdir: Path, max_length: int = DIFF_CONTENT_LIMIT) -> str:
    """Unified diff text of the working tree, truncated to max_length."""
    result = run_git(["diff", "HEAD"], workdir)
    if not result.success:
        result = run_git(["diff"], workdir)
    if not result.success:
        return ""
    return result.stdout[:max_length]


def get_files_modified(workdir: Path) -> list[str]:
    """Files changed by the last commit, unstaged, or staged. Deduplicated, in order."""
    files: list[str] = []
    for args in (
        ["diff", "--name-only", "HEAD~1", "HEAD"],
        ["diff", "--name-only"],
        ["diff", "--name-only", "--cached"],
    ):
        for path in run_git(args, workdir).lines():
            if path not in files:
                files.append(path)
    return files
