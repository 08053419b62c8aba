"""Git operations for storyloop.

Return type conventions:
- Functions returning GitResult: caller must check .success before using output.
- Functions returning parsed values (DiffStats, str, list): empty/zero on failure.
- commit_all returns the new short hash or None.
"""

from storyloop.git.runner import GitResult, run_git
from storyloop.git.diff import (
    DiffStats,
    get_diff_stats,
    get_diff_content,
    get_files_modified,
    get_untracked_files,
    is_bookkeeping_file,
)
from storyloop.git.commit import (
    stage_all,
    commit,
    commit_all,
    get_short_head,
)

__all__ = [
    "GitResult",
    "run_git",
    # diff
    "DiffStats",
    "get_diff_stats",
    "get_diff_content",
    "get_files_modified",
    "get_untracked_files",
    "is_bookkeeping_file",
    # commit
    "stage_all",
    "commit",
    "commit_all",
    "get_short_head",
]
