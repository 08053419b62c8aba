"""
GitHub issue tracking via the gh CLI.

One issue per story plus an optional tracking issue for the project.
All calls are best effort: failures are logged and reported as None/False,
never raised.
"""

import logging
import re
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30

ISSUE_TITLE_PREFIX = "[Storyloop]"
FOOTER_STORY = "_Managed by storyloop. Do not close manually._"
FOOTER_TRACKING = "_Managed by storyloop. Updated automatically as stories complete._"

_ISSUE_URL = re.compile(r"/issues/(\d+)")


def _gh(args: list[str], workdir: Path) -> Optional[str]:
    """Run gh with args in workdir. Returns stdout, or None on any failure."""
    try:
        result = subprocess.run(
            ["gh"] + args,
            cwd=workdir,
            capture_output=True,
            text=True,
            timeout=GH_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"gh {args[0]} {args[1] if len(args) > 1 else ''} timed out")
        return None
    except OSError as e:
        logger.warning(f"Failed to run gh: {e}")
        return None

    if result.returncode != 0:
        logger.warning(f"gh {' '.join(args[:2])} failed: {result.stderr.strip()[:200]}")
        return None
    return result.stdout.strip()


def _parse_issue_number(output: Optional[str]) -> Optional[int]:
    if not output:
        return None
    match = _ISSUE_URL.search(output)
    return int(match.group(1)) if match else None


def story_issue_body(story) -> str:
    lines = [f"## Story: {story.title}", f"Priority: {story.priority}", "", story.description]
    if story.acceptance_criteria:
        lines += ["", "### Acceptance Criteria"] + [f"- [ ] {c}" for c in story.acceptance_criteria]
    if story.validation_command:
        lines += ["", "### Validation", f"`{story.validation_command}`"]
    lines += ["", "---", FOOTER_STORY]
    return "\n".join(lines)


def create_story_issue(workdir: Path, story) -> Optional[int]:
    output = _gh([
        "issue", "create",
        "--title", f"{ISSUE_TITLE_PREFIX} {story.title}",
        "--body", story_issue_body(story),
        "--label", "storyloop",
        "--label", "automated",
    ], workdir)
    return _parse_issue_number(output)


def comment_on_issue(workdir: Path, issue_number: int, body: str) -> bool:
    return _gh(["issue", "comment", str(issue_number), "--body", body], workdir) is not None


def close_issue(workdir: Path, issue_number: int, comment: str) -> bool:
    """Comment, then close."""
    comment_on_issue(workdir, issue_number, comment)
    return _gh(["issue", "close", str(issue_number)], workdir) is not None


def label_issue(workdir: Path, issue_number: int, labels: list[str]) -> bool:
    if not labels:
        return True
    args = ["issue", "edit", str(issue_number)]
    for label in labels:
        args += ["--add-label", label]
    return _gh(args, workdir) is not None


def read_issue_context(workdir: Path, issue_number: int) -> Optional[str]:
    """Issue body and comments joined by --- separators."""
    return _gh([
        "issue", "view", str(issue_number),
        "--json", "body,comments",
        "-q", '[.body, (.comments[]?.body // empty)] | join("\\n---\\n")',
    ], workdir)


def tracking_body(prd) -> str:
    rows = []
    for s in prd.stories:
        check = "x" if s.passes else " "
        ref = f" #{s.issue_number}" if s.issue_number else ""
        rows.append(f"- [{check}] {s.title}{ref}")
    completed = sum(1 for s in prd.stories if s.passes)
    return "\n".join([
        "## Stories",
        "\n".join(rows) or "_No stories yet_",
        "",
        "### Progress",
        f"{completed}/{len(prd.stories)} stories complete",
        "",
        "---",
        FOOTER_TRACKING,
    ])


def create_tracking_issue(workdir: Path, prd) -> Optional[int]:
    output = _gh([
        "issue", "create",
        "--title", f"{ISSUE_TITLE_PREFIX} {prd.project_name}",
        "--body", tracking_body(prd),
        "--label", "storyloop",
        "--label", "tracking",
    ], workdir)
    return _parse_issue_number(output)


def update_tracking_checklist(workdir: Path, issue_number: int, prd) -> bool:
    return _gh(["issue", "edit", str(issue_number), "--body", tracking_body(prd)], workdir) is not None
