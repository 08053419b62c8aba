"""
sloop init - Create prd.json and progress.txt in a project directory.
"""

from pathlib import Path

from storyloop.lib import github, progress
from storyloop.lib.config import load_loop_config
from storyloop.lib.prd import PRD_FILENAME, init_project, set_tracking_issue
from storyloop.runner.errors import ConfigError


def cmd_init(args, workdir: Path) -> int:
    """Initialize a project for the loop."""
    name = args.name or workdir.name
    try:
        prd = init_project(workdir, name, args.description)
    except ConfigError as e:
        print(f"ERROR: {e}")
        return 2

    progress.init_progress(workdir, name)
    print(f"Initialized {name}")
    print(f"  {workdir / PRD_FILENAME}")
    print(f"  {progress.progress_path(workdir)}")

    gh_issues = args.gh_issues
    if gh_issues is None:
        try:
            gh_issues = load_loop_config(workdir).gh_issues
        except ConfigError:
            gh_issues = False

    if gh_issues:
        issue = github.create_tracking_issue(workdir, prd)
        if issue:
            set_tracking_issue(workdir, issue)
            print(f"  Tracking issue #{issue}")
        else:
            print("  WARNING: Could not create tracking issue (is gh installed and authenticated?)")

    print()
    print("Next: sloop add-story \"<title>\" --description \"<what to build>\"")
    return 0
