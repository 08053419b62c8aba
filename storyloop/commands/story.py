"""
sloop add-story / edit-story - Manage stories in prd.json.
"""

from pathlib import Path

from storyloop.lib import github
from storyloop.lib.config import load_loop_config
from storyloop.lib.prd import add_story, edit_story, load_prd, parse_acceptance_criteria, set_story_issue
from storyloop.runner.errors import ConfigError


def _gh_enabled(flag, workdir: Path) -> bool:
    if flag is not None:
        return flag
    try:
        return load_loop_config(workdir).gh_issues
    except ConfigError:
        return False


def _refresh_tracking(workdir: Path) -> None:
    prd = load_prd(workdir)
    issue = prd.metadata.get("tracking_issue")
    if issue:
        github.update_tracking_checklist(workdir, issue, prd)


def cmd_add_story(args, workdir: Path) -> int:
    """Append a story to the PRD."""
    try:
        story = add_story(
            workdir,
            args.title,
            args.description or "",
            priority=args.priority,
            validation_command=args.validation_command,
            acceptance_criteria=parse_acceptance_criteria(args.criteria),
        )
    except ConfigError as e:
        print(f"ERROR: {e}")
        return 2

    print(f"Added {story.id}: {story.title} (priority {story.priority:g})")
    for criterion in story.acceptance_criteria or []:
        print(f"  - {criterion}")

    if _gh_enabled(args.gh_issue, workdir):
        issue = github.create_story_issue(workdir, story)
        if issue:
            set_story_issue(workdir, story.id, issue)
            _refresh_tracking(workdir)
            print(f"  Issue #{issue}")
        else:
            print("  WARNING: Could not create issue (is gh installed and authenticated?)")
    return 0


def cmd_edit_story(args, workdir: Path) -> int:
    """Update fields of an existing story."""
    updates = {
        "title": args.title,
        "description": args.description,
        "priority": args.priority,
        "validation_command": args.validation_command,
        "acceptance_criteria": parse_acceptance_criteria(args.criteria),
    }
    if args.done:
        updates["passes"] = True
    elif args.not_done:
        updates["passes"] = False

    if all(v is None for v in updates.values()):
        print("ERROR: Nothing to change. Pass at least one field option.")
        return 2

    try:
        story = edit_story(workdir, args.story_id, **updates)
    except (ConfigError, ValueError) as e:
        print(f"ERROR: {e}")
        return 2

    status = "done" if story.passes else "pending"
    print(f"Updated {story.id}: {story.title} (priority {story.priority:g}, {status})")
    return 0
