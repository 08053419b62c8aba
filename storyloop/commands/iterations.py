"""
sloop iterations - Query the durable iteration log.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from storyloop.lib import iteration_log


def parse_since(value: Optional[str]) -> Optional[int]:
    """Epoch milliseconds from either an integer or an ISO date/time.

    Raises:
        ValueError: if the value is neither
    """
    if not value:
        return None
    if value.isdigit():
        return int(value)
    return int(datetime.fromisoformat(value).timestamp() * 1000)


def cmd_iterations(args, workdir: Path, console: Console = None) -> int:
    """List log entries matching the filters, or print a story's last prompt."""
    console = console or Console()
    entries = iteration_log.read_entries(workdir)

    if args.show_prompt:
        prompt = iteration_log.latest_prompt_for_story(entries, args.show_prompt)
        if prompt is None:
            print(f"ERROR: No persisted prompt found for {args.show_prompt}")
            return 1
        print(prompt)
        return 0

    try:
        since = parse_since(args.since)
    except ValueError:
        print(f"ERROR: Invalid --since value: {args.since} (use epoch ms or ISO date)")
        return 2

    selected = iteration_log.query_entries(
        entries,
        since=since,
        story_id=args.story,
        job_id=args.job,
        failures_only=args.failures,
        limit=args.limit,
    )
    if not selected:
        print("No matching iterations.")
        return 0

    table = Table(show_header=True, header_style="bold")
    table.add_column("When")
    table.add_column("Job")
    table.add_column("#", justify="right")
    table.add_column("Story")
    table.add_column("Result")
    table.add_column("Secs", justify="right")
    table.add_column("Tools", justify="right")
    table.add_column("Commit")

    for entry in selected:
        if entry.get("success"):
            outcome = "[green]ok[/green]"
        else:
            outcome = f"[red]{entry.get('failure_category') or 'failed'}[/red]"
        table.add_row(
            entry.get("timestamp", "")[:19],
            entry.get("job_id", ""),
            str(entry.get("iteration_number", "")),
            f"{entry.get('story_id', '')} {entry.get('story_title', '')}",
            outcome,
            f"{entry.get('duration_seconds', 0):.0f}",
            str(entry.get("tool_calls", 0)),
            entry.get("commit_hash") or "",
        )

    console.print(table)
    total = len(selected)
    failed = sum(1 for e in selected if e.get("success") is False)
    console.print(f"{total} iteration(s), {failed} failed")
    return 0
