"""
sloop status - Show PRD progress and the story queue.
"""

from pathlib import Path

from rich.console import Console
from rich.table import Table

from storyloop.lib import iteration_log
from storyloop.lib.config import load_loop_config
from storyloop.lib.prd import load_prd, status_summary
from storyloop.runner.errors import ConfigError
from storyloop.runner.retry import count_failures_in_log


def cmd_status(args, workdir: Path, console: Console = None) -> int:
    """Show counts, the next story and one row per story."""
    console = console or Console()
    try:
        prd = load_prd(workdir)
        config = load_loop_config(workdir)
    except ConfigError as e:
        print(f"ERROR: {e}")
        return 2

    summary = status_summary(prd)
    entries = iteration_log.read_entries(workdir)

    console.print(f"[bold]{prd.project_name}[/bold]")
    if prd.description:
        console.print(prd.description)
    console.print()
    console.print(f"Stories:     {summary['completed']}/{summary['total']} complete, {summary['remaining']} remaining")
    console.print(f"Iterations:  {summary['total_iterations']}"
                  + (f" (last {summary['last_iteration']})" if summary['last_iteration'] else ""))
    console.print(f"Next story:  {summary['next_story'] or '-'}")
    console.print(f"Model:       {config.model} ({config.sandbox})")
    if prd.metadata.get("tracking_issue"):
        console.print(f"Tracking:    #{prd.metadata['tracking_issue']}")

    if not prd.stories:
        console.print()
        console.print("No stories yet. Add one with 'sloop add-story'.")
        return 0

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID")
    table.add_column("Pri", justify="right")
    table.add_column("Status")
    table.add_column("Failures", justify="right")
    table.add_column("Title")
    table.add_column("Issue")

    for story in sorted(prd.stories, key=lambda s: s.priority):
        failures = count_failures_in_log(entries, story.id)
        if story.passes:
            status = "[green]done[/green]"
        elif failures >= config.max_retries:
            status = "[red]skipped[/red]"
        elif story.id == summary["next_story"]:
            status = "[yellow]next[/yellow]"
        else:
            status = "pending"
        table.add_row(
            story.id,
            f"{story.priority:g}",
            status,
            str(failures) if failures else "",
            story.title,
            f"#{story.issue_number}" if story.issue_number else "",
        )

    console.print()
    console.print(table)
    return 0
