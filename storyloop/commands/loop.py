"""
sloop loop - Run iterations until the PRD is done or a bound is hit.
"""

import asyncio
from pathlib import Path

from storyloop.lib.config import load_loop_config
from storyloop.lib.prd import load_prd
from storyloop.process.registry import ProcessRegistry
from storyloop.runner.errors import ConfigError
from storyloop.workflow.engine import JobEngine


def _print_summary(snapshot: dict) -> None:
    print()
    print(f"Job:        {snapshot['id']}")
    print(f"Status:     {snapshot['status']}")
    print(f"Iterations: {snapshot['iterations_run']}/{snapshot['max_iterations']}")
    print(f"Stories:    {snapshot['stories_completed']}/{snapshot['total_stories']} complete")
    for result in snapshot["results"]:
        mark = "ok  " if result["success"] else "FAIL"
        category = f" [{result['failure_category']}]" if result["failure_category"] else ""
        print(f"  {mark} #{result['iteration_number']} {result['story_id']} {result['story_title']}{category}")
    if snapshot["warning"]:
        print(f"Warning:    {snapshot['warning']}")
    if snapshot["error"]:
        print(f"Error:      {snapshot['error']}")


def _run_with_prefect(engine: JobEngine, args, workdir: Path) -> dict:
    from storyloop.workflow.flows import LoopParams, story_loop_flow

    params = LoopParams(
        workdir=str(workdir),
        max_iterations=args.max_iterations,
        model=args.model,
        stop_on_failure=args.stop_on_failure,
        gh_issues=args.gh_issues,
    )
    return asyncio.run(story_loop_flow(params, engine=engine))


def cmd_loop(args, workdir: Path, engine: JobEngine = None) -> int:
    """Run the job engine in the foreground."""
    try:
        load_prd(workdir)
        config = load_loop_config(workdir)
    except ConfigError as e:
        print(f"ERROR: {e}")
        return 2

    if engine is None:
        registry = ProcessRegistry(grace_period=config.kill_grace_seconds)
        registry.install_signal_handlers()
        engine = JobEngine(registry=registry)

    if args.prefect:
        snapshot = _run_with_prefect(engine, args, workdir)
    else:
        job = engine.create_job(workdir, args.max_iterations)
        print(f"Starting {job.id} in {workdir}")
        asyncio.run(engine.run_job(
            job,
            stop_on_failure=args.stop_on_failure,
            model=args.model,
            gh_issues=args.gh_issues,
        ))
        snapshot = job.snapshot()

    _print_summary(snapshot)
    return 0 if snapshot["status"] == "completed" else 1
