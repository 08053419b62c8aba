"""
sloop iterate - Run a single iteration on the next eligible story.
"""

import asyncio
from pathlib import Path

from storyloop.lib.config import load_loop_config
from storyloop.lib.prd import load_prd
from storyloop.process.registry import ProcessRegistry
from storyloop.runner.errors import ConfigError
from storyloop.runner.iteration import IterationRunner


def cmd_iterate(args, workdir: Path, runner: IterationRunner = None) -> int:
    """Select, prompt, run, validate, verify and record one story."""
    try:
        load_prd(workdir)
        config = load_loop_config(workdir).with_overrides(model=args.model)
    except ConfigError as e:
        print(f"ERROR: {e}")
        return 2

    if runner is None:
        registry = ProcessRegistry(grace_period=config.kill_grace_seconds)
        registry.install_signal_handlers()
        runner = IterationRunner(workdir, config, registry=registry)

    story, skipped = runner.select_eligible_story()
    for s in skipped:
        print(f"Skipping {s.id} ({s.title}): failed {config.max_retries}+ times")
    if story is None:
        if skipped:
            print("No eligible stories: every remaining story exceeded its retry limit.")
            return 1
        print("All stories complete.")
        return 0

    if args.dry_run:
        ctx = asyncio.run(runner.prepare(story, "dry-run", 1))
        print(f"Story:    {story.id} ({story.title})")
        print(f"Priority: {story.priority:g}")
        print(f"Prompt:   {len(ctx.prompt)} chars, hash {ctx.prompt_hash}")
        if ctx.prompt_file:
            print(f"File:     {ctx.prompt_file}")
        print(f"Model:    {config.model}")
        print(f"Sandbox:  {config.sandbox}")
        return 0

    print(f"Running {story.id}: {story.title}")
    result = asyncio.run(runner.run_iteration(story, job_id=f"iterate-{story.id}", iteration_number=1))

    if result.success:
        commit = f" ({result.commit_hash})" if result.commit_hash else ""
        print(f"PASSED {story.id} in {result.duration_seconds:.0f}s{commit}")
        for warning in result.verification_warnings:
            print(f"  warning: {warning}")
        return 0

    print(f"FAILED {story.id} [{result.failure_category}] after {result.duration_seconds:.0f}s")
    if result.output:
        print()
        print(result.output)
    return 1
