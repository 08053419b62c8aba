"""Prefect task wrappers for the iteration runner.

Wrapping an iteration in a @task gives it a task run in Prefect (timing,
state, logs) when a loop runs under the story_loop flow. The iteration
logic itself is unchanged. No Prefect retries: retry policy belongs to
the job engine.
"""

from typing import TYPE_CHECKING

from prefect import task

if TYPE_CHECKING:
    from storyloop.lib.prd import Story
    from storyloop.runner.iteration import IterationResult, IterationRunner


@task(
    name="run_iteration",
    description="Run the coding agent on one story, validate, verify and record",
)
async def task_run_iteration(
    runner: "IterationRunner",
    story: "Story",
    job_id: str,
    iteration_number: int,
) -> "IterationResult":
    return await runner.run_iteration(story, job_id, iteration_number)
