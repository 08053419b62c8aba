"""Prefect flow for a whole loop run.

`sloop loop --prefect` runs the same JobEngine inside a flow so the run
and each iteration show up in Prefect.
"""

import logging
from typing import Optional

from prefect import flow, get_run_logger
from pydantic import BaseModel

from storyloop.workflow.engine import JobEngine
from storyloop.workflow.tasks import task_run_iteration

logger = logging.getLogger(__name__)


class LoopParams(BaseModel):
    """Input schema for the story loop flow."""
    workdir: str
    max_iterations: Optional[int] = None
    model: Optional[str] = None
    stop_on_failure: bool = False
    gh_issues: Optional[bool] = None


@flow(name="story_loop")
async def story_loop_flow(params: LoopParams, engine: Optional[JobEngine] = None) -> dict:
    """Run the loop to completion and return the final job snapshot."""
    prefect_logger = get_run_logger()
    engine = engine or JobEngine(run_iteration=task_run_iteration)
    if engine.run_iteration is not task_run_iteration:
        engine.run_iteration = task_run_iteration

    job = engine.create_job(params.workdir, params.max_iterations)
    prefect_logger.info(f"Starting {job.id} for {job.workdir}")

    await engine.run_job(
        job,
        stop_on_failure=params.stop_on_failure,
        model=params.model,
        gh_issues=params.gh_issues,
    )

    prefect_logger.info(
        f"{job.id} finished: {job.status}, "
        f"{job.stories_completed}/{job.total_stories} stories complete"
    )
    return job.snapshot()
