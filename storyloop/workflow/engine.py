"""
Job engine: drives the iteration loop for one working directory.

Each job runs as its own asyncio task. Within a job, iterations are
strictly sequential. Cancellation is cooperative: cancel_job() moves the
job to `cancelled` and the loop notices at the top of its next pass, so
an in-flight iteration always runs to completion (bounded by the
iteration timeout) before the job stops.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional

from storyloop import notifications
from storyloop.lib import iteration_log, progress
from storyloop.lib.config import LoopConfig, get_state_dir, load_loop_config, resolve_workdir
from storyloop.lib.prd import Story, load_prd
from storyloop.process.registry import ProcessRegistry
from storyloop.runner.errors import ConfigError
from storyloop.runner.iteration import IterationResult, IterationRunner, error_result
from storyloop.runner.retry import RetryTracker, format_skip_notice, format_skipped_summary
from storyloop.workflow.jobs import Job, JobTable, generate_job_id

logger = logging.getLogger(__name__)

IterationFn = Callable[[IterationRunner, Story, str, int], Awaitable[IterationResult]]


async def _run_iteration(runner: IterationRunner, story: Story, job_id: str, iteration_number: int) -> IterationResult:
    return await runner.run_iteration(story, job_id, iteration_number)


def _default_runner_factory(workdir: Path, config: LoopConfig, registry: ProcessRegistry, state_dir: Path) -> IterationRunner:
    return IterationRunner(workdir, config, registry=registry, state_dir=state_dir)


class JobEngine:
    """Starts, tracks and cancels loop jobs.

    The job table and process registry are owned by the engine instance
    (or injected), never module globals.
    """

    def __init__(
        self,
        jobs: Optional[JobTable] = None,
        registry: Optional[ProcessRegistry] = None,
        runner_factory=None,
        run_iteration: Optional[IterationFn] = None,
        config_loader: Callable[[Path], LoopConfig] = load_loop_config,
        state_dir: Optional[Path] = None,
    ):
        self.jobs = jobs if jobs is not None else JobTable()
        self.registry = registry or ProcessRegistry()
        self.runner_factory = runner_factory or _default_runner_factory
        self.run_iteration = run_iteration or _run_iteration
        self.config_loader = config_loader
        self.state_dir = state_dir or get_state_dir()
        self._tasks: dict[str, asyncio.Task] = {}

    def create_job(self, workdir, max_iterations: Optional[int] = None) -> Job:
        job = Job(
            id=generate_job_id(),
            workdir=resolve_workdir(workdir),
            max_iterations=max_iterations or 0,
        )
        self.jobs.add(job)
        return job

    def start_job(
        self,
        workdir,
        max_iterations: Optional[int] = None,
        model: Optional[str] = None,
        stop_on_failure: bool = False,
        gh_issues: Optional[bool] = None,
    ) -> Job:
        """Create a job and schedule it on the running event loop."""
        job = self.create_job(workdir, max_iterations)
        task = asyncio.get_running_loop().create_task(
            self.run_job(job, stop_on_failure=stop_on_failure, model=model, gh_issues=gh_issues),
            name=job.id,
        )
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))
        logger.info(f"Started {job.id} for {job.workdir}")
        return job

    async def wait(self, job_id: str) -> Optional[Job]:
        """Wait for a started job's task to finish."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return self.jobs.get(job_id)

    def cancel_job(self, job_id: str) -> dict:
        """Request cancellation. Takes effect between iterations."""
        job = self.jobs.get(job_id)
        if job is None:
            return {"success": False, "error": f"Job not found: {job_id}"}
        if not job.finish("cancel"):
            return {"success": False, "error": f"Job {job_id} is not running (status: {job.status})"}
        logger.info(f"Cancellation requested for {job_id}")
        return {"success": True, "job_id": job_id, "status": job.status}

    def get_status(self, job_id: str) -> Optional[dict]:
        job = self.jobs.get(job_id)
        return job.snapshot() if job else None

    def list_jobs(self) -> list[dict]:
        return [
            {
                "id": job.id,
                "workdir": str(job.workdir),
                "status": job.status,
                "current_iteration": job.current_iteration,
                "max_iterations": job.max_iterations,
                "stories_completed": job.stories_completed,
                "total_stories": job.total_stories,
            }
            for job in self.jobs.all()
        ]

    async def run_job(
        self,
        job: Job,
        stop_on_failure: bool = False,
        model: Optional[str] = None,
        gh_issues: Optional[bool] = None,
    ) -> Job:
        """Run the loop for job until it reaches a terminal state. Never raises
        for loop failures; they end up in job.error."""
        try:
            config = self.config_loader(job.workdir).with_overrides(
                model=model,
                max_iterations=job.max_iterations or None,
                gh_issues=gh_issues,
            )
            job.max_iterations = config.max_iterations
            job.model = config.model
            job.sandbox = config.sandbox

            prd = load_prd(job.workdir)
            job.total_stories = len(prd.stories)
            job.stories_completed = sum(1 for s in prd.stories if s.passes)

            self._housekeeping(config)
            runner = self.runner_factory(job.workdir, config, self.registry, self.state_dir)
            tracker = RetryTracker.from_log(iteration_log.read_entries(job.workdir), config.max_retries)

            notifications.emit_event(
                "loop_start", job.id, self.state_dir,
                project_name=prd.project_name,
                workdir=str(job.workdir),
                max_iterations=job.max_iterations,
                total_stories=job.total_stories,
            )
            await self._loop(job, runner, tracker, stop_on_failure)
        except asyncio.CancelledError:
            job.finish("cancel", error="Job task was cancelled")
            raise
        except ConfigError as e:
            logger.error(f"{job.id}: {e}")
            job.finish("fail", error=str(e))
        except Exception as e:
            logger.exception(f"{job.id} crashed")
            job.finish("fail", error=f"{type(e).__name__}: {e}")

        self._emit_final(job)
        return job

    async def _loop(self, job: Job, runner: IterationRunner, tracker: RetryTracker, stop_on_failure: bool) -> None:
        while True:
            # Cooperative cancellation point
            if not job.is_running:
                logger.info(f"{job.id} stopped ({job.status}) after {job.iterations_run} iteration(s)")
                return

            if job.current_iteration >= job.max_iterations:
                remaining = runner.remaining_stories()
                warning = None
                if remaining:
                    warning = f"Max iterations reached with {len(remaining)} stories remaining"
                    logger.warning(f"{job.id}: {warning}")
                job.finish("complete", warning=warning)
                return

            story = runner.select_story(exclude=job.skipped)
            if story is None:
                job.finish("complete", warning=format_skipped_summary(job.skipped) or None)
                return

            if tracker.should_skip(story.id):
                job.skipped[story.id] = story.title
                notice = format_skip_notice(
                    story.id, story.title, tracker.failure_count(story.id), tracker.max_retries,
                )
                logger.warning(f"{job.id}: {notice}")
                progress.append_progress(job.workdir, notice)
                continue

            job.current_iteration += 1
            job.current_story = story.id
            started = time.monotonic()
            try:
                result = await self.run_iteration(runner, story, job.id, job.current_iteration)
            except ConfigError:
                raise
            except Exception as e:
                # One bad iteration never ends the loop; record it as a failure and move on
                logger.exception(f"{job.id}: iteration {job.current_iteration} on {story.id} raised")
                result = error_result(runner, story, job.id, job.current_iteration, e, time.monotonic() - started)

            job.results.append(result)
            job.current_story = None
            tracker.record_attempt(story.id, result.success)
            if result.success:
                job.stories_completed += 1
            elif stop_on_failure and job.is_running:
                job.finish("fail", error=f"Story failed: {story.title}")
                return

    def _housekeeping(self, config: LoopConfig) -> None:
        iteration_log.cleanup_old_prompts(self.state_dir, config.prompt_retention_days)
        notifications.cleanup_old_events(config.event_retention_hours, self.state_dir)

    def _emit_final(self, job: Job) -> None:
        fields = {
            "status": job.status,
            "workdir": str(job.workdir),
            "iterations_run": job.iterations_run,
            "stories_completed": job.stories_completed,
            "total_stories": job.total_stories,
        }
        if job.status == "failed":
            notifications.emit_event("loop_error", job.id, self.state_dir, error=job.error, **fields)
        else:
            notifications.emit_event(
                "loop_complete", job.id, self.state_dir,
                message=job.warning or f"{job.stories_completed}/{job.total_stories} stories complete",
                **fields,
            )
