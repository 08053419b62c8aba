"""
Iteration runner: one attempt at one story.

    select story -> build prompt -> run agent -> validate -> verify
        -> commit or reject -> record

Every outcome (success, validation failure, verification rejection,
timeout, spawn error) yields exactly one IterationResult and one durable
log entry. A story is only marked complete after its log entry is written.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from storyloop import notifications
from storyloop.agents.codex import AgentResult, CodexAgent
from storyloop.git import commit_all
from storyloop.lib import context_store, github, iteration_log, prd as prd_store, progress
from storyloop.lib.agents_config import load_agents_config
from storyloop.lib.config import LoopConfig, get_state_dir
from storyloop.lib.learnings import extract_learnings, validate_learnings
from storyloop.lib.memory import MemoryStore
from storyloop.lib.prompts import build_iteration_prompt
from storyloop.lib.validate import ValidationError
from storyloop.process.activity import ActivityStats, format_iteration_behavior
from storyloop.process.registry import ProcessRegistry
from storyloop.runner.classify import FailureCategory, classify_failure
from storyloop.runner.context import IterationContext
from storyloop.runner.retry import should_skip_story
from storyloop.runner.validation import VALIDATION_OUTPUT_LIMIT, ValidationResult, run_validation
from storyloop.runner.verify import VerificationResult, verify_output

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IterationResult:
    """Outcome of one iteration. Immutable once built."""
    story_id: str
    story_title: str
    success: bool
    validation_passed: bool
    duration_seconds: float
    iteration_number: int = 0
    output: str = ""
    commit_hash: Optional[str] = None
    session_id: Optional[str] = None
    tool_calls: int = 0
    files_modified: tuple[str, ...] = ()
    verification_passed: Optional[bool] = None
    verification_warnings: tuple[str, ...] = ()
    failure_category: Optional[str] = None
    termination: Optional[str] = None
    activity: Optional[ActivityStats] = None
    recorded: bool = True

    def to_dict(self) -> dict:
        data = asdict(self)
        data["files_modified"] = list(self.files_modified)
        data["verification_warnings"] = list(self.verification_warnings)
        return data


def failure_category(
    agent: AgentResult,
    validation: ValidationResult,
    verification: Optional[VerificationResult],
) -> FailureCategory:
    """Category for a failed iteration.

    A verifier rejection wins, then an agent timeout or stall, then the
    validation output, then whatever the agent printed.
    """
    if verification is not None and not verification.passed:
        return FailureCategory.VERIFICATION_REJECTED
    if agent.termination is not None:
        return FailureCategory.TIMEOUT
    if not validation.success:
        return classify_failure(validation.output)
    return classify_failure(agent.output)


def _best_effort(what: str, fn, *args, default=None, **kwargs):
    """Run a collaborator call; failures are logged and default is returned."""
    try:
        return fn(*args, **kwargs)
    except Exception as e:
        logger.warning(f"{what} failed: {e}")
        return default


class IterationRunner:
    """Runs iterations for one working directory."""

    def __init__(
        self,
        workdir: Path,
        config: LoopConfig,
        registry: Optional[ProcessRegistry] = None,
        agent=None,
        memory: Optional[MemoryStore] = None,
        state_dir: Optional[Path] = None,
        validator=None,
    ):
        self.workdir = Path(workdir)
        self.config = config
        self.registry = registry or ProcessRegistry(grace_period=config.kill_grace_seconds)
        agents_config = load_agents_config(self.workdir)
        self.agent = agent or CodexAgent(
            self.registry,
            agents_config,
            timeout=config.iteration_timeout,
            stall_timeout=config.stall_timeout,
        )
        self.memory = memory or MemoryStore(
            agents_config, timeout=config.memory_timeout, enabled=config.memory_enabled,
        )
        self.state_dir = state_dir or get_state_dir()
        self.validator = validator or run_validation
        self.last_activity: Optional[ActivityStats] = None
        self._recorded: set[tuple[str, int]] = set()

    # Story selection

    def select_story(self, exclude: Iterable[str] = ()) -> Optional[prd_store.Story]:
        return prd_store.select_next_story(prd_store.load_prd(self.workdir), exclude)

    def remaining_stories(self) -> list[prd_store.Story]:
        return prd_store.remaining_stories(prd_store.load_prd(self.workdir))

    def select_eligible_story(self) -> tuple[Optional[prd_store.Story], list[prd_store.Story]]:
        """Next story that has not exhausted its retries, judged from the log alone.

        Returns (story or None, stories skipped on the way).
        """
        entries = iteration_log.read_entries(self.workdir)
        skipped: list[prd_store.Story] = []
        while True:
            story = self.select_story(exclude=[s.id for s in skipped])
            if story is None or not should_skip_story(entries, story.id, self.config.max_retries):
                return story, skipped
            skipped.append(story)

    # Prompt

    def _gather_prompt_parts(self, prd: prd_store.Prd, story: prd_store.Story) -> dict:
        entries = _best_effort("Reading iteration log", iteration_log.read_entries, self.workdir, default=[])
        issue_context = None
        if self.config.gh_issues and story.issue_number:
            issue_context = _best_effort(
                "Issue context", github.read_issue_context, self.workdir, story.issue_number,
            )
        parts = {
            "progress": _best_effort("Progress tail", progress.read_progress_tail, self.workdir, 4000),
            "previous_attempt": _best_effort(
                "Previous attempt", context_store.build_previous_attempt, entries, story.id,
            ),
            "structured_context": _best_effort(
                "Context snippet", context_store.build_context_snippet, self.workdir,
            ),
            "failure_patterns": _best_effort(
                "Failure patterns", context_store.build_failure_patterns, entries,
            ),
            "memory_context": _best_effort(
                "Memory context", self.memory.pull_context, story, prd.project_name,
            ),
            "previous_behavior": format_iteration_behavior(self.last_activity),
            "issue_context": issue_context,
        }
        # Missing context only makes the prompt thinner
        return {name: value or "" for name, value in parts.items()}

    async def prepare(self, story: prd_store.Story, job_id: str, iteration_number: int) -> IterationContext:
        """Build and persist the prompt for story."""
        prd = prd_store.load_prd(self.workdir)
        ctx = IterationContext(
            job_id=job_id,
            iteration_number=iteration_number,
            workdir=self.workdir,
            config=self.config,
            prd=prd,
            story=story,
        )
        parts = await asyncio.to_thread(self._gather_prompt_parts, prd, story)
        ctx.prompt = build_iteration_prompt(prd, story, **parts)
        ctx.prompt_hash = iteration_log.hash_prompt(ctx.prompt)
        try:
            path, _ = iteration_log.persist_prompt(self.state_dir, job_id, story.id, ctx.prompt)
            ctx.prompt_file = str(path)
        except OSError as e:
            logger.warning(f"Could not persist prompt for {story.id}: {e}")
        return ctx

    # Iteration

    async def run_iteration(self, story: prd_store.Story, job_id: str, iteration_number: int) -> IterationResult:
        cfg = self.config
        ctx = await self.prepare(story, job_id, iteration_number)
        logger.info(f"Iteration {iteration_number}: {story.id} ({story.title})")

        agent = await self.agent.run(ctx.prompt, self.workdir, cfg.model, cfg.sandbox)

        if agent.spawn_failed:
            validation = ValidationResult(False, agent.output)
        else:
            validation = await self.validator(self.workdir, story.validation_command, cfg.validation_timeout)

        success = agent.success and validation.success
        verification = None
        if success:
            verification = await asyncio.to_thread(verify_output, self.workdir, story, agent)
            success = verification.passed

        category = None if success else failure_category(agent, validation, verification)

        commit_hash = None
        if success and cfg.auto_commit:
            issue_ref = f" (#{story.issue_number})" if story.issue_number else ""
            commit_hash = await asyncio.to_thread(
                commit_all, self.workdir, f"storyloop: {story.title}{issue_ref}",
            )

        entry = self._log_entry(ctx, agent, validation, verification, success, category, commit_hash)
        recorded = self._append_log(entry)

        result = IterationResult(
            story_id=story.id,
            story_title=story.title,
            success=success,
            validation_passed=validation.success,
            duration_seconds=round(ctx.elapsed(), 3),
            iteration_number=iteration_number,
            output=agent.output[:cfg.output_limit],
            commit_hash=commit_hash,
            session_id=agent.session_id,
            tool_calls=agent.tool_calls,
            files_modified=tuple(agent.files_modified),
            verification_passed=verification.passed if verification else None,
            verification_warnings=tuple(verification.warnings) if verification else (),
            failure_category=category.value if category else None,
            termination=agent.termination,
            activity=agent.activity,
            recorded=recorded,
        )
        self.last_activity = agent.activity

        if success:
            if recorded:
                prd_store.mark_story_complete(self.workdir, story.id)
            else:
                logger.error(f"{story.id} passed but was not recorded, leaving it incomplete")
            await asyncio.to_thread(self._after_success, ctx, agent, result)
            logger.info(f"Completed {story.id}" + (f" ({commit_hash})" if commit_hash else ""))
        else:
            await asyncio.to_thread(self._after_failure, ctx, agent, validation, verification, result)
            logger.info(f"Failed {story.id} [{result.failure_category}]")

        return result

    # Recording

    def _log_entry(
        self,
        ctx: IterationContext,
        agent: AgentResult,
        validation: ValidationResult,
        verification: Optional[VerificationResult],
        success: bool,
        category: Optional[FailureCategory],
        commit_hash: Optional[str],
    ) -> dict:
        now = datetime.now()
        return {
            "timestamp": now.isoformat(),
            "epoch": int(now.timestamp() * 1000),
            "job_id": ctx.job_id,
            "iteration_number": ctx.iteration_number,
            "story_id": ctx.story.id,
            "story_title": ctx.story.title,
            "session_id": agent.session_id,
            "commit_hash": commit_hash,
            "prompt_hash": ctx.prompt_hash,
            "prompt_file": ctx.prompt_file,
            "prompt_length": len(ctx.prompt),
            "success": success,
            "validation_passed": validation.success,
            "failure_category": category.value if category else None,
            "duration_seconds": round(ctx.elapsed(), 3),
            "output_length": len(agent.output),
            "final_message_length": len(agent.final_message),
            "tool_calls": agent.tool_calls,
            "tool_names": agent.tool_names,
            "files_modified": agent.files_modified,
            "validation_output": None if validation.success else validation.output[:VALIDATION_OUTPUT_LIMIT],
            "verification_passed": verification.passed if verification else None,
            "verification_warnings": verification.warnings if verification else None,
            "verification_reject_reason": verification.reject_reason if verification else None,
            "termination": agent.termination,
            "malformed_events": agent.malformed_events,
            "model": self.config.model,
            "sandbox": self.config.sandbox,
            "started_at": ctx.started_at.isoformat(),
            "completed_at": now.isoformat(),
            "activity": agent.activity.to_dict() if agent.activity else None,
        }

    def _append_log(self, entry: dict) -> bool:
        try:
            iteration_log.append_entry(self.workdir, entry)
        except (OSError, ValidationError) as e:
            logger.error(f"Failed to write iteration log entry for {entry['story_id']}: {e}")
            return False
        self._recorded.add((entry["job_id"], entry["iteration_number"]))
        prd_store.record_iteration(self.workdir)
        return True

    def is_recorded(self, job_id: str, iteration_number: int) -> bool:
        """Whether this iteration already has its log entry."""
        return (job_id, iteration_number) in self._recorded

    # Collaborator side effects

    def _after_success(self, ctx: IterationContext, agent: AgentResult, result: IterationResult) -> None:
        story, project = ctx.story, ctx.prd.project_name
        summary = agent.summary or ""
        learning_check = validate_learnings(agent.final_message, agent.structured)
        learnings = extract_learnings(agent.final_message, agent.structured)

        note = ""
        if not learning_check.valid:
            logger.warning(f"Low-quality learnings for {story.id}: {learning_check.reason}")
            note = f"\nLAZY LEARNINGS: {learning_check.reason}"
        _best_effort(
            "Progress entry", progress.append_progress, self.workdir,
            f"Completed: {story.title}\n"
            f"Files: {', '.join(agent.files_modified) or 'none'}\n"
            f"Summary: {summary[:800]}" + note,
        )
        for warning in result.verification_warnings:
            logger.warning(f"Verification warning for {story.id}: {warning}")

        if result.verification_warnings:
            self.memory.store(
                f"Verification warnings: \"{story.title}\" in {project}. "
                f"Warnings: {'; '.join(result.verification_warnings)}",
                f"storyloop,verification,warning,{project}",
            )
        if not learning_check.valid:
            self.memory.store(
                f"Low-quality learnings: story \"{story.title}\" in {project} produced "
                f"{learning_check.reason}.",
                f"storyloop,laziness,quality,{project}",
            )
        if result.commit_hash:
            self.memory.store(
                f"Completed: {story.title}. Files: {', '.join(agent.files_modified)}. "
                f"Summary: {summary[:300]}",
                f"storyloop,learning,{project}",
            )
        if len(learnings) >= 50:
            self.memory.store(
                f"Learnings from \"{story.title}\": {learnings}",
                f"storyloop,success,learning,{project},{story.id}",
            )
        self.memory.store(
            f"Success pattern: \"{story.title}\" in {project}. Tool calls: {agent.tool_calls}. "
            f"Files: {len(agent.files_modified)}. Duration: {round(result.duration_seconds)}s. "
            f"Validation: {story.validation_command or 'default'}. "
            f"Key tools: {', '.join(agent.tool_names)}",
            f"storyloop,success-pattern,{project}",
        )
        if agent.activity_insights:
            self.memory.store(
                f"Iteration behavior for \"{story.title}\": {agent.activity_insights}",
                f"storyloop,session-insight,{project}",
            )

        _best_effort(
            "Context update", context_store.add_story_outcome, self.workdir,
            context_store.StoryOutcome(
                id=story.id,
                title=story.title,
                status="completed",
                files_modified=list(agent.files_modified),
                learnings=learnings or agent.final_message[:500],
            ),
        )

        if self.config.gh_issues and story.issue_number:
            github.close_issue(
                self.workdir, story.issue_number,
                f"**Completed** by storyloop\n\nCommit: {result.commit_hash or 'n/a'}\n"
                f"Files: {', '.join(agent.files_modified)}\n\n{summary[:400]}",
            )
            tracking = ctx.prd.metadata.get("tracking_issue")
            if tracking:
                _best_effort(
                    "Tracking issue update", lambda: github.update_tracking_checklist(
                        self.workdir, tracking, prd_store.load_prd(self.workdir),
                    ),
                )

        notifications.emit_event(
            "story_complete", ctx.job_id, self.state_dir,
            story_id=story.id,
            story_title=story.title,
            files_modified=list(agent.files_modified),
            commit_hash=result.commit_hash,
            duration_seconds=result.duration_seconds,
            summary=summary[:500],
            workdir=str(self.workdir),
            session_id=agent.session_id,
        )

    def _after_failure(
        self,
        ctx: IterationContext,
        agent: AgentResult,
        validation: ValidationResult,
        verification: Optional[VerificationResult],
        result: IterationResult,
    ) -> None:
        story, project = ctx.story, ctx.prd.project_name
        category = result.failure_category or FailureCategory.UNKNOWN.value
        rejected = category == FailureCategory.VERIFICATION_REJECTED.value
        reject_reason = verification.reject_reason if verification else None
        error_text = validation.output if not validation.success else agent.output

        _best_effort(
            "Progress entry", progress.append_progress, self.workdir,
            f"Failed: {story.title} [{category}]\n"
            f"Validation: {(reject_reason or validation.output)[:300]}\n"
            f"Agent: {(agent.summary or '')[:300]}",
        )

        if rejected:
            self.memory.store(
                f"Verification rejected: \"{story.title}\" in {project}. Reason: {reject_reason}. "
                f"Checks: {'; '.join(f'[{c.severity.value}] {c.name}: {c.message}' for c in verification.checks)}",
                f"storyloop,verification,rejected,{project}",
            )
        else:
            self.memory.store(
                f"Failure [{category}]: {story.title}. Files: {', '.join(agent.files_modified)}. "
                f"Error: {error_text[:500]}",
                f"storyloop,failure,{category},{project}",
            )
        if agent.activity_insights:
            self.memory.store(
                f"Iteration behavior (FAILED) for \"{story.title}\": {agent.activity_insights}",
                f"storyloop,session-insight,failure,{project}",
            )

        if self.config.gh_issues and story.issue_number:
            github.comment_on_issue(
                self.workdir, story.issue_number,
                f"**Iteration failed** (iteration {ctx.iteration_number})\n\n"
                f"Category: `{category}`\n```\n{(reject_reason or error_text)[:500] or 'no output'}\n```",
            )
            github.label_issue(self.workdir, story.issue_number, [f"storyloop-{category}"])

        _best_effort(
            "Context update", context_store.add_story_outcome, self.workdir,
            context_store.StoryOutcome(
                id=story.id,
                title=story.title,
                status="failed",
                files_modified=list(agent.files_modified),
                learnings=f"[{category}] {error_text[:300]}",
            ),
        )
        _best_effort(
            "Context failure record", context_store.add_failure, self.workdir,
            context_store.FailureRecord(
                story_id=story.id,
                story_title=story.title,
                category=category,
                error=f"[verification_rejected] {reject_reason}" if rejected else error_text[:500],
                tool_names=list(agent.tool_names),
                iteration_number=ctx.iteration_number,
            ),
        )

        notifications.emit_event(
            "story_verification_rejected" if rejected else "story_failed",
            ctx.job_id, self.state_dir,
            story_id=story.id,
            story_title=story.title,
            error=(reject_reason or error_text)[:500],
            failure_category=category,
            duration_seconds=result.duration_seconds,
            workdir=str(self.workdir),
            session_id=agent.session_id,
        )


def error_result(
    runner: IterationRunner,
    story: prd_store.Story,
    job_id: str,
    iteration_number: int,
    error: Exception,
    duration: float,
) -> IterationResult:
    """Failed result for an iteration that raised, recorded like any other outcome."""
    now = datetime.now()
    output = f"Iteration error: {error}"
    if runner.is_recorded(job_id, iteration_number):
        # Raised after its entry was written; one entry per iteration
        logger.warning(f"{story.id} iteration {iteration_number} already recorded, not logging the error")
        return IterationResult(
            story_id=story.id,
            story_title=story.title,
            success=False,
            validation_passed=False,
            duration_seconds=round(duration, 3),
            iteration_number=iteration_number,
            output=output[:runner.config.output_limit],
            failure_category=FailureCategory.UNKNOWN.value,
        )
    entry = {
        "timestamp": now.isoformat(),
        "epoch": int(now.timestamp() * 1000),
        "job_id": job_id,
        "iteration_number": iteration_number,
        "story_id": story.id,
        "story_title": story.title,
        "success": False,
        "validation_passed": False,
        "failure_category": FailureCategory.UNKNOWN.value,
        "duration_seconds": round(duration, 3),
        "tool_calls": 0,
        "tool_names": [],
        "files_modified": [],
        "validation_output": output[:VALIDATION_OUTPUT_LIMIT],
        "model": runner.config.model,
        "sandbox": runner.config.sandbox,
        "completed_at": now.isoformat(),
    }
    recorded = runner._append_log(entry)
    return IterationResult(
        story_id=story.id,
        story_title=story.title,
        success=False,
        validation_passed=False,
        duration_seconds=round(duration, 3),
        iteration_number=iteration_number,
        output=output[:runner.config.output_limit],
        failure_category=FailureCategory.UNKNOWN.value,
        recorded=recorded,
    )
