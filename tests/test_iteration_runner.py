"""Tests for one iteration: agent -> validation -> verification -> record."""

import asyncio
from unittest.mock import patch

import pytest

from storyloop.agents.codex import AgentResult
from storyloop.lib import context_store, iteration_log, prd as prd_store
from storyloop.lib.config import LoopConfig
from storyloop.lib.memory import MemoryStore
from storyloop.process.activity import ActivityStats
from storyloop.runner.errors import SpawnError
from storyloop.runner.iteration import IterationRunner, error_result, failure_category
from storyloop.runner.validation import ValidationResult
from storyloop.runner.verify import Severity, VerificationCheck, VerificationResult
from storyloop.workflow.engine import JobEngine

from conftest import make_entry


class FakeAgent:
    """Returns a canned AgentResult and remembers the prompts it saw."""

    def __init__(self, result: AgentResult):
        self.result = result
        self.prompts = []

    async def run(self, prompt, workdir, model, sandbox):
        self.prompts.append(prompt)
        return self.result


class FakeValidator:
    def __init__(self, result: ValidationResult):
        self.result = result
        self.calls = 0

    async def __call__(self, workdir, command, timeout):
        self.calls += 1
        return self.result


def _agent_ok(**overrides):
    fields = dict(
        success=True,
        output="did it",
        final_message="Implemented the first thing with tests",
        session_id="t-1",
        tool_calls=4,
        tool_names=["npm test"],
        files_modified=["src/first.ts", "src/first.test.ts"],
        duration_seconds=3.0,
        exit_code=0,
        activity=ActivityStats(lines_processed=2, tool_calls=1),
    )
    fields.update(overrides)
    return AgentResult(**fields)


def _runner(project, state_dir, agent, validator, **config):
    cfg = LoopConfig(**config)
    return IterationRunner(
        project, cfg,
        agent=agent,
        memory=MemoryStore(enabled=False),
        state_dir=state_dir,
        validator=validator,
    )


def _first(project):
    return prd_store.select_next_story(prd_store.load_prd(project))


@pytest.fixture(autouse=True)
def quiet_notifications():
    with patch("storyloop.notifications.notify"):
        yield


class TestSuccess:
    def test_commits_records_then_marks_complete(self, project, state_dir):
        runner = _runner(project, state_dir, FakeAgent(_agent_ok()), FakeValidator(ValidationResult(True, "ok")))
        story = _first(project)

        with patch("storyloop.runner.iteration.verify_output", return_value=VerificationResult(passed=True)), \
                patch("storyloop.runner.iteration.commit_all", return_value="abc1234") as commit:
            result = asyncio.run(runner.run_iteration(story, "loop-1", 1))

        assert result.success is True
        assert result.commit_hash == "abc1234"
        assert result.recorded is True
        commit.assert_called_once()
        assert "First story" in commit.call_args[0][1]

        entries = iteration_log.read_entries(project)
        assert len(entries) == 1
        assert entries[0]["success"] is True
        assert entries[0]["commit_hash"] == "abc1234"
        assert entries[0]["prompt_hash"]
        assert prd_store.load_prd(project).get_story(story.id).passes is True

    def test_no_commit_when_auto_commit_off(self, project, state_dir):
        runner = _runner(project, state_dir, FakeAgent(_agent_ok()), FakeValidator(ValidationResult(True, "ok")),
                         auto_commit=False)
        with patch("storyloop.runner.iteration.verify_output", return_value=VerificationResult(passed=True)), \
                patch("storyloop.runner.iteration.commit_all") as commit:
            result = asyncio.run(runner.run_iteration(_first(project), "loop-1", 1))
        assert result.success is True
        assert result.commit_hash is None
        commit.assert_not_called()

    def test_not_marked_complete_when_log_write_fails(self, project, state_dir):
        runner = _runner(project, state_dir, FakeAgent(_agent_ok()), FakeValidator(ValidationResult(True, "ok")))
        story = _first(project)
        with patch("storyloop.runner.iteration.verify_output", return_value=VerificationResult(passed=True)), \
                patch("storyloop.runner.iteration.commit_all", return_value=None), \
                patch("storyloop.runner.iteration.iteration_log.append_entry", side_effect=OSError("disk full")):
            result = asyncio.run(runner.run_iteration(story, "loop-1", 1))

        assert result.success is True
        assert result.recorded is False
        assert prd_store.load_prd(project).get_story(story.id).passes is False

    def test_prompt_persisted(self, project, state_dir):
        agent = FakeAgent(_agent_ok())
        runner = _runner(project, state_dir, agent, FakeValidator(ValidationResult(True, "ok")))
        with patch("storyloop.runner.iteration.verify_output", return_value=VerificationResult(passed=True)), \
                patch("storyloop.runner.iteration.commit_all", return_value=None):
            asyncio.run(runner.run_iteration(_first(project), "loop-1", 1))

        entry = iteration_log.read_entries(project)[0]
        assert "First story" in agent.prompts[0]
        assert iteration_log.latest_prompt_for_story([entry], entry["story_id"]) == agent.prompts[0]


class TestFailure:
    def test_validation_failure_classified(self, project, state_dir):
        validator = FakeValidator(ValidationResult(False, "AssertionError: expected 2\n1 failed"))
        runner = _runner(project, state_dir, FakeAgent(_agent_ok()), validator)
        story = _first(project)

        with patch("storyloop.runner.iteration.verify_output") as verify, \
                patch("storyloop.runner.iteration.commit_all") as commit:
            result = asyncio.run(runner.run_iteration(story, "loop-1", 1))

        assert result.success is False
        assert result.validation_passed is False
        assert result.failure_category == "test_failure"
        verify.assert_not_called()
        commit.assert_not_called()
        entry = iteration_log.read_entries(project)[0]
        assert entry["failure_category"] == "test_failure"
        assert "1 failed" in entry["validation_output"]
        assert prd_store.load_prd(project).get_story(story.id).passes is False

    def test_verification_rejection(self, project, state_dir):
        rejected = VerificationResult(
            passed=False,
            checks=[VerificationCheck("empty_diff", Severity.REJECT, "No changes detected")],
            reject_reason="No changes detected",
        )
        runner = _runner(project, state_dir, FakeAgent(_agent_ok()), FakeValidator(ValidationResult(True, "ok")))
        with patch("storyloop.runner.iteration.verify_output", return_value=rejected), \
                patch("storyloop.runner.iteration.commit_all") as commit:
            result = asyncio.run(runner.run_iteration(_first(project), "loop-1", 1))

        assert result.success is False
        assert result.validation_passed is True
        assert result.verification_passed is False
        assert result.failure_category == "verification_rejected"
        commit.assert_not_called()
        entry = iteration_log.read_entries(project)[0]
        assert entry["verification_reject_reason"] == "No changes detected"

    def test_spawn_error_skips_validation(self, project, state_dir):
        validator = FakeValidator(ValidationResult(True, "ok"))
        agent = FakeAgent(AgentResult.spawn_error(SpawnError(command="codex", message="not found")))
        runner = _runner(project, state_dir, agent, validator)
        result = asyncio.run(runner.run_iteration(_first(project), "loop-1", 1))

        assert validator.calls == 0
        assert result.success is False
        assert result.validation_passed is False
        assert result.output.startswith("Spawn error:")
        assert len(iteration_log.read_entries(project)) == 1

    def test_timeout_categorized_as_timeout(self, project, state_dir):
        agent = FakeAgent(_agent_ok(success=False, termination="stall",
                                    output="Timeout: agent stalled with no progress for 120s\n"))
        validator = FakeValidator(ValidationResult(False, "error TS2345: bad type"))
        runner = _runner(project, state_dir, agent, validator)
        result = asyncio.run(runner.run_iteration(_first(project), "loop-1", 1))

        assert result.failure_category == "timeout"
        assert result.termination == "stall"

    def test_event_written(self, project, state_dir):
        validator = FakeValidator(ValidationResult(False, "Build failed"))
        runner = _runner(project, state_dir, FakeAgent(_agent_ok()), validator)
        asyncio.run(runner.run_iteration(_first(project), "loop-1", 1))
        events = list((state_dir / "events").glob("*-story_failed-loop-1.json"))
        assert len(events) == 1


class TestFailureCategory:
    def test_verification_wins_over_timeout(self):
        agent = _agent_ok(termination="timeout")
        rejected = VerificationResult(passed=False)
        assert failure_category(agent, ValidationResult(True, ""), rejected).value == "verification_rejected"

    def test_agent_output_used_when_validation_passed(self):
        agent = _agent_ok(success=False, output="eslint found 3 problems")
        category = failure_category(agent, ValidationResult(True, ""), None)
        assert category.value == "lint_error"


class TestSelectEligibleStory:
    def test_skips_story_with_exhausted_retries(self, project, state_dir):
        first = _first(project)
        for _ in range(3):
            iteration_log.append_entry(project, make_entry(first.id, success=False))
        runner = _runner(project, state_dir, FakeAgent(_agent_ok()), FakeValidator(ValidationResult(True, "")))

        story, skipped = runner.select_eligible_story()
        assert story.title == "Second story"
        assert [s.id for s in skipped] == [first.id]

    def test_all_complete(self, project, state_dir):
        for story in prd_store.load_prd(project).stories:
            prd_store.mark_story_complete(project, story.id)
        runner = _runner(project, state_dir, FakeAgent(_agent_ok()), FakeValidator(ValidationResult(True, "")))
        assert runner.select_eligible_story() == (None, [])


class TestErrorResult:
    def test_records_unknown_failure(self, project, state_dir):
        runner = _runner(project, state_dir, FakeAgent(_agent_ok()), FakeValidator(ValidationResult(True, "")))
        story = _first(project)
        result = error_result(runner, story, "loop-1", 2, RuntimeError("boom"), 1.5)

        assert result.success is False
        assert result.failure_category == "unknown"
        assert result.recorded is True
        entry = iteration_log.read_entries(project)[0]
        assert entry["iteration_number"] == 2
        assert entry["validation_output"] == "Iteration error: boom"


class TestRecordingFailures:
    def test_metadata_write_failure_keeps_single_entry(self, project, state_dir):
        runner = _runner(project, state_dir, FakeAgent(_agent_ok()),
                         FakeValidator(ValidationResult(False, "AssertionError: expected 2\n1 failed")))
        with patch("storyloop.lib.prd.save_prd", side_effect=OSError("No space left on device")):
            result = asyncio.run(runner.run_iteration(_first(project), "loop-1", 1))

        assert result.recorded is True
        assert result.failure_category == "test_failure"
        entries = iteration_log.read_entries(project)
        assert [e["failure_category"] for e in entries] == ["test_failure"]

    def test_error_after_recording_not_logged_twice(self, project, state_dir):
        runner = _runner(project, state_dir, FakeAgent(_agent_ok()),
                         FakeValidator(ValidationResult(False, "AssertionError: expected 2\n1 failed")))
        engine = JobEngine(
            runner_factory=lambda workdir, config, registry, sd: runner,
            config_loader=lambda workdir: LoopConfig(max_iterations=1),
            state_dir=state_dir,
        )
        with patch.object(runner, "_after_failure", side_effect=RuntimeError("hook broke")):
            job = asyncio.run(engine.run_job(engine.create_job(project)))

        assert job.status == "completed"
        assert job.iterations_run == 1
        assert job.results[0].failure_category == "unknown"
        entries = iteration_log.read_entries(project)
        assert [e["failure_category"] for e in entries] == ["test_failure"]

    def test_error_before_recording_is_logged(self, project, state_dir):
        runner = _runner(project, state_dir, FakeAgent(_agent_ok()), FakeValidator(ValidationResult(True, "")))
        story = _first(project)
        assert runner.is_recorded("loop-1", 1) is False
        error_result(runner, story, "loop-1", 1, RuntimeError("boom"), 0.5)
        assert runner.is_recorded("loop-1", 1) is True
        assert len(iteration_log.read_entries(project)) == 1


class TestPromptContext:
    def test_corrupt_context_file_does_not_fail_iteration(self, project, state_dir):
        context_store.context_path(project).write_bytes(b"\xff\xfe not utf-8")
        agent = FakeAgent(_agent_ok())
        runner = _runner(project, state_dir, agent, FakeValidator(ValidationResult(True, "ok")))
        with patch("storyloop.runner.iteration.verify_output", return_value=VerificationResult(passed=True)), \
                patch("storyloop.runner.iteration.commit_all", return_value=None):
            result = asyncio.run(runner.run_iteration(_first(project), "loop-1", 1))

        assert result.success is True
        assert len(agent.prompts) == 1

    def test_failing_collaborators_leave_prompt_thinner(self, project, state_dir):
        agent = FakeAgent(_agent_ok())
        runner = _runner(project, state_dir, agent, FakeValidator(ValidationResult(True, "ok")),
                         gh_issues=True)
        story = _first(project)
        story.issue_number = 7
        with patch("storyloop.runner.iteration.progress.read_progress_tail", side_effect=OSError("gone")), \
                patch("storyloop.runner.iteration.context_store.build_failure_patterns", side_effect=ValueError("bad")), \
                patch("storyloop.runner.iteration.github.read_issue_context", side_effect=RuntimeError("gh")), \
                patch("storyloop.runner.iteration.github.close_issue"), \
                patch("storyloop.runner.iteration.verify_output", return_value=VerificationResult(passed=True)), \
                patch("storyloop.runner.iteration.commit_all", return_value=None):
            result = asyncio.run(runner.run_iteration(story, "loop-1", 1))

        assert result.success is True
        assert "First story" in agent.prompts[0]
