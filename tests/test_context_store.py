"""Tests for storyloop.lib.context_store module."""

from storyloop.lib import context_store
from storyloop.lib.context_store import (
    FailureRecord,
    StoryOutcome,
    add_failure,
    add_story_outcome,
    build_context_snippet,
    build_failure_patterns,
    build_previous_attempt,
    read_context,
)

from conftest import make_entry


class TestContextFile:
    """Reading and updating .storyloop-context.json."""

    def test_empty_when_missing(self, tmp_path):
        ctx = read_context(tmp_path)
        assert ctx.stories == [] and ctx.failures == []
        assert build_context_snippet(tmp_path) == ""

    def test_outcome_replaced_by_id(self, tmp_path):
        add_story_outcome(tmp_path, StoryOutcome("s1", "Login", "failed"))
        add_story_outcome(tmp_path, StoryOutcome("s2", "Logout", "completed"))
        add_story_outcome(tmp_path, StoryOutcome("s1", "Login", "completed", ["a.ts"], "use bcrypt"))
        ctx = read_context(tmp_path)
        assert [(s.id, s.status) for s in ctx.stories] == [("s1", "completed"), ("s2", "completed")]
        assert ctx.stories[0].learnings == "use bcrypt"

    def test_failures_capped(self, tmp_path):
        for i in range(25):
            add_failure(tmp_path, FailureRecord(f"s{i}", "test_failure", f"error {i}"))
        failures = read_context(tmp_path).failures
        assert len(failures) == context_store.MAX_FAILURES
        assert failures[0].story_id == "s5"

    def test_unreadable_file_ignored(self, tmp_path, caplog):
        context_store.context_path(tmp_path).write_text("{not json")
        assert read_context(tmp_path).stories == []
        assert "Ignoring unreadable" in caplog.text

    def test_invalid_utf8_ignored(self, tmp_path):
        context_store.context_path(tmp_path).write_bytes(b'{"stories": ["\xff\xfe"]}')
        assert read_context(tmp_path).stories == []
        assert build_context_snippet(tmp_path) == ""

    def test_snippet(self, tmp_path):
        add_story_outcome(tmp_path, StoryOutcome("s1", "Login", "completed", learnings="Sessions live in redis"))
        add_failure(tmp_path, FailureRecord("s2", "lint_error", "eslint: no-unused-vars"))
        add_failure(tmp_path, FailureRecord("s3", "lint_error", "prettier"))
        snippet = build_context_snippet(tmp_path)
        assert "Failure frequency: lint_error: 2" in snippet
        assert "  - Login: Sessions live in redis" in snippet
        assert "  - [lint_error] Story s2: eslint: no-unused-vars" in snippet


class TestFailurePatterns:
    """Tests for build_failure_patterns()."""

    def test_empty_without_failures(self):
        assert build_failure_patterns([make_entry(success=True)]) == ""

    def test_single_failure_not_a_pattern(self):
        text = build_failure_patterns([make_entry("a", failure_category="lint_error")])
        assert "REPEATED FAILURE" not in text

    def test_recurring_category(self):
        entries = [
            make_entry("a", failure_category="type_error", tool_names=["shell"], validation_output="TS2322 first"),
            make_entry("b", failure_category="type_error", tool_names=["shell", "apply_patch"],
                       validation_output="TS2304 latest"),
            make_entry("c", failure_category="lint_error"),
        ]
        text = build_failure_patterns(entries)
        assert "REPEATED FAILURE: type_error (2 occurrences)" in text
        assert "Stories affected: Title of a, Title of b" in text
        assert "Last error: TS2304 latest" in text
        assert "lint_error (" not in text
        assert "shell (2x)" in text

    def test_capped(self):
        entries = [
            make_entry(f"s{i}", failure_category=cat, validation_output="x" * 300)
            for i in range(20)
            for cat in ("type_error", "lint_error", "test_failure", "build_error", "timeout", "unknown")
        ]
        text = build_failure_patterns(entries)
        assert len(text) <= context_store.FAILURE_PATTERN_LIMIT + len("\n...")
        assert text.endswith("\n...")


class TestPreviousAttempt:
    """Tests for build_previous_attempt()."""

    def test_none_for_fresh_story(self):
        assert build_previous_attempt([make_entry("other")], "s1") == ""

    def test_last_failure_and_sequence(self):
        entries = [
            make_entry("s1", failure_category="lint_error"),
            make_entry("s1", True),
            make_entry("s1", failure_category="test_failure", duration_seconds=61.6,
                       tool_names=["shell"], files_modified=["a.ts"], validation_output="expected 2"),
        ]
        text = build_previous_attempt(entries, "s1")
        assert text.startswith("Previous attempt failed (test_failure, 62s)")
        assert "Tools used: shell" in text
        assert "Files touched: a.ts" in text
        assert "Validation error:\nexpected 2" in text
        assert "failed 2 times: lint_error -> test_failure" in text

    def test_capped(self):
        entries = [make_entry("s1", validation_output="y" * 1000, files_modified=["f" * 2500])]
        text = build_previous_attempt(entries, "s1")
        assert len(text) == context_store.PREVIOUS_ATTEMPT_LIMIT + len("\n...")
