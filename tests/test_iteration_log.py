"""Tests for storyloop.lib.iteration_log module."""

import json
import os
import threading
import time

import pytest

from storyloop.lib import iteration_log
from storyloop.lib.validate import ValidationError

from conftest import make_entry


class TestAppendAndRead:
    """Append-only JSONL log."""

    def test_round_trip_in_order(self, tmp_path):
        for i in range(3):
            iteration_log.append_entry(tmp_path, make_entry(iteration_number=i))
        entries = iteration_log.read_entries(tmp_path)
        assert [e["iteration_number"] for e in entries] == [0, 1, 2]

    def test_invalid_entry_refused(self, tmp_path):
        with pytest.raises(ValidationError):
            iteration_log.append_entry(tmp_path, {"story_id": "x"})
        assert not iteration_log.log_path(tmp_path).exists()

    def test_missing_log(self, tmp_path):
        assert iteration_log.read_entries(tmp_path) == []

    def test_corrupt_lines_skipped(self, tmp_path, caplog):
        iteration_log.append_entry(tmp_path, make_entry("a"))
        with open(iteration_log.log_path(tmp_path), "a") as f:
            f.write('{"story_id": "trunc\n[1, 2]\n\n')
        iteration_log.append_entry(tmp_path, make_entry("b"))
        entries = iteration_log.read_entries(tmp_path)
        assert [e["story_id"] for e in entries] == ["a", "b"]
        assert "Skipping corrupted log line 2" in caplog.text

    def test_concurrent_appends_never_interleave(self, tmp_path):
        def writer(n):
            for i in range(20):
                iteration_log.append_entry(tmp_path, make_entry(f"s{n}", iteration_number=i))

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        lines = iteration_log.log_path(tmp_path).read_text().splitlines()
        assert len(lines) == 80
        for line in lines:
            json.loads(line)


class TestQuery:
    """Tests for query_entries()."""

    @pytest.fixture
    def entries(self):
        return [
            make_entry("a", True, epoch=100, job_id="j1"),
            make_entry("b", False, epoch=200, job_id="j1"),
            make_entry("a", False, epoch=300, job_id="j2"),
            make_entry("b", True, epoch=400, job_id="j2"),
        ]

    def test_since(self, entries):
        assert [e["epoch"] for e in iteration_log.query_entries(entries, since=250)] == [300, 400]

    def test_story_and_job(self, entries):
        result = iteration_log.query_entries(entries, story_id="a", job_id="j2")
        assert [e["epoch"] for e in result] == [300]

    def test_failures_only(self, entries):
        result = iteration_log.query_entries(entries, failures_only=True)
        assert [e["epoch"] for e in result] == [200, 300]

    def test_limit_keeps_most_recent(self, entries):
        result = iteration_log.query_entries(entries, limit=2)
        assert [e["epoch"] for e in result] == [300, 400]


class TestPrompts:
    """Prompt persistence and retention."""

    def test_hash_is_short_sha256(self):
        digest = iteration_log.hash_prompt("hello")
        assert digest == "2cf24dba5fb0a30e"

    def test_persist_prompt(self, tmp_path):
        path, digest = iteration_log.persist_prompt(tmp_path, "loop-1", "story-a", "Do it")
        assert path.read_text() == "Do it"
        assert path.parent == tmp_path / "prompts"
        assert path.name.endswith("-loop-1-story-a.md")
        assert digest == iteration_log.hash_prompt("Do it")

    def test_cleanup_old_prompts(self, tmp_path):
        old, _ = iteration_log.persist_prompt(tmp_path, "j", "old", "old")
        new, _ = iteration_log.persist_prompt(tmp_path, "j", "new", "new")
        ten_days_ago = time.time() - 10 * 86400
        os.utime(old, (ten_days_ago, ten_days_ago))

        assert iteration_log.cleanup_old_prompts(tmp_path, retention_days=7) == 1
        assert not old.exists()
        assert new.exists()

    def test_cleanup_without_dir(self, tmp_path):
        assert iteration_log.cleanup_old_prompts(tmp_path, 7) == 0

    def test_latest_prompt_for_story(self, tmp_path):
        first, _ = iteration_log.persist_prompt(tmp_path, "j", "s", "first")
        second, _ = iteration_log.persist_prompt(tmp_path, "j", "s", "second")
        entries = [
            make_entry("s", prompt_file=str(first)),
            make_entry("other", prompt_file=str(first)),
            make_entry("s", prompt_file=str(second)),
        ]
        assert iteration_log.latest_prompt_for_story(entries, "s") == "second"
        second.unlink()
        assert iteration_log.latest_prompt_for_story(entries, "s") == "first"
        assert iteration_log.latest_prompt_for_story(entries, "none") is None
