"""Shared fixtures for storyloop tests."""

import pytest

from storyloop.lib import prd as prd_store


def make_entry(story_id="story-a", success=False, **overrides):
    """A schema-valid iteration log entry."""
    entry = {
        "timestamp": "2025-01-01T00:00:00",
        "epoch": 1735689600000,
        "job_id": "loop-test",
        "iteration_number": 1,
        "story_id": story_id,
        "story_title": f"Title of {story_id}",
        "success": success,
        "validation_passed": success,
        "failure_category": None if success else "test_failure",
        "duration_seconds": 12.5,
        "tool_calls": 4,
        "tool_names": ["command_execution"],
        "files_modified": ["src/a.ts"],
    }
    entry.update(overrides)
    return entry


@pytest.fixture
def state_dir(tmp_path, monkeypatch):
    """Isolated $STORYLOOP_HOME."""
    home = tmp_path / "state"
    home.mkdir()
    monkeypatch.setenv("STORYLOOP_HOME", str(home))
    return home


@pytest.fixture
def project(tmp_path):
    """A working directory with prd.json holding two pending stories."""
    workdir = tmp_path / "project"
    workdir.mkdir()
    prd_store.init_project(workdir, "demo", "Demo project")
    prd_store.add_story(workdir, "First story", "Do the first thing", priority=1)
    prd_store.add_story(workdir, "Second story", "Do the second thing", priority=2)
    return workdir
