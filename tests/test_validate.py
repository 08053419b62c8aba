"""Tests for storyloop.lib.validate module."""

import json
import pytest

from storyloop.lib.validate import (
    ValidationError,
    validate,
    is_valid,
    validate_file,
    validate_before_write,
    schema_path,
)


def _prd(**overrides):
    data = {
        "version": "1.0",
        "project_name": "demo",
        "stories": [
            {"id": "story-1", "title": "A", "description": "a", "priority": 1, "passes": False},
        ],
    }
    data.update(overrides)
    return data


class TestPrdSchema:
    """prd.json schema."""

    def test_valid_prd(self):
        validate(_prd(), "prd")

    def test_missing_project_name(self):
        data = _prd()
        del data["project_name"]
        with pytest.raises(ValidationError, match="project_name"):
            validate(data, "prd")

    def test_story_missing_passes(self):
        data = _prd(stories=[{"id": "s", "title": "A", "description": "", "priority": 1}])
        with pytest.raises(ValidationError) as exc:
            validate(data, "prd")
        assert exc.value.path == "stories.0"

    def test_criteria_must_be_strings(self):
        story = {"id": "s", "title": "A", "description": "", "priority": 1, "passes": False,
                 "acceptance_criteria": [1, 2]}
        assert not is_valid(_prd(stories=[story]), "prd")


class TestIterationLogSchema:
    """Iteration log entry schema."""

    def _entry(self, **overrides):
        entry = {
            "timestamp": "2025-01-01T00:00:00", "epoch": 1, "job_id": "j", "iteration_number": 1,
            "story_id": "s", "story_title": "t", "success": False, "validation_passed": False,
            "duration_seconds": 1.5, "tool_calls": 0, "files_modified": [],
        }
        entry.update(overrides)
        return entry

    def test_minimal_entry(self):
        assert is_valid(self._entry(), "iteration_log_entry")

    def test_verification_rejected_category_allowed(self):
        assert is_valid(self._entry(failure_category="verification_rejected"), "iteration_log_entry")

    def test_unknown_category_rejected(self):
        assert not is_valid(self._entry(failure_category="flaky"), "iteration_log_entry")

    def test_termination_values(self):
        assert is_valid(self._entry(termination="stall"), "iteration_log_entry")
        assert not is_valid(self._entry(termination="crash"), "iteration_log_entry")


class TestAgentOutputSchema:
    """Structured agent reply schema."""

    def test_complete_reply(self):
        reply = {
            "success": True,
            "summary": "Added login form",
            "files_modified": ["src/login.tsx"],
            "learnings": {
                "technical_discovery": "x",
                "gotcha_for_next_iteration": "y",
                "files_context": "z",
            },
            "validation_passed": True,
        }
        assert is_valid(reply, "agent_output")

    def test_extra_keys_rejected(self):
        assert not is_valid({"success": True, "extra": 1}, "agent_output")


class TestFileHelpers:
    """validate_file() and validate_before_write()."""

    def test_validate_file_returns_data(self, tmp_path):
        path = tmp_path / "prd.json"
        path.write_text(json.dumps(_prd()))
        assert validate_file(path, "prd")["project_name"] == "demo"

    def test_validate_file_missing(self, tmp_path):
        with pytest.raises(ValidationError, match="File not found"):
            validate_file(tmp_path / "prd.json", "prd")

    def test_validate_file_bad_json(self, tmp_path):
        path = tmp_path / "prd.json"
        path.write_text("{nope")
        with pytest.raises(ValidationError, match="Invalid JSON"):
            validate_file(path, "prd")

    def test_validate_before_write_refuses(self, tmp_path):
        with pytest.raises(ValidationError, match="Refusing to write"):
            validate_before_write({"stories": []}, "prd", tmp_path / "prd.json")

    def test_unknown_schema(self):
        with pytest.raises(ValidationError, match="Schema file not found"):
            validate({}, "does_not_exist")

    def test_schema_path_exists(self):
        assert schema_path("agent_output").exists()
