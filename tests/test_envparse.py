"""Tests for storyloop.lib.envparse module."""

import pytest

from storyloop.lib.envparse import parse_env_text, load_env, env_bool, env_int


class TestParseEnvText:
    """Tests for parse_env_text()."""

    def test_parses_simple_pairs(self):
        assert parse_env_text("MODEL=gpt\nMAX_ITERATIONS=5\n") == {
            "MODEL": "gpt",
            "MAX_ITERATIONS": "5",
        }

    def test_strips_quotes(self):
        values = parse_env_text('MODEL="gpt-5"\nSANDBOX=\'read-only\'')
        assert values["MODEL"] == "gpt-5"
        assert values["SANDBOX"] == "read-only"

    def test_ignores_comments_and_blank_lines(self):
        values = parse_env_text("# comment\n\nDEBUG=true\n   \n")
        assert values == {"DEBUG": "true"}

    def test_accepts_export_prefix(self):
        assert parse_env_text("export MODEL=gpt") == {"MODEL": "gpt"}

    def test_rejects_line_without_equals(self):
        with pytest.raises(ValueError, match="expected KEY=value"):
            parse_env_text("MODEL")

    def test_rejects_lowercase_key(self):
        with pytest.raises(ValueError, match="invalid key"):
            parse_env_text("model=gpt")

    @pytest.mark.parametrize("value", ["$(whoami)", "`id`", "${HOME}", "a;b", "a && b", "a | b"])
    def test_rejects_substitution_patterns(self, value):
        with pytest.raises(ValueError, match="forbidden pattern"):
            parse_env_text(f"MODEL={value}")

    def test_error_mentions_source_and_line(self):
        with pytest.raises(ValueError, match="loop.env:2"):
            parse_env_text("A=1\nbad line", source="loop.env")


class TestLoadEnv:
    """Tests for load_env()."""

    def test_reads_file(self, tmp_path):
        path = tmp_path / "loop.env"
        path.write_text("MODEL=gpt\n")
        assert load_env(path) == {"MODEL": "gpt"}

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_env(tmp_path / "nope.env")


class TestTypedReaders:
    """Tests for env_bool() and env_int()."""

    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("1", True), ("YES", True), ("on", True),
        ("false", False), ("0", False), ("no", False), ("Off", False),
    ])
    def test_env_bool_values(self, raw, expected):
        assert env_bool({"X": raw}, "X", not expected) is expected

    def test_env_bool_default_for_missing_or_empty(self):
        assert env_bool({}, "X", True) is True
        assert env_bool({"X": ""}, "X", False) is False

    def test_env_bool_rejects_garbage(self):
        with pytest.raises(ValueError, match="expected a boolean"):
            env_bool({"X": "maybe"}, "X", False)

    def test_env_int(self):
        assert env_int({"N": "42"}, "N", 1) == 42
        assert env_int({}, "N", 7) == 7

    def test_env_int_rejects_garbage(self):
        with pytest.raises(ValueError, match="expected an integer"):
            env_int({"N": "ten"}, "N", 1)
