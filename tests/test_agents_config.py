"""Tests for agents_config module."""

import pytest

from storyloop.lib.agents_config import (
    AgentsConfig,
    load_agents_config,
    build_command,
    DEFAULT_COMMANDS,
)


class TestLoadAgentsConfig:
    """Tests for load_agents_config()."""

    def test_returns_defaults_when_no_workdir(self):
        config = load_agents_config(None)
        assert config.commands == DEFAULT_COMMANDS

    def test_returns_defaults_when_file_missing(self, tmp_path):
        config = load_agents_config(tmp_path)
        assert config.commands == DEFAULT_COMMANDS

    def test_loads_custom_config(self, tmp_path):
        (tmp_path / "agents.yaml").write_text(
            "commands:\n  iterate: my-agent --json -C {workdir} {prompt}\n"
        )
        config = load_agents_config(tmp_path)
        assert config.commands["iterate"] == "my-agent --json -C {workdir} {prompt}"
        # Other commands should still have defaults
        assert config.commands["memory_find"] == DEFAULT_COMMANDS["memory_find"]

    def test_handles_invalid_yaml(self, tmp_path):
        (tmp_path / "agents.yaml").write_text("commands: [unclosed\n")
        config = load_agents_config(tmp_path)
        assert config.commands == DEFAULT_COMMANDS

    def test_ignores_empty_templates(self, tmp_path, caplog):
        (tmp_path / "agents.yaml").write_text("commands:\n  iterate: ''\n")
        config = load_agents_config(tmp_path)
        assert config.commands["iterate"] == DEFAULT_COMMANDS["iterate"]
        assert "Ignoring empty command 'iterate'" in caplog.text

    def test_defaults_not_shared_between_instances(self):
        a = AgentsConfig()
        a.commands["iterate"] = "changed"
        assert AgentsConfig().commands["iterate"] == DEFAULT_COMMANDS["iterate"]


class TestBuildCommand:
    """Tests for build_command()."""

    def test_prompt_stays_single_argument(self):
        argv = build_command(AgentsConfig(), "iterate", {
            "prompt": "Implement the 'login' form; don't break it",
            "workdir": "/repo",
            "model": "gpt",
            "sandbox": "read-only",
            "schema": "/s.json",
            "output_file": "/tmp/out",
        })
        assert argv[0] == "codex"
        assert argv[-1] == "Implement the 'login' form; don't break it"
        assert argv[argv.index("-C") + 1] == "/repo"
        assert argv[argv.index("--sandbox") + 1] == "read-only"

    def test_unknown_command(self):
        with pytest.raises(ValueError, match="Unknown command"):
            build_command(AgentsConfig(), "review", {})

    def test_missing_required_variable(self):
        with pytest.raises(ValueError, match="requires variables"):
            build_command(AgentsConfig(), "iterate", {"workdir": "/repo"})

    def test_embedded_placeholder(self):
        config = AgentsConfig(commands={"iterate": "agent --dir={workdir} {prompt}"})
        argv = build_command(config, "iterate", {"workdir": "/a b", "prompt": "p"})
        assert argv == ["agent", "--dir=/a b", "p"]

    def test_unsubstituted_placeholder_left_in_place(self, caplog):
        config = AgentsConfig(commands={"iterate": "agent {prompt} {workdir} {extra}"})
        argv = build_command(config, "iterate", {"workdir": "/r", "prompt": "p"})
        assert argv[-1] == "{extra}"
        assert "unsubstituted variable: extra" in caplog.text

    def test_memory_find(self):
        argv = build_command(AgentsConfig(), "memory_find", {"query": "auth bug", "limit": "3"})
        assert argv == ["swarm", "memory", "find", "auth bug", "--limit", "3"]
