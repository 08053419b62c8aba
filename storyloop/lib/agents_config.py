"""
Agent command configuration.

Loads agents.yaml from the working directory to decide which CLI command
runs the coding agent. Without a config file the Codex defaults are used.

COMMAND TEMPLATES
=================

Templates use {variable} placeholders filled from a context dict:
- {prompt}: the iteration prompt. Always passed as a single argument.
- {workdir}: the project working directory.
- {model}: model identifier from loop.env.
- {sandbox}: sandbox/permission mode from loop.env.
- {schema}: path of the structured-output JSON schema.
- {output_file}: file that receives the agent's final message.

Placeholders are substituted after shell-lexing the template, so values with
spaces or quotes never split into extra arguments.
"""

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

AGENTS_FILENAME = "agents.yaml"

DEFAULT_COMMANDS = {
    "iterate": (
        "codex exec --sandbox {sandbox} --json --output-schema {schema} "
        "-o {output_file} -C {workdir} -m {model} {prompt}"
    ),
    "memory_store": "swarm memory store {information} --tags {tags}",
    "memory_find": "swarm memory find {query} --limit {limit}",
}

# Variables each command cannot run without
REQUIRED_VARIABLES = {
    "iterate": ["prompt", "workdir"],
    "memory_store": ["information", "tags"],
    "memory_find": ["query", "limit"],
}

_PLACEHOLDER = re.compile(r'\{(\w+)\}')


@dataclass
class AgentsConfig:
    """Agent configuration from agents.yaml."""
    commands: dict[str, str] = field(default_factory=lambda: DEFAULT_COMMANDS.copy())


def load_agents_config(workdir: Optional[Path]) -> AgentsConfig:
    """Load agents.yaml and merge it over the defaults.

    A missing or unparseable file yields the defaults.
    """
    if workdir is None:
        return AgentsConfig()

    config_path = Path(workdir) / AGENTS_FILENAME
    if not config_path.exists():
        return AgentsConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return AgentsConfig()

    commands = DEFAULT_COMMANDS.copy()
    if isinstance(data, dict) and isinstance(data.get("commands"), dict):
        for name, template in data["commands"].items():
            if isinstance(template, str) and template.strip():
                commands[name] = template
            else:
                logger.warning(f"Ignoring empty command '{name}' in {config_path}")
    return AgentsConfig(commands=commands)


def build_command(
    config: AgentsConfig,
    name: str,
    context: dict[str, str],
) -> list[str]:
    """Build an argv list for a named command.

    Raises:
        ValueError: if the command is unknown or required variables are missing

    Example:
        >>> build_command(AgentsConfig(), "memory_find", {"query": "auth bug", "limit": "3"})
        ['swarm', 'memory', 'find', 'auth bug', '--limit', '3']
    """
    if name not in config.commands:
        raise ValueError(f"Unknown command: {name}")

    missing = [v for v in REQUIRED_VARIABLES.get(name, []) if v not in context]
    if missing:
        raise ValueError(f"Command '{name}' requires variables {missing}")

    argv = []
    for part in shlex.split(config.commands[name]):
        whole = _PLACEHOLDER.fullmatch(part)
        if whole:
            key = whole.group(1)
            if key in context:
                argv.append(str(context[key]))
            else:
                logger.error(f"Command '{name}' has unsubstituted variable: {key}")
                argv.append(part)
            continue
        argv.append(_PLACEHOLDER.sub(
            lambda m: str(context.get(m.group(1), m.group(0))), part
        ))
    return argv
