"""
Configuration loaders for storyloop.

Loop settings come from an optional loop.env in the working directory.
Anything not set there falls back to the defaults below.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import envparse
from . import validate
from storyloop.runner.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "loop.env"

DEFAULT_MODEL = "gpt-5.2-codex"
DEFAULT_SANDBOX = "danger-full-access"
VALID_SANDBOXES = ("read-only", "workspace-write", "danger-full-access")

STATE_DIR_ENV = "STORYLOOP_HOME"


@dataclass(frozen=True)
class LoopConfig:
    """Settings for one loop run over a working directory."""
    model: str = DEFAULT_MODEL
    max_iterations: int = 20
    sandbox: str = DEFAULT_SANDBOX
    auto_commit: bool = True
    debug: bool = False
    gh_issues: bool = False
    memory_enabled: bool = True
    iteration_timeout: int = 600  # hard wall-clock bound per agent run
    stall_timeout: int = 120  # no item.completed for this long -> stall
    validation_timeout: int = 300
    max_retries: int = 3
    kill_grace_seconds: int = 5
    memory_timeout: int = 15
    prompt_retention_days: int = 7
    event_retention_hours: int = 24
    output_limit: int = 500  # chars of agent output kept on IterationResult

    def with_overrides(
        self,
        model: Optional[str] = None,
        max_iterations: Optional[int] = None,
        gh_issues: Optional[bool] = None,
    ) -> "LoopConfig":
        """Return a copy with per-invocation overrides applied."""
        changes = {}
        if model:
            changes["model"] = model
        if max_iterations:
            changes["max_iterations"] = max_iterations
        if gh_issues is not None:
            changes["gh_issues"] = gh_issues
        return dataclasses.replace(self, **changes) if changes else self


def resolve_workdir(workdir) -> Path:
    """Expand ~ and make the working directory absolute."""
    return Path(os.path.expanduser(str(workdir))).resolve()


def get_state_dir() -> Path:
    """Directory for cross-project state (persisted prompts, events)."""
    override = os.environ.get(STATE_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".storyloop"


def _config_from_env(env: dict[str, str]) -> dict:
    defaults = LoopConfig()
    sandbox = env.get("SANDBOX", defaults.sandbox)
    if sandbox not in VALID_SANDBOXES:
        logger.warning(
            f"Unknown SANDBOX '{sandbox}', using '{DEFAULT_SANDBOX}'. "
            f"Valid values: {', '.join(VALID_SANDBOXES)}"
        )
        sandbox = DEFAULT_SANDBOX

    return {
        "model": env.get("MODEL", defaults.model),
        "max_iterations": envparse.env_int(env, "MAX_ITERATIONS", defaults.max_iterations),
        "sandbox": sandbox,
        "auto_commit": envparse.env_bool(env, "AUTO_COMMIT", defaults.auto_commit),
        "debug": envparse.env_bool(env, "DEBUG", defaults.debug),
        "gh_issues": envparse.env_bool(env, "GH_ISSUES", defaults.gh_issues),
        "memory_enabled": envparse.env_bool(env, "MEMORY_ENABLED", defaults.memory_enabled),
        "iteration_timeout": envparse.env_int(env, "ITERATION_TIMEOUT", defaults.iteration_timeout),
        "stall_timeout": envparse.env_int(env, "STALL_TIMEOUT", defaults.stall_timeout),
        "validation_timeout": envparse.env_int(env, "VALIDATION_TIMEOUT", defaults.validation_timeout),
        "max_retries": envparse.env_int(env, "MAX_RETRIES", defaults.max_retries),
        "kill_grace_seconds": envparse.env_int(env, "KILL_GRACE_SECONDS", defaults.kill_grace_seconds),
        "memory_timeout": envparse.env_int(env, "MEMORY_TIMEOUT", defaults.memory_timeout),
        "prompt_retention_days": envparse.env_int(env, "PROMPT_RETENTION_DAYS", defaults.prompt_retention_days),
        "event_retention_hours": envparse.env_int(env, "EVENT_RETENTION_HOURS", defaults.event_retention_hours),
        "output_limit": envparse.env_int(env, "OUTPUT_LIMIT", defaults.output_limit),
    }


def load_loop_config(workdir: Path) -> LoopConfig:
    """Load loop.env from the working directory, or return defaults.

    Raises:
        ConfigError: if loop.env exists but is malformed or out of range
    """
    config_path = Path(workdir) / CONFIG_FILENAME
    if not config_path.exists():
        return LoopConfig()

    try:
        values = _config_from_env(envparse.load_env(config_path))
        validate.validate(values, "loop_config")
    except (ValueError, validate.ValidationError) as e:
        raise ConfigError(f"Invalid {CONFIG_FILENAME}: {e}") from None

    logger.debug(f"Loaded loop config from {config_path}")
    return LoopConfig(**values)
