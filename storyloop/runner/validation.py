"""
Validation command runner.

Runs the story's validation command (or the typecheck-then-test default)
through the shell with a hard timeout. Output is stripped of monorepo
runner noise so the part worth feeding back to the agent fits the cap.
"""

import asyncio
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_VALIDATION_COMMAND = "npm run typecheck 2>/dev/null || tsc --noEmit; npm test 2>/dev/null || true"
DEFAULT_VALIDATION_TIMEOUT = 300
VALIDATION_OUTPUT_LIMIT = 8000

_NOISE_SUBSTRINGS = (
    "Packages in scope:",
    "Running",
    "Remote caching",
    "cache hit, replaying logs",
    "cache miss, executing",
)
_NOISE_PREFIX = re.compile(r"^(Tasks|Duration|Cached):")
_EMPTY_PACKAGE_LINE = re.compile(r"^[@\w-]+:[\w-]+:\s*$")
_PACKAGE_LINE = re.compile(r"^[@\w-]+:[\w-]+:")
_ERROR_INDICATORS = (
    "error", "Error", "TS", "FAIL", "failed",
    "Cannot find", "not assignable", "Property", "Argument",
)


@dataclass
class ValidationResult:
    success: bool
    output: str
    stderr: str = ""
    timed_out: bool = False


def strip_boilerplate(output: str) -> str:
    """Drop turbo-style runner chatter, keep anything that looks like an error."""
    kept = []
    for line in output.split("\n"):
        if any(s in line for s in _NOISE_SUBSTRINGS) or _NOISE_PREFIX.match(line):
            continue
        if _EMPTY_PACKAGE_LINE.match(line):
            continue
        if _PACKAGE_LINE.match(line) and not any(e in line for e in _ERROR_INDICATORS):
            continue
        kept.append(line)

    text = re.sub(r"\n{3,}", "\n\n", "\n".join(kept))
    return text.strip()


def _combine(stdout: str, stderr: str, fallback: str) -> str:
    parts = [p for p in (stderr, stdout) if p]
    return "\n\n".join(parts) if parts else fallback


def run_validation_sync(
    workdir: Path,
    command: Optional[str] = None,
    timeout: int = DEFAULT_VALIDATION_TIMEOUT,
) -> ValidationResult:
    """Run the validation command and capture its output. Never raises."""
    command = command or DEFAULT_VALIDATION_COMMAND
    logger.debug(f"Running validation in {workdir}: {command}")

    try:
        proc = subprocess.run(
            command,
            shell=True,
            cwd=workdir,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        stdout = strip_boilerplate(_decode(e.stdout))
        stderr = strip_boilerplate(_decode(e.stderr))
        output = _combine(stdout, stderr, "")
        message = f"Validation timed out after {timeout}s"
        output = f"{message}\n\n{output}" if output else message
        return ValidationResult(False, output[:VALIDATION_OUTPUT_LIMIT], stderr, timed_out=True)
    except OSError as e:
        return ValidationResult(False, f"Validation failed to start: {e}"[:VALIDATION_OUTPUT_LIMIT])

    stdout = strip_boilerplate(proc.stdout or "")
    if proc.returncode == 0:
        return ValidationResult(True, stdout[:VALIDATION_OUTPUT_LIMIT])

    stderr = strip_boilerplate(proc.stderr or "")
    output = _combine(stdout, stderr, f"Validation failed (exit code {proc.returncode})")
    return ValidationResult(False, output[:VALIDATION_OUTPUT_LIMIT], stderr)


def _decode(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value


async def run_validation(
    workdir: Path,
    command: Optional[str] = None,
    timeout: int = DEFAULT_VALIDATION_TIMEOUT,
) -> ValidationResult:
    """Async wrapper so the engine's event loop keeps running during validation."""
    return await asyncio.to_thread(run_validation_sync, workdir, command, timeout)
