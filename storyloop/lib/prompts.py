"""
Prompt loader and iteration prompt builder.

Templates live in storyloop/prompts/ and use str.format() placeholders.
Use {{ and }} for literal braces. HTML comments (<!-- ... -->) are
stripped before rendering, so they can document a template's variables.
"""

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

__all__ = [
    "PromptError", "load_prompt", "render_prompt", "build_section",
    "build_iteration_prompt", "clear_cache", "PROMPTS_DIR",
]

_HTML_COMMENT_PATTERN = re.compile(r'<!--.*?-->\s*', re.DOTALL)

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

PROGRESS_LIMIT = 2000
MEMORY_LIMIT = 1500
ISSUE_LIMIT = 1500


class PromptError(Exception):
    """Raised when prompt loading or rendering fails."""
    pass


@lru_cache(maxsize=32)
def load_prompt(name: str) -> str:
    """
    Load a prompt template by name (cached).

    Raises:
        PromptError: If prompt file doesn't exist
    """
    prompt_path = PROMPTS_DIR / f"{name}.md"

    if not prompt_path.exists():
        raise PromptError(
            f"Prompt template '{name}' not found. "
            f"Expected file: {prompt_path}"
        )

    logger.debug(f"Loading prompt template: {name}")
    content = _HTML_COMMENT_PATTERN.sub('', prompt_path.read_text())
    return content.lstrip()


def render_prompt(name: str, **kwargs) -> str:
    """
    Load and render a prompt template with variables.

    Raises:
        PromptError: If template not found or required variable missing
    """
    template = load_prompt(name)

    try:
        return template.format(**kwargs)
    except KeyError as e:
        raise PromptError(
            f"Missing required variable {e} in prompt '{name}'. "
            f"Provided: {list(kwargs.keys())}"
        ) from e


def build_section(
    content: Optional[str],
    header: str,
    empty_msg: Optional[str] = None
) -> str:
    """
    Build a markdown section if content exists.

    Returns "" if content is empty and no empty_msg is given.
    """
    if content:
        return f"{header}\n\n{content}\n\n"
    elif empty_msg is not None:
        return f"{header}\n\n{empty_msg}\n\n"
    else:
        return ""


def _trim_head(text: str, limit: int) -> str:
    return text[:limit] + "\n..." if len(text) > limit else text


def build_iteration_prompt(
    prd,
    story,
    progress: str = "",
    previous_attempt: str = "",
    structured_context: str = "",
    failure_patterns: str = "",
    memory_context: str = "",
    previous_behavior: str = "",
    issue_context: str = "",
) -> str:
    """Assemble the full prompt for one iteration on `story`."""
    criteria = ""
    if story.acceptance_criteria:
        criteria = "\n".join(f"{i}. {c}" for i, c in enumerate(story.acceptance_criteria, 1))

    validation = f"Run: `{story.validation_command}`" if story.validation_command else ""

    if len(progress) > PROGRESS_LIMIT:
        progress = "...\n" + progress[-PROGRESS_LIMIT:]

    if previous_attempt:
        previous_attempt = (
            "You are retrying a story that previously failed. Study what was tried and "
            "where it broke. Do NOT repeat an approach that failed.\n\n" + previous_attempt
        )
    if failure_patterns:
        failure_patterns = (
            "These patterns were detected across recent iterations. "
            "Acknowledge and address them.\n\n" + failure_patterns
        )

    issue_header = f"## GitHub Issue #{story.issue_number or '?'}"

    return render_prompt(
        "iteration",
        project_name=prd.project_name,
        project_description=prd.description or "",
        story_title=story.title,
        story_id=story.id,
        priority=story.priority,
        story_description=story.description,
        criteria_section=build_section(criteria, "### Acceptance Criteria"),
        validation_section=build_section(validation, "### Validation"),
        progress_section=build_section(progress, "## Previous Progress"),
        previous_attempt_section=build_section(previous_attempt, "## Previous Attempt"),
        structured_section=build_section(structured_context, "## Structured Context"),
        failure_section=build_section(failure_patterns, "## Failure Pattern Analysis"),
        memory_section=build_section(
            _trim_head(memory_context, MEMORY_LIMIT) if memory_context else "",
            "## Prior Learnings",
        ),
        behavior_section=f"{previous_behavior}\n\n" if previous_behavior else "",
        issue_section=build_section(issue_context[:ISSUE_LIMIT], issue_header),
    )


def clear_cache():
    """Clear the prompt cache (useful for testing or hot-reload)."""
    load_prompt.cache_clear()
