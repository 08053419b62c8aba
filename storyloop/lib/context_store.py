"""
Inter-story context for the next prompt.

Two sources feed the agent's view of what happened before:
- .storyloop-context.json: latest outcome per story plus recent failures
- the durable iteration log: recurring failure categories across stories
  and the failure history of the story being retried
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

CONTEXT_FILENAME = ".storyloop-context.json"
MAX_FAILURES = 20
RECENT_LIMIT = 10
FAILURE_PATTERN_LIMIT = 2000
PREVIOUS_ATTEMPT_LIMIT = 3000


@dataclass
class StoryOutcome:
    id: str
    title: str
    status: str  # completed | failed
    files_modified: list[str] = field(default_factory=list)
    learnings: str = ""


@dataclass
class FailureRecord:
    story_id: str
    category: str
    error: str
    story_title: Optional[str] = None
    tool_names: list[str] = field(default_factory=list)
    iteration_number: Optional[int] = None


@dataclass
class StoryContext:
    stories: list[StoryOutcome] = field(default_factory=list)
    failures: list[FailureRecord] = field(default_factory=list)


def context_path(workdir: Path) -> Path:
    return Path(workdir) / CONTEXT_FILENAME


def read_context(workdir: Path) -> StoryContext:
    """Load the context file. Missing or unreadable files yield an empty context."""
    path = context_path(workdir)
    if not path.exists():
        return StoryContext()
    try:
        data = json.loads(path.read_text())
        return StoryContext(
            stories=[StoryOutcome(**s) for s in data.get("stories", [])],
            failures=[FailureRecord(**f) for f in data.get("failures", [])],
        )
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, TypeError, AttributeError) as e:
        logger.warning(f"Ignoring unreadable {CONTEXT_FILENAME}: {e}")
        return StoryContext()


def write_context(workdir: Path, ctx: StoryContext) -> None:
    data = {
        "stories": [asdict(s) for s in ctx.stories],
        "failures": [asdict(f) for f in ctx.failures],
    }
    context_path(workdir).write_text(json.dumps(data, indent=2))


def add_story_outcome(workdir: Path, outcome: StoryOutcome) -> None:
    """Replace the entry for this story id, or append."""
    ctx = read_context(workdir)
    for i, existing in enumerate(ctx.stories):
        if existing.id == outcome.id:
            ctx.stories[i] = outcome
            break
    else:
        ctx.stories.append(outcome)
    write_context(workdir, ctx)


def add_failure(workdir: Path, failure: FailureRecord) -> None:
    ctx = read_context(workdir)
    ctx.failures.append(failure)
    ctx.failures = ctx.failures[-MAX_FAILURES:]
    write_context(workdir, ctx)


def build_context_snippet(workdir: Path) -> str:
    ctx = read_context(workdir)
    if not ctx.stories and not ctx.failures:
        return ""

    parts = []
    counts = Counter(f.category for f in ctx.failures)
    if counts:
        parts.append("Failure frequency: " + ", ".join(f"{k}: {v}" for k, v in counts.items()))

    completed = [s for s in ctx.stories if s.status == "completed"][-RECENT_LIMIT:]
    if completed:
        parts.append("Recent completions:")
        parts.extend(f"  - {s.title}: {s.learnings[:500]}" for s in completed)

    failures = ctx.failures[-RECENT_LIMIT:]
    if failures:
        parts.append("Recent failures:")
        parts.extend(f"  - [{f.category}] Story {f.story_id}: {f.error[:400]}" for f in failures)

    return "\n".join(parts)


def _dedupe(values) -> list:
    seen = []
    for v in values:
        if v not in seen:
            seen.append(v)
    return seen


def _cap(text: str, limit: int) -> str:
    return text[:limit] + "\n..." if len(text) > limit else text


def build_failure_patterns(entries: list[dict]) -> str:
    """Summarise failure categories that recur among the last 20 failed iterations."""
    failed = [e for e in entries if e.get("success") is False][-MAX_FAILURES:]
    if not failed:
        return ""

    by_category: dict[str, list[dict]] = {}
    for entry in failed:
        by_category.setdefault(entry.get("failure_category") or "unknown", []).append(entry)

    parts = []
    for category, group in by_category.items():
        if len(group) < 2:
            continue
        stories = _dedupe(e.get("story_title", "") for e in group)[:5]
        tools = _dedupe(t for e in group for t in e.get("tool_names", []))[:10]
        last_error = (group[-1].get("validation_output") or "")[:300] or "no output captured"
        parts.append("\n".join([
            f"REPEATED FAILURE: {category} ({len(group)} occurrences)",
            f"  Stories affected: {', '.join(stories)}",
            f"  Tools used: {', '.join(tools) or 'unknown'}",
            f"  Last error: {last_error}",
            "  ACTION REQUIRED: This pattern is recurring. Address the root cause, not just the symptom.",
        ]))

    tool_counts = Counter(t for e in failed for t in e.get("tool_names", []))
    if tool_counts:
        top = ", ".join(f"{tool} ({n}x)" for tool, n in tool_counts.most_common(5))
        parts.append(f"Tools in failed iterations: {top}")

    return _cap("\n\n".join(parts), FAILURE_PATTERN_LIMIT)


def build_previous_attempt(entries: list[dict], story_id: str) -> str:
    """What went wrong the last time(s) this story was attempted."""
    failed = [
        e for e in entries
        if e.get("story_id") == story_id and e.get("success") is False
    ][-3:]
    if not failed:
        return ""

    last = failed[-1]
    parts = [
        f"Previous attempt failed ({last.get('failure_category') or 'unknown'}, "
        f"{round(last.get('duration_seconds', 0))}s)",
        f"Tools used: {', '.join(last.get('tool_names', [])) or 'none'}",
        f"Files touched: {', '.join(last.get('files_modified', [])) or 'none'}",
    ]
    if last.get("validation_output"):
        parts.append("\nValidation error:")
        parts.append(last["validation_output"][:1000])
    if len(failed) > 1:
        sequence = " -> ".join(e.get("failure_category") or "unknown" for e in failed)
        parts.append(f"\nThis story has failed {len(failed)} times: {sequence}")

    return _cap("\n".join(parts), PREVIOUS_ATTEMPT_LIMIT)
