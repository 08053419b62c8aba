"""
Output verification gate.

Runs after validation passes and before anything is committed. Catches
iterations that are technically green but did not do the work: empty
diffs, no-op sessions, config-only changes for code stories, trivial
diffs, lazy summaries and so on.

Severities:
- REJECT: blocks the commit, the story stays incomplete for a retry
- WARN: recorded with the iteration, commit proceeds

Every check is a pure function of already-captured data. The only I/O is
the pair of local git queries in verify_output().
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from storyloop.git import DiffStats, get_diff_stats, get_diff_content
from storyloop.process.activity import ActivityStats

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    REJECT = "REJECT"
    WARN = "WARN"


@dataclass(frozen=True)
class VerificationCheck:
    name: str
    severity: Severity
    message: str


@dataclass
class VerificationResult:
    passed: bool
    checks: list[VerificationCheck] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    reject_reason: Optional[str] = None
    diff_stats: DiffStats = field(default_factory=DiffStats)
    requires_review: bool = False

    def check_names(self) -> list[str]:
        return [c.name for c in self.checks]


REVIEW_WARNING_THRESHOLD = 3
MIN_SUMMARY_LENGTH = 20
TRIVIAL_DIFF_MAX_LINES = 4
CRITERIA_MIN_TERMS = 3
CRITERIA_MIN_MATCH_RATIO = 0.2

CONFIG_EXTENSIONS = (
    ".json", ".yml", ".yaml", ".toml", ".ini", ".env", ".cfg",
    ".config.js", ".config.ts", ".config.mjs", ".config.cjs",
)
DOC_EXTENSIONS = (".md", ".mdx", ".txt", ".rst")

CONFIG_STORY_KEYWORDS = (
    "config", "build", "setup", "ci/cd", "pipeline", "deploy",
    "infrastructure", "package.json", "tsconfig", "eslint", "prettier", "docker",
)

STOP_WORDS = frozenset({
    "should", "must", "when", "then", "that", "this",
    "with", "from", "have", "been", "will", "given",
})

LAZY_SUMMARY_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"^done\.?$",
        r"^completed\.?$",
        r"^implemented\.?$",
        r"^fixed\.?$",
        r"^updated?\.?$",
        r"^changes? made\.?$",
        r"^all (done|good|set)\.?$",
        r"^task complete\.?$",
    )
]


def is_config_or_doc_file(path: str) -> bool:
    lower = path.lower()
    return lower.endswith(CONFIG_EXTENSIONS) or lower.endswith(DOC_EXTENSIONS)


def is_test_file(path: str) -> bool:
    lower = path.lower()
    if ".test." in lower or ".spec." in lower or "__tests__" in lower:
        return True
    name = Path(lower).name
    return name.startswith("test_") or "_test." in name or "/tests/" in f"/{lower}"


def is_config_story(title: str, description: str) -> bool:
    text = f"{title} {description}".lower()
    return any(keyword in text for keyword in CONFIG_STORY_KEYWORDS)


def extract_key_terms(criteria: list[str]) -> list[str]:
    """Words of 4+ chars from acceptance criteria, minus stop-words.

    Repeats are kept: a word the criteria mention often weighs more in the
    match ratio and counts toward the minimum term count.
    """
    words = re.split(r"[^a-z0-9]+", " ".join(criteria).lower())
    return [w for w in words if len(w) >= 4 and w not in STOP_WORDS]


# Individual checks. Each returns a VerificationCheck or None (pass).

def check_empty_diff(diff: DiffStats, files_modified: list[str]) -> Optional[VerificationCheck]:
    if not files_modified and diff.files_changed == 0:
        return VerificationCheck(
            "empty_diff", Severity.REJECT,
            "No files were modified, the agent produced no changes.",
        )
    return None


def check_zero_tool_calls(tool_calls: int) -> Optional[VerificationCheck]:
    if tool_calls == 0:
        return VerificationCheck(
            "zero_tool_calls", Severity.REJECT,
            "Agent made zero tool calls, likely a no-op session.",
        )
    return None


def check_no_tests(diff: DiffStats, title: str, description: str) -> Optional[VerificationCheck]:
    if is_config_story(title, description):
        return None
    if diff.files and all(is_config_or_doc_file(f) for f in diff.files):
        return None
    if diff.files_changed > 0 and not any(is_test_file(f) for f in diff.files):
        return VerificationCheck(
            "no_tests", Severity.WARN,
            "No test files were modified or created. Consider adding test coverage.",
        )
    return None


def check_config_only(diff: DiffStats, title: str, description: str) -> Optional[VerificationCheck]:
    if diff.files_changed == 0 or is_config_story(title, description):
        return None
    if all(is_config_or_doc_file(f) for f in diff.files):
        return VerificationCheck(
            "config_only", Severity.WARN,
            f"Only config/doc files changed ({', '.join(diff.files)}) but story describes code work.",
        )
    return None


def check_trivial_diff(diff: DiffStats) -> Optional[VerificationCheck]:
    if diff.files_changed == 0:
        return None
    total = diff.total_lines
    if 1 <= total <= TRIVIAL_DIFF_MAX_LINES:
        return VerificationCheck(
            "trivial_diff", Severity.WARN,
            f"Trivial diff: only {total} line(s) changed "
            f"({diff.insertions} insertions, {diff.deletions} deletions).",
        )
    return None


def check_acceptance_criteria(
    criteria: Optional[list[str]],
    diff_content: str,
    summary: str,
) -> Optional[VerificationCheck]:
    if not criteria:
        return None
    terms = extract_key_terms(criteria)
    if len(terms) < CRITERIA_MIN_TERMS:
        return None

    haystack = f"{diff_content} {summary}".lower()
    matched = [t for t in terms if t in haystack]
    if len(matched) / len(terms) < CRITERIA_MIN_MATCH_RATIO:
        missing = [t for t in terms if t not in matched][:5]
        return VerificationCheck(
            "acceptance_criteria_miss", Severity.WARN,
            f"Low acceptance criteria relevance: only {len(matched)}/{len(terms)} key terms "
            f"found in diff+summary. Missing: {', '.join(missing)}",
        )
    return None


def check_self_reported_failure(structured: Optional[dict]) -> Optional[VerificationCheck]:
    if structured is not None and structured.get("success") is False:
        return VerificationCheck(
            "self_reported_failure", Severity.WARN,
            "Agent self-reported failure (success=false) but validation passed. "
            "Possible incomplete work.",
        )
    return None


def check_lazy_summary(summary: Optional[str]) -> Optional[VerificationCheck]:
    text = (summary or "").strip()
    if not text:
        return VerificationCheck("lazy_summary", Severity.WARN, "Agent provided no summary.")
    if len(text) < MIN_SUMMARY_LENGTH:
        return VerificationCheck(
            "lazy_summary", Severity.WARN,
            f'Summary too short ({len(text)} chars): "{text}"',
        )
    if any(p.match(text) for p in LAZY_SUMMARY_PATTERNS):
        return VerificationCheck("lazy_summary", Severity.WARN, f'Lazy summary detected: "{text}"')
    return None


def check_heavy_exploration(activity: Optional[ActivityStats]) -> Optional[VerificationCheck]:
    if activity is not None and activity.heavy_exploration_without_writes:
        return VerificationCheck(
            "heavy_exploration_no_writes", Severity.WARN,
            f"Agent explored {activity.file_explorations} files but wrote to none, "
            f"possible analysis paralysis.",
        )
    return None


def verify(
    *,
    title: str,
    description: str,
    acceptance_criteria: Optional[list[str]],
    diff: DiffStats,
    diff_content: str,
    tool_calls: int,
    files_modified: list[str],
    summary: Optional[str],
    structured: Optional[dict] = None,
    activity: Optional[ActivityStats] = None,
) -> VerificationResult:
    """Run every check and aggregate. Pure: no git, no network."""
    candidates = [
        check_empty_diff(diff, files_modified),
        check_no_tests(diff, title, description),
        check_zero_tool_calls(tool_calls),
        check_config_only(diff, title, description),
        check_trivial_diff(diff),
        check_acceptance_criteria(acceptance_criteria, diff_content, summary or ""),
        check_self_reported_failure(structured),
        check_lazy_summary(summary),
        check_heavy_exploration(activity),
    ]
    checks = [c for c in candidates if c is not None]
    rejects = [c for c in checks if c.severity == Severity.REJECT]
    warns = [c for c in checks if c.severity == Severity.WARN]

    return VerificationResult(
        passed=not rejects,
        checks=checks,
        warnings=[c.message for c in warns],
        reject_reason="; ".join(c.message for c in rejects) if rejects else None,
        diff_stats=diff,
        requires_review=len(warns) >= REVIEW_WARNING_THRESHOLD,
    )


def verify_output(workdir: Path, story, agent_result) -> VerificationResult:
    """Verify an agent run against the current working tree of workdir."""
    diff = get_diff_stats(workdir)
    diff_content = get_diff_content(workdir)

    result = verify(
        title=story.title,
        description=story.description,
        acceptance_criteria=story.acceptance_criteria,
        diff=diff,
        diff_content=diff_content,
        tool_calls=agent_result.tool_calls,
        files_modified=agent_result.files_modified,
        summary=agent_result.summary,
        structured=agent_result.structured,
        activity=agent_result.activity,
    )

    if not result.passed:
        logger.warning(f"Verification rejected {story.id}: {result.reject_reason}")
    elif result.warnings:
        logger.warning(f"Verification warnings for {story.id}: {len(result.warnings)}")
    return result
