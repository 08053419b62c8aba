"""
Learning extraction from the agent's final message.

The agent is asked to finish with a structured learnings block. When it
returns the structured JSON reply the learnings come straight from there;
otherwise they are pulled out of free text by section headings.
"""

import re
from dataclasses import dataclass
from typing import Optional

MIN_LEARNINGS_LENGTH = 50

LAZY_LEARNING_PATTERNS = [
    re.compile(r"learnings?:\s*(\n\s*-\s*)?none", re.IGNORECASE),
    re.compile(r"nothing\s*(new|notable|to\s*report)", re.IGNORECASE),
    re.compile(r"no\s*(new\s*)?learnings", re.IGNORECASE),
    re.compile(r"learnings?:\s*n/a", re.IGNORECASE),
    re.compile(r"learnings?:\s*-?\s*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"##\s*learnings?\s*\n\s*(none|n/a|\s*$)", re.IGNORECASE | re.MULTILINE),
]

_SECTION_PATTERNS = [
    re.compile(r"## Learnings\s*\n(.*?)(?=\n## [^#]|\n---|\Z)", re.IGNORECASE | re.DOTALL),
    re.compile(r"### Technical Discovery\s*\n(.*?)(?=\n### |\n## |\n---|\Z)", re.IGNORECASE | re.DOTALL),
    re.compile(r"### Gotchas? for Next Iteration\s*\n(.*?)(?=\n### |\n## |\n---|\Z)", re.IGNORECASE | re.DOTALL),
    re.compile(r"### Files Context\s*\n(.*?)(?=\n### |\n## |\n---|\Z)", re.IGNORECASE | re.DOTALL),
]

_FALLBACK_PATTERNS = [
    re.compile(r"learnings?:\s*\n?(.{50,}?)(?=\n## |\n---|\n\n\n)", re.IGNORECASE | re.DOTALL),
    re.compile(r"(?:what i learned|key takeaway|lesson)s?:\s*\n?(.{50,}?)(?=\n## |\n---|\n\n\n)", re.IGNORECASE | re.DOTALL),
]

_STRUCTURED_LABELS = (
    ("technical_discovery", "Technical Discovery"),
    ("gotcha_for_next_iteration", "Gotcha"),
    ("files_context", "Files Context"),
)


@dataclass
class LearningCheck:
    valid: bool
    learnings: str
    reason: Optional[str] = None


def _from_structured(structured: Optional[dict]) -> Optional[dict]:
    if not structured or not isinstance(structured.get("learnings"), dict):
        return None
    return structured["learnings"]


def extract_learnings(final_message: str, structured: Optional[dict] = None) -> str:
    """Learnings text, or "" if none could be found."""
    fields = _from_structured(structured)
    if fields:
        parts = [f"{label}: {fields[key]}" for key, label in _STRUCTURED_LABELS if fields.get(key)]
        if parts:
            return "\n".join(parts)

    message = final_message or ""
    sections = []
    for pattern in _SECTION_PATTERNS:
        match = pattern.search(message)
        if match and match.group(1).strip():
            sections.append(match.group(1).strip())
    if sections:
        return "\n".join(sections)

    for pattern in _FALLBACK_PATTERNS:
        match = pattern.search(message)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return ""


def validate_learnings(final_message: str, structured: Optional[dict] = None) -> LearningCheck:
    fields = _from_structured(structured)
    if fields:
        total = sum(len(fields.get(key) or "") for key, _ in _STRUCTURED_LABELS)
        if total >= MIN_LEARNINGS_LENGTH:
            return LearningCheck(True, extract_learnings(final_message, structured))
        return LearningCheck(
            False, "",
            f"Structured learnings too short ({total} chars, minimum {MIN_LEARNINGS_LENGTH})",
        )

    message = final_message or ""
    if any(p.search(message) for p in LAZY_LEARNING_PATTERNS):
        return LearningCheck(False, "", "Lazy learning pattern detected")

    extracted = extract_learnings(message)
    if len(extracted) < MIN_LEARNINGS_LENGTH:
        return LearningCheck(
            False, extracted,
            f"Learning content too short ({len(extracted)} chars, minimum {MIN_LEARNINGS_LENGTH})",
        )
    return LearningCheck(True, extracted)
