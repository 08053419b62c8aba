"""Tests for storyloop.lib.learnings module."""

import pytest

from storyloop.lib.learnings import extract_learnings, validate_learnings

STRUCTURED = {
    "success": True,
    "summary": "Added the form",
    "files_modified": ["a.ts"],
    "learnings": {
        "technical_discovery": "The router lazily loads pages from src/pages",
        "gotcha_for_next_iteration": "Run codegen before typecheck",
        "files_context": "src/pages/login.tsx owns the form",
    },
    "validation_passed": True,
}

FREE_TEXT = """Implemented the login form.

## Learnings
### Technical Discovery
The router lazily loads pages, so new pages need an entry in routes.ts.
### Gotcha for Next Iteration
Run codegen before typecheck or the generated types are stale.

## Next
Nothing else.
"""


class TestExtractLearnings:
    """Tests for extract_learnings()."""

    def test_structured(self):
        text = extract_learnings("", STRUCTURED)
        assert text.splitlines()[0] == "Technical Discovery: The router lazily loads pages from src/pages"
        assert "Gotcha: Run codegen before typecheck" in text

    def test_sections_from_free_text(self):
        text = extract_learnings(FREE_TEXT)
        assert "routes.ts" in text
        assert "Run codegen before typecheck" in text
        assert "Nothing else" not in text

    def test_fallback_pattern(self):
        message = "All set.\nLearnings:\nThe payment webhook must be idempotent because Stripe retries delivery.\n---\n"
        assert extract_learnings(message).startswith("The payment webhook must be idempotent")

    def test_nothing_found(self):
        assert extract_learnings("Done.") == ""
        assert extract_learnings(None) == ""


class TestValidateLearnings:
    """Tests for validate_learnings()."""

    def test_structured_valid(self):
        check = validate_learnings("", STRUCTURED)
        assert check.valid
        assert check.learnings

    def test_structured_too_short(self):
        short = dict(STRUCTURED, learnings={
            "technical_discovery": "none", "gotcha_for_next_iteration": "", "files_context": "",
        })
        check = validate_learnings("", short)
        assert not check.valid
        assert "too short (4 chars" in check.reason

    def test_free_text_valid(self):
        assert validate_learnings(FREE_TEXT).valid

    @pytest.mark.parametrize("message", [
        "Learnings: none",
        "Nothing new to add.",
        "No new learnings this time.",
        "Learnings: N/A",
        "## Learnings\nnone\n",
    ])
    def test_lazy_patterns(self, message):
        check = validate_learnings(message)
        assert not check.valid
        assert check.reason == "Lazy learning pattern detected"

    def test_short_free_text(self):
        check = validate_learnings("## Learnings\nUse tabs.\n")
        assert not check.valid
        assert "too short" in check.reason
