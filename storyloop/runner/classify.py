"""
Failure classification for validation and agent output.

Categories are checked in table order against lower-cased text and the
first match wins. A lint failure that also mentions "assert" is a
lint_error because lint is checked before tests.
"""

from enum import Enum
from typing import Callable


class FailureCategory(str, Enum):
    TIMEOUT = "timeout"
    TYPE_ERROR = "type_error"
    LINT_ERROR = "lint_error"
    TEST_FAILURE = "test_failure"
    BUILD_ERROR = "build_error"
    UNKNOWN = "unknown"
    # Assigned by the iteration runner, never by classify_failure()
    VERIFICATION_REJECTED = "verification_rejected"


def _any_of(*needles: str) -> Callable[[str], bool]:
    return lambda text: any(n in text for n in needles)


def _type_error(text: str) -> bool:
    return (
        "error ts" in text
        or "ts(" in text
        or ("type" in text and "not assignable" in text)
        or "cannot find name" in text
    )


# Ordered (category, predicate) table. Order is part of the contract.
FAILURE_RULES: tuple[tuple[FailureCategory, Callable[[str], bool]], ...] = (
    (FailureCategory.TIMEOUT, _any_of("timeout", "exceeded 10 minutes", "timed out")),
    (FailureCategory.TYPE_ERROR, _type_error),
    (FailureCategory.LINT_ERROR, _any_of("eslint", "prettier", "lint")),
    (FailureCategory.TEST_FAILURE, _any_of(
        "assert", "expect(", "test fail", "tests failed", "test suites failed",
    )),
    (FailureCategory.BUILD_ERROR, _any_of(
        "build fail", "bundle", "esbuild", "webpack", "rollup", "vite",
    )),
)


def classify_failure(output: str) -> FailureCategory:
    """Map free-text failure output to exactly one category."""
    text = (output or "").lower()
    for category, matches in FAILURE_RULES:
        if matches(text):
            return category
    return FailureCategory.UNKNOWN
