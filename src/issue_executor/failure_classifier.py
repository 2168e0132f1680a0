"""Deterministic failure classification for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

FAILURE_CLASSIFIER_VERSION = 1

# Retrying cannot fix these: missing binaries/files, access, network, dependencies.
_NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "enoent",
    "no such file or directory",
    "permission denied",
    "eacces",
    "not found",
    "connection refused",
    "econnrefused",
    "etimedout",
    "timed out",
    "dependency",
    "missing",
)
_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "type error",
    "typeerror",
    "syntax error",
    "syntaxerror",
    "test failed",
    "tests failed",
    "assertion",
    "build failed",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized classification result."""

    retryable: bool
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "retryable": self.retryable,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(*, stderr: str, stdout: str) -> FailureClassification:
    """Classify a failed attempt from its captured streams."""

    haystack = _normalize_text(stdout=stdout, stderr=stderr)

    pattern = _first_match(haystack, _NON_RETRYABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            retryable=False,
            matched_rule="non_retryable",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RETRYABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            retryable=True,
            matched_rule="retryable",
            matched_pattern=pattern,
        )

    return FailureClassification(
        retryable=True,
        matched_rule="fallback_retryable",
        matched_pattern=None,
    )


def should_retry(stderr_text: str, stdout_text: str) -> bool:
    """Whether another attempt could plausibly succeed."""

    return classify_failure(stderr=stderr_text, stdout=stdout_text).retryable


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stderr}\n{stdout}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
