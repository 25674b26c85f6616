"""Failure classification for user-facing diagnostics and the retry gate.

`classify` maps an error message to a diagnostic category that drives issue
comments, labels and notification copy. `is_retry_eligible` is a separate and
narrower allow-list that decides whether a failed task is retried at all.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Literal


ErrorType = Literal[
    "quota_exceeded",
    "context_overflow",
    "network_error",
    "timeout",
    "git_conflict",
    "unknown",
]

_QUOTA_PATTERNS: Final[tuple[str, ...]] = (
    "quota",
    "rate limit",
    "token limit",
    "insufficient credits",
)
_CONTEXT_PATTERNS: Final[tuple[str, ...]] = (
    "too large",
    "overflow",
    "token limit exceeded",
    "context window",
)
_NETWORK_PATTERNS: Final[tuple[str, ...]] = (
    "network",
    "econnrefused",
    "enotfound",
    "etimedout",
    "econnreset",
    "fetch failed",
)
_TIMEOUT_PATTERNS: Final[tuple[str, ...]] = ("timeout", "timed out")
_GIT_CONFLICT_PATTERNS: Final[tuple[str, ...]] = (
    "conflict",
    "merge",
    "diverged",
    "rejected",
)
_RETRY_ALLOW_LIST: Final[tuple[str, ...]] = (
    "etimedout",
    "econnreset",
    "enotfound",
    "rate limit",
    "network error",
)
_RETRYABLE_TYPES: Final[frozenset[ErrorType]] = frozenset({"network_error", "timeout"})


@dataclass(frozen=True)
class ErrorDetails:
    title: str
    description: str
    suggestions: tuple[str, ...]


@dataclass(frozen=True)
class ErrorClassification:
    error_type: ErrorType
    details: ErrorDetails
    retryable: bool


_DETAILS: Final[dict[ErrorType, ErrorDetails]] = {
    "quota_exceeded": ErrorDetails(
        title="💳 Quota/Token Limit Exceeded",
        description="The coding agent has run out of tokens or hit a quota limit.",
        suggestions=(
            "Wait for quota to reset (usually hourly or daily)",
            "Check the agent account credit balance",
            "Consider upgrading the agent subscription if this happens frequently",
            "Break down large tasks into smaller sub-issues",
        ),
    ),
    "context_overflow": ErrorDetails(
        title="📊 Context Window Overflow",
        description="The task is too large for the agent context window.",
        suggestions=(
            "Break the issue into smaller, focused sub-tasks",
            "Reduce the scope of changes required",
            "Simplify the implementation requirements",
            "Consider manual implementation for very large changes",
        ),
    ),
    "network_error": ErrorDetails(
        title="🌐 Network Error",
        description="A network connection error prevented task completion.",
        suggestions=(
            "This is typically a transient error - retry should work",
            "Check if the agent API is accessible",
            "Verify network connectivity",
            "Check for firewall or proxy issues",
        ),
    ),
    "timeout": ErrorDetails(
        title="⏱️ Task Timeout",
        description="The task took longer than the maximum allowed time.",
        suggestions=(
            "Break the issue into smaller tasks",
            "Simplify the requirements",
            "Increase agent.timeout_seconds if appropriate",
            "Consider if the task is too complex for automation",
        ),
    ),
    "git_conflict": ErrorDetails(
        title="🔀 Git Conflict",
        description="Changes could not be pushed due to conflicts or diverged branches.",
        suggestions=(
            "Someone else may have pushed to the same branch",
            "The base branch may have been updated",
            "Manual intervention may be needed to resolve conflicts",
            "Check the branch state in the repository",
        ),
    ),
    "unknown": ErrorDetails(
        title="❓ Unknown Error",
        description="An unexpected error occurred.",
        suggestions=(
            "Check the error logs for more details",
            "Review the task requirements for issues",
            "Verify all dependencies are available",
            "Contact support if the issue persists",
        ),
    ),
}


def classify(message: str) -> ErrorType:
    text = message.lower()
    if _contains_any(text, _QUOTA_PATTERNS):
        return "quota_exceeded"
    if "context" in text and _contains_any(text, _CONTEXT_PATTERNS):
        return "context_overflow"
    if _contains_any(text, _NETWORK_PATTERNS):
        return "network_error"
    # Checked after network so "etimedout" stays a network error.
    if _contains_any(text, _TIMEOUT_PATTERNS):
        return "timeout"
    if _contains_any(text, _GIT_CONFLICT_PATTERNS):
        return "git_conflict"
    return "unknown"


def error_details(error_type: ErrorType) -> ErrorDetails:
    return _DETAILS.get(error_type, _DETAILS["unknown"])


def is_retry_eligible(message: str) -> bool:
    return _contains_any(message.lower(), _RETRY_ALLOW_LIST)


def classify_error(error: BaseException | str) -> ErrorClassification:
    message = error if isinstance(error, str) else str(error)
    error_type = classify(message)
    return ErrorClassification(
        error_type=error_type,
        details=error_details(error_type),
        retryable=error_type in _RETRYABLE_TYPES,
    )


def _contains_any(text: str, patterns: tuple[str, ...]) -> bool:
    return any(pattern in text for pattern in patterns)
