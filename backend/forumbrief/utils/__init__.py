"""Utility functions and helpers."""
from forumbrief.utils.retry import (
    Attempt,
    AttemptOutcome,
    CancelToken,
    RetryResult,
    retry_until_settled,
)

__all__ = [
    "Attempt",
    "AttemptOutcome",
    "CancelToken",
    "RetryResult",
    "retry_until_settled",
]
