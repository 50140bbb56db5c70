"""Error classification for the summary pipeline.

Every failure the pipeline sees (forum lookups, generation calls, model output
validation) is reduced to one of a closed set of ``ErrorCategory`` values with
user-facing wording, a retryability flag and remediation hints. Technical
detail is kept in ``technical_details`` so it can be logged and stripped
before anything reaches a client.

Classification is an ordered table of ``(predicate, category)`` rules; the
first rule that matches wins:

    explicit category on a ClassifiedError
    network -> rate limit -> timeout -> authentication -> not found
    -> AI processing -> validation -> generic API -> unknown
"""
import asyncio
import re
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from forumbrief.schemas.summary import (
    ErrorCategory,
    Sentiment,
    SummaryData,
    UserFriendlyError,
)

DEFAULT_RETRY_AFTER_SECONDS = 60

RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.NETWORK,
    ErrorCategory.TIMEOUT,
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.AI_PROCESSING,
    ErrorCategory.API,
})

# Milliseconds, rate limits use the extracted retry-after instead
RETRY_DELAYS_MS = {
    ErrorCategory.NETWORK: 5000,
    ErrorCategory.TIMEOUT: 10000,
    ErrorCategory.AI_PROCESSING: 15000,
}
DEFAULT_RETRY_DELAY_MS = 5000

_SECONDS_PATTERN = re.compile(r"(\d+)\s*seconds?", re.IGNORECASE | re.ASCII)
_RETRY_PATTERN = re.compile(r"retry.*?(\d+)", re.IGNORECASE | re.ASCII)
_AI_WORD_PATTERN = re.compile(r"\bai\b")


class ClassifiedError(Exception):
    """An exception that already knows its category."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, category: Optional[ErrorCategory] = None):
        super().__init__(message)
        if category is not None:
            self.category = category


class GenerationValidationError(ClassifiedError):
    """Model output parsed but broke the summary schema."""

    category = ErrorCategory.VALIDATION


class GenerationResponseError(ClassifiedError):
    """Model returned nothing usable (empty content, unparseable JSON)."""

    category = ErrorCategory.AI_PROCESSING


@dataclass(frozen=True)
class ErrorSignal:
    """Normalised view of a failure that classification rules inspect."""

    message: str
    context: str
    exc: Optional[BaseException] = None

    def says(self, *phrases: str) -> bool:
        return any(p in self.message for p in phrases)

    def context_says(self, *phrases: str) -> bool:
        return any(p in self.context for p in phrases)


Rule = Callable[[ErrorSignal], bool]


def _is_network(s: ErrorSignal) -> bool:
    if isinstance(s.exc, (ConnectionError, httpx.NetworkError)):
        return True
    return s.says("network", "fetch", "connection") or s.context_says("network", "fetch")


def _is_rate_limit(s: ErrorSignal) -> bool:
    return s.says("rate limit", "429", "too many requests")


def _is_timeout(s: ErrorSignal) -> bool:
    if isinstance(s.exc, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return True
    return s.says("timeout", "timed out", "etimedout") or s.context_says("timeout")


def _is_authentication(s: ErrorSignal) -> bool:
    return s.says("auth", "401", "unauthorized") or s.context_says("auth")


def _is_not_found(s: ErrorSignal) -> bool:
    return s.says("not found", "404")


def _is_ai_processing(s: ErrorSignal) -> bool:
    if _AI_WORD_PATTERN.search(s.message) or _AI_WORD_PATTERN.search(s.context):
        return True
    return s.says("openai", "gemini", "processing") or s.context_says("analysis")


def _is_validation(s: ErrorSignal) -> bool:
    return s.says("invalid", "validation", "required") or s.context_says("validation")


def _is_service(s: ErrorSignal) -> bool:
    return s.says("api", "server", "service")


CLASSIFICATION_RULES: tuple[tuple[Rule, ErrorCategory], ...] = (
    (_is_network, ErrorCategory.NETWORK),
    (_is_rate_limit, ErrorCategory.RATE_LIMIT),
    (_is_timeout, ErrorCategory.TIMEOUT),
    (_is_authentication, ErrorCategory.AUTHENTICATION),
    (_is_not_found, ErrorCategory.NOT_FOUND),
    (_is_ai_processing, ErrorCategory.AI_PROCESSING),
    (_is_validation, ErrorCategory.VALIDATION),
    (_is_service, ErrorCategory.API),
)


def match_category(signal: ErrorSignal) -> ErrorCategory:
    """First matching rule wins, UNKNOWN when none match."""
    for rule, category in CLASSIFICATION_RULES:
        if rule(signal):
            return category
    return ErrorCategory.UNKNOWN


def extract_retry_after(message: str) -> int:
    """Seconds to wait, from "N seconds" or "retry ... N", default 60."""
    match = _SECONDS_PATTERN.search(message)
    if match:
        return int(match.group(1))
    match = _RETRY_PATTERN.search(message)
    if match:
        return int(match.group(1))
    return DEFAULT_RETRY_AFTER_SECONDS


class ErrorClassifier:
    """Maps arbitrary failures onto ``UserFriendlyError`` values.

    Stateless and deterministic: the same message and context always produce
    the same classification.
    """

    def classify(self, error: object, context: Optional[str] = None) -> UserFriendlyError:
        if isinstance(error, BaseException):
            raw_message = str(error) or type(error).__name__
            exc: Optional[BaseException] = error
        elif isinstance(error, str):
            raw_message = error
            exc = None
        else:
            return self._unknown_error(context)

        technical_details = f"[{context}] {raw_message}" if context else raw_message

        if isinstance(error, ClassifiedError):
            category = error.category
        else:
            signal = ErrorSignal(
                message=raw_message.lower(),
                context=(context or "").lower(),
                exc=exc,
            )
            category = match_category(signal)

        return self._build(category, raw_message, context, technical_details)

    def is_retryable(self, error: UserFriendlyError) -> bool:
        return error.retryable and error.category in RETRYABLE_CATEGORIES

    def get_retry_delay(self, error: UserFriendlyError) -> int:
        """Backoff in milliseconds before an automatic retry, 0 when not retryable."""
        if not self.is_retryable(error):
            return 0
        if error.category == ErrorCategory.RATE_LIMIT:
            return (error.retry_after or DEFAULT_RETRY_AFTER_SECONDS) * 1000
        return RETRY_DELAYS_MS.get(error.category, DEFAULT_RETRY_DELAY_MS)

    def fallback_content(self, error: UserFriendlyError, thread_id: Optional[str] = None) -> SummaryData:
        """Placeholder summary for failures that leave no posts to work from."""
        summary = ["Unable to generate AI summary due to service issues"]
        key_points = ["Thread analysis temporarily unavailable"]

        if error.category == ErrorCategory.NOT_FOUND:
            summary = [f"Thread {thread_id or 'requested'} was not found"]
            key_points = ["Thread may have been deleted or moved"]
        elif error.category == ErrorCategory.NETWORK:
            summary = ["Network connection issues prevented analysis"]
            key_points = ["Please check your internet connection and try again"]
        elif error.category == ErrorCategory.RATE_LIMIT:
            summary = ["Service is temporarily busy with other requests"]
            key_points = [
                f"Please wait {error.retry_after or DEFAULT_RETRY_AFTER_SECONDS} seconds and try again"
            ]
        elif error.category == ErrorCategory.AI_PROCESSING:
            summary = ["AI analysis service is temporarily unavailable"]
            key_points = ["Basic thread information is still accessible"]

        return SummaryData(
            summary=summary,
            key_points=key_points,
            contributors=[],
            sentiment=Sentiment.NEUTRAL,
            health_score=5,
        )

    def _build(
        self,
        category: ErrorCategory,
        raw_message: str,
        context: Optional[str],
        technical_details: str,
    ) -> UserFriendlyError:
        if category == ErrorCategory.NETWORK:
            return UserFriendlyError(
                category=category,
                title="Connection Problem",
                message="Unable to connect to the forum service. Please check your internet connection.",
                actionable=True,
                retryable=True,
                suggestions=[
                    "Check your internet connection",
                    "Try refreshing the page",
                    "Wait a moment and try again",
                ],
                technical_details=technical_details,
            )

        if category == ErrorCategory.RATE_LIMIT:
            retry_after = extract_retry_after(raw_message)
            return UserFriendlyError(
                category=category,
                title="Service Temporarily Busy",
                message=(
                    "The service is currently handling many requests. "
                    f"Please wait {retry_after} seconds and try again."
                ),
                actionable=True,
                retryable=True,
                retry_after=retry_after,
                suggestions=[
                    f"Wait {retry_after} seconds before trying again",
                    "Try again during off-peak hours",
                ],
                technical_details=technical_details,
            )

        if category == ErrorCategory.TIMEOUT:
            return UserFriendlyError(
                category=category,
                title="Request Timed Out",
                message=(
                    "The request took too long to complete. This might be due to a large "
                    "thread or temporary service issues."
                ),
                actionable=True,
                retryable=True,
                suggestions=[
                    "Try again with a smaller thread",
                    "Wait a moment and retry",
                    "Check if the thread ID is correct",
                ],
                technical_details=technical_details,
            )

        if category == ErrorCategory.AUTHENTICATION:
            return UserFriendlyError(
                category=category,
                title="Authentication Required",
                message=(
                    "Unable to access the forum data. The service may need to be "
                    "configured with proper credentials."
                ),
                actionable=False,
                retryable=False,
                suggestions=[
                    "Contact the administrator to configure API access",
                    "Check if the forum service is available",
                ],
                technical_details=technical_details,
            )

        if category == ErrorCategory.NOT_FOUND:
            ctx = (context or "").lower()
            thread_context = any(word in ctx for word in ("thread", "post", "comment"))
            return UserFriendlyError(
                category=category,
                title="Thread Not Found" if thread_context else "Resource Not Found",
                message=(
                    "The requested thread could not be found. Please check the thread ID and try again."
                    if thread_context
                    else "The requested resource could not be found."
                ),
                actionable=True,
                retryable=False,
                suggestions=[
                    "Double-check the identifier",
                    "Make sure the resource exists",
                    "Try browsing to it directly",
                ],
                technical_details=technical_details,
            )

        if category == ErrorCategory.AI_PROCESSING:
            return UserFriendlyError(
                category=category,
                title="Analysis Failed",
                message=(
                    "The AI analysis service encountered an error. A basic summary is available instead."
                ),
                actionable=True,
                retryable=True,
                suggestions=[
                    "Try again in a few moments",
                    "The basic thread statistics are still available",
                    "Consider trying with a different thread",
                ],
                technical_details=technical_details,
            )

        if category == ErrorCategory.VALIDATION:
            return UserFriendlyError(
                category=category,
                title="Invalid Input",
                message="The provided input is not valid. Please check your request and try again.",
                actionable=True,
                retryable=False,
                suggestions=[
                    "Check that the thread ID is correct",
                    "Make sure all required fields are provided",
                    "Try with a different thread",
                ],
                technical_details=technical_details,
            )

        if category == ErrorCategory.API:
            return UserFriendlyError(
                category=category,
                title="Service Error",
                message="The forum service is experiencing issues. Please try again later.",
                actionable=True,
                retryable=True,
                suggestions=[
                    "Wait a few minutes and try again",
                    "Check if the forum service is operational",
                ],
                technical_details=technical_details,
            )

        # Users may retry by hand, automatic retries skip UNKNOWN (see is_retryable)
        return UserFriendlyError(
            category=ErrorCategory.UNKNOWN,
            title="Unexpected Error",
            message=(
                "An unexpected error occurred. Please try again or contact support "
                "if the problem persists."
            ),
            actionable=True,
            retryable=True,
            suggestions=[
                "Try refreshing the page",
                "Wait a moment and try again",
                "Contact support if the problem continues",
            ],
            technical_details=technical_details,
        )

    def _unknown_error(self, context: Optional[str]) -> UserFriendlyError:
        return UserFriendlyError(
            category=ErrorCategory.UNKNOWN,
            title="Unknown Error",
            message="An unknown error occurred while processing your request.",
            actionable=True,
            retryable=True,
            suggestions=[
                "Try refreshing the page",
                "Wait a moment and try again",
                "Contact support if the problem persists",
            ],
            technical_details=f"Context: {context}" if context else None,
        )
