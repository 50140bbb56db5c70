"""Bounded, sequential retry driven by tagged attempt outcomes.

Each attempt reports an ``AttemptOutcome`` together with its value and the
backoff to apply before the next attempt. The loop never runs two attempts
concurrently and sleeps between them with ``await`` so other requests keep
being served. Cancellation is a plain ``CancelToken`` value carrying a
deadline and a cancel flag.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    TERMINAL_FAILURE = "terminal_failure"


@dataclass
class Attempt(Generic[T]):
    outcome: AttemptOutcome
    value: T
    retry_delay: float = 0.0  # seconds, only meaningful for RETRYABLE_FAILURE
    label: str = ""  # e.g. the error category, for logs and metrics


@dataclass
class RetryResult(Generic[T]):
    value: T
    outcome: AttemptOutcome
    attempts: int
    cancelled: bool = False


class CancelToken:
    """Deadline plus an explicit cancel flag, passed by value into long operations."""

    def __init__(self, timeout: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._deadline = clock() + timeout if timeout is not None else None
        self._event: Optional[asyncio.Event] = None
        self._cancelled = False

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    def cancel(self) -> None:
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled or self.remaining() == 0.0

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None when unbounded."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def bound(self, timeout: float) -> float:
        """Clamp a per-operation timeout to what is left of the deadline."""
        if self._cancelled:
            return 0.0
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds unless cancelled first. Returns True if cancelled."""
        if self.cancelled:
            return True
        if self._event is None:
            self._event = asyncio.Event()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=self.bound(delay))
        except asyncio.TimeoutError:
            pass
        return self.cancelled


async def retry_until_settled(
    attempt: Callable[[int], Awaitable[Attempt[T]]],
    max_attempts: int,
    token: CancelToken,
    max_delay: float = 60.0,
    name: str = "operation",
    on_retry: Optional[Callable[[Attempt[T]], None]] = None,
) -> RetryResult[T]:
    """Run ``attempt`` until it succeeds, fails terminally, or the budget runs out.

    ``attempt`` receives the 1-based attempt number. The last attempt's value
    is returned whatever its outcome; the caller decides how to present it.

    Example:
        result = await retry_until_settled(generate_once, max_attempts=3, token=CancelToken(30))
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt_no = 0
    while True:
        attempt_no += 1
        current = await attempt(attempt_no)

        if current.outcome != AttemptOutcome.RETRYABLE_FAILURE:
            return RetryResult(value=current.value, outcome=current.outcome, attempts=attempt_no)

        if attempt_no >= max_attempts:
            logger.error(
                "%s exhausted %d attempts (last failure: %s)",
                name, max_attempts, current.label or "unknown",
            )
            return RetryResult(value=current.value, outcome=current.outcome, attempts=attempt_no)

        delay = min(max(current.retry_delay, 0.0), max_delay)
        remaining = token.remaining()
        if token.cancelled or (remaining is not None and remaining <= delay):
            logger.warning(
                "%s not retried: deadline leaves %.1fs, backoff needs %.1fs",
                name, remaining or 0.0, delay,
            )
            return RetryResult(
                value=current.value, outcome=current.outcome, attempts=attempt_no, cancelled=True
            )

        logger.warning(
            "%s failed (%s, attempt %d/%d). Retrying in %.1fs",
            name, current.label or "unknown", attempt_no, max_attempts, delay,
        )
        if on_retry is not None:
            on_retry(current)
        if await token.sleep(delay):
            return RetryResult(
                value=current.value, outcome=current.outcome, attempts=attempt_no, cancelled=True
            )
