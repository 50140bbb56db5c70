"""Per-request summary flow: cache lookup, bounded generation retries, caching.

    request -> cache hit -> done
            -> cache miss -> generate -> success -> cache -> done
                                      -> retryable failure -> backoff -> generate ...
                                      -> terminal failure -> done (error + fallback)
"""
import logging
import time
from typing import Optional, Sequence

from forumbrief.metrics import GENERATION_RETRIES, SUMMARY_REQUESTS
from forumbrief.schemas.forum import Post, Thread
from forumbrief.schemas.summary import SummaryResult
from forumbrief.services.cache_manager import CacheKeyError, CacheManager, generate_cache_key
from forumbrief.services.error_classifier import ErrorClassifier
from forumbrief.services.performance_monitor import PerformanceMonitor
from forumbrief.services.summary_generator import SummaryGenerator
from forumbrief.utils.retry import Attempt, AttemptOutcome, CancelToken, retry_until_settled

logger = logging.getLogger(__name__)


class SummaryPipeline:
    def __init__(
        self,
        cache: CacheManager,
        generator: SummaryGenerator,
        monitor: PerformanceMonitor,
        classifier: Optional[ErrorClassifier] = None,
        max_attempts: int = 3,
        retry_max_delay: float = 60.0,
        request_timeout: float = 30.0,
    ):
        self.cache = cache
        self.generator = generator
        self.monitor = monitor
        self.classifier = classifier or generator.classifier
        self.max_attempts = max_attempts
        self.retry_max_delay = retry_max_delay
        self.request_timeout = request_timeout

    async def request_summary(
        self,
        thread: Thread,
        posts: Sequence[Post],
        last_post_timestamp: str,
        token: Optional[CancelToken] = None,
        fetch_time_ms: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> SummaryResult:
        """Summary for ``thread`` at ``last_post_timestamp``. Never raises for request failures.

        Pass ``request_id`` when the caller already opened the monitored request
        (for example before looking the thread up); it is completed here either way.
        """
        if request_id is None:
            request_id = self.monitor.start_request(thread.id)
        if fetch_time_ms is not None:
            self.monitor.record_fetch_time(request_id, fetch_time_ms)
        result: Optional[SummaryResult] = None
        try:
            result = await self._run(request_id, thread, posts, last_post_timestamp, token)
            return result
        finally:
            error = result.error.technical_details if result is not None and result.error else None
            if result is None:
                error = "request aborted"
            self.monitor.complete_request(request_id, error=error)

    async def _run(
        self,
        request_id: str,
        thread: Thread,
        posts: Sequence[Post],
        last_post_timestamp: str,
        token: Optional[CancelToken],
    ) -> SummaryResult:
        try:
            cache_key = generate_cache_key(thread.id, last_post_timestamp)
            entry = self.cache.get(thread.id, last_post_timestamp)
        except CacheKeyError as e:
            SUMMARY_REQUESTS.labels(outcome="error").inc()
            return self.generator.failure_result(e, thread, posts, "cache key validation")

        if entry is not None:
            self.monitor.mark_cache_hit(request_id, cache_key)
            SUMMARY_REQUESTS.labels(outcome="hit").inc()
            return SummaryResult(
                success=True,
                data=entry.data,
                cached=True,
                generated_at=entry.generated_at,
            )

        token = token or CancelToken(self.request_timeout)

        async def attempt(attempt_no: int) -> Attempt[SummaryResult]:
            outcome = await self.generator.generate(
                thread, posts, timeout=token.bound(self.generator.timeout_seconds)
            )
            if outcome.success:
                return Attempt(AttemptOutcome.SUCCESS, outcome)
            error = outcome.error
            if self.classifier.is_retryable(error):
                return Attempt(
                    AttemptOutcome.RETRYABLE_FAILURE,
                    outcome,
                    retry_delay=self.classifier.get_retry_delay(error) / 1000,
                    label=error.category.value,
                )
            return Attempt(AttemptOutcome.TERMINAL_FAILURE, outcome, label=error.category.value)

        def on_retry(failed: Attempt[SummaryResult]) -> None:
            GENERATION_RETRIES.labels(category=failed.label).inc()

        started = time.perf_counter()
        settled = await retry_until_settled(
            attempt,
            max_attempts=self.max_attempts,
            token=token,
            max_delay=self.retry_max_delay,
            name=f"Summary generation for thread {thread.id}",
            on_retry=on_retry,
        )
        self.monitor.record_generation_time(request_id, (time.perf_counter() - started) * 1000)

        result = settled.value.model_copy(update={"attempts": settled.attempts})
        if not result.success:
            SUMMARY_REQUESTS.labels(outcome="error").inc()
            logger.warning(
                "Summary for thread %s failed after %d attempt(s): %s",
                thread.id, settled.attempts, result.error.category.value,
            )
            return result

        entry = self.cache.set(thread.id, last_post_timestamp, result.data)
        SUMMARY_REQUESTS.labels(outcome="fallback" if result.fallback else "generated").inc()
        return result.model_copy(update={"generated_at": entry.generated_at})
