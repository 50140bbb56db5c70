import time

import pytest

from conftest import FakeGenerationClient
from forumbrief.schemas.summary import ErrorCategory, Sentiment
from forumbrief.services.cache_manager import CacheManager
from forumbrief.services.performance_monitor import PerformanceMonitor
from forumbrief.services.summary_generator import SummaryGenerator
from forumbrief.services.summary_pipeline import SummaryPipeline
from forumbrief.utils.retry import CancelToken


def _pipeline(client, max_attempts=3, retry_max_delay=0.0, request_timeout=30.0):
    return SummaryPipeline(
        cache=CacheManager(),
        generator=SummaryGenerator(client),
        monitor=PerformanceMonitor(),
        max_attempts=max_attempts,
        retry_max_delay=retry_max_delay,
        request_timeout=request_timeout,
    )


@pytest.mark.asyncio
async def test_cache_miss_then_hit(thread, posts):
    client = FakeGenerationClient()
    pipeline = _pipeline(client)

    first = await pipeline.request_summary(thread, posts, "1700000000000")
    second = await pipeline.request_summary(thread, posts, "1700000000000")

    assert first.success is True
    assert first.cached is False
    assert first.attempts == 1
    assert first.generated_at
    assert second.success is True
    assert second.cached is True
    assert second.data == first.data
    assert second.generated_at == first.generated_at
    assert client.calls == 1


@pytest.mark.asyncio
async def test_new_activity_regenerates(thread, posts):
    client = FakeGenerationClient()
    pipeline = _pipeline(client)

    await pipeline.request_summary(thread, posts, "100")
    result = await pipeline.request_summary(thread, posts, "200")

    assert result.cached is False
    assert client.calls == 2
    assert pipeline.cache.get_all_keys() == ["summary_thread-1_200"]


@pytest.mark.asyncio
async def test_retryable_failure_then_success(thread, posts):
    client = FakeGenerationClient(ConnectionError("connection reset"), ConnectionError("connection reset"), {
        "summary": ["Recovered"],
        "keyPoints": ["a", "b", "c"],
        "contributors": [
            {"username": "alice", "contribution": "x"},
            {"username": "bob", "contribution": "y"},
        ],
        "sentiment": "Mixed",
        "healthScore": 5,
    })
    pipeline = _pipeline(client)

    result = await pipeline.request_summary(thread, posts, "100")

    assert result.success is True
    assert result.attempts == 3
    assert result.data.summary == ["Recovered"]
    assert pipeline.cache.has("thread-1", "100")


@pytest.mark.asyncio
async def test_terminal_failure_is_not_retried(thread, posts, valid_summary):
    valid_summary["healthScore"] = 42
    client = FakeGenerationClient(valid_summary)
    pipeline = _pipeline(client)

    result = await pipeline.request_summary(thread, posts, "100")

    assert result.success is False
    assert result.fallback is True
    assert result.error.category == ErrorCategory.VALIDATION
    assert result.attempts == 1
    assert client.calls == 1
    assert result.data.sentiment == Sentiment.NEUTRAL
    assert pipeline.cache.get_all_keys() == []


@pytest.mark.asyncio
async def test_attempt_ceiling(thread, posts):
    client = FakeGenerationClient(ConnectionError("connection reset"))
    pipeline = _pipeline(client, max_attempts=3)

    result = await pipeline.request_summary(thread, posts, "100")

    assert result.success is False
    assert result.error.category == ErrorCategory.NETWORK
    assert result.attempts == 3
    assert client.calls == 3


@pytest.mark.asyncio
async def test_deadline_shorter_than_backoff_stops_retrying(thread, posts):
    client = FakeGenerationClient("")  # AI processing failure, 15s backoff
    pipeline = _pipeline(client, retry_max_delay=60.0)

    start = time.perf_counter()
    result = await pipeline.request_summary(thread, posts, "100", token=CancelToken(timeout=1.0))

    assert time.perf_counter() - start < 1.0
    assert result.success is False
    assert result.error.category == ErrorCategory.AI_PROCESSING
    assert client.calls == 1


@pytest.mark.asyncio
async def test_cancelled_token_yields_classified_result(thread, posts):
    client = FakeGenerationClient()
    token = CancelToken()
    token.cancel()

    result = await _pipeline(client).request_summary(thread, posts, "100", token=token)

    assert client.calls == 0
    assert result.success is False
    assert result.error.category == ErrorCategory.TIMEOUT
    assert result.data is not None


@pytest.mark.asyncio
async def test_empty_thread_result_is_cached(thread):
    client = FakeGenerationClient()
    pipeline = _pipeline(client)

    first = await pipeline.request_summary(thread, [], "100")
    second = await pipeline.request_summary(thread, [], "100")

    assert first.success is True
    assert first.fallback is True
    assert first.data.health_score == 0
    assert second.cached is True
    assert client.calls == 0


@pytest.mark.asyncio
async def test_invalid_timestamp_is_classified(thread, posts):
    client = FakeGenerationClient()
    pipeline = _pipeline(client)

    result = await pipeline.request_summary(thread, posts, "not-a-timestamp")

    assert result.success is False
    assert result.error.category == ErrorCategory.VALIDATION
    assert result.fallback is True
    assert result.data is not None
    assert client.calls == 0


@pytest.mark.asyncio
async def test_requests_are_monitored(thread, posts):
    pipeline = _pipeline(FakeGenerationClient())

    await pipeline.request_summary(thread, posts, "100", fetch_time_ms=12.0)
    await pipeline.request_summary(thread, posts, "100")

    stats = pipeline.monitor.get_stats()
    assert stats.total_requests == 2
    assert stats.cached_requests == 1
    assert stats.error_rate == 0.0

    analysis = pipeline.monitor.get_cache_analysis()
    miss = analysis.recent_cache_misses[0]
    assert miss.fetch_time == 12.0
    assert miss.generation_time is not None
    assert analysis.recent_cache_hits[0].cache_key == "summary_thread-1_100"


@pytest.mark.asyncio
async def test_failures_are_monitored_as_errors(thread, posts):
    pipeline = _pipeline(FakeGenerationClient(ConnectionError("connection reset")), max_attempts=1)

    await pipeline.request_summary(thread, posts, "100")

    assert pipeline.monitor.get_stats().error_rate == 1.0


@pytest.mark.asyncio
async def test_caller_opened_request_is_completed(thread, posts):
    pipeline = _pipeline(FakeGenerationClient())
    request_id = pipeline.monitor.start_request(thread.id)

    await pipeline.request_summary(thread, posts, "100", fetch_time_ms=5.0, request_id=request_id)

    stats = pipeline.monitor.get_stats()
    assert stats.total_requests == 1
    miss = pipeline.monitor.get_cache_analysis().recent_cache_misses[0]
    assert miss.request_id == request_id
    assert miss.fetch_time == 5.0
