import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from conftest import FakeGenerationClient, VALID_SUMMARY
from forumbrief.config import Settings
from forumbrief.main import create_app
from forumbrief.services.container import build_services

THREAD = {
    "id": "t1",
    "title": "Caching summaries",
    "body": "How should we cache generated summaries for busy threads?",
    "createdAt": "2024-01-01T00:00:00Z",
    "updatedAt": "2024-01-01T00:00:00Z",
    "user": {"id": "u0", "username": "op"},
}

POSTS = [
    {
        "id": f"p{i}",
        "body": f"Reply {i}: key the cache on the latest activity so stale summaries drop out.",
        "threadId": "t1",
        "userId": f"u{i % 2}",
        "createdAt": f"2024-01-01T00:0{i}:00Z",
        "user": {"id": f"u{i % 2}", "username": ["alice", "bob"][i % 2]},
    }
    for i in range(1, 4)
]


def forum_handler(posts_by_thread=None, status_by_thread=None):
    posts_by_thread = posts_by_thread if posts_by_thread is not None else {"t1": POSTS}
    status_by_thread = status_by_thread or {}

    def handler(request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        thread_id = parts[1]
        if thread_id in status_by_thread:
            return httpx.Response(status_by_thread[thread_id])
        if thread_id not in posts_by_thread:
            return httpx.Response(404)
        if len(parts) == 3:
            return httpx.Response(200, json=posts_by_thread[thread_id])
        return httpx.Response(200, json=dict(THREAD, id=thread_id))

    return handler


def make_app(generation_client=None, handler=None):
    settings = Settings()
    services = build_services(
        settings,
        generation_client=generation_client or FakeGenerationClient(),
        forums_transport=httpx.MockTransport(handler or forum_handler()),
    )
    return create_app(settings=settings, services=services)


def _client(app):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_summarize_miss_then_hit():
    generation = FakeGenerationClient()
    app = make_app(generation)

    async with _client(app) as client:
        first = await client.post("/api/summarize", json={"threadId": "t1"})
        second = await client.post("/api/summarize", json={"threadId": "t1"})

    assert first.status_code == 200
    assert first.headers["X-Cache-Status"] == "MISS"
    assert first.headers["X-AI-Status"] == "SUCCESS"
    assert first.headers["X-Response-Time"].endswith("ms")
    assert "X-Request-ID" in first.headers

    body = first.json()
    assert body["success"] is True
    assert body["cached"] is False
    assert body["data"]["keyPoints"] == VALID_SUMMARY["keyPoints"]
    assert body["data"]["healthScore"] == 8
    assert body["data"]["healthLabel"] == "Healthy"
    assert body["generatedAt"]

    assert second.status_code == 200
    assert second.headers["X-Cache-Status"] == "HIT"
    assert second.json()["cached"] is True
    assert second.json()["generatedAt"] == body["generatedAt"]
    assert generation.calls == 1


@pytest.mark.asyncio
async def test_empty_thread_is_a_fallback_success():
    app = make_app(handler=forum_handler(posts_by_thread={"t1": []}))

    async with _client(app) as client:
        response = await client.post("/api/summarize", json={"threadId": "t1"})

    assert response.status_code == 200
    assert response.headers["X-AI-Status"] == "FALLBACK"
    body = response.json()
    assert body["fallback"] is True
    assert body["data"]["sentiment"] == "No Discussion"
    assert body["data"]["healthLabel"] == "New Thread"


@pytest.mark.asyncio
@pytest.mark.parametrize("thread_id", ["", "bad id!", "../etc", "x" * 101])
async def test_invalid_thread_id(thread_id):
    app = make_app()

    async with _client(app) as client:
        response = await client.post("/api/summarize", json={"threadId": thread_id})

    assert response.status_code == 400
    assert response.headers["X-Error-Category"] == "VALIDATION"
    body = response.json()
    assert body["success"] is False
    assert body["error"]["category"] == "VALIDATION"


@pytest.mark.asyncio
async def test_missing_thread_id_is_rejected():
    async with _client(make_app()) as client:
        response = await client.post("/api/summarize", json={})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unknown_thread_is_404():
    async with _client(make_app()) as client:
        response = await client.post("/api/summarize", json={"threadId": "missing"})

    assert response.status_code == 404
    assert response.headers["X-Error-Category"] == "NOT_FOUND"
    assert response.headers["X-Retryable"] == "false"
    assert response.headers["X-Cache-Status"] == "ERROR"
    body = response.json()
    assert body["error"]["title"] == "Thread Not Found"
    assert "technicalDetails" not in body["error"]
    assert body["data"]["summary"] == ["Thread missing was not found"]


@pytest.mark.asyncio
async def test_forum_rate_limit_is_429():
    app = make_app(handler=forum_handler(status_by_thread={"t1": 429}))

    async with _client(app) as client:
        response = await client.post("/api/summarize", json={"threadId": "t1"})

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"
    assert response.headers["X-Retryable"] == "true"
    assert response.json()["error"]["retryAfter"] == 60


@pytest.mark.asyncio
async def test_generation_failure_returns_fallback():
    generation = FakeGenerationClient(ConnectionError("connection reset"))
    app = make_app(generation)

    async with _client(app) as client:
        response = await client.post("/api/summarize", json={"threadId": "t1"})

    assert response.status_code == 500
    assert response.headers["X-AI-Status"] == "FAILED"
    assert response.headers["X-Error-Category"] == "NETWORK"
    body = response.json()
    assert body["success"] is False
    assert body["fallback"] is True
    assert body["data"]["summary"] == ["Thread contains 3 posts from 2 contributors"]
    assert "technicalDetails" not in body["error"]
    assert generation.calls == 3


@pytest.mark.asyncio
async def test_stats_and_invalidation():
    app = make_app()

    async with _client(app) as client:
        await client.post("/api/summarize", json={"threadId": "t1"})
        await client.post("/api/summarize", json={"threadId": "t1"})
        stats = (await client.get("/api/summaries/stats")).json()
        invalidated = await client.delete("/api/summaries/t1/cache")
        after = (await client.get("/api/summaries/stats")).json()

    assert stats["cache"]["stats"]["hits"] == 1
    assert stats["cache"]["stats"]["total_requests"] == 2
    assert stats["cache"]["size"]["entries"] == 1
    assert stats["performance"]["total_requests"] == 2
    assert stats["performance"]["cached_requests"] == 1
    assert invalidated.json() == {"threadId": "t1", "invalidated": 1}
    assert after["cache"]["size"]["entries"] == 0


@pytest.mark.asyncio
async def test_invalidate_rejects_bad_id():
    async with _client(make_app()) as client:
        response = await client.delete("/api/summaries/bad id/cache")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_health():
    async with _client(make_app()) as client:
        response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["cache"]["entries"] == 0
    assert body["cache"]["maxEntries"] == 1000


@pytest.mark.asyncio
async def test_request_id_is_echoed():
    async with _client(make_app()) as client:
        response = await client.get("/health", headers={"X-Request-ID": "trace-123"})

    assert response.headers["X-Request-ID"] == "trace-123"


@pytest.mark.asyncio
async def test_lifespan_starts_and_stops_sweep():
    app = make_app()
    services = app.state.services

    async with app.router.lifespan_context(app):
        assert services.cache.running is True

    assert services.cache.running is False
    assert services.generation_client.closed is True


@pytest.mark.asyncio
async def test_unknown_thread_with_keyword_id_is_404():
    async with _client(make_app()) as client:
        response = await client.post("/api/summarize", json={"threadId": "author-guide"})

    assert response.status_code == 404
    assert response.headers["X-Error-Category"] == "NOT_FOUND"
    assert response.headers["X-Retryable"] == "false"
    assert response.json()["error"]["title"] == "Thread Not Found"


@pytest.mark.asyncio
async def test_lookup_failure_is_monitored():
    async with _client(make_app()) as client:
        await client.post("/api/summarize", json={"threadId": "missing"})
        stats = (await client.get("/api/summaries/stats")).json()

    assert stats["performance"]["total_requests"] == 1
    assert stats["performance"]["error_rate"] == 1.0
