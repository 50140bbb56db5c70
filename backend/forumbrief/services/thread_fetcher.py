"""Forum API access for the summarize endpoint.

``ForumsApiClient`` turns HTTP failures into ``ForumsApiError`` values whose
category comes from the response status or the transport failure, never from
message text (which can carry the caller's thread id). ``ThreadFetcher``
derives the cache timestamp and counts the pipeline needs from a thread and
its posts.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from forumbrief.config import Settings
from forumbrief.schemas.forum import Post, Thread
from forumbrief.schemas.summary import ErrorCategory
from forumbrief.services.error_classifier import ClassifiedError

logger = logging.getLogger(__name__)

USER_AGENT = "ForumBrief/0.1"

STATUS_CATEGORIES = {
    401: ErrorCategory.AUTHENTICATION,
    403: ErrorCategory.AUTHENTICATION,
    404: ErrorCategory.NOT_FOUND,
    429: ErrorCategory.RATE_LIMIT,
}


def category_for_status(status_code: int) -> ErrorCategory:
    return STATUS_CATEGORIES.get(status_code, ErrorCategory.API)


class ForumsApiError(ClassifiedError):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        category: Optional[ErrorCategory] = None,
    ):
        if category is None:
            category = (
                category_for_status(status_code) if status_code is not None else ErrorCategory.API
            )
        super().__init__(message, category)
        self.status_code = status_code


@dataclass(frozen=True)
class ThreadData:
    thread: Thread
    posts: list[Post]
    last_post_timestamp: str  # epoch milliseconds
    post_count: int
    contributor_count: int


def _epoch_ms(value) -> int:
    return int(value.timestamp() * 1000)


def last_activity_timestamp(thread: Thread, posts: list[Post]) -> str:
    """Latest of thread update and newest post, or thread creation for an empty thread."""
    if not posts:
        return str(_epoch_ms(thread.created_at))
    newest_post = max(_epoch_ms(p.created_at) for p in posts)
    return str(max(_epoch_ms(thread.updated_at), newest_post))


class ForumsApiClient:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        thread_timeout: float = 10.0,
        posts_timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.thread_timeout = thread_timeout
        self.posts_timeout = posts_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str, timeout: float, not_found: str) -> Any:
        try:
            response = await self.client.get(path, timeout=timeout)
        except httpx.TimeoutException as e:
            raise ForumsApiError(
                "Request timeout - forum API did not respond in time", category=ErrorCategory.TIMEOUT
            ) from e
        except httpx.TransportError as e:
            raise ForumsApiError(
                "Network error - unable to connect to the forum API", category=ErrorCategory.NETWORK
            ) from e

        if response.status_code == 401:
            raise ForumsApiError("Authentication failed - invalid API key", 401)
        if response.status_code == 404:
            raise ForumsApiError(not_found, 404)
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after and retry_after.isascii() and retry_after.isdigit():
                raise ForumsApiError(f"Rate limit exceeded - retry after {retry_after} seconds", 429)
            raise ForumsApiError("Rate limit exceeded - please try again later", 429)
        if response.status_code >= 400:
            raise ForumsApiError(
                f"API request failed with status {response.status_code}", response.status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise ForumsApiError(
                "Invalid JSON received from API", category=ErrorCategory.VALIDATION
            ) from e

    async def fetch_thread(self, thread_id: str) -> Thread:
        if not thread_id or not thread_id.strip():
            raise ForumsApiError("Thread ID is required", category=ErrorCategory.VALIDATION)
        data = await self._get_json(
            f"/threads/{thread_id}",
            self.thread_timeout,
            f"Thread with ID {thread_id} not found",
        )
        try:
            return Thread.model_validate(data)
        except ValidationError as e:
            raise ForumsApiError(
                "Invalid thread data received from API", category=ErrorCategory.VALIDATION
            ) from e

    async def fetch_thread_posts(self, thread_id: str) -> list[Post]:
        if not thread_id or not thread_id.strip():
            raise ForumsApiError("Thread ID is required", category=ErrorCategory.VALIDATION)
        data = await self._get_json(
            f"/threads/{thread_id}/posts",
            self.posts_timeout,
            f"Posts for thread {thread_id} not found",
        )
        # Either a bare list or a paginated {"posts": [...]} envelope
        raw_posts = data if isinstance(data, list) else (data or {}).get("posts") or []
        if not isinstance(raw_posts, list):
            raise ForumsApiError(
                "Invalid post data received from API", category=ErrorCategory.VALIDATION
            )
        try:
            return [Post.model_validate(item) for item in raw_posts]
        except ValidationError as e:
            raise ForumsApiError(
                "Invalid post data received from API", category=ErrorCategory.VALIDATION
            ) from e

    async def fetch_complete_thread(self, thread_id: str) -> tuple[Thread, list[Post]]:
        thread, posts = await asyncio.gather(
            self.fetch_thread(thread_id),
            self.fetch_thread_posts(thread_id),
        )
        return thread, posts


class ThreadFetcher:
    def __init__(self, client: ForumsApiClient):
        self.client = client

    async def fetch_thread_data(self, thread_id: str) -> ThreadData:
        thread, posts = await self.client.fetch_complete_thread(thread_id)
        posts = sorted(posts, key=lambda p: p.created_at)
        data = ThreadData(
            thread=thread,
            posts=posts,
            last_post_timestamp=last_activity_timestamp(thread, posts),
            post_count=len(posts),
            contributor_count=len({p.author_id for p in posts}),
        )
        logger.debug(
            "Fetched thread %s: %d posts, %d contributors, last activity %s",
            thread_id, data.post_count, data.contributor_count, data.last_post_timestamp,
        )
        return data

    async def close(self) -> None:
        await self.client.close()


def build_thread_fetcher(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> ThreadFetcher:
    client = ForumsApiClient(
        base_url=settings.forums_api_url,
        api_key=settings.forums_api_key,
        thread_timeout=settings.forums_thread_timeout_seconds,
        posts_timeout=settings.forums_posts_timeout_seconds,
        transport=transport,
    )
    return ThreadFetcher(client)
