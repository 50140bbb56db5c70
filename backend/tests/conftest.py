import json
import os
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")
os.environ.setdefault("OPENAI_API_KEY", "test_openai_key")
os.environ.setdefault("FORUMS_API_URL", "http://forums.test")
os.environ.setdefault("FORUMS_API_KEY", "test_forums_key")
# Backoff is clamped to zero so retry paths run instantly
os.environ.setdefault("SUMMARY_RETRY_MAX_DELAY_SECONDS", "0")

from forumbrief.schemas.forum import ForumUser, Post, Thread  # noqa: E402

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

VALID_SUMMARY = {
    "summary": ["Users compare caching strategies", "Consensus forms around TTL-based expiry"],
    "keyPoints": [
        "TTL expiry keeps memory bounded",
        "Per-thread invalidation avoids stale summaries",
        "Some prefer LRU eviction",
    ],
    "contributors": [
        {"username": "alice", "contribution": "Benchmarked both approaches"},
        {"username": "bob", "contribution": "Raised the stale-data concern"},
    ],
    "sentiment": "Positive",
    "healthScore": 8,
}


class FakeGenerationClient:
    """Generation backend that replays scripted responses.

    Each item is returned as JSON (dict), returned verbatim (str) or raised
    (exception). The last item repeats once the script runs out.
    """

    model = "fake-model"

    def __init__(self, *responses):
        self.responses = list(responses) or [VALID_SUMMARY]
        self.calls = 0
        self.prompts: list[str] = []
        self.timeouts: list[float] = []
        self.closed = False

    async def generate_json(self, system_prompt, user_prompt, schema, timeout):
        self.calls += 1
        self.prompts.append(user_prompt)
        self.timeouts.append(timeout)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, dict):
            return json.dumps(item)
        return item

    async def close(self):
        self.closed = True


def build_thread(thread_id="thread-1", body="What is the best way to cache generated summaries?", **overrides):
    values = {
        "id": thread_id,
        "title": "Caching summaries",
        "body": body,
        "created_at": BASE_TIME,
        "updated_at": BASE_TIME,
        "author": ForumUser(id="u0", username="op"),
    }
    values.update(overrides)
    return Thread(**values)


def build_post(index, username=None, body=None, thread_id="thread-1", minutes=None):
    username = username or f"user{index}"
    return Post(
        id=f"p{index}",
        body=body if body is not None else f"Post number {index} with some discussion content.",
        thread_id=thread_id,
        author_id=f"id-{username}",
        created_at=BASE_TIME + timedelta(minutes=index if minutes is None else minutes),
        author=ForumUser(id=f"id-{username}", username=username),
    )


@pytest.fixture
def thread():
    return build_thread()


@pytest.fixture
def posts():
    return [
        build_post(1, "alice", "I benchmarked TTL expiry against LRU and TTL won for our workload."),
        build_post(2, "bob", "Stale summaries worry me, how do you invalidate on new replies?"),
        build_post(3, "alice", "Key the cache on the last post timestamp, new replies change the key."),
    ]


@pytest.fixture
def valid_summary():
    return json.loads(json.dumps(VALID_SUMMARY))
