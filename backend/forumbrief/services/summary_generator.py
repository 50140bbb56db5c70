"""Thread summary generation with deterministic fallbacks.

``SummaryGenerator.generate`` never raises: it short-circuits empty and
near-empty threads, samples large threads down to a bounded prompt, asks the
generation backend for schema-constrained JSON, validates it, and on any
failure returns a classified error together with a statistical summary built
from the posts themselves.

This module only analyses. Whatever the health score or sentiment, nothing
here touches moderation of any kind.
"""
import asyncio
import json
import logging
import time
from collections import Counter
from typing import Any, Optional, Sequence

from forumbrief.metrics import GENERATION_ATTEMPTS
from forumbrief.schemas.forum import Post, Thread
from forumbrief.schemas.summary import (
    EMPTY_THREAD_HEALTH_SCORE,
    MAX_CONTRIBUTORS,
    MAX_KEY_POINTS,
    MAX_SUMMARY_POINTS,
    Contributor,
    Sentiment,
    SummaryData,
    SummaryResult,
)
from forumbrief.services.error_classifier import (
    ErrorClassifier,
    GenerationResponseError,
    GenerationValidationError,
)
from forumbrief.services.generation_client import StructuredGenerationClient

logger = logging.getLogger(__name__)

GENERATION_TIMEOUT_SECONDS = 30.0
MIN_CONTENT_LENGTH = 50
MAX_POSTS_FOR_PROMPT = 20

# Sampling of large threads
CONTEXT_POSTS = 3  # kept verbatim at each end
MAX_MIDDLE_POSTS = 14
SUBSTANTIVE_POST_LENGTH = 50

GENERATED_SENTIMENTS = (
    Sentiment.POSITIVE.value,
    Sentiment.NEUTRAL.value,
    Sentiment.MIXED.value,
    Sentiment.NEGATIVE.value,
)

SUMMARY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "summary": {
            "type": "array",
            "items": {"type": "string"},
            "maxItems": MAX_SUMMARY_POINTS,
            "description": "Bullet-point summary of the thread",
        },
        "keyPoints": {
            "type": "array",
            "items": {"type": "string"},
            "minItems": 3,
            "maxItems": MAX_KEY_POINTS,
            "description": "Unique viewpoints from the discussion",
        },
        "contributors": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "username": {"type": "string", "minLength": 1},
                    "contribution": {"type": "string", "minLength": 1},
                },
                "required": ["username", "contribution"],
                "additionalProperties": False,
            },
            "minItems": 2,
            "maxItems": MAX_CONTRIBUTORS,
        },
        "sentiment": {"type": "string", "enum": list(GENERATED_SENTIMENTS)},
        "healthScore": {"type": "integer", "minimum": 1, "maximum": 10},
    },
    "required": ["summary", "keyPoints", "contributors", "sentiment", "healthScore"],
    "additionalProperties": False,
}

SYSTEM_PROMPT = (
    "You are an expert forum thread analyzer. "
    "Provide structured, factual analysis of discussions."
)

ANALYSIS_PROMPT = (
    "Analyze this forum thread and provide a structured summary.\n\n"
    "Thread Title: {title}\n"
    "Thread Body: {body}\n"
    "Posts ({post_count} total):\n"
    "{posts}\n\n"
    "Return a JSON object with:\n"
    "- summary: Array of 3-5 bullet points covering main discussion points\n"
    "- keyPoints: Array of 3-5 unique viewpoints, including disagreements\n"
    "- contributors: Array of 2-4 users who provided valuable insights (quality over quantity)\n"
    "- sentiment: Overall tone (Positive/Neutral/Mixed/Negative)\n"
    "- healthScore: Constructiveness rating 1-10 (10 = highly constructive, 1 = toxic/unhelpful)\n\n"
    "Focus on factual, neutral analysis. Represent disagreements fairly."
)


def sample_posts(posts: Sequence[Post], max_posts: int = MAX_POSTS_FOR_PROMPT) -> list[Post]:
    """Bound prompt size for long threads while keeping the signal.

    Threads up to ``max_posts`` are used whole. Longer ones keep the first and
    last three posts and up to fourteen of the longest substantive posts from
    the middle, in chronological order, without duplicates.
    """
    if len(posts) <= max_posts:
        return list(posts)

    opening = list(posts[:CONTEXT_POSTS])
    closing = list(posts[-CONTEXT_POSTS:])
    middle = posts[CONTEXT_POSTS:-CONTEXT_POSTS]

    substantive = [p for p in middle if len(p.body) > SUBSTANTIVE_POST_LENGTH]
    substantive.sort(key=lambda p: len(p.body), reverse=True)
    selected = substantive[:MAX_MIDDLE_POSTS]
    selected.sort(key=lambda p: p.created_at)

    seen: set[str] = set()
    sampled = []
    for post in opening + selected + closing:
        if post.id in seen:
            continue
        seen.add(post.id)
        sampled.append(post)
    return sampled


def build_prompt(thread: Thread, posts: Sequence[Post], max_posts: int = MAX_POSTS_FOR_PROMPT) -> str:
    lines = [f"@{post.username}: {post.body}" for post in sample_posts(posts, max_posts)]
    return ANALYSIS_PROMPT.format(
        title=thread.title,
        body=thread.body,
        post_count=len(posts),
        posts="\n\n".join(lines),
    )


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def parse_generated_json(raw_text: str) -> dict[str, Any]:
    if not raw_text or not raw_text.strip():
        raise GenerationResponseError("No response content from generation backend")
    try:
        parsed = json.loads(_strip_code_fence(raw_text))
    except json.JSONDecodeError as e:
        raise GenerationResponseError(f"Generation response is not parseable JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise GenerationResponseError("Generation response is not a JSON object")
    return parsed


def _require_string_list(response: dict[str, Any], field: str) -> list[str]:
    value = response.get(field)
    if not isinstance(value, list):
        raise GenerationValidationError(f"Invalid {field} field in generated summary")
    for index, item in enumerate(value):
        if not isinstance(item, str):
            raise GenerationValidationError(f"Invalid {field} item {index} in generated summary")
    return value


def validate_generated_summary(response: dict[str, Any]) -> SummaryData:
    """Check generated JSON against the summary schema.

    Over-long arrays are truncated, anything else outside the schema raises
    ``GenerationValidationError``. The health label is always derived from the
    score, never read from the response.
    """
    summary = _require_string_list(response, "summary")[:MAX_SUMMARY_POINTS]
    key_points = _require_string_list(response, "keyPoints")[:MAX_KEY_POINTS]

    raw_contributors = response.get("contributors")
    if not isinstance(raw_contributors, list):
        raise GenerationValidationError("Invalid contributors field in generated summary")
    contributors = []
    for index, item in enumerate(raw_contributors[:MAX_CONTRIBUTORS]):
        if not isinstance(item, dict):
            raise GenerationValidationError(f"Invalid contributor {index} in generated summary")
        username = item.get("username")
        contribution = item.get("contribution")
        if not isinstance(username, str) or not username.strip():
            raise GenerationValidationError(f"Invalid username in contributor {index}")
        if not isinstance(contribution, str) or not contribution.strip():
            raise GenerationValidationError(f"Invalid contribution in contributor {index}")
        contributors.append(Contributor(username=username, contribution=contribution))

    sentiment = response.get("sentiment")
    if not isinstance(sentiment, str) or sentiment not in GENERATED_SENTIMENTS:
        raise GenerationValidationError(f"Invalid sentiment value: {sentiment!r}")

    health_score = response.get("healthScore")
    # bool is an int subclass, reject it explicitly
    if isinstance(health_score, bool) or not isinstance(health_score, int) or not 1 <= health_score <= 10:
        raise GenerationValidationError(f"Invalid healthScore value: {health_score!r}")

    return SummaryData(
        summary=summary,
        key_points=key_points,
        contributors=contributors,
        sentiment=Sentiment(sentiment),
        health_score=health_score,
    )


def total_content_length(thread: Thread, posts: Sequence[Post]) -> int:
    return len((thread.body or "").strip()) + sum(len((p.body or "").strip()) for p in posts)


def unique_contributors(posts: Sequence[Post]) -> int:
    return len({p.username for p in posts})


def top_posters(posts: Sequence[Post]) -> list[tuple[str, int]]:
    """Usernames by post count, most active first; ties keep first-seen order."""
    return Counter(p.username for p in posts).most_common()


def empty_thread_summary() -> SummaryData:
    return SummaryData(
        summary=["Thread has no posts yet"],
        key_points=["No discussion content available"],
        contributors=[],
        sentiment=Sentiment.NO_DISCUSSION,
        health_score=EMPTY_THREAD_HEALTH_SCORE,
    )


def minimal_content_summary(thread: Thread, posts: Sequence[Post]) -> SummaryData:
    participants: list[str] = []
    for post in posts:
        if post.username not in participants:
            participants.append(post.username)
        if len(participants) == 2:
            break
    contributors = [
        Contributor(username=username, contribution="Participant in discussion")
        for username in participants
    ]
    return SummaryData(
        summary=[
            f"Discussion about: {thread.title}",
            f"{len(posts)} post(s) from {unique_contributors(posts)} contributor(s)",
        ],
        key_points=[thread.body.strip() or "Main topic discussion"],
        contributors=contributors,
        sentiment=Sentiment.NEUTRAL,
        health_score=6,
    )


def statistical_fallback(thread: Thread, posts: Sequence[Post]) -> SummaryData:
    """Summary computed purely from the posts, used when generation fails."""
    post_count = len(posts)
    contributor_count = unique_contributors(posts)
    contributors = [
        Contributor(username=username, contribution="Active participant")
        for username, _ in top_posters(posts)[:2]
        if username
    ]
    return SummaryData(
        summary=[f"Thread contains {post_count} posts from {contributor_count} contributors"],
        key_points=[
            f"{post_count} posts in this discussion",
            f"{contributor_count} unique contributors took part",
        ],
        contributors=contributors,
        sentiment=Sentiment.NEUTRAL,
        health_score=5,
    )


class SummaryGenerator:
    def __init__(
        self,
        client: StructuredGenerationClient,
        classifier: Optional[ErrorClassifier] = None,
        timeout_seconds: float = GENERATION_TIMEOUT_SECONDS,
        min_content_length: int = MIN_CONTENT_LENGTH,
        max_posts_for_prompt: int = MAX_POSTS_FOR_PROMPT,
    ):
        self.client = client
        self.classifier = classifier or ErrorClassifier()
        self.timeout_seconds = timeout_seconds
        self.min_content_length = min_content_length
        self.max_posts_for_prompt = max_posts_for_prompt

    def edge_case_result(self, thread: Thread, posts: Sequence[Post]) -> Optional[SummaryResult]:
        """Deterministic result for threads not worth a generation call, else None."""
        if not posts:
            return SummaryResult(success=True, data=empty_thread_summary(), fallback=True)
        if total_content_length(thread, posts) < self.min_content_length:
            return SummaryResult(success=True, data=minimal_content_summary(thread, posts), fallback=True)
        return None

    def failure_result(self, error: object, thread: Thread, posts: Sequence[Post], context: str) -> SummaryResult:
        classified = self.classifier.classify(error, context)
        return SummaryResult(
            success=False,
            data=statistical_fallback(thread, posts),
            error=classified,
            fallback=True,
        )

    async def generate(
        self,
        thread: Thread,
        posts: Sequence[Post],
        timeout: Optional[float] = None,
    ) -> SummaryResult:
        edge_case = self.edge_case_result(thread, posts)
        if edge_case is not None:
            return edge_case

        timeout = self.timeout_seconds if timeout is None else min(timeout, self.timeout_seconds)
        start = time.perf_counter()
        try:
            if timeout <= 0:
                raise asyncio.TimeoutError("Generation deadline already passed")
            prompt = build_prompt(thread, posts, self.max_posts_for_prompt)
            raw = await asyncio.wait_for(
                self.client.generate_json(SYSTEM_PROMPT, prompt, SUMMARY_SCHEMA, timeout),
                timeout=timeout,
            )
            data = validate_generated_summary(parse_generated_json(raw))
        except Exception as e:
            result = self.failure_result(e, thread, posts, "AI summary generation")
            logger.warning(
                "Summary generation failed for thread %s after %.0fms: %s",
                thread.id, (time.perf_counter() - start) * 1000, result.error.technical_details,
            )
            outcome = "retryable_failure" if self.classifier.is_retryable(result.error) else "terminal_failure"
            GENERATION_ATTEMPTS.labels(outcome=outcome).inc()
            return result

        GENERATION_ATTEMPTS.labels(outcome="success").inc()
        logger.debug(
            "Generated summary for thread %s in %.0fms (health %d)",
            thread.id, (time.perf_counter() - start) * 1000, data.health_score,
        )
        return SummaryResult(success=True, data=data)
