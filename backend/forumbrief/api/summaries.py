import asyncio
import logging
import re
import time
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from forumbrief.schemas.summary import (
    ErrorCategory,
    SummarizeRequest,
    SummarizeResponse,
    SummaryResult,
    UserFriendlyError,
)
from forumbrief.services.container import SummaryServices
from forumbrief.utils.retry import CancelToken

logger = logging.getLogger(__name__)

router = APIRouter()

THREAD_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
MAX_THREAD_ID_LENGTH = 100

STATUS_BY_CATEGORY = {
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.RATE_LIMIT: 429,
}


def get_services(request: Request) -> SummaryServices:
    return request.app.state.services


def is_valid_thread_id(thread_id: str) -> bool:
    return (
        bool(thread_id)
        and len(thread_id) <= MAX_THREAD_ID_LENGTH
        and THREAD_ID_PATTERN.fullmatch(thread_id) is not None
    )


def _ai_status(result: SummaryResult) -> str:
    if not result.success:
        return "FAILED"
    return "FALLBACK" if result.fallback else "SUCCESS"


def _apply_error_headers(response: Response, error: UserFriendlyError) -> None:
    response.status_code = STATUS_BY_CATEGORY.get(error.category, 500)
    response.headers["X-Error-Category"] = error.category.value
    response.headers["X-Retryable"] = str(error.retryable).lower()
    if error.category == ErrorCategory.RATE_LIMIT and error.retry_after:
        response.headers["Retry-After"] = str(error.retry_after)


def _response_time(response: Response, start: float) -> None:
    response.headers["X-Response-Time"] = f"{(time.perf_counter() - start) * 1000:.0f}ms"


@router.post("/summarize", response_model=SummarizeResponse, response_model_exclude_none=True)
async def summarize_thread(
    payload: SummarizeRequest,
    response: Response,
    services: SummaryServices = Depends(get_services),
):
    """Summarize a forum thread, serving from cache when its activity has not changed."""
    start = time.perf_counter()
    thread_id = payload.thread_id.strip()
    classifier = services.classifier

    if not is_valid_thread_id(thread_id):
        error = classifier.classify("Invalid thread ID format", "request validation")
        response.status_code = 400
        response.headers["X-Error-Category"] = error.category.value
        response.headers["X-Retryable"] = "false"
        _response_time(response, start)
        return SummarizeResponse(success=False, error=error.to_public())

    token = CancelToken(services.settings.summary_request_timeout_seconds)
    request_id = services.monitor.start_request(thread_id)

    try:
        thread_data = await asyncio.wait_for(
            services.fetcher.fetch_thread_data(thread_id),
            timeout=token.remaining(),
        )
    except Exception as e:
        error = classifier.classify(e, "thread lookup")
        logger.warning(f"Thread lookup failed for {thread_id}: {error.technical_details}")
        services.monitor.complete_request(request_id, error=error.technical_details)
        _apply_error_headers(response, error)
        response.headers["X-Cache-Status"] = "ERROR"
        response.headers["X-AI-Status"] = "FAILED"
        _response_time(response, start)
        return SummarizeResponse(
            success=False,
            data=classifier.fallback_content(error, thread_id),
            error=error.to_public(),
            fallback=True,
        )
    fetch_ms = (time.perf_counter() - start) * 1000

    result = await services.pipeline.request_summary(
        thread_data.thread,
        thread_data.posts,
        thread_data.last_post_timestamp,
        token=token,
        fetch_time_ms=fetch_ms,
        request_id=request_id,
    )

    response.headers["X-AI-Status"] = _ai_status(result)
    if result.success:
        response.headers["X-Cache-Status"] = "HIT" if result.cached else "MISS"
    else:
        response.headers["X-Cache-Status"] = "ERROR"
        _apply_error_headers(response, result.error)
    _response_time(response, start)

    body = SummarizeResponse(
        success=result.success,
        data=result.data,
        error=result.error.to_public() if result.error else None,
        fallback=result.fallback,
        cached=result.cached,
    )
    if result.generated_at:
        body.generated_at = result.generated_at
    return body


@router.get("/summaries/stats")
async def get_summary_stats(services: SummaryServices = Depends(get_services)):
    """Cache and latency statistics for the running process."""
    return {
        "cache": {
            "stats": asdict(services.cache.get_stats()),
            "size": asdict(services.cache.get_size()),
        },
        "performance": asdict(services.monitor.get_stats()),
    }


@router.delete("/summaries/{thread_id}/cache")
async def invalidate_thread_cache(thread_id: str, services: SummaryServices = Depends(get_services)):
    if not is_valid_thread_id(thread_id):
        raise HTTPException(status_code=400, detail="Invalid thread ID format")
    removed = services.cache.invalidate_thread(thread_id)
    return {"threadId": thread_id, "invalidated": removed}
