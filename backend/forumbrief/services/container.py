"""Explicitly constructed service graph for one application instance.

Lifecycle: ``build_services`` -> ``start`` (cache sweep) -> serve -> ``stop``.
Nothing here is a module-level singleton, so tests build as many isolated
instances as they need.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from forumbrief.config import Settings
from forumbrief.services.cache_manager import CacheManager
from forumbrief.services.error_classifier import ErrorClassifier
from forumbrief.services.generation_client import StructuredGenerationClient, build_generation_client
from forumbrief.services.performance_monitor import PerformanceMonitor
from forumbrief.services.summary_generator import SummaryGenerator
from forumbrief.services.summary_pipeline import SummaryPipeline
from forumbrief.services.thread_fetcher import ThreadFetcher, build_thread_fetcher

logger = logging.getLogger(__name__)


@dataclass
class SummaryServices:
    settings: Settings
    cache: CacheManager
    monitor: PerformanceMonitor
    classifier: ErrorClassifier
    generation_client: StructuredGenerationClient
    generator: SummaryGenerator
    pipeline: SummaryPipeline
    fetcher: ThreadFetcher

    async def start(self) -> None:
        await self.cache.start()

    async def stop(self) -> None:
        await self.cache.stop()
        await self.fetcher.close()
        await self.generation_client.close()
        logger.info("Summary services stopped")


def build_services(
    settings: Settings,
    generation_client: Optional[StructuredGenerationClient] = None,
    forums_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SummaryServices:
    cache = CacheManager(
        ttl_seconds=settings.summary_cache_ttl_seconds,
        max_entries=settings.summary_cache_max_entries,
        cleanup_interval_seconds=settings.summary_cache_cleanup_interval_seconds,
    )
    monitor = PerformanceMonitor(max_history=settings.performance_history_size)
    classifier = ErrorClassifier()
    client = generation_client or build_generation_client(settings)
    generator = SummaryGenerator(
        client,
        classifier,
        timeout_seconds=settings.summary_generation_timeout_seconds,
        min_content_length=settings.summary_min_content_length,
        max_posts_for_prompt=settings.summary_max_posts_for_prompt,
    )
    pipeline = SummaryPipeline(
        cache,
        generator,
        monitor,
        classifier=classifier,
        max_attempts=settings.summary_max_attempts,
        retry_max_delay=settings.summary_retry_max_delay_seconds,
        request_timeout=settings.summary_request_timeout_seconds,
    )
    return SummaryServices(
        settings=settings,
        cache=cache,
        monitor=monitor,
        classifier=classifier,
        generation_client=client,
        generator=generator,
        pipeline=pipeline,
        fetcher=build_thread_fetcher(settings, transport=forums_transport),
    )
