"""Runs one ingestion job: fetch a source, process its items, record the run."""

import time
from datetime import datetime, timezone
from typing import Dict, Optional

import structlog

from dealflow.config import settings
from dealflow.core.exceptions import CircuitOpenError, DealflowError, ProcessingError, UnknownSourceError
from dealflow.ingestion.factory import FetcherFactory, get_fetcher_factory
from dealflow.ingestion.processors import CouponPipeline, DealPipeline
from dealflow.ingestion.processors.base import ItemPipeline
from dealflow.ingestion.sources import get_source_config
from dealflow.ingestion.utils.circuit_breaker import OPEN, CircuitBreaker, get_circuit_breaker
from dealflow.ingestion.utils.http_client import HttpClient, get_http_client
from dealflow.ingestion.utils.image_extractor import ImageExtractor
from dealflow.ingestion.utils.url_resolver import MerchantUrlResolver
from dealflow.services.cache_service import CacheService
from dealflow.services.company_matcher import CompanyMatcher
from dealflow.services.dedup_service import DeduplicationEngine
from dealflow.services.health_service import HealthMonitor, get_health_monitor
from dealflow.services.store import IngestionStore

logger = structlog.get_logger(__name__)


class IngestionService:
    """Fetch -> process -> audit for a single source.

    Item-level failures are absorbed by the pipelines; run-level failures
    (circuit open, fetch failure) mark the run failed and are re-raised
    for the queue to count.
    """

    def __init__(
        self,
        store: IngestionStore,
        deal_pipeline: ItemPipeline,
        coupon_pipeline: ItemPipeline,
        fetchers: Optional[FetcherFactory] = None,
        breaker: Optional[CircuitBreaker] = None,
        monitor: Optional[HealthMonitor] = None,
    ):
        self.store = store
        self.deal_pipeline = deal_pipeline
        self.coupon_pipeline = coupon_pipeline
        self.fetchers = fetchers or get_fetcher_factory()
        self.breaker = breaker or get_circuit_breaker()
        self.monitor = monitor or get_health_monitor()
        self.logger = logger.bind(service="ingestion_service")

    async def process_ingestion_job(self, source_key: str, job_id: str) -> Dict[str, int]:
        """Process one job for ``source_key``.

        Returns:
            Run stats: fetched, created, updated, skipped, errors

        Raises:
            UnknownSourceError: If the source is not registered
            CircuitOpenError: If the source circuit is open
            ProcessingError: If the run failed with a non-Dealflow error,
                such as an HTTP error after retries were exhausted
        """
        source = get_source_config(source_key)
        if source is None:
            raise UnknownSourceError(source_key)

        started = time.monotonic()
        self.logger.info("ingestion_job_started", job_id=job_id, source=source_key, type=source.type)

        run_id = await self.store.start_run(
            source_key,
            {"job_id": job_id, "type": source.type, "schedule": source.schedule},
        )
        stats = {"fetched": 0, "created": 0, "updated": 0, "skipped": 0, "errors": 0}

        try:
            # Fail fast without spending the retry budget on a known-bad source
            retry_in = self.breaker.retry_in_seconds(source_key)
            if self.breaker.get_state(source_key) == OPEN and retry_in > 0:
                raise CircuitOpenError(source_key, retry_in)

            fetcher = self.fetchers.create_fetcher(source)
            raw_items = await self.breaker.call(source_key, lambda: fetcher.fetch(source))
            stats["fetched"] = len(raw_items)
            self.logger.info("items_fetched", source=source_key, count=len(raw_items))

            if raw_items:
                if source.is_coupon_source:
                    self.logger.info("processing_as_coupons", source=source_key, count=len(raw_items))
                    results = await self.coupon_pipeline.process_batch(raw_items, source_key)
                else:
                    self.logger.info("processing_as_deals", source=source_key, count=len(raw_items))
                    results = await self.deal_pipeline.process_batch(raw_items, source_key)

                stats.update(
                    created=results.created,
                    updated=results.updated,
                    skipped=results.skipped,
                    errors=results.errors,
                )

            await self.store.complete_run(run_id, "completed", stats)
            self.monitor.update_metrics(last_successful_run=datetime.now(timezone.utc).isoformat())
            self.monitor.record_source_result(source_key, True, stats["created"] + stats["updated"])

            self.logger.info(
                "ingestion_job_completed",
                source=source_key,
                duration_ms=int((time.monotonic() - started) * 1000),
                **stats,
            )
            return stats

        except Exception as e:
            self.logger.error(
                "ingestion_job_failed",
                source=source_key,
                error=str(e),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            await self.store.complete_run(run_id, "failed", stats, error=e)
            self.monitor.update_metrics(last_error={
                "source": source_key,
                "message": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })
            self.monitor.increment_metric("errors_count")
            self.monitor.record_source_result(source_key, False)
            if isinstance(e, DealflowError):
                raise
            raise ProcessingError(source_key, f"{type(e).__name__}: {e}") from e


def build_ingestion_service(
    store: IngestionStore,
    http: Optional[HttpClient] = None,
    cache: Optional[CacheService] = None,
) -> IngestionService:
    """Wire the deal and coupon pipelines around one store, HTTP client and cache."""
    http = http or get_http_client()
    ttl = settings.CACHE.ttl_seconds
    dedup = DeduplicationEngine(store)
    matcher = CompanyMatcher(store)
    extractor = ImageExtractor(http, cache=cache, ttl=ttl)

    deal_pipeline = DealPipeline(
        store,
        dedup=dedup,
        company_matcher=matcher,
        url_resolver=MerchantUrlResolver(http, cache=cache, ttl=ttl),
        image_extractor=extractor,
    )
    coupon_pipeline = CouponPipeline(
        store,
        dedup=dedup,
        company_matcher=matcher,
        image_extractor=extractor,
    )
    return IngestionService(
        store,
        deal_pipeline,
        coupon_pipeline,
        fetchers=FetcherFactory(http=http),
    )
