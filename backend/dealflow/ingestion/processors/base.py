"""Generic per-item ingestion pipeline shared by deals and coupons.

normalize -> validate -> daily cap -> enrich -> deduplicate -> persist

Each step can end the item with a terminal ``ProcessResult``. Unexpected
exceptions are caught per item so one bad listing never aborts a batch.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from dealflow.core.exceptions import UniqueViolation
from dealflow.ingestion.base import BatchResult, ProcessResult, RawItem
from dealflow.ingestion.utils.daily_cap import DailyCapTracker, get_daily_cap_tracker
from dealflow.ingestion.utils.image_extractor import ImageExtractor
from dealflow.ingestion.utils.url_resolver import MerchantUrlResolver
from dealflow.services.company_matcher import CompanyMatcher
from dealflow.services.dedup_service import DedupScope, DeduplicationEngine, hash_url
from dealflow.services.health_service import HealthMonitor, get_health_monitor
from dealflow.services.store import IngestionStore

logger = structlog.get_logger(__name__)

MAX_IMAGES = 5
MAX_IMAGE_URL_LENGTH = 1000  # image_url / featured_image column size


class ItemPipeline(ABC):
    """One entity type's trip from raw listing to stored row.

    Subclasses supply normalization, validation, the dedup scope and the
    insert payload; orchestration lives here.
    """

    entity: str = ""
    scope: DedupScope
    error_type: str = "processing"
    metric_prefix: str = ""
    enforce_daily_cap: bool = False
    resolve_merchant_urls: bool = False

    def __init__(
        self,
        store: IngestionStore,
        dedup: Optional[DeduplicationEngine] = None,
        company_matcher: Optional[CompanyMatcher] = None,
        url_resolver: Optional[MerchantUrlResolver] = None,
        image_extractor: Optional[ImageExtractor] = None,
        daily_caps: Optional[DailyCapTracker] = None,
        monitor: Optional[HealthMonitor] = None,
    ):
        self.store = store
        self.dedup = dedup or DeduplicationEngine(store)
        self.company_matcher = company_matcher or CompanyMatcher(store)
        self.url_resolver = url_resolver
        self.image_extractor = image_extractor
        self.daily_caps = daily_caps or get_daily_cap_tracker()
        self.monitor = monitor or get_health_monitor()
        self.logger = logger.bind(service=f"{self.entity}_pipeline")

    @abstractmethod
    def normalize(self, raw: RawItem, source: str) -> Dict[str, Any]:
        """Map a raw listing onto clean, typed fields."""

    @abstractmethod
    def validate(self, item: Dict[str, Any]) -> Tuple[List[str], List[str]]:
        """Check a normalized item, truncating fields where allowed.

        Returns:
            (errors, warnings); any error makes the item a skip
        """

    @abstractmethod
    def insert_data(self, item: Dict[str, Any], source: str) -> Dict[str, Any]:
        """Column values for a new row."""

    @abstractmethod
    def error_context(self, raw: RawItem) -> Dict[str, Any]:
        """Fields of the raw listing worth keeping in an error record."""

    def _metric(self, outcome: str) -> None:
        self.monitor.increment_metric(f"{self.metric_prefix}_{outcome}")

    async def _match_company(self, item: Dict[str, Any], source: str) -> None:
        if not item.get("merchant"):
            return
        try:
            company = await self.company_matcher.match(item["merchant"])
        except Exception as e:
            self.logger.warning("company_match_failed", merchant=item["merchant"], error=str(e))
            await self.store.log_error(
                source, e, {"merchant": item["merchant"]}, error_type="company_matcher"
            )
            return
        if company:
            item["company_id"] = company["id"]

    async def _resolve_url(self, item: Dict[str, Any]) -> None:
        url_field = self.scope.url_field
        url = item.get(url_field)
        if self.url_resolver is None or not url:
            return
        try:
            merchant_url = await self.url_resolver.resolve(url)
        except Exception as e:
            self.logger.debug("merchant_url_resolution_failed", url=url[:60], error=str(e))
            return
        if merchant_url and merchant_url != url:
            # Keep the aggregator link as the source
            item["source_url"] = url
            item[url_field] = merchant_url

    async def _extract_images(self, item: Dict[str, Any]) -> None:
        page_url = item.get(self.scope.url_field)
        if self.image_extractor is None or item.get(self.scope.image_field) or not page_url:
            return
        try:
            images = await self.image_extractor.extract_images(page_url, MAX_IMAGES)
        except Exception as e:
            self.logger.debug("image_extraction_failed", url=page_url[:60], error=str(e))
            return
        images = [image for image in images or [] if len(image) <= MAX_IMAGE_URL_LENGTH]
        if images:
            item[self.scope.image_field] = images[0]
            item["images"] = images

    async def process(self, raw: RawItem, source: str) -> ProcessResult:
        """Run one raw listing through the pipeline."""
        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            item = self.normalize(raw, source)
            self.logger.debug("item_normalized", title=(item.get("title") or "")[:50])

            errors, warnings = self.validate(item)
            if warnings:
                self.logger.debug("validation_warnings", warnings=warnings)
            if errors:
                self.logger.debug("validation_failed", errors=errors)
                self._metric("skipped")
                return ProcessResult(action="skipped", reason="validation_failed", errors=errors)

            if self.enforce_daily_cap:
                cap = self.daily_caps.check(source)
                if not cap["allowed"]:
                    self.logger.warning(
                        "daily_cap_reached", source=source, current=cap["current"], cap=cap["cap"]
                    )
                    self._metric("skipped")
                    return ProcessResult(action="skipped", reason="daily_cap_reached")

            await self._match_company(item, source)
            if self.resolve_merchant_urls:
                await self._resolve_url(item)
            await self._extract_images(item)

            dedup = await self.dedup.deduplicate(item, self.scope)
            if dedup.is_duplicate:
                self.logger.debug(
                    "duplicate_detected",
                    method=dedup.method,
                    confidence=round(dedup.confidence, 3),
                    existing_id=str(dedup.existing_id),
                )
                await self.dedup.update_existing(dedup.existing_id, item, self.scope)
                self._metric("updated")
                return ProcessResult(
                    action="updated",
                    id=dedup.existing_id,
                    method=dedup.method,
                    confidence=dedup.confidence,
                    duration_ms=elapsed(),
                )

            data = self.insert_data(item, source)
            data["url_hash"] = hash_url(data.get(self.scope.url_field))
            data["status"] = "pending"
            try:
                created = await self.store.insert_item(self.entity, data)
            except UniqueViolation:
                # A concurrent run inserted the same item first
                self._metric("skipped")
                return ProcessResult(action="skipped", reason="duplicate", duration_ms=elapsed())

            if self.enforce_daily_cap:
                self.daily_caps.increment(source)
            self._metric("processed")

            self.logger.info(
                f"{self.entity}_created",
                id=str(created["id"]),
                title=item["title"][:50],
                status=data["status"],
                duration_ms=elapsed(),
            )
            return ProcessResult(action="created", id=created["id"], duration_ms=elapsed())

        except Exception as e:
            self.logger.error(
                f"{self.entity}_processing_failed",
                error=str(e),
                title=str(raw.get("title") or "")[:50],
                source=source,
                duration_ms=elapsed(),
                exc_info=True,
            )
            await self.store.log_error(source, e, self.error_context(raw), error_type=self.error_type)
            self.monitor.increment_metric("errors_count")
            self.monitor.update_metrics(last_error=str(e))
            return ProcessResult(action="error", error=str(e), duration_ms=elapsed())

    async def process_batch(self, raws: Iterable[RawItem], source: str) -> BatchResult:
        """Process items sequentially, in fetch order."""
        raws = list(raws)
        results = BatchResult()
        self.logger.info("processing_batch", source=source, count=len(raws))

        for raw in raws:
            results.add(await self.process(raw, source))

        self.logger.info(
            "batch_processing_complete",
            source=source,
            created=results.created,
            updated=results.updated,
            skipped=results.skipped,
            errors=results.errors,
        )
        return results
