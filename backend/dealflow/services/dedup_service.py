"""Multi-strategy deduplication engine.

Strategies run in priority order and the first confident match wins:

1. url_exact         canonical URL (or its hash) already stored      1.0
2. external_id       (source, external_id) already stored             0.99
3. exact_title       same trimmed, lowercased title in the last 24h   0.98
4. title_similarity  same company, lookback window, best candidate    similarity (x0.7 if prices differ)
5. global_search     any company, last 3 days, stricter bar           similarity x0.9

A failing lookup is logged and treated as "not a duplicate": ingesting a
possible duplicate is preferred over losing an item.
"""

import hashlib
import re
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from dealflow.config import DeduplicationSettings, settings
from dealflow.ingestion.utils.normalizer import as_utc, normalize_url
from dealflow.services.store import IngestionStore

logger = structlog.get_logger(__name__)

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "up", "about", "into", "through", "during",
    "deal", "sale", "save", "off", "free", "shipping", "today", "now",
    "limited", "time", "offer", "only", "get", "buy", "shop",
})

PRICE_MISMATCH_PENALTY = 0.7
GLOBAL_CONFIDENCE_FACTOR = 0.9
GLOBAL_MIN_TITLE_LENGTH = 20
GLOBAL_MIN_KEY_TERMS = 3


@dataclass(frozen=True)
class DedupScope:
    """Which table and fields an entity type is deduplicated against."""

    entity: str
    url_field: str
    price_field: str
    image_field: str
    list_price_field: Optional[str] = None


DEAL_SCOPE = DedupScope(
    entity="deal",
    url_field="url",
    price_field="price",
    image_field="image_url",
    list_price_field="original_price",
)
COUPON_SCOPE = DedupScope(
    entity="coupon",
    url_field="source_url",
    price_field="discount_value",
    image_field="featured_image",
)


@dataclass
class DedupResult:
    is_duplicate: bool = False
    existing_id: Optional[uuid.UUID] = None
    method: Optional[str] = None
    confidence: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)


def hash_url(url: Optional[str]) -> Optional[str]:
    """md5 hex digest of the canonical form of a URL."""
    normalized = normalize_url(url)
    if not normalized:
        return None
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()


def normalize_title(title: Optional[str]) -> str:
    if not title:
        return ""
    title = re.sub(r"[^\w\s]", " ", title.lower())
    return re.sub(r"\s+", " ", title).strip()


def extract_key_terms(title: Optional[str]) -> List[str]:
    """Words longer than two characters that are not stop words."""
    return [w for w in normalize_title(title).split(" ") if len(w) > 2 and w not in STOP_WORDS]


def _bigrams(value: str) -> Counter:
    return Counter(value[i:i + 2] for i in range(len(value) - 1))


def dice_coefficient(first: str, second: str) -> float:
    """Sørensen-Dice coefficient over character bigrams, whitespace ignored."""
    first = re.sub(r"\s+", "", first)
    second = re.sub(r"\s+", "", second)

    if first == second:
        return 1.0
    if len(first) < 2 or len(second) < 2:
        return 0.0

    first_bigrams = _bigrams(first)
    second_bigrams = _bigrams(second)
    intersection = sum((first_bigrams & second_bigrams).values())
    return (2.0 * intersection) / (len(first) + len(second) - 2)


def calculate_title_similarity(title1: Optional[str], title2: Optional[str]) -> float:
    """0.7 x bigram similarity + 0.3 x Jaccard overlap of key terms.

    Falls back to bigram similarity alone when either title has no key terms.
    """
    direct = dice_coefficient(normalize_title(title1), normalize_title(title2))

    terms1 = set(extract_key_terms(title1))
    terms2 = set(extract_key_terms(title2))
    if not terms1 or not terms2:
        return direct

    jaccard = len(terms1 & terms2) / len(terms1 | terms2)
    return direct * 0.7 + jaccard * 0.3


def prices_similar(
    price1: Optional[float],
    price2: Optional[float],
    threshold: Optional[float] = None,
) -> bool:
    """Prices within ``threshold`` of the larger one. A missing or zero price never differentiates."""
    if threshold is None:
        threshold = settings.DEDUPLICATION.price_variance_threshold
    if price1 is None or price2 is None:
        return True
    if price1 == 0 or price2 == 0:
        return True
    variance = abs(price1 - price2) / max(price1, price2)
    return variance <= threshold


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeduplicationEngine:
    """Decides whether a normalized item already exists in the store."""

    def __init__(
        self,
        store: IngestionStore,
        config: Optional[DeduplicationSettings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.config = config or settings.DEDUPLICATION
        self._clock = clock
        self.logger = logger.bind(service="dedup")

    async def deduplicate(self, item: Dict[str, Any], scope: DedupScope = DEAL_SCOPE) -> DedupResult:
        """Run the strategy cascade for one item."""
        try:
            for strategy in (
                self._by_url,
                self._by_external_id,
                self._by_exact_title,
                self._by_company_similarity,
                self._by_global_search,
            ):
                result = await strategy(item, scope)
                if result is not None:
                    return result
            return DedupResult()

        except Exception as e:
            self.logger.error(
                "deduplication_failed",
                entity=scope.entity,
                error=str(e),
                title=(item.get("title") or "")[:50],
                url=(item.get(scope.url_field) or "")[:50],
            )
            return DedupResult()

    async def _by_url(self, item: Dict[str, Any], scope: DedupScope) -> Optional[DedupResult]:
        url = item.get(scope.url_field)
        if not url:
            return None
        existing = await self.store.item_exists_by_url(scope.entity, url, hash_url(url))
        if existing is None:
            return None
        return DedupResult(
            is_duplicate=True,
            existing_id=existing["id"],
            method="url_exact",
            confidence=1.0,
            details={"existing_title": existing.get("title"), "status": existing.get("status")},
        )

    async def _by_external_id(self, item: Dict[str, Any], scope: DedupScope) -> Optional[DedupResult]:
        external_id = item.get("external_id")
        source = item.get("source")
        if not external_id or not source:
            return None
        existing = await self.store.item_exists_by_external_id(scope.entity, source, external_id)
        if existing is None:
            return None
        return DedupResult(
            is_duplicate=True,
            existing_id=existing["id"],
            method="external_id",
            confidence=0.99,
            details={"existing_title": existing.get("title"), "status": existing.get("status")},
        )

    async def _by_exact_title(self, item: Dict[str, Any], scope: DedupScope) -> Optional[DedupResult]:
        title = (item.get("title") or "").strip().lower()
        if not title:
            return None

        since = self._clock() - timedelta(hours=self.config.exact_title_window_hours)
        recent = await self.store.recent_items(scope.entity, since, self.config.exact_title_candidates)
        for candidate in recent:
            if (candidate.get("title") or "").strip().lower() == title:
                return DedupResult(
                    is_duplicate=True,
                    existing_id=candidate["id"],
                    method="exact_title",
                    confidence=0.98,
                    details={"existing_title": candidate.get("title"), "status": candidate.get("status")},
                )
        return None

    async def _by_company_similarity(self, item: Dict[str, Any], scope: DedupScope) -> Optional[DedupResult]:
        company_id = item.get("company_id")
        title = item.get("title")
        if not company_id or not title:
            return None

        since = self._clock() - timedelta(days=self.config.lookback_days)
        candidates = await self.store.company_candidates(
            scope.entity, company_id, since, self.config.max_candidates
        )

        threshold = self.config.title_similarity_threshold
        price = item.get(scope.price_field)
        best: Optional[Dict[str, Any]] = None
        best_score = 0.0

        for candidate in candidates:
            similarity = calculate_title_similarity(title, candidate.get("title"))
            if similarity < threshold:
                continue

            confidence = similarity
            if not prices_similar(price, candidate.get(scope.price_field), self.config.price_variance_threshold):
                confidence *= PRICE_MISMATCH_PENALTY

            if confidence > best_score:
                best_score = confidence
                best = candidate

        if best is None or best_score < threshold:
            return None

        return DedupResult(
            is_duplicate=True,
            existing_id=best["id"],
            method="title_similarity",
            confidence=best_score,
            details={
                "existing_title": best.get("title"),
                "similarity": round(best_score, 3),
                "price_match": prices_similar(
                    price, best.get(scope.price_field), self.config.price_variance_threshold
                ),
            },
        )

    async def _by_global_search(self, item: Dict[str, Any], scope: DedupScope) -> Optional[DedupResult]:
        title = item.get("title") or ""
        if len(title) <= GLOBAL_MIN_TITLE_LENGTH:
            return None

        key_terms = extract_key_terms(title)
        if len(key_terms) < GLOBAL_MIN_KEY_TERMS:
            return None

        since = self._clock() - timedelta(days=self.config.global_search_days)
        candidates = await self.store.global_candidates(
            scope.entity, key_terms, since, self.config.global_search_limit
        )

        price = item.get(scope.price_field)
        for candidate in candidates:
            similarity = calculate_title_similarity(title, candidate.get("title"))
            if similarity < self.config.global_similarity_threshold:
                continue
            if not prices_similar(price, candidate.get(scope.price_field), self.config.price_variance_threshold):
                continue
            return DedupResult(
                is_duplicate=True,
                existing_id=candidate["id"],
                method="global_search",
                confidence=similarity * GLOBAL_CONFIDENCE_FACTOR,
                details={
                    "existing_title": candidate.get("title"),
                    "similarity": round(similarity, 3),
                    "merchant": candidate.get("merchant"),
                },
            )
        return None

    def merge_updates(
        self,
        new_data: Dict[str, Any],
        existing: Dict[str, Any],
        scope: DedupScope = DEAL_SCOPE,
    ) -> Dict[str, Any]:
        """Compute the non-destructive updates a duplicate submission contributes.

        Missing fields are filled, a longer description or later expiry wins,
        a price that moved by more than a cent is refreshed, and the
        verification counter always advances.
        """
        updates: Dict[str, Any] = {}

        image = new_data.get(scope.image_field)
        if image and not existing.get(scope.image_field):
            updates[scope.image_field] = image
            if new_data.get("images") and not existing.get("images"):
                updates["images"] = new_data["images"]

        description = new_data.get("description")
        if description and len(description) > len(existing.get("description") or ""):
            updates["description"] = description

        new_price = new_data.get(scope.price_field)
        old_price = existing.get(scope.price_field)
        if new_price and old_price and abs(new_price - old_price) > 0.01:
            updates[scope.price_field] = new_price

        if scope.list_price_field:
            list_price = new_data.get(scope.list_price_field)
            if list_price and not existing.get(scope.list_price_field):
                updates[scope.list_price_field] = list_price

        new_expiry = as_utc(new_data.get("expires_at"))
        old_expiry = as_utc(existing.get("expires_at"))
        if new_expiry and (old_expiry is None or new_expiry > old_expiry):
            updates["expires_at"] = new_expiry

        if new_data.get("coupon_code") and not existing.get("coupon_code"):
            updates["coupon_code"] = new_data["coupon_code"]

        updates["verification_count"] = (existing.get("verification_count") or 0) + 1
        updates["last_verified_at"] = self._clock()
        return updates

    async def update_existing(
        self,
        existing_id: uuid.UUID,
        new_data: Dict[str, Any],
        scope: DedupScope = DEAL_SCOPE,
        existing: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Merge strictly-better information from a duplicate into the stored item.

        Returns:
            {"updated": bool, "fields": [changed field names]}
        """
        if existing is None:
            existing = await self.store.get_item(scope.entity, existing_id)
        if existing is None:
            self.logger.warning("existing_item_missing", entity=scope.entity, existing_id=str(existing_id))
            return {"updated": False, "fields": []}

        updates = self.merge_updates(new_data, existing, scope)
        updated = await self.store.update_item(scope.entity, existing_id, updates)

        enriched = [k for k in updates if k not in ("verification_count", "last_verified_at")]
        if enriched:
            self.logger.debug(
                "existing_item_enriched",
                entity=scope.entity,
                existing_id=str(existing_id),
                fields=enriched,
            )
        return {"updated": updated, "fields": list(updates.keys())}

    async def batch_deduplicate(
        self,
        items: Iterable[Dict[str, Any]],
        scope: DedupScope = DEAL_SCOPE,
    ) -> Dict[str, List[Any]]:
        """Split items into unique ones and duplicates.

        Returns:
            {"unique": [...], "duplicates": [{"item", "result"}], "errors": [...]}
        """
        results: Dict[str, List[Any]] = {"unique": [], "duplicates": [], "errors": []}

        for item in items:
            try:
                result = await self.deduplicate(item, scope)
            except Exception as e:
                results["errors"].append({"item": item, "error": str(e)})
                continue

            if result.is_duplicate:
                results["duplicates"].append({"item": item, "result": result})
            else:
                results["unique"].append(item)

        self.logger.info(
            "batch_deduplication_complete",
            entity=scope.entity,
            unique=len(results["unique"]),
            duplicates=len(results["duplicates"]),
            errors=len(results["errors"]),
        )
        return results
