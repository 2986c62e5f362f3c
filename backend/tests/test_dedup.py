"""Tests for the multi-strategy deduplication engine."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from dealflow.services.dedup_service import (
    COUPON_SCOPE,
    DEAL_SCOPE,
    DeduplicationEngine,
    calculate_title_similarity,
    dice_coefficient,
    extract_key_terms,
    hash_url,
    prices_similar,
)

SONY_TITLE = "50% off Sony WH-1000XM5 Headphones"
SONY_TITLE_REORDERED = "Sony WH-1000XM5 Headphones — 50% Off"


async def _insert_deal(store, **overrides):
    data = {
        "title": "Generic deal title for tests",
        "url": "https://shop.example.com/item/1",
        "source": "test_feed",
        "price": 199.99,
        "status": "pending",
    }
    data.update(overrides)
    data["url_hash"] = hash_url(data["url"])
    return await store.insert_item("deal", data)


# ============================================================================
# TESTS: SIMILARITY HELPERS
# ============================================================================

class TestSimilarity:
    """Tests for the title and price comparison helpers."""

    def test_dice_identical_and_disjoint(self):
        assert dice_coefficient("headphones", "headphones") == 1.0
        assert dice_coefficient("abc", "xyz") == 0.0
        assert dice_coefficient("a", "ab") == 0.0

    def test_reordered_titles_are_similar(self):
        assert calculate_title_similarity(SONY_TITLE, SONY_TITLE_REORDERED) >= 0.85

    def test_unrelated_titles_are_not_similar(self):
        similarity = calculate_title_similarity(
            "Sony WH-1000XM5 Headphones",
            "Instant Pot Duo 7-in-1 Pressure Cooker",
        )
        assert similarity < 0.5

    def test_key_terms_drop_stop_words(self):
        assert extract_key_terms("Save 50% off the Sony Headphones today") == ["sony", "headphones"]

    def test_prices_similar(self):
        assert prices_similar(100.0, 104.0, 0.05) is True
        assert prices_similar(100.0, 80.0, 0.05) is False
        assert prices_similar(None, 80.0, 0.05) is True
        assert prices_similar(0, 80.0, 0.05) is True

    def test_hash_url_ignores_tracking_params(self):
        assert hash_url("https://www.Shop.example.com/item?utm_source=rss&id=2") == hash_url(
            "https://shop.example.com/item?id=2"
        )
        assert hash_url(None) is None


# ============================================================================
# TESTS: STRATEGY CASCADE
# ============================================================================

class TestDeduplicationEngine:
    """Tests for DeduplicationEngine.deduplicate."""

    async def test_url_exact_match(self, store):
        existing = await _insert_deal(store)
        engine = DeduplicationEngine(store)

        result = await engine.deduplicate({
            "title": "Completely different title",
            "url": "https://shop.example.com/item/1?utm_campaign=spring",
        })

        assert result.is_duplicate is True
        assert result.method == "url_exact"
        assert result.confidence == 1.0
        assert result.existing_id == existing["id"]

    async def test_external_id_match(self, store):
        existing = await _insert_deal(store, external_id="sd-12345")
        engine = DeduplicationEngine(store)

        result = await engine.deduplicate({
            "title": "Another title entirely",
            "url": "https://shop.example.com/item/2",
            "source": "test_feed",
            "external_id": "sd-12345",
        })

        assert result.method == "external_id"
        assert result.confidence == 0.99
        assert result.existing_id == existing["id"]

    async def test_external_id_is_scoped_to_source(self, store):
        await _insert_deal(store, external_id="sd-12345")
        engine = DeduplicationEngine(store)

        result = await engine.deduplicate({
            "title": "Another title entirely",
            "url": "https://shop.example.com/item/2",
            "source": "other_feed",
            "external_id": "sd-12345",
        })

        assert result.is_duplicate is False

    async def test_exact_title_match(self, store):
        existing = await _insert_deal(store, title="Anker 737 Power Bank 24000mAh")
        engine = DeduplicationEngine(store)

        result = await engine.deduplicate({
            "title": "  anker 737 power bank 24000mah ",
            "url": "https://other.example.com/anker",
        })

        assert result.method == "exact_title"
        assert result.confidence == 0.98
        assert result.existing_id == existing["id"]

    async def test_exact_title_outside_window_is_ignored(self, store):
        await _insert_deal(store, title="Anker 737 Power Bank 24000mAh")
        engine = DeduplicationEngine(
            store,
            clock=lambda: datetime.now(timezone.utc) + timedelta(days=10),
        )

        result = await engine.deduplicate({
            "title": "Anker 737 Power Bank 24000mAh",
            "url": "https://other.example.com/anker",
        })

        assert result.is_duplicate is False

    async def test_company_title_similarity_with_matching_price(self, store):
        company = await store.create_company("Sony", "sony")
        existing = await _insert_deal(
            store,
            title=SONY_TITLE,
            url="https://electronics.example.com/sony-xm5",
            price=278.0,
            company_id=company["id"],
        )
        engine = DeduplicationEngine(store)

        result = await engine.deduplicate({
            "title": SONY_TITLE_REORDERED,
            "url": "https://another.example.com/xm5",
            "price": 278.0,
            "company_id": company["id"],
        })

        assert result.is_duplicate is True
        assert result.method == "title_similarity"
        assert result.confidence >= 0.85
        assert result.existing_id == existing["id"]
        assert result.details["price_match"] is True

    async def test_price_difference_rejects_similar_title(self, store):
        company = await store.create_company("Sony", "sony")
        await _insert_deal(
            store,
            title=SONY_TITLE,
            url="https://electronics.example.com/sony-xm5",
            price=278.0,
            company_id=company["id"],
        )
        engine = DeduplicationEngine(store)

        result = await engine.deduplicate({
            "title": SONY_TITLE_REORDERED,
            "url": "https://another.example.com/xm5",
            "price": 222.4,  # 20% lower
            "company_id": company["id"],
        })

        assert result.is_duplicate is False

    async def test_global_search_across_companies(self, store):
        existing = await _insert_deal(
            store,
            title=SONY_TITLE,
            url="https://electronics.example.com/sony-xm5",
            price=278.0,
        )
        engine = DeduplicationEngine(store)

        result = await engine.deduplicate({
            "title": SONY_TITLE_REORDERED,
            "url": "https://another.example.com/xm5",
            "price": 279.0,
        })

        assert result.method == "global_search"
        assert result.existing_id == existing["id"]
        assert result.confidence == pytest.approx(
            calculate_title_similarity(SONY_TITLE_REORDERED, SONY_TITLE) * 0.9
        )

    async def test_global_search_skips_short_titles(self, store):
        await _insert_deal(store, title="Sony Headphones XM5", url="https://a.example.com/1")
        engine = DeduplicationEngine(store)

        result = await engine.deduplicate({
            "title": "XM5 Sony Headphones",
            "url": "https://b.example.com/2",
        })

        assert result.is_duplicate is False

    async def test_new_item_is_not_duplicate(self, store):
        await _insert_deal(store)
        engine = DeduplicationEngine(store)

        result = await engine.deduplicate({
            "title": "Brand new LEGO Star Wars Millennium Falcon set",
            "url": "https://toys.example.com/falcon",
            "price": 159.99,
        })

        assert result.is_duplicate is False
        assert result.method is None

    async def test_lookup_failure_is_treated_as_unique(self):
        store = AsyncMock()
        store.item_exists_by_url.side_effect = RuntimeError("database unavailable")
        engine = DeduplicationEngine(store)

        result = await engine.deduplicate({"title": "Anything", "url": "https://x.example.com"})

        assert result.is_duplicate is False

    async def test_coupon_scope_uses_coupon_table(self, store):
        await _insert_deal(store, url="https://shop.example.com/coupon-page")
        coupon = await store.insert_item("coupon", {
            "title": "20% off sitewide",
            "source": "test_feed",
            "source_url": "https://coupons.example.com/shop-20",
            "url_hash": hash_url("https://coupons.example.com/shop-20"),
            "status": "pending",
        })
        engine = DeduplicationEngine(store)

        deal_url_as_coupon = await engine.deduplicate(
            {"title": "Unrelated coupon title", "source_url": "https://shop.example.com/coupon-page"},
            COUPON_SCOPE,
        )
        same_coupon = await engine.deduplicate(
            {"title": "Unrelated coupon title", "source_url": "https://coupons.example.com/shop-20"},
            COUPON_SCOPE,
        )

        assert deal_url_as_coupon.is_duplicate is False
        assert same_coupon.existing_id == coupon["id"]

    async def test_batch_deduplicate(self, store):
        await _insert_deal(store)
        engine = DeduplicationEngine(store)

        results = await engine.batch_deduplicate([
            {"title": "Dup", "url": "https://shop.example.com/item/1"},
            {"title": "Fresh item with a long enough title", "url": "https://shop.example.com/item/9"},
        ])

        assert len(results["duplicates"]) == 1
        assert len(results["unique"]) == 1
        assert results["errors"] == []


# ============================================================================
# TESTS: MERGE ON DUPLICATE
# ============================================================================

class TestMergeUpdates:
    """Tests for merging a duplicate's information into the stored item."""

    def test_fills_missing_and_prefers_better_values(self, store):
        engine = DeduplicationEngine(store)
        now = datetime.now(timezone.utc)
        existing = {
            "image_url": None,
            "description": "short",
            "price": 100.0,
            "original_price": None,
            "expires_at": now + timedelta(days=1),
            "verification_count": 2,
        }
        new = {
            "image_url": "https://img.example.com/a.jpg",
            "images": ["https://img.example.com/a.jpg"],
            "description": "a much longer description of the deal",
            "price": 89.0,
            "original_price": 120.0,
            "expires_at": now + timedelta(days=3),
            "coupon_code": "SAVE10",
        }

        updates = engine.merge_updates(new, existing, DEAL_SCOPE)

        assert updates["image_url"] == "https://img.example.com/a.jpg"
        assert updates["images"] == ["https://img.example.com/a.jpg"]
        assert updates["description"] == new["description"]
        assert updates["price"] == 89.0
        assert updates["original_price"] == 120.0
        assert updates["expires_at"] == new["expires_at"]
        assert updates["coupon_code"] == "SAVE10"
        assert updates["verification_count"] == 3
        assert "last_verified_at" in updates

    def test_never_overwrites_with_worse_data(self, store):
        engine = DeduplicationEngine(store)
        existing = {
            "image_url": "https://img.example.com/keep.jpg",
            "description": "a long and detailed description",
            "price": 100.0,
            "verification_count": 0,
        }
        new = {
            "image_url": "https://img.example.com/new.jpg",
            "description": "short",
            "price": 100.001,
        }

        updates = engine.merge_updates(new, existing, DEAL_SCOPE)

        assert set(updates) == {"verification_count", "last_verified_at"}

    async def test_update_existing_writes_to_store(self, store):
        existing = await _insert_deal(store, description=None)
        engine = DeduplicationEngine(store)

        outcome = await engine.update_existing(
            existing["id"],
            {"description": "Now with a description"},
            DEAL_SCOPE,
        )
        stored = await store.get_item("deal", existing["id"])

        assert outcome["updated"] is True
        assert "description" in outcome["fields"]
        assert stored["description"] == "Now with a description"
        assert stored["verification_count"] == 1
