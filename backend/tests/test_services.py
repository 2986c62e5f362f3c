"""Tests for the company matcher, the ingestion store and the cache service.

Tests cover:
- Merchant name -> Company resolution (exact, slug, fuzzy, create)
- Store uniqueness and run bookkeeping
- Cache behaviour when Redis is disabled or unreachable
"""

from unittest.mock import AsyncMock

import pytest

from dealflow.core.exceptions import UniqueViolation
from dealflow.services.cache_service import CacheService, cache_key_for_images, cache_key_for_merchant_url
from dealflow.services.company_matcher import CompanyMatcher


# ============================================================================
# TESTS: COMPANY MATCHER
# ============================================================================

class TestCompanyMatcher:
    """Tests for CompanyMatcher.match."""

    async def test_creates_pending_company(self, store):
        matcher = CompanyMatcher(store)

        company = await matcher.match("  Acme Widgets ")

        assert company["name"] == "Acme Widgets"
        assert company["slug"] == "acme-widgets"
        assert company["status"] == "pending"
        assert company["is_verified"] is False

    async def test_exact_name_is_case_insensitive(self, store):
        existing = await store.create_company("Best Buy", "best-buy")
        matcher = CompanyMatcher(store)

        company = await matcher.match("BEST BUY")

        assert company["id"] == existing["id"]

    async def test_slug_match(self, store):
        existing = await store.create_company("Lowe's", "lowe-s")
        matcher = CompanyMatcher(store)

        company = await matcher.match("Lowe S")

        assert company["id"] == existing["id"]

    async def test_fuzzy_match(self, store):
        existing = await store.create_company("Best Buy", "best-buy")
        matcher = CompanyMatcher(store)

        company = await matcher.match("Best Buy Co")

        assert company["id"] == existing["id"]
        assert len(await store.list_companies()) == 1

    @pytest.mark.parametrize("name", [None, "", "   ", "Unknown", "!!!"])
    async def test_ignored_names(self, store, name):
        matcher = CompanyMatcher(store)

        assert await matcher.match(name) is None
        assert await store.list_companies() == []

    async def test_concurrent_create_returns_winner(self):
        winner = {"id": "c-1", "name": "Acme", "slug": "acme"}
        store = AsyncMock()
        store.find_company_by_name_or_slug.side_effect = [None, winner]
        store.list_companies.return_value = []
        store.create_company.side_effect = UniqueViolation("company", "slug")

        company = await CompanyMatcher(store).match("Acme")

        assert company == winner
        assert store.find_company_by_name_or_slug.await_count == 2


# ============================================================================
# TESTS: STORE
# ============================================================================

class TestSqlAlchemyStore:
    """Tests for SqlAlchemyStore."""

    async def test_duplicate_company_slug_raises(self, store):
        await store.create_company("Acme", "acme")

        with pytest.raises(UniqueViolation):
            await store.create_company("ACME Inc", "acme")

    async def test_duplicate_deal_url_raises(self, store):
        data = {"title": "Some deal title here", "url": "https://shop.example.com/a", "source": "feed"}
        await store.insert_item("deal", dict(data))

        with pytest.raises(UniqueViolation):
            await store.insert_item("deal", dict(data))

    async def test_unknown_entity(self, store):
        with pytest.raises(ValueError):
            await store.get_item("voucher", None)

    async def test_update_item(self, store):
        deal = await store.insert_item(
            "deal",
            {"title": "Some deal title here", "url": "https://shop.example.com/a", "source": "feed"},
        )

        assert await store.update_item("deal", deal["id"], {"description": "updated"}) is True
        assert await store.update_item("deal", deal["id"], {}) is False
        assert (await store.get_item("deal", deal["id"]))["description"] == "updated"

    async def test_run_lifecycle_and_stats(self, store):
        run_id = await store.start_run("feed", {"job_id": "job-1"})
        await store.complete_run(run_id, "completed", {"fetched": 3, "created": 2, "skipped": 1})
        await store.log_error("feed", RuntimeError("bad item"), {"title": "x" * 600})

        stats = await store.get_ingestion_stats()

        assert stats["runs_24h"] == {"completed": 1}
        assert stats["errors_24h"] == 1
        assert stats["last_successful_run"] is not None

    async def test_ping(self, store):
        assert await store.ping() is True


# ============================================================================
# TESTS: CACHE
# ============================================================================

class TestCacheService:
    """Tests for CacheService without a live Redis."""

    async def test_disabled_cache_is_a_no_op(self):
        cache = CacheService("redis://localhost:6379/0", enabled=False)

        assert await cache.set("key", "value") is False
        assert await cache.get("key") is None
        assert await cache.get_json("key") is None
        assert await cache.delete("key") is False

    async def test_unreachable_redis_reports_unhealthy(self):
        cache = CacheService("redis://127.0.0.1:1/0")

        assert await cache.health_check() is False
        assert await cache.get("key") is None
        await cache.close()

    def test_cache_keys_are_stable(self):
        url = "https://slickdeals.net/f/123"

        assert cache_key_for_merchant_url(url) == cache_key_for_merchant_url(url)
        assert cache_key_for_merchant_url(url).startswith("merchant_url:")
        assert cache_key_for_images(url, 5) != cache_key_for_images(url, 1)
