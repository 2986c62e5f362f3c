"""Resolve a merchant name to a Company, creating one only when nothing matches."""

from typing import Any, Dict, Optional

import structlog

from dealflow.core.exceptions import UniqueViolation
from dealflow.ingestion.utils.normalizer import slugify
from dealflow.services.dedup_service import dice_coefficient
from dealflow.services.store import IngestionStore

logger = structlog.get_logger(__name__)

FUZZY_MATCH_THRESHOLD = 0.8
FUZZY_MATCH_LIMIT = 500
IGNORED_NAMES = frozenset({"", "unknown"})


class CompanyMatcher:
    """Exact name -> slug -> fuzzy name match -> create (pending, unverified)."""

    def __init__(self, store: IngestionStore):
        self.store = store
        self.logger = logger.bind(service="company_matcher")

    async def match(self, merchant_name: Optional[str]) -> Optional[Dict[str, Any]]:
        if not merchant_name:
            return None
        name = merchant_name.strip()
        if name.lower() in IGNORED_NAMES:
            return None

        slug = slugify(name)
        if not slug:
            return None

        company = await self.store.find_company_by_name_or_slug(name, slug)
        if company:
            return company

        company = await self._fuzzy_match(name)
        if company:
            self.logger.debug("company_fuzzy_matched", merchant=name, company=company["name"])
            return company

        try:
            company = await self.store.create_company(name, slug)
        except UniqueViolation:
            # Another job created it between our lookup and insert
            return await self.store.find_company_by_name_or_slug(name, slug)

        self.logger.info("company_created", merchant=name, slug=slug)
        return company

    async def _fuzzy_match(self, name: str) -> Optional[Dict[str, Any]]:
        companies = await self.store.list_companies(limit=FUZZY_MATCH_LIMIT)
        best = None
        best_score = 0.0
        target = name.lower()

        for company in companies:
            score = dice_coefficient(target, company["name"].lower())
            if score > best_score:
                best_score = score
                best = company

        if best is not None and best_score > FUZZY_MATCH_THRESHOLD:
            return best
        return None
