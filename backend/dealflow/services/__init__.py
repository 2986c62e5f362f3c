"""Services for storage, deduplication, company matching, caching and health."""

from dealflow.services.store import IngestionStore, SqlAlchemyStore
from dealflow.services.dedup_service import DedupResult, DeduplicationEngine
from dealflow.services.company_matcher import CompanyMatcher
from dealflow.services.health_service import HealthMonitor, HealthService

__all__ = [
    "IngestionStore",
    "SqlAlchemyStore",
    "DedupResult",
    "DeduplicationEngine",
    "CompanyMatcher",
    "HealthMonitor",
    "HealthService",
]
