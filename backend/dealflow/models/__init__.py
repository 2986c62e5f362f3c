"""ORM models. Importing this package registers every table on Base.metadata."""

from dealflow.models.base import Base
from dealflow.models.company import Company
from dealflow.models.coupon import Coupon
from dealflow.models.deal import Deal
from dealflow.models.ingestion_run import IngestionError, IngestionRun

__all__ = [
    "Base",
    "Company",
    "Coupon",
    "Deal",
    "IngestionError",
    "IngestionRun",
]
