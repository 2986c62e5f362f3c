"""Fetch strategies keyed by source type."""

from dealflow.ingestion.fetchers.api import ApiFetcher
from dealflow.ingestion.fetchers.rss import RssFetcher

__all__ = ["ApiFetcher", "RssFetcher"]
