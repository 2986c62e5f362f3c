"""Factory mapping source types to fetch strategies."""

from typing import Dict, Optional, Type

import structlog

from dealflow.core.exceptions import FetchError
from dealflow.ingestion.base import Fetcher
from dealflow.ingestion.fetchers import ApiFetcher, RssFetcher
from dealflow.ingestion.sources import SourceConfig
from dealflow.ingestion.utils.http_client import HttpClient

logger = structlog.get_logger(__name__)


class FetcherFactory:
    """Creates fetcher instances for sources and shares the HTTP client between them."""

    def __init__(self, http: Optional[HttpClient] = None):
        self.http = http
        self._fetcher_registry: Dict[str, Type[Fetcher]] = {}

        self.register_fetcher(RssFetcher)
        self.register_fetcher(ApiFetcher)

    def register_fetcher(self, fetcher_class: Type[Fetcher]) -> None:
        """Register a fetcher class under its ``source_type``.

        Args:
            fetcher_class: Fetcher subclass
        """
        if not issubclass(fetcher_class, Fetcher):
            raise ValueError(f"Fetcher class must inherit from Fetcher: {fetcher_class}")

        self._fetcher_registry[fetcher_class.source_type] = fetcher_class
        logger.debug("fetcher_registered", source_type=fetcher_class.source_type)

    def create_fetcher(self, source: SourceConfig) -> Fetcher:
        """Create the fetcher for a source.

        Raises:
            FetchError: If no fetcher handles the source type
        """
        fetcher_class = self._fetcher_registry.get(source.type)
        if fetcher_class is None:
            raise FetchError(source.key, f"no fetcher registered for type {source.type}")

        return fetcher_class(http=self.http)

    def has_fetcher(self, source_type: str) -> bool:
        return source_type in self._fetcher_registry


# Global factory instance
fetcher_factory = FetcherFactory()


def get_fetcher_factory() -> FetcherFactory:
    return fetcher_factory
