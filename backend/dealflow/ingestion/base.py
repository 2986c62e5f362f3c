"""Core data structures shared by fetchers, processors and the scheduler."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from dealflow.ingestion.sources import SourceConfig
from dealflow.ingestion.utils.http_client import HttpClient, get_http_client

# Untyped listing as produced by a fetcher; discarded after normalization
RawItem = Dict[str, Any]


@dataclass
class ProcessResult:
    """Terminal outcome of one item: created, updated, skipped or error."""

    action: str
    id: Optional[Any] = None
    reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    method: Optional[str] = None
    confidence: Optional[float] = None
    error: Optional[str] = None
    duration_ms: int = 0


@dataclass
class BatchResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    details: List[ProcessResult] = field(default_factory=list)

    def add(self, result: ProcessResult) -> None:
        if result.action == "created":
            self.created += 1
        elif result.action == "updated":
            self.updated += 1
        elif result.action == "skipped":
            self.skipped += 1
        elif result.action == "error":
            self.errors += 1
        self.details.append(result)


class Fetcher(ABC):
    """Turns one source configuration into raw listings.

    Errors propagate to the caller, which records them against the
    source circuit breaker.
    """

    source_type: str = ""

    def __init__(self, http: Optional[HttpClient] = None):
        self._http = http
        self.logger = structlog.get_logger(__name__).bind(fetcher=self.source_type)

    @property
    def http(self) -> HttpClient:
        return self._http or get_http_client()

    @abstractmethod
    async def fetch(self, source: SourceConfig) -> List[RawItem]:
        """Fetch raw items for a source.

        Args:
            source: Source configuration

        Returns:
            List of raw item dicts

        Raises:
            FetchError: If the source cannot be fetched
        """
        pass
