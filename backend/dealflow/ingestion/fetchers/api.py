"""Pluggable fetch strategy for affiliate/partner APIs.

The concrete client lives outside the core: a source names it with a
``"package.module:callable"`` path and the callable is awaited with the
source configuration.
"""

import importlib
import inspect
from typing import Any, Callable, List

from dealflow.core.exceptions import FetchError
from dealflow.ingestion.base import Fetcher, RawItem
from dealflow.ingestion.sources import SourceConfig


def load_callable(path: str) -> Callable[..., Any]:
    """Import ``module:attr`` and return the attribute.

    Raises:
        FetchError: If the module or attribute cannot be loaded
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise FetchError(path, "fetcher path must look like 'package.module:callable'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise FetchError(path, f"cannot import {module_name}: {e}") from e
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise FetchError(path, f"{module_name} has no attribute {attr}") from e


class ApiFetcher(Fetcher):
    source_type = "api"

    async def fetch(self, source: SourceConfig) -> List[RawItem]:
        if not source.fetcher:
            self.logger.warning("api_fetcher_not_configured", source=source.key)
            return []

        fetch_fn = load_callable(source.fetcher)
        result = fetch_fn(source)
        if inspect.isawaitable(result):
            result = await result
        items = list(result or [])
        self.logger.info("api_items_fetched", source=source.key, item_count=len(items))
        return items
