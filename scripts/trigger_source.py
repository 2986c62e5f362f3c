"""Run a single ingestion source once, outside the queue.

Useful for checking a feed end to end: the run goes through the same
circuit breaker, rate limiter, pipelines and store as scheduled jobs.

Usage:
    python scripts/trigger_source.py --source slickdeals_rss
    python scripts/trigger_source.py --list
"""

import argparse
import asyncio
import os
import sys
import uuid

# Add backend to path so we can import dealflow modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from dealflow.config import settings
from dealflow.core.exceptions import DealflowError
from dealflow.core.logging import configure_logging
from dealflow.db.session import async_session_factory, engine, init_models
from dealflow.ingestion.ingestion_service import build_ingestion_service
from dealflow.ingestion.sources import SOURCES, is_source_enabled
from dealflow.ingestion.utils.http_client import close_http_client
from dealflow.services.cache_service import get_cache_service
from dealflow.services.store import SqlAlchemyStore


def list_sources() -> None:
    print(f"\n{'='*60}")
    print("  Registered sources")
    print(f"{'='*60}")
    for key, source in sorted(SOURCES.items(), key=lambda kv: kv[1].priority):
        state = "enabled" if is_source_enabled(key) else "disabled"
        entity = "coupon" if source.is_coupon_source else "deal"
        print(f"  {key:<22} {source.type:<4} {entity:<7} {source.schedule:<14} {state}")
    print()


async def run_source(source_key: str) -> int:
    """Run one source and print its stats.

    Returns:
        Process exit code
    """
    await init_models(engine)
    cache = get_cache_service()
    service = build_ingestion_service(SqlAlchemyStore(async_session_factory), cache=cache)

    job_id = f"cli-{source_key}-{uuid.uuid4().hex[:8]}"
    print(f"\nRunning {source_key} (job {job_id})...\n")

    try:
        stats = await service.process_ingestion_job(source_key, job_id)
    except DealflowError as e:
        print(f"Run failed: {e.message}")
        return 1
    finally:
        await close_http_client()
        await cache.close()
        await engine.dispose()

    print(f"{'='*60}")
    for key, value in stats.items():
        print(f"  {key:<10} {value}")
    print(f"{'='*60}\n")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Run one ingestion source once")
    parser.add_argument("--source", help="Source key (see --list)")
    parser.add_argument("--list", action="store_true", help="List registered sources")
    args = parser.parse_args()

    configure_logging(settings.LOG_LEVEL)

    if args.list or not args.source:
        list_sources()
        return

    sys.exit(asyncio.run(run_source(args.source)))


if __name__ == "__main__":
    main()
