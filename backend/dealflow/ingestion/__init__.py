"""Ingestion system for pulling deals and coupons from external sources.

This package provides:
- Source registry and fetch strategies (RSS, pluggable API fetchers)
- Item pipelines for deals and coupons
- Resilience utilities: circuit breaker, rate limiting, retries, daily caps
- Job queue and cron scheduler
"""
