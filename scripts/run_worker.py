"""Start the ingestion worker with its health API.

Usage:
    python scripts/run_worker.py
    python scripts/run_worker.py --port 3002 --reload
"""

import argparse
import os
import sys

import uvicorn

# Add backend to path so we can import dealflow modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from dealflow.config import settings


def main():
    parser = argparse.ArgumentParser(description="Run the Dealflow ingestion worker")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=settings.HEALTH_PORT)
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")
    args = parser.parse_args()

    uvicorn.run(
        "dealflow.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
