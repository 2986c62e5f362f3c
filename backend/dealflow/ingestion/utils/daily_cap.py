"""Per-source daily ingestion ceiling.

Counters live in memory and are wiped lazily whenever the local calendar
date observed on access differs from the date of the last reset.
"""

import threading
from datetime import date
from typing import Callable, Dict, Optional

import structlog

from dealflow.config import DailyCapSettings, settings

logger = structlog.get_logger(__name__)


class DailyCapTracker:
    """Counts successful creates per source for the current day."""

    def __init__(
        self,
        config: Optional[DailyCapSettings] = None,
        today: Callable[[], date] = date.today,
    ):
        self.config = config or settings.DAILY_CAPS
        self._today = today
        self._counts: Dict[str, int] = {}
        self._last_reset: date = today()
        self._lock = threading.Lock()

    def _reset_if_new_day(self) -> None:
        current = self._today()
        if current != self._last_reset:
            logger.info(
                "daily_caps_reset",
                previous_date=self._last_reset.isoformat(),
                sources=len(self._counts),
            )
            self._counts = {}
            self._last_reset = current

    def check(self, source: str) -> Dict[str, int | bool]:
        """Check whether another item may be created for this source today.

        Returns:
            {"allowed", "current", "cap", "remaining"}
        """
        with self._lock:
            self._reset_if_new_day()
            current = self._counts.get(source, 0)
        cap = self.config.cap_for(source)
        return {
            "allowed": current < cap,
            "current": current,
            "cap": cap,
            "remaining": max(0, cap - current),
        }

    def increment(self, source: str) -> int:
        """Count one successful create. Returns the new count."""
        with self._lock:
            self._reset_if_new_day()
            count = self._counts.get(source, 0) + 1
            self._counts[source] = count

        cap = self.config.cap_for(source)
        if count >= cap:
            logger.warning("daily_cap_reached", source=source, count=count, cap=cap)
        return count

    def get_counts(self) -> Dict[str, int]:
        with self._lock:
            self._reset_if_new_day()
            return dict(self._counts)

    def reset(self) -> None:
        with self._lock:
            self._counts = {}
            self._last_reset = self._today()


# Global tracker instance
daily_cap_tracker = DailyCapTracker()


def get_daily_cap_tracker() -> DailyCapTracker:
    return daily_cap_tracker


def check_daily_cap(source: str) -> Dict[str, int | bool]:
    return daily_cap_tracker.check(source)


def increment_daily_count(source: str) -> int:
    return daily_cap_tracker.increment(source)


def get_daily_counts() -> Dict[str, int]:
    return daily_cap_tracker.get_counts()
