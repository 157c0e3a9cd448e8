"""Counters for tracker activity."""
import time
import logging
from collections import defaultdict
from typing import Dict

logger = logging.getLogger(__name__)


class Metrics:
    """Track check/notification counters and throughput since start."""

    def __init__(self):
        self.start_time = time.time()
        self.counters: Dict[str, int] = defaultdict(int)
        self.last_report_time = time.time()
        self.last_report_count = 0

    def increment(self, key: str, amount: int = 1) -> None:
        """Increment a counter."""
        self.counters[key] = self.counters.get(key, 0) + amount

    def get(self, key: str) -> int:
        return self.counters.get(key, 0)

    def get_rate(self) -> float:
        """Get completed checks per second since start."""
        elapsed = time.time() - self.start_time
        checks = self.counters.get("check_completed", 0)
        if elapsed > 0:
            return checks / elapsed
        return 0.0

    def get_cache_hit_ratio(self) -> float:
        hits = self.counters.get("cache_hit", 0)
        lookups = hits + self.counters.get("cache_miss", 0)
        return hits / lookups if lookups else 0.0

    def report(self) -> None:
        """Log current metrics."""
        now = time.time()
        checks = self.counters.get("check_completed", 0)

        recent_elapsed = now - self.last_report_time
        recent_checks = checks - self.last_report_count
        recent_rate = recent_checks / recent_elapsed if recent_elapsed > 0 else 0

        logger.info(
            f"Checks: {checks} | "
            f"Rate: {self.get_rate():.2f}/s (recent: {recent_rate:.2f}/s) | "
            f"Failed: {self.counters.get('check_failed', 0)} | "
            f"Cache hit ratio: {self.get_cache_hit_ratio():.0%} | "
            f"Coalesced: {self.counters.get('single_flight_coalesced', 0)} | "
            f"Finalized: {self.counters.get('job_finalized', 0)}"
        )

        self.last_report_time = now
        self.last_report_count = checks

    def get_summary(self) -> Dict:
        """Get summary statistics."""
        return {
            "elapsed_seconds": time.time() - self.start_time,
            "rate": self.get_rate(),
            "cache_hit_ratio": self.get_cache_hit_ratio(),
            "counters": dict(self.counters),
        }
