"""Cached directory statistics."""

import logging
from dataclasses import replace
from typing import Callable, Optional

from bizdir.models import Stats, utcnow
from bizdir.storage.base import StorageAdapter

logger = logging.getLogger(__name__)


def _no_scam_reports() -> int:
    return 0


class StatsAggregator:
    """Serves the latest cached Stats row, computing one only when none exists.

    Writes do not invalidate the cache; ``refresh`` is the explicit
    administrative recompute.
    """

    def __init__(self, adapter: StorageAdapter, scam_reports: Optional[Callable[[], int]] = None) -> None:
        self.adapter = adapter
        self.scam_reports = scam_reports or _no_scam_reports

    def compute(self) -> Stats:
        stats = self.adapter.aggregate()
        return replace(stats, scam_reports=self.scam_reports(), updated_at=stats.updated_at or utcnow())

    def get_stats(self) -> Stats:
        cached = self.adapter.load_stats()
        if cached is not None:
            return cached
        logger.info("No cached stats for %s backend; computing", self.adapter.name)
        return self.refresh()

    def refresh(self) -> Stats:
        stats = self.compute()
        self.adapter.save_stats(stats)
        logger.info(
            "Stats refreshed: businesses=%d reviews=%d avg_rating=%.2f locations=%d",
            stats.total_businesses,
            stats.total_reviews,
            stats.avg_rating,
            stats.location_count,
        )
        return stats
