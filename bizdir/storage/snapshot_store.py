"""Read-only backend over a static snapshot (chunk files plus index)."""

import json
import logging
import os
import threading
from dataclasses import replace
from typing import Any, List, Optional, Tuple

from bizdir.core.exceptions import StorageUnavailable, ValidationError
from bizdir.etl.snapshot import DEFAULT_PAGE_FILENAME, INDEX_FILENAME
from bizdir.models import Business, ChunkIndex, Stats, UpsertResult, utcnow
from bizdir.storage.base import (
    ALL_BUSINESSES,
    BusinessFilter,
    StorageAdapter,
    compute_stats,
    paginate,
    sort_key,
)

logger = logging.getLogger(__name__)


class SnapshotAdapter(StorageAdapter):
    """Serves queries from the files written by the snapshot builder.

    Records are loaded once and filtered/sorted in memory with the same rules
    the SQL backends apply. Without an index file the default first-page file
    is the whole data set.
    """

    name = "snapshot"
    read_only = True

    def __init__(self, directory: str) -> None:
        self.directory = directory
        self._lock = threading.Lock()
        self._records: Optional[List[Business]] = None
        self._cached_stats: Optional[Stats] = None

    def _read_json(self, filename: str) -> Any:
        path = os.path.join(self.directory, filename)
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError) as exc:
            raise StorageUnavailable(self.name, f"cannot read {path}: {exc}") from exc

    def _load(self) -> List[Business]:
        with self._lock:
            if self._records is not None:
                return self._records

            if os.path.exists(os.path.join(self.directory, INDEX_FILENAME)):
                index = ChunkIndex.from_dict(self._read_json(INDEX_FILENAME))
                raw_items: List[Any] = []
                for chunk in sorted(index.chunks, key=lambda entry: entry.chunk_number):
                    raw_items.extend(self._read_json(chunk.filename))
            else:
                logger.warning("No snapshot index in %s; using %s", self.directory, DEFAULT_PAGE_FILENAME)
                raw_items = self._read_json(DEFAULT_PAGE_FILENAME)

            records: List[Business] = []
            for raw in raw_items:
                try:
                    records.append(Business.from_dict(raw))
                except (ValidationError, AttributeError, TypeError) as exc:
                    logger.warning("Skipping malformed snapshot record %r: %s", raw, exc)
            self._records = records
            logger.info("Loaded %d businesses from snapshot %s", len(records), self.directory)
            return records

    def query(
        self, flt: BusinessFilter, page: int = 1, page_size: Optional[int] = None
    ) -> Tuple[List[Business], int]:
        matches = sorted((b for b in self._load() if flt.matches(b)), key=sort_key)
        return paginate(matches, page, page_size), len(matches)

    def get(self, business_id: str) -> Optional[Business]:
        for business in self._load():
            if business.id == business_id:
                return business
        return None

    def upsert(self, business: Business) -> UpsertResult:
        raise StorageUnavailable(self.name, "snapshot backend is read-only")

    def count(self, flt: BusinessFilter = ALL_BUSINESSES) -> int:
        return sum(1 for business in self._load() if flt.matches(business))

    def aggregate(self) -> Stats:
        return replace(compute_stats(self._load()), updated_at=utcnow())

    def load_stats(self) -> Optional[Stats]:
        return self._cached_stats

    def save_stats(self, stats: Stats) -> None:
        self._cached_stats = stats

