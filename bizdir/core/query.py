"""One listing/search request shape over whichever storage adapter is active."""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from bizdir.models import Business, BusinessStatus
from bizdir.storage.base import BusinessFilter, StorageAdapter

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


@dataclass(frozen=True)
class BusinessPage:
    businesses: List[Business]
    total: int
    page: int
    total_pages: int
    limit: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "businesses": [business.to_dict() for business in self.businesses],
            "total": self.total,
            "page": self.page,
            "totalPages": self.total_pages,
            "limit": self.limit,
        }


def clamp_page_size(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_PAGE_SIZE
    return min(max(int(limit), 1), MAX_PAGE_SIZE)


class QueryEngine:
    """Translates listing requests into adapter calls.

    Results are ordered by rating then review count (both descending) so
    listings favour popular businesses; ``all=True`` skips clamping and
    pagination entirely.
    """

    def __init__(self, adapter: StorageAdapter) -> None:
        self.adapter = adapter

    def list_businesses(
        self,
        *,
        category: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = DEFAULT_PAGE_SIZE,
        all: bool = False,
        status: Optional[BusinessStatus] = BusinessStatus.OPERATIONAL,
    ) -> BusinessPage:
        flt = BusinessFilter(category=category, search=search, status=status)

        if all:
            items, total = self.adapter.query(flt, page=1, page_size=None)
            return BusinessPage(businesses=items, total=total, page=1, total_pages=1, limit=total)

        page = max(int(page), 1)
        page_size = clamp_page_size(limit)
        items, total = self.adapter.query(flt, page=page, page_size=page_size)
        total_pages = math.ceil(total / page_size) if total else 0
        logger.debug(
            "Query category=%s search=%s page=%d/%d returned %d of %d",
            category,
            search,
            page,
            total_pages,
            len(items),
            total,
        )
        return BusinessPage(businesses=items, total=total, page=page, total_pages=total_pages, limit=page_size)

    def get_business(self, business_id: str) -> Optional[Business]:
        return self.adapter.get(business_id)
