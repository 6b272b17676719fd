"""Storage adapter contract and the filter/ordering rules every backend shares."""

from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from bizdir.core.exceptions import ValidationError
from bizdir.models import Business, BusinessStatus, Photo, Stats, UpsertResult, parse_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BusinessFilter:
    """Category/search/status filter. ``status=None`` matches every status."""

    category: Optional[str] = None
    search: Optional[str] = None
    status: Optional[BusinessStatus] = BusinessStatus.OPERATIONAL

    @property
    def category_key(self) -> Optional[str]:
        if not self.category or not self.category.strip():
            return None
        value = self.category.strip().lower()
        return None if value == "all" else value

    @property
    def search_key(self) -> Optional[str]:
        if not self.search or not self.search.strip():
            return None
        return self.search.strip().lower()

    def matches(self, business: Business) -> bool:
        if self.status is not None and business.status is not self.status:
            return False
        category = self.category_key
        if category is not None and (business.category or "").lower() != category:
            return False
        search = self.search_key
        if search is not None:
            haystacks = (business.name, business.address or "", business.category or "")
            if not any(search in text.lower() for text in haystacks):
                return False
        return True


ALL_BUSINESSES = BusinessFilter(status=None)


def sort_key(business: Business) -> Tuple[float, int, str]:
    """Rating desc, review count desc, id asc."""
    return (-business.rating, -business.review_count, business.id)


ORDER_BY_SQL = "ORDER BY rating DESC, review_count DESC, id ASC"


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# Rows that could not become a Business are excluded in SQL so totals match the items returned.
VALID_ROW_SQL = (
    "id <> '' AND TRIM(name) <> '' "
    "AND COALESCE(rating, 0) BETWEEN 0 AND 5 AND COALESCE(review_count, 0) >= 0"
)


def build_where(flt: BusinessFilter, placeholder: str, lower: str = "LOWER") -> Tuple[str, List[object]]:
    """Render ``flt`` as a SQL WHERE clause using the driver's placeholder style.

    The same clause is used by the SQLite and PostgreSQL adapters so both
    backends apply identical matching rules. ``lower`` names the SQL function
    that must lowercase text exactly like ``str.lower``; SQLite registers its
    own because the built-in ``LOWER`` only folds ASCII.
    """
    clauses: List[str] = [VALID_ROW_SQL]
    params: List[object] = []
    if flt.status is not None:
        clauses.append(f"business_status = {placeholder}")
        params.append(flt.status.value)
    category = flt.category_key
    if category is not None:
        clauses.append(f"{lower}(COALESCE(category, '')) = {placeholder}")
        params.append(category)
    search = flt.search_key
    if search is not None:
        pattern = f"%{_escape_like(search)}%"
        clauses.append(
            "("
            + " OR ".join(
                f"{lower}(COALESCE({column}, '')) LIKE {placeholder} ESCAPE '\\'"
                for column in ("name", "address", "category")
            )
            + ")"
        )
        params.extend([pattern, pattern, pattern])
    return "WHERE " + " AND ".join(clauses), params


BUSINESS_COLUMNS = (
    "id",
    "name",
    "address",
    "category",
    "phone",
    "website",
    "email",
    "rating",
    "review_count",
    "latitude",
    "longitude",
    "business_status",
    "logo_url",
    "logo_cached_url",
    "photos",
    "created_at",
    "updated_at",
)


def _row_timestamp(row: Mapping[str, Any], key: str) -> Optional[datetime]:
    try:
        return parse_timestamp(row.get(key))
    except ValidationError as exc:
        logger.warning("Ignoring unreadable %s on stored record id=%s: %s", key, row.get("id"), exc)
        return None


def _row_photos(row: Mapping[str, Any]) -> List[Photo]:
    try:
        photos = row.get("photos") or []
        if isinstance(photos, (str, bytes)):
            photos = json.loads(photos)
        return [Photo.from_dict(photo) for photo in photos]
    except (ValidationError, AttributeError, TypeError, ValueError) as exc:
        logger.warning("Ignoring unreadable photos on stored record id=%s: %s", row.get("id"), exc)
        return []


def business_from_row(row: Mapping[str, Any]) -> Optional[Business]:
    """Map a stored row onto a Business.

    Rows breaking a Business invariant are logged and skipped; the SQL
    adapters already exclude them with ``VALID_ROW_SQL``. Unreadable
    timestamps or photos are dropped from the record rather than the row.
    """
    try:
        latitude, longitude = row.get("latitude"), row.get("longitude")
        coordinates = None
        if latitude is not None and longitude is not None:
            coordinates = (float(latitude), float(longitude))
        return Business(
            id=row["id"],
            name=row["name"],
            address=row.get("address"),
            category=row.get("category"),
            phone=row.get("phone"),
            website=row.get("website"),
            email=row.get("email"),
            rating=row.get("rating") if row.get("rating") is not None else 0.0,
            review_count=row.get("review_count") or 0,
            coordinates=coordinates,
            status=row.get("business_status"),
            logo_url=row.get("logo_url"),
            logo_cached_url=row.get("logo_cached_url"),
            photos=_row_photos(row),
            created_at=_row_timestamp(row, "created_at"),
            updated_at=_row_timestamp(row, "updated_at"),
        )
    except (ValidationError, KeyError, TypeError, ValueError) as exc:
        logger.warning("Skipping malformed stored record id=%s: %s", row.get("id"), exc)
        return None


def rows_to_businesses(rows: Iterable[Mapping[str, Any]]) -> List[Business]:
    businesses = []
    for row in rows:
        business = business_from_row(row)
        if business is not None:
            businesses.append(business)
    return businesses


def paginate(items: List[Business], page: int, page_size: Optional[int]) -> List[Business]:
    if page_size is None:
        return items
    offset = (max(page, 1) - 1) * page_size
    return items[offset : offset + page_size]


def compute_stats(businesses: Iterable[Business], scam_reports: int = 0) -> Stats:
    """Aggregate OPERATIONAL records in Python; SQL adapters mirror this query."""
    total = 0
    reviews = 0
    rating_sum = 0.0
    locations = set()
    for business in businesses:
        if business.status is not BusinessStatus.OPERATIONAL:
            continue
        total += 1
        reviews += business.review_count
        rating_sum += business.rating
        if business.coordinates is not None:
            locations.add(business.coordinates)
    avg_rating = round(rating_sum / total, 2) if total else 0.0
    return Stats(
        total_businesses=total,
        total_reviews=reviews,
        avg_rating=avg_rating,
        location_count=len(locations),
        scam_reports=scam_reports,
    )


class StorageAdapter(abc.ABC):
    """Backend-specific implementation of query/upsert/count/aggregate."""

    name = "base"
    read_only = False

    @abc.abstractmethod
    def query(
        self, flt: BusinessFilter, page: int = 1, page_size: Optional[int] = None
    ) -> Tuple[List[Business], int]:
        """Return one ordered page of matches plus the total match count.

        ``page_size=None`` returns every match.
        """

    @abc.abstractmethod
    def get(self, business_id: str) -> Optional[Business]:
        """Return a single business by id, whatever its status."""

    @abc.abstractmethod
    def upsert(self, business: Business) -> UpsertResult:
        """Insert or fully replace ``business`` keyed by its id."""

    @abc.abstractmethod
    def count(self, flt: BusinessFilter = ALL_BUSINESSES) -> int:
        """Count records matching ``flt`` (every record by default)."""

    @abc.abstractmethod
    def aggregate(self) -> Stats:
        """Compute fresh statistics over OPERATIONAL records."""

    @abc.abstractmethod
    def load_stats(self) -> Optional[Stats]:
        """Return the most recent cached statistics row, if any."""

    @abc.abstractmethod
    def save_stats(self, stats: Stats) -> None:
        """Persist ``stats`` as the newest cached row."""

    def ensure_schema(self) -> None:
        """Create backend tables when the backend needs them."""

    def iter_all(self) -> List[Business]:
        """Every record, in query order, regardless of status."""
        items, _ = self.query(ALL_BUSINESSES, page=1, page_size=None)
        return items

    def close(self) -> None:
        """Release backend resources."""
