"""Embedded SQLite backend."""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple

from bizdir.core.exceptions import StorageUnavailable
from bizdir.models import Business, Stats, UpsertResult, format_timestamp, parse_timestamp, utcnow
from bizdir.storage.base import (
    ALL_BUSINESSES,
    BUSINESS_COLUMNS,
    ORDER_BY_SQL,
    VALID_ROW_SQL,
    BusinessFilter,
    StorageAdapter,
    build_where,
    business_from_row,
    rows_to_businesses,
)

logger = logging.getLogger(__name__)

# Registered per connection; SQLite's built-in LOWER only folds ASCII letters.
_LOWER_FUNCTION = "py_lower"


def _py_lower(value):
    return value.lower() if isinstance(value, str) else value


_SCHEMA = """
CREATE TABLE IF NOT EXISTS businesses (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    address TEXT,
    category TEXT,
    phone TEXT,
    website TEXT,
    email TEXT,
    rating REAL NOT NULL DEFAULT 0,
    review_count INTEGER NOT NULL DEFAULT 0,
    latitude REAL,
    longitude REAL,
    business_status TEXT NOT NULL DEFAULT 'OPERATIONAL',
    logo_url TEXT,
    logo_cached_url TEXT,
    photos TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_businesses_category ON businesses(category);
CREATE INDEX IF NOT EXISTS idx_businesses_rating ON businesses(rating, review_count);
CREATE TABLE IF NOT EXISTS business_stats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    total_businesses INTEGER NOT NULL,
    total_reviews INTEGER NOT NULL,
    avg_rating REAL NOT NULL,
    total_locations INTEGER NOT NULL,
    scam_reports INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);
"""

_UPSERT = """
INSERT INTO businesses (
    id, name, address, category, phone, website, email, rating, review_count,
    latitude, longitude, business_status, logo_url, logo_cached_url, photos,
    created_at, updated_at
) VALUES (
    :id, :name, :address, :category, :phone, :website, :email, :rating, :review_count,
    :latitude, :longitude, :business_status, :logo_url, :logo_cached_url, :photos,
    :now, :now
)
ON CONFLICT (id) DO UPDATE SET
    name = excluded.name,
    address = excluded.address,
    category = excluded.category,
    phone = excluded.phone,
    website = excluded.website,
    email = excluded.email,
    rating = excluded.rating,
    review_count = excluded.review_count,
    latitude = excluded.latitude,
    longitude = excluded.longitude,
    business_status = excluded.business_status,
    logo_url = excluded.logo_url,
    logo_cached_url = excluded.logo_cached_url,
    photos = excluded.photos,
    updated_at = excluded.updated_at
"""

_AGGREGATE = f"""
SELECT
    COUNT(*) AS total_businesses,
    COALESCE(SUM(review_count), 0) AS total_reviews,
    AVG(rating) AS avg_rating,
    COUNT(DISTINCT CASE WHEN latitude IS NOT NULL AND longitude IS NOT NULL
        THEN latitude || ',' || longitude END) AS total_locations
FROM businesses
WHERE business_status = 'OPERATIONAL' AND {VALID_ROW_SQL}
"""


def business_params(business: Business) -> dict:
    return {
        "id": business.id,
        "name": business.name,
        "address": business.address,
        "category": business.category,
        "phone": business.phone,
        "website": business.website,
        "email": business.email,
        "rating": business.rating,
        "review_count": business.review_count,
        "latitude": business.latitude,
        "longitude": business.longitude,
        "business_status": business.status.value,
        "logo_url": business.logo_url,
        "logo_cached_url": business.logo_cached_url,
        "photos": json.dumps([photo.to_dict() for photo in business.photos], ensure_ascii=False),
    }


class SQLiteAdapter(StorageAdapter):
    """Stores businesses in a single SQLite file.

    A fresh connection is opened per operation so the adapter can be shared by
    request threads and the ingestion worker.
    """

    name = "sqlite"

    def __init__(self, path: str, timeout: float = 10.0) -> None:
        self.path = path
        self.timeout = timeout
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        logger.info("SQLite store ready at %s", path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None)
        except sqlite3.Error as exc:
            raise StorageUnavailable(self.name, f"cannot open {self.path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        conn.create_function(_LOWER_FUNCTION, 1, _py_lower, deterministic=True)
        try:
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.DatabaseError as exc:
            raise StorageUnavailable(self.name, str(exc)) from exc
        finally:
            conn.close()

    def query(
        self, flt: BusinessFilter, page: int = 1, page_size: Optional[int] = None
    ) -> Tuple[List[Business], int]:
        where, params = build_where(flt, "?", _LOWER_FUNCTION)
        sql = f"SELECT {', '.join(BUSINESS_COLUMNS)} FROM businesses {where} {ORDER_BY_SQL}"
        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM businesses {where}", params).fetchone()[0]
            if page_size is not None:
                sql += " LIMIT ? OFFSET ?"
                params = params + [page_size, (max(page, 1) - 1) * page_size]
            rows = conn.execute(sql, params).fetchall()
        return rows_to_businesses(dict(row) for row in rows), int(total)

    def get(self, business_id: str) -> Optional[Business]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {', '.join(BUSINESS_COLUMNS)} FROM businesses WHERE id = ?", (business_id,)
            ).fetchone()
        return business_from_row(dict(row)) if row is not None else None

    def upsert(self, business: Business) -> UpsertResult:
        params = business_params(business)
        params["now"] = format_timestamp(utcnow())
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                existing = conn.execute("SELECT 1 FROM businesses WHERE id = ?", (business.id,)).fetchone()
                conn.execute(_UPSERT, params)
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        result = UpsertResult.UPDATED if existing else UpsertResult.CREATED
        logger.debug("Upserted business %s (%s)", business.id, result.value)
        return result

    def count(self, flt: BusinessFilter = ALL_BUSINESSES) -> int:
        where, params = build_where(flt, "?", _LOWER_FUNCTION)
        with self._connect() as conn:
            return int(conn.execute(f"SELECT COUNT(*) FROM businesses {where}", params).fetchone()[0])

    def aggregate(self) -> Stats:
        with self._connect() as conn:
            row = conn.execute(_AGGREGATE).fetchone()
        avg_rating = row["avg_rating"]
        return Stats(
            total_businesses=int(row["total_businesses"]),
            total_reviews=int(row["total_reviews"]),
            avg_rating=round(float(avg_rating), 2) if avg_rating is not None else 0.0,
            location_count=int(row["total_locations"]),
            updated_at=utcnow(),
        )

    def load_stats(self) -> Optional[Stats]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM business_stats ORDER BY id DESC LIMIT 1").fetchone()
        if row is None:
            return None
        return Stats(
            total_businesses=row["total_businesses"],
            total_reviews=row["total_reviews"],
            avg_rating=row["avg_rating"],
            location_count=row["total_locations"],
            scam_reports=row["scam_reports"],
            updated_at=parse_timestamp(row["updated_at"]),
        )

    def save_stats(self, stats: Stats) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO business_stats (
                    total_businesses, total_reviews, avg_rating, total_locations, scam_reports, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    stats.total_businesses,
                    stats.total_reviews,
                    stats.avg_rating,
                    stats.location_count,
                    stats.scam_reports,
                    format_timestamp(stats.updated_at or utcnow()),
                ),
            )
