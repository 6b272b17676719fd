"""Managed PostgreSQL backend."""

import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
from psycopg2 import extras, pool

from bizdir.core.config import get_settings
from bizdir.core.exceptions import StorageUnavailable
from bizdir.models import Business, Stats, UpsertResult, utcnow
from bizdir.storage.base import (
    ALL_BUSINESSES,
    BUSINESS_COLUMNS,
    VALID_ROW_SQL,
    BusinessFilter,
    StorageAdapter,
    build_where,
    business_from_row,
    rows_to_businesses,
)

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.SimpleConnectionPool] = None

# Byte-order collation on the id tiebreaker keeps page boundaries identical to the other backends.
_ORDER_BY = 'ORDER BY rating DESC, review_count DESC, id COLLATE "C" ASC'


def init_pool(minconn: int = 1, maxconn: int = 5, dsn: Optional[str] = None) -> pool.SimpleConnectionPool:
    """Initialise and return the shared connection pool."""
    global _connection_pool
    if _connection_pool is None:
        dsn = dsn or get_settings().database_url
        if not dsn:
            raise StorageUnavailable("postgres", "DATABASE_URL is required for database connections")
        try:
            _connection_pool = pool.SimpleConnectionPool(minconn, maxconn, dsn=dsn, connect_timeout=10)
        except psycopg2.OperationalError as exc:
            raise StorageUnavailable("postgres", str(exc)) from exc
        logger.info("Database connection pool initialised")
    return _connection_pool


def close_pool() -> None:
    global _connection_pool
    if _connection_pool is not None:
        _connection_pool.closeall()
        _connection_pool = None


@contextmanager
def get_connection(dsn: Optional[str] = None):
    """Context manager yielding a pooled connection.

    Connection-level failures surface as StorageUnavailable and the
    transaction is rolled back before the connection returns to the pool.
    """
    pg_pool = init_pool(dsn=dsn)
    try:
        conn = pg_pool.getconn()
    except (psycopg2.OperationalError, pool.PoolError) as exc:
        raise StorageUnavailable("postgres", str(exc)) from exc
    try:
        yield conn
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
        conn.rollback()
        raise StorageUnavailable("postgres", str(exc)) from exc
    except Exception:
        conn.rollback()
        raise
    finally:
        pg_pool.putconn(conn)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS businesses (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    address TEXT,
    category TEXT,
    phone TEXT,
    website TEXT,
    email TEXT,
    rating DOUBLE PRECISION NOT NULL DEFAULT 0,
    review_count INTEGER NOT NULL DEFAULT 0,
    latitude DOUBLE PRECISION,
    longitude DOUBLE PRECISION,
    business_status TEXT NOT NULL DEFAULT 'OPERATIONAL',
    logo_url TEXT,
    logo_cached_url TEXT,
    photos JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_businesses_category ON businesses (LOWER(category));
CREATE INDEX IF NOT EXISTS idx_businesses_rating ON businesses (rating DESC, review_count DESC);
CREATE TABLE IF NOT EXISTS business_stats (
    id SERIAL PRIMARY KEY,
    total_businesses INTEGER NOT NULL,
    total_reviews BIGINT NOT NULL,
    avg_rating DOUBLE PRECISION NOT NULL,
    total_locations INTEGER NOT NULL,
    scam_reports INTEGER NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

_UPSERT = """
INSERT INTO businesses (
    id,
    name,
    address,
    category,
    phone,
    website,
    email,
    rating,
    review_count,
    latitude,
    longitude,
    business_status,
    logo_url,
    logo_cached_url,
    photos,
    created_at,
    updated_at
) VALUES (
    %(id)s,
    %(name)s,
    %(address)s,
    %(category)s,
    %(phone)s,
    %(website)s,
    %(email)s,
    %(rating)s,
    %(review_count)s,
    %(latitude)s,
    %(longitude)s,
    %(business_status)s,
    %(logo_url)s,
    %(logo_cached_url)s,
    %(photos)s,
    NOW(),
    NOW()
)
ON CONFLICT (id) DO UPDATE SET
    name = EXCLUDED.name,
    address = EXCLUDED.address,
    category = EXCLUDED.category,
    phone = EXCLUDED.phone,
    website = EXCLUDED.website,
    email = EXCLUDED.email,
    rating = EXCLUDED.rating,
    review_count = EXCLUDED.review_count,
    latitude = EXCLUDED.latitude,
    longitude = EXCLUDED.longitude,
    business_status = EXCLUDED.business_status,
    logo_url = EXCLUDED.logo_url,
    logo_cached_url = EXCLUDED.logo_cached_url,
    photos = EXCLUDED.photos,
    updated_at = NOW()
RETURNING (xmax = 0) AS inserted;
"""

_AGGREGATE = f"""
SELECT
    COUNT(*) AS total_businesses,
    COALESCE(SUM(review_count), 0) AS total_reviews,
    AVG(rating) AS avg_rating,
    COUNT(DISTINCT CASE WHEN latitude IS NOT NULL AND longitude IS NOT NULL
        THEN latitude::text || ',' || longitude::text END) AS total_locations
FROM businesses
WHERE business_status = 'OPERATIONAL' AND {VALID_ROW_SQL}
"""


def _prepare_params(business: Business) -> Dict[str, Any]:
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
        "photos": extras.Json([photo.to_dict() for photo in business.photos]),
    }


class PostgresAdapter(StorageAdapter):
    """Stores businesses in PostgreSQL through the shared connection pool.

    Filters rely on the server's ``LOWER``, which folds non-ASCII letters only
    when the database uses a UTF-8 ``LC_CTYPE`` (e.g. ``en_US.UTF-8`` or
    ``C.UTF-8``). With ``LC_CTYPE=C`` accented names match case-sensitively.
    """

    name = "postgres"

    def __init__(self, dsn: Optional[str] = None) -> None:
        self.dsn = dsn

    def _cursor_rows(self, sql: str, params: Any = None) -> List[Dict[str, Any]]:
        with get_connection(self.dsn) as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                return list(cur.fetchall())

    def ensure_schema(self) -> None:
        with get_connection(self.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(_SCHEMA)
            conn.commit()
        logger.info("PostgreSQL schema ensured")

    def query(
        self, flt: BusinessFilter, page: int = 1, page_size: Optional[int] = None
    ) -> Tuple[List[Business], int]:
        where, params = build_where(flt, "%s")
        sql = f"SELECT {', '.join(BUSINESS_COLUMNS)} FROM businesses {where} {_ORDER_BY}"
        page_params = list(params)
        if page_size is not None:
            sql += " LIMIT %s OFFSET %s"
            page_params += [page_size, (max(page, 1) - 1) * page_size]

        with get_connection(self.dsn) as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(f"SELECT COUNT(*) AS total FROM businesses {where}", params)
                total = int(cur.fetchone()["total"])
                cur.execute(sql, page_params)
                rows = cur.fetchall()
        return rows_to_businesses(rows), total

    def get(self, business_id: str) -> Optional[Business]:
        rows = self._cursor_rows(
            f"SELECT {', '.join(BUSINESS_COLUMNS)} FROM businesses WHERE id = %s", (business_id,)
        )
        return business_from_row(rows[0]) if rows else None

    def upsert(self, business: Business) -> UpsertResult:
        params = _prepare_params(business)
        with get_connection(self.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(_UPSERT, params)
                inserted = cur.fetchone()[0]
            conn.commit()
        result = UpsertResult.CREATED if inserted else UpsertResult.UPDATED
        logger.debug("Upserted business %s (%s)", business.id, result.value)
        return result

    def count(self, flt: BusinessFilter = ALL_BUSINESSES) -> int:
        where, params = build_where(flt, "%s")
        rows = self._cursor_rows(f"SELECT COUNT(*) AS total FROM businesses {where}", params)
        return int(rows[0]["total"])

    def aggregate(self) -> Stats:
        row = self._cursor_rows(_AGGREGATE)[0]
        avg_rating = row["avg_rating"]
        return Stats(
            total_businesses=int(row["total_businesses"]),
            total_reviews=int(row["total_reviews"]),
            avg_rating=round(float(avg_rating), 2) if avg_rating is not None else 0.0,
            location_count=int(row["total_locations"]),
            updated_at=utcnow(),
        )

    def load_stats(self) -> Optional[Stats]:
        rows = self._cursor_rows("SELECT * FROM business_stats ORDER BY id DESC LIMIT 1")
        if not rows:
            return None
        row = rows[0]
        return Stats(
            total_businesses=int(row["total_businesses"]),
            total_reviews=int(row["total_reviews"]),
            avg_rating=float(row["avg_rating"]),
            location_count=int(row["total_locations"]),
            scam_reports=int(row["scam_reports"] or 0),
            updated_at=row["updated_at"],
        )

    def save_stats(self, stats: Stats) -> None:
        with get_connection(self.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO business_stats (
                        total_businesses, total_reviews, avg_rating, total_locations, scam_reports, updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        stats.total_businesses,
                        stats.total_reviews,
                        stats.avg_rating,
                        stats.location_count,
                        stats.scam_reports,
                        stats.updated_at or utcnow(),
                    ),
                )
            conn.commit()

    def close(self) -> None:
        close_pool()
