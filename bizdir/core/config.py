"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

from dotenv import load_dotenv

from bizdir.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

STORAGE_BACKENDS = ("sqlite", "postgres", "snapshot")

DEFAULT_CATEGORIES: Tuple[str, ...] = (
    "consultants in dubai",
    "abroad consultants in dubai",
    "overseas services in dubai",
    "visa services in dubai",
    "business consultants dubai",
    "immigration consultants dubai",
    "visa consultants dubai",
    "overseas education dubai",
)


@dataclass(frozen=True)
class Settings:
    storage_backend: str = "sqlite"
    sqlite_path: str = "data/businesses.db"
    database_url: str = ""
    snapshot_dir: str = "data/snapshot"
    google_api_key: str = ""
    worker_port: int = 9000
    ingest_categories: Tuple[str, ...] = DEFAULT_CATEGORIES
    ingest_delay_seconds: float = 2.0
    ingest_max_results: int = 20
    ingest_fetch_details: bool = False
    search_location: Optional[str] = "25.2048,55.2708"
    search_radius: int = 75000
    request_timeout: float = 10.0
    snapshot_chunk_size: int = 50


def _env_number(name: str, default: str, cast):
    raw = os.getenv(name, default)
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be numeric, got {raw!r}") from exc


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


def _parse_categories(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return DEFAULT_CATEGORIES
    categories = tuple(part.strip() for part in raw.split(",") if part.strip())
    return categories or DEFAULT_CATEGORIES


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    storage_backend = os.getenv("STORAGE_BACKEND", "sqlite").strip().lower()
    if storage_backend not in STORAGE_BACKENDS:
        raise ConfigError(
            f"STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}, got {storage_backend!r}"
        )

    database_url = os.getenv("DATABASE_URL", "")
    google_api_key = os.getenv("GOOGLE_API_KEY", "")
    worker_port = _env_number("WORKER_PORT", os.getenv("PORT", "9000"), int)
    chunk_size = _env_number("SNAPSHOT_CHUNK_SIZE", "50", int)
    if chunk_size <= 0:
        raise ConfigError("SNAPSHOT_CHUNK_SIZE must be positive")
    search_location = os.getenv("SEARCH_LOCATION", "25.2048,55.2708").strip() or None

    if storage_backend == "postgres" and not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not google_api_key:
        logger.warning("GOOGLE_API_KEY is not configured; Google Places requests will fail.")

    return Settings(
        storage_backend=storage_backend,
        sqlite_path=os.getenv("SQLITE_PATH", "data/businesses.db"),
        database_url=database_url,
        snapshot_dir=os.getenv("SNAPSHOT_DIR", "data/snapshot"),
        google_api_key=google_api_key,
        worker_port=worker_port,
        ingest_categories=_parse_categories(os.getenv("INGEST_CATEGORIES")),
        ingest_delay_seconds=_env_number("INGEST_DELAY_SECONDS", "2.0", float),
        ingest_max_results=_env_number("INGEST_MAX_RESULTS", "20", int),
        ingest_fetch_details=_env_flag("INGEST_FETCH_DETAILS"),
        search_location=search_location,
        search_radius=_env_number("SEARCH_RADIUS", "75000", int),
        request_timeout=_env_number("REQUEST_TIMEOUT", "10", float),
        snapshot_chunk_size=chunk_size,
    )
