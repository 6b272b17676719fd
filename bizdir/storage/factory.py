"""Select the storage adapter named by configuration."""

import logging
from typing import Optional

from bizdir.core.config import Settings, get_settings
from bizdir.core.exceptions import ConfigError
from bizdir.storage.base import StorageAdapter

logger = logging.getLogger(__name__)


def create_adapter(settings: Optional[Settings] = None) -> StorageAdapter:
    settings = settings or get_settings()
    backend = settings.storage_backend
    logger.info("Using %s storage backend", backend)

    if backend == "sqlite":
        from bizdir.storage.sqlite_store import SQLiteAdapter

        return SQLiteAdapter(settings.sqlite_path)
    if backend == "postgres":
        from bizdir.storage.postgres_store import PostgresAdapter

        return PostgresAdapter(settings.database_url or None)
    if backend == "snapshot":
        from bizdir.storage.snapshot_store import SnapshotAdapter

        return SnapshotAdapter(settings.snapshot_dir)
    raise ConfigError(f"unknown storage backend {backend!r}")
