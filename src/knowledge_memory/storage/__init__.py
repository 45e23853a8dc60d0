"""Storage backends for the knowledge memory core.

``EntryStore`` holds resident entries; extended storage backends hold the
full bodies of offloaded ones.
"""

from __future__ import annotations

from ..config import StorageConfig
from .entry_store import EntryStore
from .extended import ExtendedStorage, make_key, partition_prefix
from .json_store import JsonExtendedStorage
from .sqlite_store import SQLiteExtendedStorage


def build_extended_storage(config: StorageConfig) -> ExtendedStorage:
    """Create the extended storage backend named by ``config.backend``."""
    if config.backend == "sqlite":
        return SQLiteExtendedStorage(db_path=config.sqlite_db_path)
    return JsonExtendedStorage(base_path=config.extended_dir)


__all__ = [
    "EntryStore",
    "ExtendedStorage",
    "JsonExtendedStorage",
    "SQLiteExtendedStorage",
    "build_extended_storage",
    "make_key",
    "partition_prefix",
]
