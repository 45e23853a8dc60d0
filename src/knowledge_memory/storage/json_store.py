"""
JSON file based extended storage.

Atomic writes (temp file + replace) keep a record either fully written or
absent, so a crash mid-offload never leaves a truncated body behind.

Key segments are percent-encoded into file and directory names, so two
distinct partition or entry ids never share a name on disk.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from loguru import logger

from ..exceptions import StorageError

MAX_NAME_LENGTH = 200
KEY_FIELD = "_storage_key"


class JsonExtendedStorage:
    """
    One JSON file per offloaded entry.

    Layout:
        {base_path}/
        ├── {quoted partition_id}/
        │   └── {quoted entry_id}.json
        └── ...

    Names too long for the filesystem are shortened with a "#<sha256>"
    suffix; the original key is kept inside the record under
    ``_storage_key`` so listing can still recover it.
    """

    def __init__(self, base_path: str | Path, pretty_print: bool = True):
        """
        Args:
            base_path: Root directory of extended storage
            pretty_print: Indent JSON files
        """
        self._base_path = Path(base_path)
        self._pretty_print = pretty_print
        self._base_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"JsonExtendedStorage initialized at {self._base_path}")

    @property
    def base_path(self) -> Path:
        return self._base_path

    @staticmethod
    def encode_name(name: str) -> str:
        """Map a key segment to a unique, filesystem-safe name."""
        encoded = quote(name, safe="")
        if encoded in (".", ".."):
            encoded = encoded.replace(".", "%2E")
        if len(encoded) > MAX_NAME_LENGTH:
            digest = hashlib.sha256(name.encode("utf-8")).hexdigest()
            encoded = f"{encoded[:MAX_NAME_LENGTH - len(digest) - 1]}#{digest}"
        return encoded

    @staticmethod
    def decode_name(encoded: str) -> str | None:
        """Inverse of ``encode_name``; None for hashed names."""
        if "#" in encoded:
            return None
        return unquote(encoded)

    def _split_key(self, key: str) -> tuple[str, str]:
        partition, sep, entry = key.partition("/")
        if not sep or not partition or not entry:
            raise StorageError(f"Malformed storage key: {key!r}")
        return partition, entry

    def _partition_dir(self, partition: str) -> Path:
        return self._base_path / self.encode_name(partition)

    def _path_for(self, key: str) -> Path:
        partition, entry = self._split_key(key)
        return self._partition_dir(partition) / f"{self.encode_name(entry)}.json"

    async def put(self, key: str, record: dict[str, Any]) -> str:
        path = self._path_for(key)
        await asyncio.to_thread(self._write, path, {**record, KEY_FIELD: key})
        return str(path)

    def _write(self, path: Path, record: dict[str, Any]) -> None:
        temp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            indent = 2 if self._pretty_print else None
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(record, f, ensure_ascii=False, indent=indent)
            temp_path.replace(path)
            logger.debug(f"Extended record written: {path}")
        except OSError as e:
            raise StorageError(f"Failed to write record: {e}", path=str(path)) from e
        finally:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass

    async def get(self, key: str) -> dict[str, Any] | None:
        path = self._path_for(key)
        record = await asyncio.to_thread(self._read, path)
        if record is None:
            return None
        stored_key = record.pop(KEY_FIELD, key)
        if stored_key != key:
            # Hashed-name collision: the file belongs to another key
            return None
        return record

    def _read(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                record = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read record: {e}", path=str(path)) from e
        if not isinstance(record, dict):
            raise StorageError("Record is not a JSON object", path=str(path))
        return record

    async def delete(self, key: str) -> bool:
        path = self._path_for(key)
        return await asyncio.to_thread(self._remove, path)

    def _remove(self, path: Path) -> bool:
        if not path.exists():
            return False
        try:
            path.unlink()
            # Drop the partition directory once its last record is gone
            if path.parent != self._base_path and not any(path.parent.iterdir()):
                path.parent.rmdir()
            return True
        except OSError as e:
            logger.error(f"Failed to delete extended record {path}: {e}")
            return False

    async def list_prefix(self, prefix: str) -> list[str]:
        return await asyncio.to_thread(self._list, prefix)

    def _list(self, prefix: str) -> list[str]:
        partition, sep, _ = prefix.partition("/")
        if sep:
            partition_dirs = [self._partition_dir(partition)]
        else:
            partition_dirs = sorted(self._base_path.iterdir())

        keys: list[str] = []
        for partition_dir in partition_dirs:
            if not partition_dir.is_dir():
                continue
            for file_path in sorted(partition_dir.glob("*.json")):
                key = self._key_for(file_path)
                if key is not None and key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    def _key_for(self, path: Path) -> str | None:
        partition = self.decode_name(path.parent.name)
        entry = self.decode_name(path.stem)
        if partition is not None and entry is not None:
            return f"{partition}/{entry}"
        try:
            record = self._read(path)
        except StorageError as e:
            logger.warning(f"Skipping unreadable extended record {path}: {e}")
            return None
        return record.get(KEY_FIELD) if record else None

    async def close(self) -> None:
        pass
