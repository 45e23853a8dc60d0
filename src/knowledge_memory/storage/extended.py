"""
Extended storage interface.

The tiered memory manager offloads full entry records to a durable
key-value backend. Keys have the form ``{partition_id}/{entry_id}`` so a
whole partition can be enumerated (and purged) by prefix.
"""

from typing import Any, Protocol, runtime_checkable


def make_key(partition_id: str, entry_id: str) -> str:
    """Storage key of an entry."""
    return f"{partition_id}/{entry_id}"


def partition_prefix(partition_id: str) -> str:
    """Key prefix shared by every entry of a partition."""
    return f"{partition_id}/"


@runtime_checkable
class ExtendedStorage(Protocol):
    """Durable put/get/delete/list-by-prefix capability."""

    async def put(self, key: str, record: dict[str, Any]) -> str:
        """
        Persist a record.

        Returns:
            Storage location marker (file path, URI, ...)

        Raises:
            StorageError: If the record could not be written
        """
        ...

    async def get(self, key: str) -> dict[str, Any] | None:
        """
        Load a record.

        Returns:
            The record, or None if the key is absent

        Raises:
            StorageError: If the record exists but cannot be read
        """
        ...

    async def delete(self, key: str) -> bool:
        """Delete a record. Returns whether something was deleted."""
        ...

    async def list_prefix(self, prefix: str) -> list[str]:
        """List keys starting with ``prefix``."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...
