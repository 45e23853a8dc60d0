"""In-process entry store: the canonical record of resident entries.

Each partition keeps three structures in step:
- the primary record map (id -> entry)
- a time-ordered index (created_at, id) for recency listing
- a per-tag id-set index (lowercased tags)

All operations are synchronous, so within one event loop an insert is
visible to the very next read.
"""

from __future__ import annotations

import bisect
from collections import defaultdict
from dataclasses import dataclass, field

from loguru import logger

from ..models import KnowledgeEntry


@dataclass
class _Partition:
    entries: dict[str, KnowledgeEntry] = field(default_factory=dict)
    time_index: list[tuple[float, str]] = field(default_factory=list)
    tag_index: dict[str, set[str]] = field(default_factory=lambda: defaultdict(set))
    token_counts: dict[str, int] = field(default_factory=dict)
    tokens: int = 0

    def set_tokens(self, entry: KnowledgeEntry) -> None:
        tokens = entry.token_estimate
        self.tokens += tokens - self.token_counts.get(entry.id, 0)
        self.token_counts[entry.id] = tokens

    def drop_tokens(self, entry_id: str) -> None:
        self.tokens -= self.token_counts.pop(entry_id, 0)


class EntryStore:
    """Partitioned store of knowledge entries with tag and time indexes."""

    def __init__(self) -> None:
        self._partitions: dict[str, _Partition] = {}
        self._owner: dict[str, str] = {}  # entry id -> partition id

    def insert(self, entry: KnowledgeEntry) -> None:
        """Insert or overwrite an entry, creating its partition on demand."""
        if entry.id in self._owner:
            owner = self._owner[entry.id]
            if owner != entry.partition_id:
                raise ValueError(
                    f"Entry {entry.id} already belongs to partition {owner}"
                )
            self.replace(entry)
            return

        partition = self._partitions.setdefault(entry.partition_id, _Partition())
        partition.entries[entry.id] = entry
        bisect.insort(partition.time_index, (entry.created_at.timestamp(), entry.id))
        self._index_tags(partition, entry.id, entry.tags)
        partition.set_tokens(entry)
        self._owner[entry.id] = entry.partition_id

    def replace(self, entry: KnowledgeEntry) -> None:
        """Swap in a new record for an existing id and re-index its tags."""
        partition = self._partitions.get(entry.partition_id)
        if partition is None or entry.id not in partition.entries:
            self.insert(entry)
            return

        previous = partition.entries[entry.id]
        self._unindex_tags(partition, entry.id, previous.tags)
        partition.entries[entry.id] = entry
        self._index_tags(partition, entry.id, entry.tags)
        partition.set_tokens(entry)

    def reindex(self, entry: KnowledgeEntry) -> None:
        """Rebuild the tag index of an entry mutated in place.

        Also refreshes its token count, so in-place edits of topic or
        content must be followed by this call.
        """
        partition = self._partitions.get(entry.partition_id)
        if partition is None or entry.id not in partition.entries:
            return
        for tag, ids in list(partition.tag_index.items()):
            ids.discard(entry.id)
            if not ids:
                del partition.tag_index[tag]
        self._index_tags(partition, entry.id, entry.tags)
        partition.set_tokens(entry)

    def get(self, entry_id: str) -> KnowledgeEntry | None:
        partition_id = self._owner.get(entry_id)
        if partition_id is None:
            return None
        return self._partitions[partition_id].entries.get(entry_id)

    def delete(self, entry_id: str) -> KnowledgeEntry | None:
        """Remove an entry from all indexes; returns it, or None if absent."""
        partition_id = self._owner.pop(entry_id, None)
        if partition_id is None:
            return None

        partition = self._partitions[partition_id]
        entry = partition.entries.pop(entry_id)
        self._unindex_tags(partition, entry_id, entry.tags)
        partition.drop_tokens(entry_id)
        key = (entry.created_at.timestamp(), entry_id)
        pos = bisect.bisect_left(partition.time_index, key)
        if pos < len(partition.time_index) and partition.time_index[pos] == key:
            partition.time_index.pop(pos)
        return entry

    def all_in_partition(self, partition_id: str) -> list[KnowledgeEntry]:
        """All resident entries of a partition, oldest first."""
        partition = self._partitions.get(partition_id)
        if partition is None:
            return []
        return [partition.entries[eid] for _, eid in partition.time_index]

    def ids_in_partition(self, partition_id: str) -> list[str]:
        partition = self._partitions.get(partition_id)
        if partition is None:
            return []
        return [eid for _, eid in partition.time_index]

    def recent(self, partition_id: str, limit: int = 10) -> list[KnowledgeEntry]:
        """Newest entries first."""
        return list(reversed(self.all_in_partition(partition_id)))[:limit]

    def ids_by_tag(self, partition_id: str, tag: str) -> set[str]:
        partition = self._partitions.get(partition_id)
        if partition is None:
            return set()
        return set(partition.tag_index.get(tag.lower(), ()))

    def ids_by_tags(self, partition_id: str, tags: list[str]) -> set[str]:
        """Ids carrying every one of ``tags`` (set intersection)."""
        if not tags:
            return set(self.ids_in_partition(partition_id))
        result = self.ids_by_tag(partition_id, tags[0])
        for tag in tags[1:]:
            if not result:
                break
            result &= self.ids_by_tag(partition_id, tag)
        return result

    def count(self, partition_id: str) -> int:
        partition = self._partitions.get(partition_id)
        return len(partition.entries) if partition else 0

    def partition_tokens(self, partition_id: str) -> int:
        """Token footprint of the partition's resident records."""
        partition = self._partitions.get(partition_id)
        if partition is None:
            return 0
        return partition.tokens

    def has_partition(self, partition_id: str) -> bool:
        return partition_id in self._partitions

    def partition_ids(self) -> list[str]:
        return list(self._partitions)

    def drop_partition(self, partition_id: str) -> int:
        """Purge a partition's entries and indexes. Returns entries removed."""
        partition = self._partitions.pop(partition_id, None)
        if partition is None:
            return 0
        for entry_id in partition.entries:
            self._owner.pop(entry_id, None)
        logger.debug(
            f"Dropped partition {partition_id} ({len(partition.entries)} entries, "
            f"{len(partition.tag_index)} tags)"
        )
        return len(partition.entries)

    @staticmethod
    def _index_tags(partition: _Partition, entry_id: str, tags: list[str]) -> None:
        for tag in tags:
            partition.tag_index[tag.lower()].add(entry_id)

    @staticmethod
    def _unindex_tags(partition: _Partition, entry_id: str, tags: list[str]) -> None:
        for tag in tags:
            ids = partition.tag_index.get(tag.lower())
            if ids is None:
                continue
            ids.discard(entry_id)
            if not ids:
                del partition.tag_index[tag.lower()]
