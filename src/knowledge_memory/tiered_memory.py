"""Tiered memory manager: working set, compressed set, extended storage.

Keeps each partition's resident token footprint under a budget:

- Pressure is checked after every insert and by a periodic monitor task.
- Routine compression folds low-value entries together via the summarizer.
- Urgent compression doubles the batch and offloads the least recently
  accessed entries to extended storage if pressure stays high.
- Offloaded entries leave a stub behind and are rehydrated on read.

Entries at or above ``protected_importance`` are filtered out of every
compression and offload candidate set.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from loguru import logger

from .config import TierConfig
from .exceptions import (
    BudgetExceededError,
    StorageError,
    UpstreamUnavailableError,
)
from .models import (
    CompressionReport,
    EntryType,
    KnowledgeEntry,
    MemoryStats,
    TierStats,
)
from .storage.entry_store import EntryStore
from .storage.extended import ExtendedStorage, make_key, partition_prefix
from .summarizer import EntryCompressor

COMPRESSED_TAG = "compressed"
COMPRESSION_FAILED_TAG = "compression-failed"


@dataclass
class PartitionState:
    """Per-partition bookkeeping for the pressure/compression machinery."""

    is_compressing: bool = False
    last_compression_time: float | None = None  # time.monotonic()
    failed_at: dict[str, float] = field(default_factory=dict)
    offloaded_tokens: dict[str, int] = field(default_factory=dict)
    monitor_task: asyncio.Task | None = None
    compression_task: asyncio.Task | None = None

    @property
    def extended_tokens(self) -> int:
        return sum(self.offloaded_tokens.values())


class TieredMemoryManager:
    """Budgets, compresses and offloads the entries of every partition.

    All working-set mutations go through the shared ``EntryStore``; the
    manager only adds the tiering policy on top of it.
    """

    def __init__(
        self,
        store: EntryStore,
        extended: ExtendedStorage,
        compressor: EntryCompressor,
        config: TierConfig | None = None,
    ):
        """Initialize the tiered memory manager.

        Args:
            store: Working-set entry store
            extended: Backend holding the full bodies of offloaded entries
            compressor: Summarization front-end used for compression
            config: Budgets and thresholds
        """
        self._store = store
        self._extended = extended
        self._compressor = compressor
        self.config = config or TierConfig()
        self._states: dict[str, PartitionState] = {}

        logger.debug(
            f"TieredMemoryManager initialized: "
            f"working_memory_tokens={self.config.working_memory_tokens}, "
            f"total_memory_tokens={self.config.total_memory_tokens}"
        )

    # ------------------------------------------------------------------
    # Partition state
    # ------------------------------------------------------------------

    def state(self, partition_id: str) -> PartitionState:
        """Get (or create) the state of a partition, starting its monitor."""
        state = self._states.get(partition_id)
        if state is None:
            state = PartitionState()
            self._states[partition_id] = state
            self.start_monitor(partition_id)
        return state

    def start_monitor(self, partition_id: str) -> None:
        """Start the periodic pressure check for a partition."""
        if not self.config.monitor_enabled:
            return
        state = self._states.get(partition_id)
        if state is None:
            return
        if state.monitor_task is not None and not state.monitor_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, monitor for {partition_id} not started")
            return
        state.monitor_task = loop.create_task(self._monitor(partition_id))

    async def _monitor(self, partition_id: str) -> None:
        interval = self.config.monitor_interval_seconds
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    self.check_pressure(partition_id)
                except Exception as e:
                    logger.error(f"Pressure check failed for {partition_id}: {e}")
        except asyncio.CancelledError:
            logger.debug(f"Pressure monitor stopped for {partition_id}")
            raise

    # ------------------------------------------------------------------
    # Insert and pressure
    # ------------------------------------------------------------------

    def working_tokens(self, partition_id: str) -> int:
        return self._store.partition_tokens(partition_id)

    def pressure(self, partition_id: str) -> float:
        return self.working_tokens(partition_id) / self.config.working_memory_tokens

    async def add_entry(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        """Insert an entry into the working set and run the pressure check.

        If the insert would push the partition's combined working and
        extended footprint past ``total_memory_tokens``, the new entry goes
        straight to extended storage (unless it is protected). While a
        compression run is in flight the entry stays resident; the run (or
        the next pressure check) handles the overflow.

        Returns:
            The resident record (a stub if the entry was offloaded at once)
        """
        state = self.state(entry.partition_id)
        projected = (
            self.working_tokens(entry.partition_id)
            + state.extended_tokens
            + entry.token_estimate
        )

        self._store.insert(entry)
        resident = entry

        over_budget = (
            projected > self.config.total_memory_tokens
            and entry.importance < self.config.protected_importance
        )
        if over_budget and state.is_compressing:
            logger.debug(
                f"Partition {entry.partition_id} over total budget during compression, "
                f"entry {entry.id} stays resident"
            )
        elif over_budget:
            logger.info(
                f"Partition {entry.partition_id} over total budget "
                f"({projected}/{self.config.total_memory_tokens}), "
                f"offloading new entry {entry.id}"
            )
            try:
                stub = await self.offload_entry(entry.partition_id, entry.id)
            except BudgetExceededError as e:
                logger.warning(f"Keeping entry resident: {e}")
            else:
                if stub is not None:
                    resident = stub

        self.check_pressure(entry.partition_id)
        return resident

    def check_pressure(self, partition_id: str) -> str | None:
        """Evaluate memory pressure and start compression if warranted.

        Returns:
            "urgent" or "routine" when a compression run was started,
            None otherwise (including when one is already in flight)
        """
        state = self.state(partition_id)
        if state.is_compressing:
            logger.debug(f"Compression in flight for {partition_id}, check dropped")
            return None

        ratio = self.pressure(partition_id)
        if ratio >= self.config.urgent_threshold:
            logger.warning(
                f"Urgent memory pressure in {partition_id}: {ratio:.1%} "
                f"of {self.config.working_memory_tokens} tokens"
            )
            self.trigger_compression(partition_id, urgent=True)
            return "urgent"

        if ratio >= self.config.compression_threshold:
            last = state.last_compression_time
            if (
                last is not None
                and time.monotonic() - last < self.config.min_compression_interval_seconds
            ):
                return None
            logger.info(f"Memory pressure in {partition_id}: {ratio:.1%}")
            self.trigger_compression(partition_id, urgent=False)
            return "routine"

        return None

    def trigger_compression(
        self, partition_id: str, urgent: bool = False
    ) -> asyncio.Task | None:
        """Start a background compression run unless one is already running."""
        state = self.state(partition_id)
        if state.is_compressing:
            return None
        state.is_compressing = True
        task = asyncio.create_task(self._background_compression(partition_id, urgent))
        state.compression_task = task
        return task

    async def _background_compression(self, partition_id: str, urgent: bool) -> None:
        state = self._states.get(partition_id)
        try:
            await self._compress(partition_id, urgent)
        except asyncio.CancelledError:
            logger.debug(f"Compression cancelled for {partition_id}")
            raise
        except Exception as e:
            logger.error(f"Background compression failed for {partition_id}: {e}")
        finally:
            if state is not None:
                state.is_compressing = False
                state.last_compression_time = time.monotonic()

    async def run_compression(
        self, partition_id: str, urgent: bool = False
    ) -> CompressionReport | None:
        """Run one compression pass in the foreground.

        Returns:
            The pass report, or None if a pass was already in flight
        """
        state = self.state(partition_id)
        if state.is_compressing:
            return None
        state.is_compressing = True
        try:
            return await self._compress(partition_id, urgent)
        finally:
            state.is_compressing = False
            state.last_compression_time = time.monotonic()

    async def wait_idle(self, partition_id: str) -> None:
        """Wait for the partition's in-flight compression run, if any."""
        state = self._states.get(partition_id)
        if state is None or state.compression_task is None:
            return
        if not state.compression_task.done():
            await asyncio.wait({state.compression_task})

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    async def _compress(self, partition_id: str, urgent: bool) -> CompressionReport:
        report = CompressionReport(
            partition_id=partition_id,
            urgent=urgent,
            tokens_before=self.working_tokens(partition_id),
        )

        batch_size = self.config.compression_batch_size * (2 if urgent else 1)
        candidates = self.compression_candidates(partition_id)
        report.candidates = len(candidates)

        if candidates and self._compressor.available:
            now = datetime.now(timezone.utc)
            candidates.sort(key=lambda e: self.compressibility_score(e, now))
            groups = self.group_related(candidates[:batch_size])
            report.groups = len(groups)

            for group in groups:
                try:
                    result = await self.compress_group(partition_id, group)
                except UpstreamUnavailableError as e:
                    logger.warning(
                        f"Compression of {len(group)} entries in {partition_id} "
                        f"failed, leaving them untouched: {e}"
                    )
                    self._mark_failed(partition_id, group)
                    report.failed_entries += len(group)
                    continue
                if result is not None:
                    report.compressed_entries += len(group)
        elif candidates:
            logger.debug(f"No summarizer configured, skipping compression for {partition_id}")

        offload_limit = self.config.working_memory_tokens * self.config.post_compression_offload_ratio
        if urgent and self.working_tokens(partition_id) > offload_limit:
            report.offloaded_entries = await self.offload_oldest(
                partition_id, self.config.offload_count
            )

        report.tokens_after = self.working_tokens(partition_id)
        logger.info(
            f"Compression pass for {partition_id} (urgent={urgent}): "
            f"{report.compressed_entries} compressed, {report.failed_entries} failed, "
            f"{report.offloaded_entries} offloaded, "
            f"{report.tokens_before} -> {report.tokens_after} tokens"
        )
        return report

    def compression_candidates(self, partition_id: str) -> list[KnowledgeEntry]:
        """Resident entries eligible for compression right now."""
        state = self.state(partition_id)
        now = time.monotonic()
        candidates = []
        for entry in self._store.all_in_partition(partition_id):
            if entry.entry_type == EntryType.COMPRESSED or entry.is_offloaded:
                continue
            if entry.importance >= self.config.protected_importance:
                continue
            failed_at = state.failed_at.get(entry.id)
            if failed_at is not None and now - failed_at < self.config.compression_retry_seconds:
                continue
            candidates.append(entry)
        return candidates

    @staticmethod
    def compressibility_score(entry: KnowledgeEntry, now: datetime) -> float:
        """Lower is more compressible."""
        created = entry.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        age_minutes = (now - created).total_seconds() / 60.0
        return (
            entry.importance * 10
            - min(50.0, age_minutes / 10)
            - entry.access_count * 2
            - entry.token_estimate / 100
        )

    @staticmethod
    def group_related(entries: list[KnowledgeEntry]) -> list[list[KnowledgeEntry]]:
        """Greedy grouping by shared tag, seeded in id order."""
        ordered = sorted(entries, key=lambda e: e.id)
        grouped: set[str] = set()
        groups: list[list[KnowledgeEntry]] = []

        for entry in ordered:
            if entry.id in grouped:
                continue
            group = [entry]
            grouped.add(entry.id)
            seed_tags = {t.lower() for t in entry.tags}
            for other in ordered:
                if other.id in grouped:
                    continue
                if seed_tags & {t.lower() for t in other.tags}:
                    group.append(other)
                    grouped.add(other.id)
            groups.append(group)

        return groups

    async def compress_group(
        self, partition_id: str, group: list[KnowledgeEntry]
    ) -> KnowledgeEntry | None:
        """Summarize a group and swap the result into the working set.

        Raises:
            UpstreamUnavailableError: If the summarizer fails

        Returns:
            The compressed entry, or None if its sources vanished meanwhile
        """
        state = self.state(partition_id)

        if len(group) == 1:
            result = await self._compressor.compress_single(group[0])
            current = self._store.get(group[0].id)
            if current is None or current.is_offloaded:
                return None

            tags = [t for t in current.tags if t.lower() != COMPRESSION_FAILED_TAG]
            if COMPRESSED_TAG not in (t.lower() for t in tags):
                tags.append(COMPRESSED_TAG)
            compressed = current.model_copy(
                update={
                    "topic": result.topic,
                    "content": result.content,
                    "tags": tags,
                    "entry_type": EntryType.COMPRESSED,
                    "original_content": current.content,
                }
            )
            self._store.replace(compressed)
            state.failed_at.pop(current.id, None)
            logger.debug(
                f"Compressed entry {current.id} in place: "
                f"{current.token_estimate} -> {compressed.token_estimate} tokens"
            )
            return compressed

        result = await self._compressor.compress_group(group)

        # Sources may have been deleted or offloaded while the summarizer ran
        survivors = []
        for entry in group:
            current = self._store.get(entry.id)
            if current is not None and not current.is_offloaded:
                survivors.append(current)
        if not survivors:
            return None

        tags: list[str] = []
        relationships: list[str] = []
        for entry in survivors:
            for tag in entry.tags:
                if tag.lower() == COMPRESSION_FAILED_TAG:
                    continue
                if tag.lower() not in (t.lower() for t in tags):
                    tags.append(tag)
            for rel in entry.relationships:
                if rel not in relationships:
                    relationships.append(rel)
        if COMPRESSED_TAG not in (t.lower() for t in tags):
            tags.append(COMPRESSED_TAG)

        content = result.content
        if result.key_points:
            content += "\n\nKey points:\n" + "\n".join(f"- {p}" for p in result.key_points)

        lineage = [
            {
                "id": e.id,
                "topic": e.topic,
                "content": e.content,
                "created_at": e.created_at.isoformat(),
            }
            for e in survivors
        ]

        compressed = KnowledgeEntry(
            partition_id=partition_id,
            topic=f"Compressed: {result.topic}",
            content=content,
            tags=tags,
            relationships=relationships,
            contributor_id="system",
            contributor_name="Memory Compressor",
            entry_type=EntryType.COMPRESSED,
            importance=max(e.importance for e in survivors),
            compressed_from=[e.id for e in survivors],
            original_content=json.dumps(lineage, ensure_ascii=False),
        )

        tokens_before = sum(e.token_estimate for e in survivors)
        self._store.insert(compressed)
        for entry in survivors:
            self._store.delete(entry.id)
            state.failed_at.pop(entry.id, None)

        logger.debug(
            f"Compressed {len(survivors)} entries into {compressed.id}: "
            f"{tokens_before} -> {compressed.token_estimate} tokens"
        )
        return compressed

    def _mark_failed(self, partition_id: str, group: list[KnowledgeEntry]) -> None:
        state = self.state(partition_id)
        now = time.monotonic()
        for entry in group:
            current = self._store.get(entry.id)
            if current is None:
                continue
            current.add_tag(COMPRESSION_FAILED_TAG)
            self._store.reindex(current)
            state.failed_at[current.id] = now

    # ------------------------------------------------------------------
    # Offload and rehydration
    # ------------------------------------------------------------------

    async def offload_entry(
        self, partition_id: str, entry_id: str
    ) -> KnowledgeEntry | None:
        """Move an entry's full record to extended storage, leaving a stub.

        Raises:
            BudgetExceededError: If the record could not be persisted

        Returns:
            The resident stub, or None if the entry is absent, already
            offloaded, or protected
        """
        entry = self._store.get(entry_id)
        if entry is None or entry.partition_id != partition_id or entry.is_offloaded:
            return None
        if entry.importance >= self.config.protected_importance:
            logger.debug(f"Entry {entry_id} is protected, not offloading")
            return None

        key = make_key(partition_id, entry_id)
        try:
            location = await self._extended.put(key, entry.to_record())
        except StorageError as e:
            raise BudgetExceededError(entry_id, str(e)) from e

        current = self._store.get(entry_id)
        if current is not entry:
            # Deleted or replaced while the write was in flight
            await self._extended.delete(key)
            return None

        stub = entry.make_stub(location)
        self._store.replace(stub)
        self.state(partition_id).offloaded_tokens[entry_id] = entry.token_estimate
        logger.debug(
            f"Offloaded entry {entry_id} ({entry.token_estimate} tokens) to {location}"
        )
        return stub

    async def offload_oldest(self, partition_id: str, count: int) -> int:
        """Offload the ``count`` least recently accessed eligible entries."""
        eligible = [
            e for e in self._store.all_in_partition(partition_id)
            if not e.is_offloaded
            and e.entry_type != EntryType.COMPRESSED
            and e.importance < self.config.protected_importance
        ]
        eligible.sort(key=lambda e: e.last_accessed)

        offloaded = 0
        for entry in eligible[:count]:
            try:
                if await self.offload_entry(partition_id, entry.id) is not None:
                    offloaded += 1
            except BudgetExceededError as e:
                logger.warning(f"Offload failed, entry stays in working memory: {e}")
        return offloaded

    async def _load(self, partition_id: str, entry_id: str) -> KnowledgeEntry | None:
        try:
            record = await self._extended.get(make_key(partition_id, entry_id))
        except StorageError as e:
            logger.warning(f"Failed to load offloaded entry {entry_id}: {e}")
            return None
        if record is None:
            return None
        try:
            return KnowledgeEntry.from_record(record)
        except ValueError as e:
            logger.warning(f"Offloaded entry {entry_id} is unreadable: {e}")
            return None

    async def get_entry(self, partition_id: str, entry_id: str) -> KnowledgeEntry | None:
        """Fetch an entry by id, rehydrating it from extended storage if needed.

        Marks the entry as accessed. A failed load returns None.
        """
        entry = self._store.get(entry_id)
        if entry is not None and entry.partition_id != partition_id:
            return None
        if entry is not None and not entry.is_offloaded:
            entry.touch()
            return entry

        full = await self._load(partition_id, entry_id)
        if full is None:
            return None
        full.touch()
        if entry is not None:
            entry.touch()
        return full

    async def rehydrate(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        """Full record for a stub without touching access metadata.

        Falls back to the stub itself when extended storage can't serve it.
        """
        if not entry.is_offloaded:
            return entry
        full = await self._load(entry.partition_id, entry.id)
        return full if full is not None else entry

    async def update_embedding(
        self, partition_id: str, entry_id: str, embedding: list[float]
    ) -> bool:
        """Attach an embedding, writing through to the persisted record of a stub."""
        entry = self._store.get(entry_id)
        if entry is None or entry.partition_id != partition_id:
            return False

        if not entry.is_offloaded:
            entry.embedding = embedding
            entry.embed_pending = False
            return True

        key = make_key(partition_id, entry_id)
        try:
            record = await self._extended.get(key)
            if record is None:
                return False
            record["embedding"] = embedding
            record["embed_pending"] = False
            await self._extended.put(key, record)
        except StorageError as e:
            logger.warning(f"Failed to store embedding for offloaded entry {entry_id}: {e}")
            return False
        entry.embed_pending = False
        return True

    async def delete_entry(self, partition_id: str, entry_id: str) -> bool:
        """Remove an entry from every tier."""
        entry = self._store.get(entry_id)
        if entry is not None and entry.partition_id != partition_id:
            return False

        removed = False
        if entry is not None:
            self._store.delete(entry_id)
            removed = True

        if entry is None or entry.is_offloaded:
            try:
                removed = await self._extended.delete(make_key(partition_id, entry_id)) or removed
            except StorageError as e:
                logger.warning(f"Failed to delete offloaded entry {entry_id}: {e}")

        state = self._states.get(partition_id)
        if state is not None:
            state.offloaded_tokens.pop(entry_id, None)
            state.failed_at.pop(entry_id, None)
        return removed

    async def get_all(self, partition_id: str) -> list[KnowledgeEntry]:
        """Every entry of the partition with full bodies, oldest first."""
        return [
            await self.rehydrate(entry)
            for entry in self._store.all_in_partition(partition_id)
        ]

    # ------------------------------------------------------------------
    # Stats and lifecycle
    # ------------------------------------------------------------------

    def stats(self, partition_id: str) -> MemoryStats:
        state = self._states.get(partition_id) or PartitionState()
        working = TierStats()
        extended = TierStats()
        by_type: dict[str, int] = {}

        for entry in self._store.all_in_partition(partition_id):
            by_type[entry.entry_type.value] = by_type.get(entry.entry_type.value, 0) + 1
            if entry.is_offloaded:
                extended.entries += 1
                extended.tokens += state.offloaded_tokens.get(entry.id, 0)
            else:
                working.entries += 1
                working.tokens += entry.token_estimate

        return MemoryStats(
            partition_id=partition_id,
            working_memory=working,
            working_memory_max_tokens=self.config.working_memory_tokens,
            extended_storage=extended,
            total=TierStats(
                entries=working.entries + extended.entries,
                tokens=working.tokens + extended.tokens,
            ),
            by_type=by_type,
            pressure=round(self.pressure(partition_id), 3),
            is_compressing=state.is_compressing,
        )

    async def _stop_tasks(self, state: PartitionState) -> None:
        tasks = [
            t for t in (state.monitor_task, state.compression_task)
            if t is not None and not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        state.monitor_task = None
        state.compression_task = None
        state.is_compressing = False

    async def teardown(self, partition_id: str) -> int:
        """Purge a partition from every tier and stop its background tasks.

        Returns:
            Number of resident entries removed
        """
        state = self._states.pop(partition_id, None)
        if state is not None:
            await self._stop_tasks(state)

        removed = self._store.drop_partition(partition_id)

        try:
            keys = await self._extended.list_prefix(partition_prefix(partition_id))
            for key in keys:
                await self._extended.delete(key)
        except StorageError as e:
            logger.warning(f"Failed to purge extended storage for {partition_id}: {e}")
        else:
            if keys:
                logger.debug(f"Removed {len(keys)} extended records for {partition_id}")

        logger.info(f"Partition {partition_id} torn down ({removed} entries)")
        return removed

    async def close(self) -> None:
        """Stop every background task and release extended storage."""
        for state in self._states.values():
            await self._stop_tasks(state)
        self._states.clear()
        await self._extended.close()
        logger.debug("TieredMemoryManager closed")
