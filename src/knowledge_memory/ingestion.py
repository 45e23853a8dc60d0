"""Bounded ingestion: strategic sampling and lazy embedding.

Large documents only get a representative subset of their chunks embedded
up front. The rest are stored with ``embed_pending=True`` and embedded on
demand the first time a search surfaces them.
"""

from __future__ import annotations

import asyncio
import math
import random
from typing import Awaitable, Callable

from loguru import logger

from .config import IngestionConfig
from .embedding import EmbeddingGateway
from .models import KnowledgeEntry


class BoundedIngestionPolicy:
    """Decides which chunks of a document are embedded immediately."""

    def __init__(self, config: IngestionConfig | None = None):
        self.config = config or IngestionConfig()
        self._rng = random.Random(self.config.sampling_seed)

    def is_large(self, total_chars: int, chunk_count: int) -> bool:
        return (
            total_chars > self.config.large_document_chars
            or chunk_count > self.config.large_chunk_count
        )

    def strategic_sample(
        self,
        total: int,
        max_count: int | None = None,
        rng: random.Random | None = None,
    ) -> list[int]:
        """Pick ``min(max_count, total)`` distinct chunk indices.

        15% from the start, 15% from the end, 20% evenly spread across the
        middle, and the rest at random from whatever is left.

        Returns:
            Selected indices in ascending order
        """
        max_count = self.config.max_embed_chunks if max_count is None else max_count
        rng = rng or self._rng
        if total <= 0 or max_count <= 0:
            return []
        if total <= max_count:
            return list(range(total))

        begin_quota = math.floor(max_count * self.config.beginning_fraction)
        end_quota = math.floor(max_count * self.config.end_fraction)
        middle_quota = math.floor(max_count * self.config.middle_fraction)

        selected: set[int] = set()
        selected.update(range(min(begin_quota, total)))
        selected.update(range(max(0, total - end_quota), total))

        middle_start = begin_quota
        middle_end = total - end_quota
        middle_size = middle_end - middle_start
        if middle_size > 0 and middle_quota > 0:
            stride = middle_size / middle_quota
            for k in range(middle_quota):
                index = middle_start + int(k * stride)
                if index < middle_end:
                    selected.add(index)

        remaining = [i for i in range(total) if i not in selected]
        need = max_count - len(selected)
        if need > 0 and remaining:
            selected.update(rng.sample(remaining, min(need, len(remaining))))

        return sorted(selected)

    def plan(self, chunk_texts: list[str]) -> tuple[bool, list[int]]:
        """Classify a chunked document and choose its eager-embed indices.

        Returns:
            (was_large, selected_indices)
        """
        total_chars = sum(len(t) for t in chunk_texts)
        large = self.is_large(total_chars, len(chunk_texts))
        if not large:
            return False, list(range(len(chunk_texts)))

        selected = self.strategic_sample(len(chunk_texts))
        logger.info(
            f"Large document ({len(chunk_texts)} chunks, {total_chars} chars): "
            f"embedding {len(selected)} sampled chunks, "
            f"{len(chunk_texts) - len(selected)} deferred"
        )
        return True, selected


EmbeddingSink = Callable[[KnowledgeEntry, list[float]], Awaitable[bool]]


class LazyEmbedder:
    """Embeds deferred chunks on demand, at most once per entry."""

    def __init__(
        self,
        gateway: EmbeddingGateway,
        on_embedded: EmbeddingSink,
        text_chars: int = 1000,
    ):
        """
        Args:
            gateway: Embedding gateway
            on_embedded: Stores the vector; returns False if the entry is gone
            text_chars: Content prefix length used as embedding input
        """
        self._gateway = gateway
        self._on_embedded = on_embedded
        self._text_chars = text_chars
        self._in_flight: dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def embedding_text(self, entry: KnowledgeEntry) -> str:
        return f"{entry.topic}: {entry.content[:self._text_chars]}"

    def needs_embedding(self, entry: KnowledgeEntry) -> bool:
        return entry.embed_pending and not entry.embedding

    def schedule(
        self, entry: KnowledgeEntry, text: str | None = None
    ) -> asyncio.Task | None:
        """Start a background embedding task for a pending entry.

        No-op (returns None) if the entry is already embedded or a task for
        it is already running.
        """
        if not self.needs_embedding(entry) or entry.id in self._in_flight:
            return None
        if not self._gateway.enabled:
            return None

        task = asyncio.create_task(self._run(entry, text or self.embedding_text(entry)))
        self._in_flight[entry.id] = task
        task.add_done_callback(lambda _t, eid=entry.id: self._in_flight.pop(eid, None))
        logger.debug(f"Scheduled lazy embedding for {entry.id}")
        return task

    async def embed_now(self, entry: KnowledgeEntry, text: str | None = None) -> bool:
        """Embed a pending entry and wait for the result."""
        task = self._in_flight.get(entry.id) or self.schedule(entry, text)
        if task is None:
            return not self.needs_embedding(entry)
        return await task

    async def _run(self, entry: KnowledgeEntry, text: str) -> bool:
        vector = await self._gateway.embed(text)
        if vector is None:
            logger.debug(f"Lazy embedding produced nothing for {entry.id}")
            return False
        stored = await self._on_embedded(entry, vector)
        if stored:
            logger.debug(f"Lazily embedded {entry.id}")
        return stored

    async def close(self) -> None:
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
