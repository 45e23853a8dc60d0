"""Knowledge Memory Service - facade for the tiered knowledge memory core.

This is the class consuming applications use. It wires the entry store,
embedding gateway, hybrid retriever, tiered memory manager and bounded
ingestion policy together behind a partition-scoped API:

- ingest / ingest_large_document
- search (hybrid retrieval, rehydration, lazy embedding)
- get / get_all / delete / teardown_partition
- stats / export_markdown
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Union

from loguru import logger

from .chunker import Chunker
from .config import MemoryConfig
from .embedding import EmbeddingGateway, EmbeddingProvider, build_embedding_provider
from .env_config import load_config_from_env
from .exceptions import EntryNotFoundError, MalformedInputError
from .export import export_markdown
from .ingestion import BoundedIngestionPolicy, LazyEmbedder
from .logging_config import setup_logging
from .models import (
    Chunk,
    EntrySummary,
    FileMeta,
    IngestOptions,
    KnowledgeEntry,
    LargeDocumentResult,
    MemoryStats,
    SearchResult,
)
from .retrieval import HybridRetriever
from .storage import EntryStore, ExtendedStorage, build_extended_storage
from .summarizer import EntryCompressor, OpenAICompatibleSummarizer, Summarizer
from .tiered_memory import TieredMemoryManager

ProgressCallback = Callable[[str, dict[str, Any]], Union[None, Awaitable[None]]]


def _require_text(field: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise MalformedInputError(field, "must be a non-empty string")
    return value


def _require_partition(partition_id: Any) -> str:
    _require_text("partition_id", partition_id)
    if "/" in partition_id:
        raise MalformedInputError("partition_id", "must not contain '/'")
    return partition_id


def _string_list(field: str, values: Any) -> list[str]:
    if values is None:
        return []
    if not isinstance(values, (list, tuple)):
        raise MalformedInputError(field, "must be a list of strings")
    result: list[str] = []
    for value in values:
        if not isinstance(value, str) or not value.strip():
            raise MalformedInputError(field, f"invalid item {value!r}")
        value = value.strip()
        if value not in result:
            result.append(value)
    return result


class KnowledgeMemoryService:
    """Main knowledge memory facade.

    Capabilities can be injected (tests pass deterministic stubs); otherwise
    they are built from ``config``.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        summarizer: Summarizer | None = None,
        extended_storage: ExtendedStorage | None = None,
    ):
        """Initialize the knowledge memory service.

        Args:
            config: Memory configuration (uses defaults if not provided)
            embedding_provider: Embedding capability (built from config if None)
            summarizer: Summarization capability (built from config if None
                and a summarizer API key is configured)
            extended_storage: Offload backend (built from config if None)
        """
        self.config = config or MemoryConfig()

        if embedding_provider is None:
            embedding_provider = build_embedding_provider(self.config.embedding)

        self._owned_summarizer: OpenAICompatibleSummarizer | None = None
        if summarizer is None and self.config.summarizer.api_key:
            self._owned_summarizer = OpenAICompatibleSummarizer(self.config.summarizer)
            summarizer = self._owned_summarizer

        if extended_storage is None:
            extended_storage = build_extended_storage(self.config.storage)

        self._store = EntryStore()
        self._embedding = EmbeddingGateway(embedding_provider, self.config.embedding)
        self._tiers = TieredMemoryManager(
            store=self._store,
            extended=extended_storage,
            compressor=EntryCompressor(summarizer),
            config=self.config.tiers,
        )
        self._retriever = HybridRetriever(
            store=self._store,
            embedding_gateway=self._embedding,
            config=self.config.retrieval,
        )
        self._chunker = Chunker(self.config.chunking)
        self._policy = BoundedIngestionPolicy(self.config.ingestion)
        self._lazy = LazyEmbedder(
            gateway=self._embedding,
            on_embedded=self._store_embedding,
            text_chars=self.config.ingestion.embed_text_chars,
        )
        self._progress_subscribers: list[ProgressCallback] = []

        logger.debug(f"KnowledgeMemoryService full config: {self.config.model_dump()}")
        logger.info(
            f"KnowledgeMemoryService initialized: "
            f"embeddings={'on' if self._embedding.enabled else 'off'}, "
            f"summarizer={'on' if summarizer is not None else 'off'}, "
            f"backend={self.config.storage.backend!r}"
        )

    @classmethod
    def from_env(
        cls,
        configure_logging: bool = True,
        log_file: str | None = None,
        **capabilities: Any,
    ) -> "KnowledgeMemoryService":
        """Build a service from environment variables (and .env).

        When ``configure_logging`` is set, loguru is reset to
        ``config.log_level`` before the service is created. Remaining keyword
        arguments are passed through as injected capabilities.
        """
        config = load_config_from_env()
        if configure_logging:
            setup_logging(config.log_level, log_file=log_file)
        return cls(config=config, **capabilities)

    @property
    def tiers(self) -> TieredMemoryManager:
        return self._tiers

    @property
    def store(self) -> EntryStore:
        return self._store

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(
        self,
        partition_id: str,
        contributor_id: str,
        topic: str,
        content: str,
        tags: list[str] | None = None,
        relationships: list[str] | None = None,
        options: IngestOptions | None = None,
    ) -> list[EntrySummary]:
        """Add knowledge to a partition.

        Content longer than the embedding input limit is chunked when
        ``options.chunk_large_content`` is set; each part becomes its own
        entry titled "<topic> (Part i/n)".

        Raises:
            MalformedInputError: If a required field is missing or invalid
                (nothing is written in that case)

        Returns:
            One summary per created entry
        """
        options = options or IngestOptions()
        _require_partition(partition_id)
        _require_text("contributor_id", contributor_id)
        _require_text("topic", topic)
        _require_text("content", content)
        tags = _string_list("tags", tags)
        relationships = _string_list("relationships", relationships)

        common = dict(
            partition_id=partition_id,
            relationships=relationships,
            contributor_id=contributor_id,
            contributor_name=options.contributor_name,
            entry_type=options.entry_type,
            importance=options.importance,
        )

        entries: list[KnowledgeEntry] = []
        chunks: list[Chunk] = []
        if (
            options.chunk_large_content
            and len(content) > self.config.embedding.max_input_chars
        ):
            chunks = self._chunker.chunk(content, options.source_metadata)

        if len(chunks) > 1:
            total = len(chunks)
            vectors = await self._embedding.embed_batch(
                [f"{topic}: {c.text}" for c in chunks]
            )
            for chunk, vector in zip(chunks, vectors):
                part_tags = list(tags)
                if chunk.index > 0 and "chunk" not in part_tags:
                    part_tags.append("chunk")
                entries.append(
                    KnowledgeEntry(
                        topic=f"{topic} (Part {chunk.index + 1}/{total})",
                        content=chunk.text,
                        tags=part_tags,
                        embedding=vector,
                        embed_pending=vector is None and self._embedding.enabled,
                        chunk_index=chunk.index,
                        total_chunks=total,
                        source_metadata=dict(chunk.metadata),
                        **common,
                    )
                )
            logger.info(f"Chunked '{topic}' into {total} parts for {partition_id}")
        else:
            vector = await self._embedding.embed(f"{topic} {content}")
            entries.append(
                KnowledgeEntry(
                    topic=topic,
                    content=content,
                    tags=tags,
                    embedding=vector,
                    embed_pending=vector is None and self._embedding.enabled,
                    source_metadata=dict(options.source_metadata),
                    **common,
                )
            )

        summaries = []
        for entry in entries:
            await self._tiers.add_entry(entry)
            summaries.append(EntrySummary(id=entry.id, topic=entry.topic, tags=list(entry.tags)))

        logger.debug(
            f"Ingested {len(summaries)} entries into {partition_id} "
            f"from contributor {contributor_id}"
        )
        return summaries

    def subscribe_progress(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a progress listener for document ingestion.

        Returns:
            A function that removes the listener again
        """
        self._progress_subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._progress_subscribers:
                self._progress_subscribers.remove(callback)

        return unsubscribe

    async def _emit_progress(
        self,
        status: str,
        payload: dict[str, Any],
        on_progress: ProgressCallback | None,
    ) -> None:
        listeners = list(self._progress_subscribers)
        if on_progress is not None:
            listeners.insert(0, on_progress)
        for listener in listeners:
            try:
                result = listener(status, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Progress callback failed ({status}): {e}")

    async def ingest_large_document(
        self,
        partition_id: str,
        contributor_id: str,
        file_meta: FileMeta,
        chunks: list[Chunk] | list[str],
        on_progress: ProgressCallback | None = None,
    ) -> LargeDocumentResult:
        """Store a chunked document, embedding a bounded sample up front.

        Every chunk becomes an entry. Chunks outside the sample (or whose
        embedding failed) are marked ``embed_pending`` and embedded lazily
        when a search first returns them.
        """
        _require_partition(partition_id)
        _require_text("contributor_id", contributor_id)
        _require_text("file_name", file_meta.file_name)
        texts = [c.text if isinstance(c, Chunk) else c for c in chunks or []]
        if not texts:
            raise MalformedInputError("chunks", "document has no chunks")
        if any(not isinstance(t, str) for t in texts):
            raise MalformedInputError("chunks", "every chunk must be text")

        file_name = file_meta.file_name
        was_large, selected = self._policy.plan(texts)
        text_chars = self.config.ingestion.embed_text_chars
        batch_size = max(1, self.config.ingestion.embed_batch_size)

        await self._emit_progress(
            "embedding",
            {"file_id": file_meta.file_id, "current": 0, "total": len(selected)},
            on_progress,
        )

        vectors: dict[int, list[float]] = {}
        for start in range(0, len(selected), batch_size):
            batch = selected[start:start + batch_size]
            results = await self._embedding.embed_batch(
                [f"{file_name} part {i + 1}: {texts[i][:text_chars]}" for i in batch]
            )
            for index, vector in zip(batch, results):
                if vector is not None:
                    vectors[index] = vector
            await self._emit_progress(
                "embedding",
                {
                    "file_id": file_meta.file_id,
                    "current": min(start + batch_size, len(selected)),
                    "total": len(selected),
                },
                on_progress,
            )

        total = len(texts)
        for index, text in enumerate(texts):
            vector = vectors.get(index)
            await self._tiers.add_entry(
                KnowledgeEntry(
                    partition_id=partition_id,
                    topic=f"{file_name} (Part {index + 1})",
                    content=text,
                    tags=["file-upload", "chunk"],
                    contributor_id=contributor_id,
                    embedding=vector,
                    embed_pending=vector is None,
                    chunk_index=index,
                    total_chunks=total,
                    source_metadata={
                        "file_id": file_meta.file_id,
                        "file_name": file_name,
                        "chunk_index": index,
                    },
                )
            )

        embedded = len(vectors)
        lazy = total - embedded
        file_kind = file_meta.file_type.lstrip(".") or "document"
        overview_topic = f"{file_name} (Overview)"
        overview_content = (
            f"Document with {total} chunks. File type: {file_meta.file_type or 'unknown'}. "
            f"Embedded {embedded} chunks immediately, {lazy} on demand."
        )
        overview = KnowledgeEntry(
            partition_id=partition_id,
            topic=overview_topic,
            content=overview_content,
            tags=["file-overview", file_kind],
            contributor_id=contributor_id,
            embedding=await self._embedding.embed(f"{overview_topic} {overview_content}"),
            source_metadata={
                "file_id": file_meta.file_id,
                "file_name": file_name,
                "total_chunks": total,
                "embedded_chunks": embedded,
            },
        )
        await self._tiers.add_entry(overview)

        result = LargeDocumentResult(
            file_id=file_meta.file_id,
            total_chunks=total,
            embedded_chunks=embedded,
            lazy_chunks=lazy,
            was_large=was_large,
            overview_entry_id=overview.id,
        )
        await self._emit_progress("complete", result.model_dump(), on_progress)

        logger.info(
            f"Ingested document {file_name!r} into {partition_id}: "
            f"{total} chunks, {embedded} embedded, {lazy} deferred"
        )
        return result

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def search(
        self,
        partition_id: str,
        query: str,
        limit: int = 10,
        tag_filter: list[str] | None = None,
    ) -> list[SearchResult]:
        """Hybrid search within one partition.

        Offloaded results are returned with their full bodies; results still
        waiting for an embedding get one scheduled in the background.
        """
        if not partition_id or not isinstance(query, str):
            return []

        scored = await self._retriever.search(
            partition_id, query, limit=limit, tag_filter=tag_filter,
        )

        results = []
        for item in scored:
            entry = await self._tiers.rehydrate(item.entry)
            if self._lazy.needs_embedding(entry):
                self._lazy.schedule(entry)
            results.append(
                SearchResult(
                    id=entry.id,
                    topic=entry.topic,
                    content=entry.content,
                    tags=list(entry.tags),
                    relationships=list(entry.relationships),
                    score=item.score,
                    created_at=entry.created_at,
                    signals=dict(item.signals),
                )
            )
        return results

    async def _store_embedding(self, entry: KnowledgeEntry, vector: list[float]) -> bool:
        return await self._tiers.update_embedding(entry.partition_id, entry.id, vector)

    async def embed_pending(self, partition_id: str, entry_id: str) -> bool:
        """Embed a deferred entry now instead of waiting for a search hit."""
        entry = self._store.get(entry_id)
        if entry is None or entry.partition_id != partition_id:
            return False
        entry = await self._tiers.rehydrate(entry)
        return await self._lazy.embed_now(entry)

    # ------------------------------------------------------------------
    # Entry access
    # ------------------------------------------------------------------

    async def get(self, partition_id: str, entry_id: str) -> KnowledgeEntry | None:
        """Fetch one entry (rehydrated if offloaded) and mark it accessed."""
        return await self._tiers.get_entry(partition_id, entry_id)

    async def require(self, partition_id: str, entry_id: str) -> KnowledgeEntry:
        """Like ``get`` but raises when the entry does not exist.

        Raises:
            EntryNotFoundError: If no tier holds the entry
        """
        entry = await self.get(partition_id, entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id, partition_id)
        return entry

    async def get_all(self, partition_id: str) -> list[KnowledgeEntry]:
        return await self._tiers.get_all(partition_id)

    async def delete(self, partition_id: str, entry_id: str) -> bool:
        deleted = await self._tiers.delete_entry(partition_id, entry_id)
        if deleted:
            logger.debug(f"Deleted entry {entry_id} from {partition_id}")
        return deleted

    async def teardown_partition(self, partition_id: str) -> None:
        """Purge every tier and background task of a partition."""
        await self._tiers.teardown(partition_id)

    # ------------------------------------------------------------------
    # Reporting and lifecycle
    # ------------------------------------------------------------------

    def stats(self, partition_id: str) -> MemoryStats:
        return self._tiers.stats(partition_id)

    async def export_markdown(self, partition_id: str) -> str:
        """Render the partition's statistics and entries as Markdown."""
        entries = []
        for resident in self._store.all_in_partition(partition_id):
            full = await self._tiers.rehydrate(resident)
            if resident.is_offloaded and full is not resident:
                full = full.model_copy(update={"file_path": resident.file_path})
            entries.append(full)
        return export_markdown(entries, self.stats(partition_id))

    async def close(self) -> None:
        """Cancel background work and release every capability."""
        await self._lazy.close()
        await self._tiers.close()
        await self._embedding.aclose()
        if self._owned_summarizer is not None:
            await self._owned_summarizer.aclose()
        logger.info("KnowledgeMemoryService closed")
