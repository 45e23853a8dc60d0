"""Knowledge memory core data models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, PrivateAttr, computed_field

from .token_counter import TokenCounter

OFFLOAD_PLACEHOLDER = "[Stored in extended memory - {tokens} tokens]"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class EntryType(str, Enum):
    KNOWLEDGE = "knowledge"
    CONTRIBUTION = "contribution"
    DIAGRAM = "diagram"
    COMPRESSED = "compressed"
    REFERENCE = "reference"


class KnowledgeEntry(BaseModel):
    """The atomic unit of memory, owned by exactly one partition."""

    id: str = Field(default_factory=_uuid)
    partition_id: str

    topic: str
    content: str
    tags: list[str] = Field(default_factory=list)
    relationships: list[str] = Field(default_factory=list)

    contributor_id: str = "system"
    contributor_name: str = "Anonymous"
    created_at: datetime = Field(default_factory=_utcnow)
    entry_type: EntryType = EntryType.KNOWLEDGE

    importance: int = Field(default=5, ge=1, le=10)
    last_accessed: datetime = Field(default_factory=_utcnow)
    access_count: int = 0

    embedding: list[float] | None = None
    embed_pending: bool = False  # "embed later" marker for sampled-out chunks

    chunk_index: int = 0
    total_chunks: int = 1
    source_metadata: dict[str, Any] = Field(default_factory=dict)

    compressed_from: list[str] | None = None
    original_content: str | None = None
    file_path: str | None = None  # set when the body lives in extended storage

    # (topic, content, tokens); reused while both strings are unchanged
    _token_cache: tuple[str, str, int] | None = PrivateAttr(default=None)

    @computed_field
    @property
    def token_estimate(self) -> int:
        """Rough token cost of topic + content (~4 chars per token)."""
        cached = self._token_cache
        if cached is not None and cached[0] is self.topic and cached[1] is self.content:
            return cached[2]
        tokens = TokenCounter.estimate(f"{self.topic} {self.content}")
        self._token_cache = (self.topic, self.content, tokens)
        return tokens

    @property
    def is_offloaded(self) -> bool:
        return self.file_path is not None

    def touch(self) -> None:
        """Record a read access."""
        self.last_accessed = _utcnow()
        self.access_count += 1

    def has_tag(self, tag: str) -> bool:
        tag = tag.lower()
        return any(t.lower() == tag for t in self.tags)

    def add_tag(self, tag: str) -> None:
        if not self.has_tag(tag):
            self.tags.append(tag)

    def remove_tag(self, tag: str) -> None:
        self.tags = [t for t in self.tags if t.lower() != tag.lower()]

    def to_record(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict for extended storage."""
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "KnowledgeEntry":
        """Rebuild an entry from ``to_record`` output."""
        data = {k: v for k, v in data.items() if k != "token_estimate"}
        return cls.model_validate(data)

    def make_stub(self, location: str) -> "KnowledgeEntry":
        """Lightweight resident copy whose body lives at ``location``.

        Identity, topic, tags and importance stay intact so the stub remains
        discoverable by tag/keyword search without rehydration.
        """
        return self.model_copy(
            update={
                "content": OFFLOAD_PLACEHOLDER.format(tokens=self.token_estimate),
                "tags": list(self.tags),
                "entry_type": EntryType.REFERENCE,
                "embedding": None,
                "original_content": None,
                "file_path": location,
            }
        )


class Chunk(BaseModel):
    """A segment of a chunked document."""

    text: str
    index: int
    token_estimate: int
    metadata: dict[str, Any] = Field(default_factory=dict)


class EntrySummary(BaseModel):
    """Returned by ingest for every created entry."""

    id: str
    topic: str
    tags: list[str] = Field(default_factory=list)


class SearchResult(BaseModel):
    """A single ranked result from hybrid retrieval."""

    id: str
    topic: str
    content: str
    tags: list[str] = Field(default_factory=list)
    relationships: list[str] = Field(default_factory=list)
    score: float = 0.0
    created_at: datetime
    signals: dict[str, float] = Field(default_factory=dict)


class IngestOptions(BaseModel):
    """Optional knobs for a single ingest call."""

    chunk_large_content: bool = False
    source_metadata: dict[str, Any] = Field(default_factory=dict)
    importance: int = Field(default=5, ge=1, le=10)
    entry_type: EntryType = EntryType.KNOWLEDGE
    contributor_name: str = "Anonymous"


class FileMeta(BaseModel):
    """Metadata of an uploaded document."""

    file_id: str = Field(default_factory=_uuid)
    file_name: str
    file_type: str = ""
    size_bytes: int | None = None


class LargeDocumentResult(BaseModel):
    """Outcome of a bounded document ingestion."""

    file_id: str
    total_chunks: int
    embedded_chunks: int
    lazy_chunks: int
    was_large: bool = False
    overview_entry_id: str | None = None


class CompressionResult(BaseModel):
    """Structured output of the summarization capability."""

    topic: str
    content: str
    key_points: list[str] = Field(default_factory=list)


class CompressionReport(BaseModel):
    """What a single compression pass did."""

    partition_id: str
    urgent: bool = False
    candidates: int = 0
    groups: int = 0
    compressed_entries: int = 0
    failed_entries: int = 0
    offloaded_entries: int = 0
    tokens_before: int = 0
    tokens_after: int = 0


class TierStats(BaseModel):
    entries: int = 0
    tokens: int = 0


class MemoryStats(BaseModel):
    """Per-partition memory statistics."""

    partition_id: str
    working_memory: TierStats = Field(default_factory=TierStats)
    working_memory_max_tokens: int = 0
    extended_storage: TierStats = Field(default_factory=TierStats)
    total: TierStats = Field(default_factory=TierStats)
    by_type: dict[str, int] = Field(default_factory=dict)
    pressure: float = 0.0
    is_compressing: bool = False
