"""
Knowledge Memory - tiered, partition-scoped knowledge store

Hybrid five-signal retrieval over a token-budgeted working set, with
summarization-based compression, disk offload with rehydration, and
bounded ingestion of large documents.
"""

from .config import (
    ChunkingConfig,
    EmbeddingConfig,
    IngestionConfig,
    MemoryConfig,
    RetrievalConfig,
    StorageConfig,
    SummarizerConfig,
    TierConfig,
)
from .env_config import load_config_from_env
from .exceptions import (
    BudgetExceededError,
    EntryNotFoundError,
    KnowledgeMemoryError,
    MalformedInputError,
    StorageError,
    UpstreamUnavailableError,
)
from .logging_config import setup_logging
from .memory_service import KnowledgeMemoryService
from .models import (
    Chunk,
    EntrySummary,
    EntryType,
    FileMeta,
    IngestOptions,
    KnowledgeEntry,
    LargeDocumentResult,
    MemoryStats,
    SearchResult,
)
from .retrieval import HybridRetriever
from .tiered_memory import TieredMemoryManager

__all__ = [
    "ChunkingConfig",
    "EmbeddingConfig",
    "IngestionConfig",
    "MemoryConfig",
    "RetrievalConfig",
    "StorageConfig",
    "SummarizerConfig",
    "TierConfig",
    "load_config_from_env",
    "BudgetExceededError",
    "EntryNotFoundError",
    "KnowledgeMemoryError",
    "MalformedInputError",
    "StorageError",
    "UpstreamUnavailableError",
    "setup_logging",
    "KnowledgeMemoryService",
    "Chunk",
    "EntrySummary",
    "EntryType",
    "FileMeta",
    "IngestOptions",
    "KnowledgeEntry",
    "LargeDocumentResult",
    "MemoryStats",
    "SearchResult",
    "HybridRetriever",
    "TieredMemoryManager",
]
