"""Knowledge memory configuration models."""

from __future__ import annotations

import os
import tempfile

from pydantic import BaseModel, Field, model_validator


def _default_extended_dir() -> str:
    return os.path.join(tempfile.gettempdir(), "knowledge-memory")


class StorageConfig(BaseModel):
    """Extended storage configuration."""

    backend: str = "file"  # "file" or "sqlite"
    extended_dir: str = Field(default_factory=_default_extended_dir)
    sqlite_db_path: str = "./memory/extended.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        if self.backend not in ("file", "sqlite"):
            raise ValueError(
                f"backend must be 'file' or 'sqlite', got {self.backend!r}"
            )
        for name in ("extended_dir", "sqlite_db_path"):
            normalized = os.path.normpath(getattr(self, name))
            parts = normalized.replace("\\", "/").split("/")
            if ".." in parts:
                raise ValueError(
                    f"{name} must not contain '..' components: "
                    f"{getattr(self, name)!r}"
                )
            setattr(self, name, normalized)
        return self


class EmbeddingConfig(BaseModel):
    """Embedding capability configuration."""

    provider: str = "none"  # "local", "api" or "none"
    model: str = "nomic-ai/nomic-embed-text-v2-moe"
    dimension: int = 768
    api_base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    trust_remote_code: bool = False
    max_input_chars: int = 8000
    batch_size: int = 100
    timeout_seconds: float = 30.0


class SummarizerConfig(BaseModel):
    """Summarization capability configuration (OpenAI-compatible chat API)."""

    api_base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    timeout_seconds: float = 60.0
    max_tokens: int = 1024
    temperature: float = 0.2


class ChunkingConfig(BaseModel):
    """Document chunking configuration (sizes in tokens)."""

    target_tokens: int = 512
    overlap_tokens: int = 64
    min_chunk_tokens: int = 100
    chars_per_token: int = 4


class RetrievalConfig(BaseModel):
    """Hybrid retrieval configuration.

    Signal weights are fixed on ``HybridRetriever``; only the tunables that
    do not change ranking semantics live here.
    """

    default_limit: int = 10
    recency_window_hours: float = 168.0  # one week
    title_bonus: float = 2.0


class TierConfig(BaseModel):
    """Tiered memory budgets and pressure thresholds."""

    working_memory_tokens: int = 16000
    total_memory_tokens: int = 128000

    compression_threshold: float = 0.75
    urgent_threshold: float = 0.92
    post_compression_offload_ratio: float = 0.9

    compression_batch_size: int = 5
    min_compression_interval_seconds: float = 60.0
    compression_retry_seconds: float = 300.0
    offload_count: int = 3

    # Entries at or above this importance are never compressed or offloaded
    protected_importance: int = 8

    monitor_enabled: bool = True
    monitor_interval_seconds: float = 60.0

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "TierConfig":
        if not 0.0 < self.compression_threshold <= self.urgent_threshold:
            raise ValueError(
                "compression_threshold must be in (0, urgent_threshold]"
            )
        if self.working_memory_tokens <= 0:
            raise ValueError("working_memory_tokens must be positive")
        return self


class IngestionConfig(BaseModel):
    """Bounded ingestion / strategic sampling configuration."""

    large_document_chars: int = 100_000
    large_chunk_count: int = 100
    max_embed_chunks: int = 50
    embed_batch_size: int = 10
    embed_text_chars: int = 1000

    beginning_fraction: float = 0.15
    end_fraction: float = 0.15
    middle_fraction: float = 0.20

    sampling_seed: int | None = None


class MemoryConfig(BaseModel):
    """Top-level knowledge memory configuration."""

    log_level: str = "INFO"
    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    summarizer: SummarizerConfig = Field(default_factory=SummarizerConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    tiers: TierConfig = Field(default_factory=TierConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
