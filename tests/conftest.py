"""
Knowledge Memory Test Fixtures
Shared capability stubs and configuration fixtures
"""

from __future__ import annotations

import asyncio
import hashlib
import json

import pytest

from knowledge_memory.config import MemoryConfig, StorageConfig, TierConfig
from knowledge_memory.memory_service import KnowledgeMemoryService
from knowledge_memory.retrieval import extract_terms


class HashingEmbeddingProvider:
    """Deterministic bag-of-words embedding: each term bumps one bucket."""

    def __init__(self, dimension: int = 64):
        self.dimension = dimension
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        vector = [0.0] * self.dimension
        for term in extract_terms(text):
            bucket = int(hashlib.md5(term.encode("utf-8")).hexdigest(), 16)
            vector[bucket % self.dimension] += 1.0
        return vector


class StubSummarizer:
    """Summarizer returning fixed JSON; can fail or block on an event."""

    def __init__(self, fail: bool = False, gate: asyncio.Event | None = None):
        self.fail = fail
        self.gate = gate
        self.prompts: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def summarize(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("summarizer offline")
        return json.dumps(
            {
                "topic": "Summary",
                "content": "Condensed.",
                "key_points": ["kept"],
            }
        )


@pytest.fixture
def embedding_provider():
    """Deterministic embedding provider."""
    return HashingEmbeddingProvider()


@pytest.fixture
def summarizer():
    """Always-succeeding summarizer stub."""
    return StubSummarizer()


@pytest.fixture
def summarizer_factory():
    """Build summarizer stubs with custom behaviour."""
    return StubSummarizer


@pytest.fixture
def memory_config(tmp_path):
    """Config with extended storage under tmp_path and no monitor task."""
    return MemoryConfig(
        storage=StorageConfig(extended_dir=str(tmp_path / "extended")),
        tiers=TierConfig(monitor_enabled=False),
    )


@pytest.fixture
async def service(memory_config, embedding_provider, summarizer):
    """KnowledgeMemoryService wired to deterministic capabilities."""
    svc = KnowledgeMemoryService(
        config=memory_config,
        embedding_provider=embedding_provider,
        summarizer=summarizer,
    )
    yield svc
    await svc.close()
