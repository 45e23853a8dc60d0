"""Semantic text chunking within a token budget.

Splits on paragraph boundaries first, falls back to sentence boundaries for
oversized paragraphs, and seeds every new segment with the tail of the
previous one so context carries across segment borders.
"""

from __future__ import annotations

import re
from typing import Any

from loguru import logger

from .config import ChunkingConfig
from .models import Chunk
from .token_counter import TokenCounter

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
_SENTENCE = re.compile(r"""[^.!?]+[.!?]+["']?|[^.!?]+$""")


class Chunker:
    """Deterministic, side-effect-free document chunker.

    Attributes:
        target_tokens: Desired segment size
        max_tokens: Ceiling for accumulation (target x 1.2)
        overlap_tokens: Words carried over from the previous segment
        min_chunk_tokens: Floor below which a trailing remainder is dropped
    """

    def __init__(self, config: ChunkingConfig | None = None):
        self._config = config or ChunkingConfig()
        self._counter = TokenCounter(self._config.chars_per_token)
        self.target_tokens = self._config.target_tokens
        self.max_tokens = self._config.target_tokens * 1.2
        self.overlap_tokens = self._config.overlap_tokens
        self.min_chunk_tokens = self._config.min_chunk_tokens
        self._long_paragraph_chars = (
            self._config.target_tokens * self._config.chars_per_token * 1.5
        )

    def chunk(
        self, text: str, source_metadata: dict[str, Any] | None = None
    ) -> list[Chunk]:
        """Split text into ordered segments.

        Args:
            text: Raw document text
            source_metadata: Copied onto every produced chunk

        Returns:
            Chunks with consecutive indices starting at 0
        """
        metadata = dict(source_metadata or {})
        segments: list[str] = []
        current = ""

        for paragraph in _PARAGRAPH_SPLIT.split(text):
            paragraph = paragraph.strip()
            if not paragraph:
                continue

            if len(paragraph) > self._long_paragraph_chars:
                units = [
                    s.strip() for s in _SENTENCE.findall(paragraph) if s.strip()
                ] or [paragraph]
                separator = " "
            else:
                units = [paragraph]
                separator = "\n\n"

            for unit in units:
                current = self._accumulate(segments, current, unit, separator)

        if current.strip():
            tail_tokens = self._counter.count(current)
            if tail_tokens >= self.min_chunk_tokens or not segments:
                segments.append(current.strip())
            else:
                logger.debug(
                    f"Dropped trailing remainder of {tail_tokens} tokens "
                    f"(min={self.min_chunk_tokens})"
                )

        chunks = [
            Chunk(
                text=segment,
                index=i,
                token_estimate=self._counter.count(segment),
                metadata=dict(metadata),
            )
            for i, segment in enumerate(segments)
        ]
        logger.debug(f"Chunked {len(text)} chars into {len(chunks)} segments")
        return chunks

    def _accumulate(
        self, segments: list[str], current: str, unit: str, separator: str
    ) -> str:
        """Append a unit to the open segment, emitting it first if full."""
        if not current.strip():
            return unit

        combined_tokens = self._counter.count(current) + self._counter.count(unit)
        if combined_tokens <= self.max_tokens:
            return f"{current}{separator}{unit}"

        segments.append(current.strip())
        overlap = self._overlap(current)
        return f"{overlap}{separator}{unit}" if overlap else unit

    def _overlap(self, segment: str) -> str:
        if self.overlap_tokens <= 0:
            return ""
        words = segment.split()
        return " ".join(words[-self.overlap_tokens:])
