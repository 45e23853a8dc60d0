"""Tests for Chunker and TokenCounter."""

from __future__ import annotations

import pytest

from knowledge_memory.chunker import Chunker
from knowledge_memory.config import ChunkingConfig
from knowledge_memory.token_counter import TokenCounter


def _paragraph(word: str, words: int) -> str:
    return " ".join(f"{word}{i}" for i in range(words)) + "."


class TestTokenCounter:

    def test_empty_text_is_zero(self):
        assert TokenCounter().count("") == 0

    def test_latin_four_chars_per_token(self):
        assert TokenCounter().count("abcd" * 10) == 10
        assert TokenCounter().count("abcde") == 2

    def test_cjk_two_chars_per_token(self):
        assert TokenCounter.estimate("안녕하세요") == 3
        assert TokenCounter.estimate("日本語") == 2

    def test_entry_cost_includes_topic(self):
        counter = TokenCounter()
        assert counter.count_entry("abc", "defg") == counter.count("abc defg")

    def test_invalid_ratio(self):
        with pytest.raises(ValueError):
            TokenCounter(chars_per_token=0)


class TestChunker:

    @pytest.fixture
    def chunker(self):
        return Chunker(
            ChunkingConfig(target_tokens=50, overlap_tokens=5, min_chunk_tokens=10)
        )

    def test_short_text_single_chunk(self, chunker):
        chunks = chunker.chunk("Just one short paragraph.")
        assert len(chunks) == 1
        assert chunks[0].index == 0
        assert chunks[0].text == "Just one short paragraph."

    def test_empty_text_no_chunks(self, chunker):
        assert chunker.chunk("") == []
        assert chunker.chunk("\n\n   \n\n") == []

    def test_splits_on_paragraphs_within_budget(self, chunker):
        text = "\n\n".join(_paragraph(w, 30) for w in ("alpha", "beta", "gamma", "delta"))
        chunks = chunker.chunk(text)

        assert len(chunks) > 1
        assert [c.index for c in chunks] == list(range(len(chunks)))
        for chunk in chunks[:-1]:
            # One paragraph plus the carried-over words may exceed the target
            assert chunk.token_estimate <= chunker.max_tokens * 2

    def test_overlap_carries_tail_words(self, chunker):
        text = "\n\n".join(_paragraph(w, 30) for w in ("alpha", "beta", "gamma"))
        chunks = chunker.chunk(text)

        assert len(chunks) >= 2
        tail = chunks[0].text.split()[-5:]
        assert chunks[1].text.split()[:5] == tail

    def test_long_paragraph_split_on_sentences(self, chunker):
        sentences = [f"Sentence number {i} talks about topic {i}." for i in range(60)]
        chunks = chunker.chunk(" ".join(sentences))

        assert len(chunks) > 1
        assert "Sentence number 0" in chunks[0].text
        assert "Sentence number 59" in chunks[-1].text

    def test_small_trailing_remainder_dropped(self):
        chunker = Chunker(
            ChunkingConfig(target_tokens=50, overlap_tokens=0, min_chunk_tokens=20)
        )
        text = _paragraph("alpha", 40) + "\n\n" + _paragraph("beta", 40) + "\n\nTiny end."
        chunks = chunker.chunk(text)
        assert all("Tiny end." not in c.text for c in chunks)

    def test_metadata_copied_to_each_chunk(self, chunker):
        text = "\n\n".join(_paragraph(w, 30) for w in ("alpha", "beta", "gamma"))
        chunks = chunker.chunk(text, {"file_name": "notes.md"})
        assert all(c.metadata == {"file_name": "notes.md"} for c in chunks)

    def test_deterministic(self, chunker):
        text = "\n\n".join(_paragraph(w, 30) for w in ("alpha", "beta", "gamma"))
        assert chunker.chunk(text) == chunker.chunk(text)
