"""Hybrid retrieval with five-signal scoring.

Every resident entry of a partition is scored by five independent signals:
- Vector: cosine similarity between query and entry embeddings
- Keyword: TF-weighted term matching with a title bonus and coverage factor
- Fuzzy: best Levenshtein similarity per query word (typo tolerance)
- Recency: linear decay over a one-week window
- Tag match: query terms that substring-match the entry's tags

  score = 0.45 * vector + 0.30 * keyword + 0.10 * fuzzy
          + 0.05 * recency + 0.10 * tag_match

The top ``limit`` candidates are then re-ranked on term coverage and exact
phrase presence.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from loguru import logger

from .config import RetrievalConfig
from .embedding import EmbeddingGateway
from .models import KnowledgeEntry
from .storage.entry_store import EntryStore

_NON_WORD = re.compile(r"[^\w\s]")


@dataclass
class ScoredEntry:
    """An entry with its combined score and per-signal breakdown."""

    entry: KnowledgeEntry
    score: float
    signals: dict[str, float] = field(default_factory=dict)


def extract_terms(text: str) -> list[str]:
    """Lowercase, strip punctuation, keep words longer than two characters."""
    cleaned = _NON_WORD.sub(" ", text.lower())
    return [term for term in cleaned.split() if len(term) > 2]


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance between two strings (two-row dynamic programming)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            if ca == cb:
                current.append(previous[j - 1])
            else:
                current.append(
                    1 + min(previous[j - 1], previous[j], current[j - 1])
                )
        previous = current
    return previous[-1]


def levenshtein_similarity(a: str, b: str) -> float:
    """``1 - distance / max_len`` in [0, 1]."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return 1.0 - levenshtein_distance(a, b) / max(len(a), len(b))


class HybridRetriever:
    """Five-signal hybrid retrieval over one partition of the entry store.

    Read-only with respect to the working set: scoring never touches access
    metadata, and an entry that vanishes mid-scan (compressed or deleted by
    a background pass) is silently dropped from the candidates.
    """

    VECTOR_WEIGHT = 0.45
    KEYWORD_WEIGHT = 0.30
    FUZZY_WEIGHT = 0.10
    RECENCY_WEIGHT = 0.05
    TAG_WEIGHT = 0.10

    RERANK_COVERAGE_BOOST = 0.1
    RERANK_PHRASE_BOOST = 0.15

    def __init__(
        self,
        store: EntryStore,
        embedding_gateway: EmbeddingGateway,
        config: RetrievalConfig | None = None,
    ):
        """Initialize hybrid retriever.

        Args:
            store: Entry store holding the working set
            embedding_gateway: Gateway used to embed the query
            config: Retrieval configuration
        """
        self._store = store
        self._embedding = embedding_gateway
        self._config = config or RetrievalConfig()

    async def search(
        self,
        partition_id: str,
        query: str,
        limit: int | None = None,
        tag_filter: list[str] | None = None,
    ) -> list[ScoredEntry]:
        """Rank the partition's entries against a query.

        Args:
            partition_id: Partition to search
            query: Free-text query
            limit: Number of results (defaults to config.default_limit)
            tag_filter: Only entries carrying ALL of these tags

        Returns:
            Ranked entries, best first, scores rounded to 3 decimals
        """
        if limit is None:
            limit = self._config.default_limit
        if limit <= 0:
            return []
        started = datetime.now(timezone.utc)

        if tag_filter:
            candidate_ids = self._store.ids_by_tags(partition_id, tag_filter)
            ordered_ids = [
                eid for eid in self._store.ids_in_partition(partition_id)
                if eid in candidate_ids
            ]
        else:
            ordered_ids = self._store.ids_in_partition(partition_id)

        if not ordered_ids:
            return []

        query_embedding = await self._embedding.embed(query)

        # Re-read after the await: background compression may have run
        entries = []
        for entry_id in ordered_ids:
            entry = self._store.get(entry_id)
            if entry is not None and entry.partition_id == partition_id:
                entries.append(entry)
        if not entries:
            return []

        query_lower = query.lower()
        query_terms = extract_terms(query_lower)
        now = datetime.now(timezone.utc)

        scored = [
            self._score(entry, query_embedding, query_lower, query_terms, now)
            for entry in entries
        ]
        scored.sort(key=lambda s: s.score, reverse=True)
        shortlist = self._rerank(query_lower, query_terms, scored[:limit])

        for item in shortlist:
            item.score = round(item.score, 3)

        duration_ms = (datetime.now(timezone.utc) - started).total_seconds() * 1000
        logger.info(
            f"Searched {len(entries)} entries in {duration_ms:.0f}ms, "
            f"returning {len(shortlist)} for query: {query[:50]!r}"
        )
        return shortlist

    def _score(
        self,
        entry: KnowledgeEntry,
        query_embedding: list[float] | None,
        query_lower: str,
        query_terms: list[str],
        now: datetime,
    ) -> ScoredEntry:
        signals = {
            "vector": 0.0,
            "keyword": self.keyword_score(query_terms, entry),
            "fuzzy": self.fuzzy_score(query_lower, entry),
            "recency": self.recency_score(entry, now),
            "tag_match": self.tag_match_score(query_terms, entry),
        }
        if query_embedding and entry.embedding:
            signals["vector"] = EmbeddingGateway.cosine_similarity(
                query_embedding, entry.embedding,
            )

        score = (
            self.VECTOR_WEIGHT * signals["vector"]
            + self.KEYWORD_WEIGHT * signals["keyword"]
            + self.FUZZY_WEIGHT * signals["fuzzy"]
            + self.RECENCY_WEIGHT * signals["recency"]
            + self.TAG_WEIGHT * signals["tag_match"]
        )
        return ScoredEntry(entry=entry, score=score, signals=signals)

    def keyword_score(self, query_terms: list[str], entry: KnowledgeEntry) -> float:
        """TF-weighted keyword relevance with title bonus and coverage factor."""
        if not query_terms:
            return 0.0

        topic_lower = entry.topic.lower()
        text = f"{topic_lower} {entry.content.lower()}"
        term_freq: dict[str, int] = {}
        for term in extract_terms(text):
            term_freq[term] = term_freq.get(term, 0) + 1

        score = 0.0
        matched = 0
        for term in query_terms:
            if term in text:
                tf = term_freq.get(term, 0)
                idf = math.log(1 + 1 / (tf + 1))
                score += (1 + tf) * (1 + idf)
                matched += 1
            if term in topic_lower:
                score += self._config.title_bonus

        coverage = matched / len(query_terms)
        return (score / len(query_terms)) * (0.5 + 0.5 * coverage)

    @staticmethod
    def fuzzy_score(query_lower: str, entry: KnowledgeEntry) -> float:
        """Average over query words of the best Levenshtein similarity."""
        query_words = query_lower.split()
        if not query_words:
            return 0.0

        text_words = [
            w for w in f"{entry.topic} {entry.content}".lower().split()
            if len(w) >= 3
        ]
        if not text_words:
            return 0.0

        total = 0.0
        for q_word in query_words:
            if len(q_word) < 3:
                continue
            best = 0.0
            for t_word in text_words:
                similarity = levenshtein_similarity(q_word, t_word)
                if similarity > best:
                    best = similarity
                    if best == 1.0:
                        break
            total += best

        return total / len(query_words)

    def recency_score(self, entry: KnowledgeEntry, now: datetime) -> float:
        """1.0 for brand-new entries, linearly down to 0.0 at the window end."""
        created = entry.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        age_hours = (now - created).total_seconds() / 3600.0
        return max(0.0, 1.0 - age_hours / self._config.recency_window_hours)

    @staticmethod
    def tag_match_score(query_terms: list[str], entry: KnowledgeEntry) -> float:
        """Share of query terms that substring-match any tag, either direction."""
        if not entry.tags or not query_terms:
            return 0.0
        entry_tags = [t.lower() for t in entry.tags]
        matching = [
            term for term in query_terms
            if any(tag in term or term in tag for tag in entry_tags)
        ]
        return len(matching) / max(len(query_terms), len(entry_tags))

    def _rerank(
        self,
        query_lower: str,
        query_terms: list[str],
        candidates: list[ScoredEntry],
    ) -> list[ScoredEntry]:
        """Boost the shortlist on term coverage and exact phrase presence."""
        for candidate in candidates:
            text = f"{candidate.entry.topic} {candidate.entry.content}".lower()
            coverage = 0.0
            if query_terms:
                coverage = sum(1 for t in query_terms if t in text) / len(query_terms)
            boost = self.RERANK_COVERAGE_BOOST * coverage
            if query_lower.strip() and query_lower in text:
                boost += self.RERANK_PHRASE_BOOST
            candidate.signals["rerank_boost"] = boost
            candidate.score = min(1.0, candidate.score + boost)

        candidates.sort(key=lambda s: s.score, reverse=True)
        return candidates
