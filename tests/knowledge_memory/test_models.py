"""Tests for KnowledgeEntry behaviour."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from knowledge_memory.models import EntryType, KnowledgeEntry


@pytest.fixture
def entry():
    return KnowledgeEntry(
        partition_id="room-1",
        topic="API capacity",
        content="API capacity 84.7%",
        tags=["capacity"],
        importance=6,
        embedding=[1.0, 0.0],
    )


class TestKnowledgeEntry:

    def test_defaults(self):
        e = KnowledgeEntry(partition_id="p", topic="t", content="c")
        assert e.id
        assert e.entry_type == EntryType.KNOWLEDGE
        assert e.importance == 5
        assert e.access_count == 0
        assert e.file_path is None
        assert not e.is_offloaded

    def test_importance_bounds(self):
        with pytest.raises(ValidationError):
            KnowledgeEntry(partition_id="p", topic="t", content="c", importance=11)
        with pytest.raises(ValidationError):
            KnowledgeEntry(partition_id="p", topic="t", content="c", importance=0)

    def test_token_estimate_tracks_content(self, entry):
        assert entry.token_estimate == 8  # "API capacity API capacity 84.7%" is 31 chars
        entry.content = "x" * 400
        assert entry.token_estimate > 100

    def test_token_estimate_recomputed_on_copy(self, entry):
        assert entry.token_estimate == 8
        copy = entry.model_copy(update={"content": "x" * 400})
        assert copy.token_estimate > 100
        assert entry.token_estimate == 8

    def test_touch_bumps_access(self, entry):
        before = entry.last_accessed
        entry.touch()
        assert entry.access_count == 1
        assert entry.last_accessed >= before

    def test_tag_helpers_case_insensitive(self, entry):
        assert entry.has_tag("CAPACITY")
        entry.add_tag("Capacity")
        assert entry.tags == ["capacity"]
        entry.remove_tag("CAPACITY")
        assert entry.tags == []

    def test_record_round_trip(self, entry):
        record = entry.to_record()
        assert record["token_estimate"] == entry.token_estimate
        restored = KnowledgeEntry.from_record(record)
        assert restored == entry

    def test_make_stub(self, entry):
        stub = entry.make_stub("/tmp/room-1/x.json")

        assert stub.id == entry.id
        assert stub.topic == entry.topic
        assert stub.tags == entry.tags
        assert stub.importance == entry.importance
        assert stub.entry_type == EntryType.REFERENCE
        assert stub.embedding is None
        assert stub.is_offloaded
        assert stub.content == f"[Stored in extended memory - {entry.token_estimate} tokens]"
        # The original is untouched
        assert entry.content == "API capacity 84.7%"
        assert entry.file_path is None
