"""Tests for the JSON-file and SQLite extended storage backends."""

from __future__ import annotations

import json
from pathlib import Path

import aiosqlite
import pytest

from knowledge_memory.config import StorageConfig
from knowledge_memory.exceptions import StorageError
from knowledge_memory.models import KnowledgeEntry
from knowledge_memory.storage import (
    JsonExtendedStorage,
    SQLiteExtendedStorage,
    build_extended_storage,
    make_key,
    partition_prefix,
)


@pytest.fixture
def record():
    entry = KnowledgeEntry(
        partition_id="room-1",
        topic="Deadline",
        content="Deadline Aug 15",
        tags=["deadline"],
        embedding=[0.1, 0.2],
    )
    return entry.to_record()


@pytest.fixture
def json_storage(tmp_path):
    return JsonExtendedStorage(tmp_path / "extended")


@pytest.fixture
async def sqlite_storage(tmp_path):
    s = SQLiteExtendedStorage(db_path=str(tmp_path / "db" / "extended.db"))
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture(params=["json", "sqlite"])
async def storage(request, tmp_path):
    if request.param == "json":
        s = JsonExtendedStorage(tmp_path / "extended")
    else:
        s = SQLiteExtendedStorage(db_path=str(tmp_path / "extended.db"))
    yield s
    await s.close()


# ---------------------------------------------------------------------------
# Shared contract
# ---------------------------------------------------------------------------


class TestStorageContract:
    """Behaviour both backends must share."""

    @pytest.mark.asyncio
    async def test_put_then_get(self, storage, record):
        key = make_key("room-1", record["id"])
        location = await storage.put(key, record)

        assert location
        loaded = await storage.get(key)
        assert loaded == record
        restored = KnowledgeEntry.from_record(loaded)
        assert restored.content == "Deadline Aug 15"
        assert restored.embedding == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, storage):
        assert await storage.get("room-1/missing") is None

    @pytest.mark.asyncio
    async def test_put_overwrites(self, storage, record):
        key = make_key("room-1", record["id"])
        await storage.put(key, record)
        await storage.put(key, {**record, "content": "changed"})
        loaded = await storage.get(key)
        assert loaded["content"] == "changed"

    @pytest.mark.asyncio
    async def test_delete(self, storage, record):
        key = make_key("room-1", record["id"])
        await storage.put(key, record)

        assert await storage.delete(key) is True
        assert await storage.get(key) is None
        assert await storage.delete(key) is False

    @pytest.mark.asyncio
    async def test_list_prefix_scopes_to_partition(self, storage, record):
        await storage.put(make_key("room-1", "a"), record)
        await storage.put(make_key("room-1", "b"), record)
        await storage.put(make_key("room-10", "c"), record)

        keys = await storage.list_prefix(partition_prefix("room-1"))
        assert keys == ["room-1/a", "room-1/b"]


# ---------------------------------------------------------------------------
# JSON backend specifics
# ---------------------------------------------------------------------------


class TestJsonExtendedStorage:

    @pytest.mark.asyncio
    async def test_location_is_json_file(self, json_storage, record):
        location = await json_storage.put(make_key("room-1", "e1"), record)
        assert location.endswith("e1.json")
        with open(location, encoding="utf-8") as f:
            assert json.load(f)["topic"] == "Deadline"

    @pytest.mark.asyncio
    async def test_no_temp_files_left_behind(self, json_storage, record):
        await json_storage.put(make_key("room-1", "e1"), record)
        leftovers = list(json_storage.base_path.rglob("*.tmp"))
        assert leftovers == []

    @pytest.mark.asyncio
    async def test_corrupt_record_raises_storage_error(self, json_storage, record):
        location = await json_storage.put(make_key("room-1", "e1"), record)
        with open(location, "w", encoding="utf-8") as f:
            f.write("{not json")

        with pytest.raises(StorageError):
            await json_storage.get(make_key("room-1", "e1"))

    @pytest.mark.asyncio
    async def test_unsafe_segments_are_encoded(self, json_storage, record):
        location = await json_storage.put("room:1/../e1", record)
        assert str(json_storage.base_path) in location
        assert await json_storage.get("room:1/../e1") == record

    @pytest.mark.asyncio
    async def test_similar_partition_ids_do_not_share_files(self, json_storage, record):
        for partition in ("room_1", "room 1", "room:1"):
            await json_storage.put(make_key(partition, "e1"), {**record, "topic": partition})

        assert await json_storage.list_prefix(partition_prefix("room 1")) == ["room 1/e1"]
        assert await json_storage.list_prefix(partition_prefix("room_1")) == ["room_1/e1"]

        await json_storage.delete(make_key("room 1", "e1"))
        assert (await json_storage.get(make_key("room_1", "e1")))["topic"] == "room_1"
        assert (await json_storage.get(make_key("room:1", "e1")))["topic"] == "room:1"

    @pytest.mark.asyncio
    async def test_list_without_separator_decodes_keys(self, json_storage, record):
        await json_storage.put(make_key("room 1", "e1"), record)
        await json_storage.put(make_key("lobby", "e2"), record)
        assert await json_storage.list_prefix("room") == ["room 1/e1"]

    @pytest.mark.asyncio
    async def test_long_names_are_hashed_and_listed(self, json_storage, record):
        partition = "p" * 300
        key = make_key(partition, "e1")
        location = await json_storage.put(key, record)

        assert len(Path(location).parent.name) <= 200
        assert await json_storage.get(key) == record
        assert await json_storage.list_prefix(partition_prefix(partition)) == [key]
        assert await json_storage.get(make_key("p" * 301, "e1")) is None

    @pytest.mark.asyncio
    async def test_malformed_key_rejected(self, json_storage, record):
        with pytest.raises(StorageError):
            await json_storage.put("no-separator", record)

    @pytest.mark.asyncio
    async def test_partition_dir_removed_when_empty(self, json_storage, record):
        await json_storage.put(make_key("room-1", "e1"), record)
        await json_storage.delete(make_key("room-1", "e1"))
        assert not (json_storage.base_path / "room-1").exists()


# ---------------------------------------------------------------------------
# SQLite backend specifics
# ---------------------------------------------------------------------------


class TestSQLiteExtendedStorage:

    @pytest.mark.asyncio
    async def test_table_exists(self, sqlite_storage):
        async with sqlite_storage._db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='extended_records'"
        ) as cursor:
            rows = await cursor.fetchall()
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_location_is_sqlite_uri(self, sqlite_storage, record):
        location = await sqlite_storage.put(make_key("room-1", "e1"), record)
        assert location.startswith("sqlite://")
        assert location.endswith("#room-1/e1")

    @pytest.mark.asyncio
    async def test_lazy_initialization(self, tmp_path, record):
        s = SQLiteExtendedStorage(db_path=str(tmp_path / "lazy.db"))
        try:
            await s.put(make_key("room-1", "e1"), record)
            assert (await s.get(make_key("room-1", "e1")))["id"] == record["id"]
        finally:
            await s.close()

    @pytest.mark.asyncio
    async def test_list_prefix_failure_raises_storage_error(self, sqlite_storage, monkeypatch):
        async def broken_conn():
            raise aiosqlite.OperationalError("database is locked")

        monkeypatch.setattr(sqlite_storage, "_conn", broken_conn)

        with pytest.raises(StorageError):
            await sqlite_storage.list_prefix(partition_prefix("room-1"))


class TestBuildExtendedStorage:

    def test_file_backend(self, tmp_path):
        s = build_extended_storage(StorageConfig(extended_dir=str(tmp_path / "x")))
        assert isinstance(s, JsonExtendedStorage)

    def test_sqlite_backend(self, tmp_path):
        s = build_extended_storage(
            StorageConfig(backend="sqlite", sqlite_db_path=str(tmp_path / "x.db"))
        )
        assert isinstance(s, SQLiteExtendedStorage)
