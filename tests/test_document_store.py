"""
Unit tests for the document store backends.

InMemoryDocumentStore is exercised directly; MongoDocumentStore is tested
against a mocked motor collection to pin down the update documents it
sends ($set / $setOnInsert / $push with $slice).
"""
import asyncio

import pytest
from unittest.mock import AsyncMock, patch
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError

from krushimitra.core.errors import ConcurrencyError, TransientError
from krushimitra.memory.document_store import InMemoryDocumentStore, insert_defaults
from krushimitra.memory.mongo_store import DatabaseManager, MongoDocumentStore


# =============================================================================
# DOT-PATH DEFAULTS
# =============================================================================

class TestInsertDefaults:
    """Defaults never collide with paths written by the same operation."""

    def test_overlapping_paths_are_dropped(self):
        defaults = {"profile.name": None, "profile.email": None, "chats": [], "updated_at": 1}
        result = insert_defaults(["profile.name", "updated_at"], defaults)
        assert result == {"profile.email": None, "chats": []}

    def test_parent_path_overlap(self):
        assert insert_defaults(["location"], {"location": None, "weather": None}) == {"weather": None}
        assert insert_defaults(["profile"], {"profile.name": None}) == {}

    def test_prefix_without_dot_is_not_overlap(self):
        assert insert_defaults(["chat"], {"chats": []}) == {"chats": []}

    def test_no_defaults(self):
        assert insert_defaults(["a"], None) == {}


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================

class TestInMemoryDocumentStore:
    """Mongo-equivalent semantics without a database."""

    @pytest.mark.asyncio
    async def test_upsert_creates_with_defaults(self):
        store = InMemoryDocumentStore()
        doc = await store.upsert_merge(
            "u1",
            {"profile.name": "Ravi"},
            {"profile.name": None, "profile.email": None, "chats": []},
        )
        assert doc == {"user_id": "u1", "profile": {"name": "Ravi", "email": None}, "chats": []}

    @pytest.mark.asyncio
    async def test_defaults_do_not_overwrite_existing(self):
        store = InMemoryDocumentStore()
        await store.atomic_append_capped("u1", "chats", [{"message": "hi"}], 5, defaults={"chats": []})

        doc = await store.upsert_merge("u1", {"profile.name": "Ravi"}, {"chats": []})

        assert doc["chats"] == [{"message": "hi"}]
        assert doc["profile"] == {"name": "Ravi"}

    @pytest.mark.asyncio
    async def test_append_keeps_last_cap_items(self):
        store = InMemoryDocumentStore()
        await store.atomic_append_capped("u1", "chats", [{"n": i} for i in range(4)], 5)
        doc = await store.atomic_append_capped("u1", "chats", [{"n": i} for i in range(4, 8)], 5)

        assert [c["n"] for c in doc["chats"]] == [3, 4, 5, 6, 7]

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self):
        store = InMemoryDocumentStore()
        doc = await store.upsert_merge("u1", {"profile.name": "Ravi"})
        doc["profile"]["name"] = "mutated"

        stored = await store.find_one("u1")
        assert stored["profile"]["name"] == "Ravi"

    @pytest.mark.asyncio
    async def test_find_and_delete(self):
        store = InMemoryDocumentStore()
        assert await store.find_one("missing") is None
        assert await store.delete("missing") is False

        await store.upsert_merge("u1", {"a": 1})
        assert len(store) == 1
        assert await store.delete("u1") is True
        assert await store.find_one("u1") is None

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_serialized(self):
        store = InMemoryDocumentStore()
        await asyncio.gather(*[
            store.atomic_append_capped("u1", "chats", [{"n": i}], 5)
            for i in range(20)
        ])
        doc = await store.find_one("u1")
        assert len(doc["chats"]) == 5

    @pytest.mark.asyncio
    async def test_custom_key_field(self):
        store = InMemoryDocumentStore(key_field="email")
        doc = await store.upsert_merge("a@b.co", {"name": "A"})
        assert doc["email"] == "a@b.co"


# =============================================================================
# MONGO BACKEND
# =============================================================================

class TestMongoDocumentStore:
    """Update documents sent to MongoDB."""

    @pytest.fixture
    def store(self):
        return MongoDocumentStore(DatabaseManager(), "user_context")

    @pytest.mark.asyncio
    async def test_upsert_merge_builds_set_and_set_on_insert(self, store):
        mock_collection = AsyncMock()
        mock_collection.find_one_and_update = AsyncMock(return_value={"user_id": "u1"})

        with patch.object(type(store), 'collection', new=mock_collection):
            result = await store.upsert_merge(
                "u1",
                {"profile.name": "Ravi", "updated_at": 2},
                {"profile.name": None, "profile.email": None, "updated_at": 1, "created_at": 1},
            )

        assert result == {"user_id": "u1"}
        args, kwargs = mock_collection.find_one_and_update.call_args
        assert args[0] == {"user_id": "u1"}
        assert args[1]["$set"] == {"profile.name": "Ravi", "updated_at": 2}
        assert args[1]["$setOnInsert"] == {"user_id": "u1", "profile.email": None, "created_at": 1}
        assert kwargs["upsert"] is True
        assert kwargs["return_document"] == ReturnDocument.AFTER

    @pytest.mark.asyncio
    async def test_empty_updates_send_no_set(self, store):
        mock_collection = AsyncMock()
        mock_collection.find_one_and_update = AsyncMock(return_value={"user_id": "u1"})

        with patch.object(type(store), 'collection', new=mock_collection):
            await store.upsert_merge("u1", {}, {"chats": []})

        update = mock_collection.find_one_and_update.call_args[0][1]
        assert "$set" not in update
        assert update["$setOnInsert"] == {"user_id": "u1", "chats": []}

    @pytest.mark.asyncio
    async def test_append_uses_push_each_slice(self, store):
        """Cap is applied by the same update via $slice: -cap."""
        mock_collection = AsyncMock()
        mock_collection.find_one_and_update = AsyncMock(return_value={"user_id": "u1", "chats": []})
        items = [{"role": "user", "message": "hi"}]

        with patch.object(type(store), 'collection', new=mock_collection):
            await store.atomic_append_capped(
                "u1",
                "chats",
                items,
                5,
                updates={"updated_at": 2},
                defaults={"chats": [], "location": None, "updated_at": 1},
            )

        update = mock_collection.find_one_and_update.call_args[0][1]
        assert update["$push"] == {"chats": {"$each": items, "$slice": -5}}
        assert update["$set"] == {"updated_at": 2}
        # chats and updated_at are written by $push/$set, so not by $setOnInsert
        assert update["$setOnInsert"] == {"user_id": "u1", "location": None}

    @pytest.mark.asyncio
    async def test_duplicate_key_retried_once(self, store):
        mock_collection = AsyncMock()
        mock_collection.find_one_and_update = AsyncMock(
            side_effect=[DuplicateKeyError("dup"), {"user_id": "u1"}]
        )

        with patch.object(type(store), 'collection', new=mock_collection):
            result = await store.upsert_merge("u1", {"a": 1})

        assert result == {"user_id": "u1"}
        assert mock_collection.find_one_and_update.call_count == 2

    @pytest.mark.asyncio
    async def test_duplicate_key_twice_raises_concurrency_error(self, store):
        mock_collection = AsyncMock()
        mock_collection.find_one_and_update = AsyncMock(side_effect=DuplicateKeyError("dup"))

        with patch.object(type(store), 'collection', new=mock_collection):
            with pytest.raises(ConcurrencyError):
                await store.upsert_merge("u1", {"a": 1})

    @pytest.mark.asyncio
    async def test_connection_failure_is_transient(self, store):
        mock_collection = AsyncMock()
        mock_collection.find_one = AsyncMock(side_effect=ConnectionFailure("down"))

        with patch.object(type(store), 'collection', new=mock_collection):
            with pytest.raises(TransientError) as exc_info:
                await store.find_one("u1")

        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_delete_reports_count(self, store):
        mock_collection = AsyncMock()
        mock_collection.delete_one = AsyncMock(return_value=type("R", (), {"deleted_count": 1})())

        with patch.object(type(store), 'collection', new=mock_collection):
            assert await store.delete("u1") is True

        mock_collection.delete_one.assert_called_once_with({"user_id": "u1"})


class TestDatabaseManager:
    """Connection lifecycle without a server."""

    def test_db_raises_when_not_connected(self):
        manager = DatabaseManager()
        with pytest.raises(RuntimeError):
            manager.db

    @pytest.mark.asyncio
    async def test_ping_false_when_not_connected(self):
        assert await DatabaseManager().ping() is False
