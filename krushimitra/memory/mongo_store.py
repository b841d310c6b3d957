"""
MongoDB Store for User Context Persistence
==========================================

Collections:
1. user_context - one aggregate document per user (profile, location,
   weather, rolling chat window)
2. users - identities created by OTP signup, keyed by email

USER_CONTEXT COLLECTION SCHEMA:
{
    "_id": ObjectId,
    "user_id": str,                     # Unique, never reassigned
    "profile": {
        "name": str | null,
        "email": str | null,
        "phone": str | null,
        "preferred_language": str | null
    },
    "location": {                       # null until first meaningful write
        "address": str | null,
        "latitude": float | null,
        "longitude": float | null,
        "precision_label": str | null,
        "raw_text": str | null,
        "updated_at": datetime
    } | null,
    "weather": {                        # null until first meaningful write
        "temperature": float | null,
        "humidity": float | null,
        "condition": str | null,
        "wind_speed": float | null,
        "precipitation_probability": float | null,
        "source": str,
        "updated_at": datetime
    } | null,
    "chats": [                          # $push with $slice: -5
        {"role": "user" | "assistant", "message": str, "metadata": dict, "timestamp": datetime}
    ],
    "created_at": datetime,             # $setOnInsert only
    "updated_at": datetime
}

INDEXES:
- user_context:
  - (user_id) unique - Primary lookup
  - (location.updated_at DESC), (weather.updated_at DESC) - freshness scans
- users:
  - (email) unique - OTP login lookup
  - (user_id) unique

Every mutation is a single find_one_and_update with upsert=True, so the
create-if-absent and the capped push are atomic per document.
"""
import logging
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import IndexModel, ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    OperationFailure,
    PyMongoError,
)

from krushimitra.core.errors import ConcurrencyError, TransientError
from krushimitra.memory.document_store import insert_defaults

logger = logging.getLogger(__name__)

USER_CONTEXT_COLLECTION = "user_context"
USERS_COLLECTION = "users"


# =============================================================================
# DATABASE MANAGER
# =============================================================================

class DatabaseManager:
    """Owns the motor client for the lifetime of the service."""

    def __init__(self):
        self._client: Optional[AsyncIOMotorClient] = None
        self._db: Optional[AsyncIOMotorDatabase] = None

    async def connect(self, uri: str, database: str) -> None:
        """Initialize MongoDB connection with recommended settings"""
        if self._client is not None:
            return

        self._client = AsyncIOMotorClient(
            uri,
            # Connection Pool Settings
            minPoolSize=1,
            maxPoolSize=20,
            # Timeouts
            connectTimeoutMS=5000,
            socketTimeoutMS=10000,
            serverSelectionTimeoutMS=5000,
            # Retry Settings
            retryWrites=True,
            retryReads=True,
        )
        self._db = self._client[database]

        try:
            await self._client.admin.command("ping")
            logger.info(f"Connected to MongoDB: {database}")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise

        await self._create_indexes()

    async def _create_indexes(self) -> None:
        """Create indexes; failures are logged and never block startup."""
        context_indexes = [
            IndexModel([("user_id", ASCENDING)], unique=True),
            IndexModel([("location.updated_at", DESCENDING)]),
            IndexModel([("weather.updated_at", DESCENDING)]),
        ]
        user_indexes = [
            IndexModel([("email", ASCENDING)], unique=True),
            IndexModel([("user_id", ASCENDING)], unique=True),
        ]

        for name, indexes in (
            (USER_CONTEXT_COLLECTION, context_indexes),
            (USERS_COLLECTION, user_indexes),
        ):
            try:
                await self._db[name].create_indexes(indexes)
                logger.info(f"MongoDB indexes ready on {name}")
            except OperationFailure as e:
                logger.warning(f"Index creation skipped on {name}: {e}")

    async def disconnect(self) -> None:
        """Close database connection"""
        if self._client:
            self._client.close()
            self._client = None
            self._db = None
            logger.info("Disconnected from MongoDB")

    @property
    def db(self) -> AsyncIOMotorDatabase:
        if self._db is None:
            raise RuntimeError("Database not connected")
        return self._db

    async def ping(self) -> bool:
        """Health check"""
        if self._client is None:
            return False
        try:
            await self._client.admin.command("ping")
            return True
        except PyMongoError:
            return False


# =============================================================================
# DOCUMENT STORE
# =============================================================================

class MongoDocumentStore:
    """
    DocumentStore backed by one MongoDB collection.

    Concurrent first writes for the same key can both attempt the upsert
    insert; the loser gets DuplicateKeyError from the unique index and is
    retried once as a plain update before surfacing ConcurrencyError.
    """

    def __init__(self, manager: DatabaseManager, collection_name: str, key_field: str = "user_id"):
        self.manager = manager
        self.collection_name = collection_name
        self.key_field = key_field

    @property
    def collection(self):
        return self.manager.db[self.collection_name]

    async def find_one(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.collection.find_one({self.key_field: key})
        except (ConnectionFailure, OperationFailure) as e:
            raise TransientError(f"find_one failed: {e}", key=key) from e

    async def upsert_merge(
        self,
        key: str,
        updates: Dict[str, Any],
        defaults: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        update_doc: Dict[str, Any] = {
            "$setOnInsert": {
                self.key_field: key,
                **insert_defaults(list(updates), defaults),
            }
        }
        if updates:
            update_doc["$set"] = dict(updates)
        return await self._find_one_and_update(key, update_doc)

    async def atomic_append_capped(
        self,
        key: str,
        field: str,
        items: List[Dict[str, Any]],
        cap: int,
        updates: Optional[Dict[str, Any]] = None,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        updates = updates or {}
        update_doc: Dict[str, Any] = {
            "$push": {field: {"$each": list(items), "$slice": -cap}},
            "$setOnInsert": {
                self.key_field: key,
                **insert_defaults([field, *updates], defaults),
            },
        }
        if updates:
            update_doc["$set"] = dict(updates)
        return await self._find_one_and_update(key, update_doc)

    async def delete(self, key: str) -> bool:
        try:
            result = await self.collection.delete_one({self.key_field: key})
        except (ConnectionFailure, OperationFailure) as e:
            raise TransientError(f"delete failed: {e}", key=key) from e
        return result.deleted_count > 0

    async def _find_one_and_update(self, key: str, update_doc: Dict[str, Any]) -> Dict[str, Any]:
        for attempt in range(2):
            try:
                return await self.collection.find_one_and_update(
                    {self.key_field: key},
                    update_doc,
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except DuplicateKeyError:
                if attempt:
                    logger.error(
                        f"Upsert race not resolved on {self.collection_name} "
                        f"{self.key_field}={key}"
                    )
                    raise ConcurrencyError("Concurrent upsert conflict", key=key)
                logger.warning(
                    f"Upsert race on {self.collection_name} {self.key_field}={key}, retrying"
                )
            except (ConnectionFailure, OperationFailure) as e:
                raise TransientError(f"update failed: {e}", key=key) from e
        raise ConcurrencyError("Concurrent upsert conflict", key=key)
