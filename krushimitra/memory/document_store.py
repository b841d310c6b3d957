"""
Document Store Contract
=======================

The context store and user directory talk to storage only through this
narrow, per-key atomic interface:

    find_one(key)
    upsert_merge(key, updates, defaults)
    atomic_append_capped(key, field, items, cap, updates, defaults)
    delete(key)

`updates` and `defaults` are dot-path maps ("profile.name" -> value),
i.e. the `$set` / `$setOnInsert` halves of a single conditional upsert.
Defaults only apply when the document is created, and a default whose
path overlaps an update path is dropped so one operation never writes
the same field twice.

Two backends:
- MongoDocumentStore (mongo_store.py): motor, shared across instances
- InMemoryDocumentStore (here): per-key asyncio.Lock, single process
"""
import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    key_field: str

    async def find_one(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    async def upsert_merge(
        self,
        key: str,
        updates: Dict[str, Any],
        defaults: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        ...

    async def atomic_append_capped(
        self,
        key: str,
        field: str,
        items: List[Dict[str, Any]],
        cap: int,
        updates: Optional[Dict[str, Any]] = None,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        ...

    async def delete(self, key: str) -> bool:
        ...


# =============================================================================
# DOT-PATH HELPERS
# =============================================================================

def _overlaps(a: str, b: str) -> bool:
    return a == b or a.startswith(b + ".") or b.startswith(a + ".")


def insert_defaults(
    written_paths: List[str],
    defaults: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    """Defaults that do not collide with any path written by the same operation."""
    if not defaults:
        return {}
    return {
        path: value
        for path, value in defaults.items()
        if not any(_overlaps(path, written) for written in written_paths)
    }


def get_path(doc: Dict[str, Any], path: str) -> Any:
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================

class InMemoryDocumentStore:
    """
    Process-local document store with Mongo-equivalent update semantics.

    Each key gets its own asyncio.Lock, so updates to one document are
    serialized while different documents proceed independently. Returned
    documents are deep copies; callers can never mutate stored state.
    """

    def __init__(self, key_field: str = "user_id"):
        self.key_field = key_field
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
        return lock

    def _get_or_create(
        self,
        key: str,
        written_paths: List[str],
        defaults: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        doc = self._docs.get(key)
        if doc is None:
            doc = {self.key_field: key}
            for path, value in insert_defaults(written_paths, defaults).items():
                set_path(doc, path, copy.deepcopy(value))
            self._docs[key] = doc
            logger.debug(f"InMemoryDocumentStore: created document {self.key_field}={key}")
        return doc

    async def find_one(self, key: str) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(key)
        return copy.deepcopy(doc) if doc is not None else None

    async def upsert_merge(
        self,
        key: str,
        updates: Dict[str, Any],
        defaults: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        async with self._lock_for(key):
            doc = self._get_or_create(key, list(updates), defaults)
            for path, value in updates.items():
                set_path(doc, path, copy.deepcopy(value))
            return copy.deepcopy(doc)

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
        async with self._lock_for(key):
            doc = self._get_or_create(key, [field, *updates], defaults)
            values = list(get_path(doc, field) or [])
            values.extend(copy.deepcopy(items))
            set_path(doc, field, values[-cap:] if cap > 0 else [])
            for path, value in updates.items():
                set_path(doc, path, copy.deepcopy(value))
            return copy.deepcopy(doc)

    async def delete(self, key: str) -> bool:
        async with self._lock_for(key):
            return self._docs.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._docs)
