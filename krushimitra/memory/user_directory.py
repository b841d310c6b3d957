"""
User Directory
==============

Identities created by OTP signup, one document per email in the `users`
collection:

{
    "email": str,               # Unique key, as received
    "user_id": str,             # Context store key (ObjectId hex)
    "name": str,
    "phone": str | null,
    "preferred_language": str | null,
    "created_at": datetime,
    "last_login_at": datetime
}

create() is a conditional upsert, so two racing signups for the same
email end up with one identity.
"""
import logging
from typing import Any, Callable, Dict, Optional, Protocol

from bson import ObjectId

from krushimitra.core.errors import ValidationError
from krushimitra.core.types import Clock, system_clock, to_datetime
from krushimitra.memory.document_store import DocumentStore

logger = logging.getLogger(__name__)


class Directory(Protocol):
    async def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        ...

    async def create(self, identity: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def record_login(self, email: str) -> Dict[str, Any]:
        ...


def _new_user_id() -> str:
    return str(ObjectId())


class UserDirectory:
    """Directory implementation on top of a DocumentStore keyed by email."""

    def __init__(
        self,
        store: DocumentStore,
        clock: Clock = system_clock,
        id_factory: Callable[[], str] = _new_user_id,
    ):
        if store.key_field != "email":
            raise ValueError("UserDirectory needs a store keyed by email")
        self.store = store
        self._clock = clock
        self._id_factory = id_factory

    async def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return await self.store.find_one(email)

    async def create(self, identity: Dict[str, Any]) -> Dict[str, Any]:
        email = identity.get("email")
        name = (identity.get("name") or "").strip()
        if not email:
            raise ValidationError("email is required")
        if not name:
            raise ValidationError("name is required for signup", key=email)

        now = to_datetime(self._clock())
        defaults = {
            "user_id": self._id_factory(),
            "name": name,
            "phone": identity.get("phone"),
            "preferred_language": identity.get("preferred_language"),
            "created_at": now,
        }
        doc = await self.store.upsert_merge(email, {"last_login_at": now}, defaults)
        logger.info(f"UserDirectory: identity ready email={email} user_id={doc.get('user_id')}")
        return doc

    async def record_login(self, email: str) -> Dict[str, Any]:
        now = to_datetime(self._clock())
        return await self.store.upsert_merge(email, {"last_login_at": now})
