"""
User Context Store
==================

One aggregate document per user: profile, last known location, last
known weather and a rolling window of the most recent chat turns. This
document is what gets handed to prompt construction.

Merge rules:
- Profile: partial update, only supplied non-empty fields are written
  (full replace allowed at signup via replace_profile=True)
- Location / weather: written only when the sanitized payload carries
  real data; an empty payload never overwrites the last good value
- Chats: appended with the cap applied inside the same store operation
- Creation: $setOnInsert defaults, so "ensure exists" never clobbers
  chats, location or weather of an existing document

Ingestion is tolerant of the shapes different clients send
(lat/latitude, temp/temperature, windSpeed/wind_speed, ...) but rejects
payloads where two aliases disagree instead of guessing.
"""
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from bson import ObjectId

from krushimitra.core.errors import InvalidIdentity, ValidationError
from krushimitra.core.types import ChatRole, Clock, system_clock, to_datetime
from krushimitra.memory.document_store import DocumentStore

logger = logging.getLogger(__name__)

CHAT_WINDOW_SIZE = 5

PROFILE_FIELDS = ("name", "email", "phone", "preferred_language")

_USER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")

# canonical field -> accepted input spellings (first is canonical)
PROFILE_ALIASES = {
    "name": ("name", "displayName", "display_name"),
    "email": ("email",),
    "phone": ("phone", "phoneNumber", "phone_number"),
    "preferred_language": ("preferred_language", "preferredLanguage", "language"),
}

LOCATION_ALIASES = {
    "address": ("address",),
    "latitude": ("latitude", "lat"),
    "longitude": ("longitude", "lon", "lng"),
    "precision_label": ("precision_label", "precisionLabel", "precision"),
    "raw_text": ("raw_text", "rawText", "raw"),
}

WEATHER_ALIASES = {
    "temperature": ("temperature", "temp"),
    "humidity": ("humidity",),
    "condition": ("condition", "summary"),
    "wind_speed": ("wind_speed", "windSpeed", "wind"),
    "precipitation_probability": (
        "precipitation_probability",
        "precipitationProbability",
        "precipChance",
        "precip_chance",
    ),
    "source": ("source",),
}


# =============================================================================
# NORMALIZATION
# =============================================================================

def normalize_user_id(value: Any) -> str:
    """
    Normalize the identities callers pass around into one string key.

    Accepts ObjectId, its 24-hex string form, plain slug ids, and
    identity dicts carrying `user_id` or `_id`.
    """
    if isinstance(value, dict):
        value = value.get("user_id") or value.get("_id")
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, str):
        candidate = value.strip()
        if _USER_ID_PATTERN.match(candidate):
            return candidate
    raise InvalidIdentity("Invalid user id", key=str(value) if value is not None else None)


def _clean_text(value: Any, field: str) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ValidationError(f"{field} must be text")
    text = str(value).strip()
    return text or None


def _to_float(value: Any, field: str) -> Optional[float]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be numeric")


def _pick(
    data: Dict[str, Any],
    field: str,
    aliases: Iterable[str],
    convert: Callable[[Any, str], Any],
) -> Any:
    """Resolve one canonical field from its aliases; conflicting aliases are rejected."""
    found = []
    for name in aliases:
        if name in data:
            converted = convert(data[name], field)
            if converted is not None:
                found.append(converted)
    if not found:
        return None
    if any(v != found[0] for v in found[1:]):
        raise ValidationError(f"Ambiguous {field}: conflicting values supplied")
    return found[0]


def sanitize_profile(profile: Optional[Dict[str, Any]], replace: bool = False) -> Dict[str, Any]:
    """
    Return the profile fields to write.

    Partial mode returns only supplied, non-empty fields. Replace mode
    returns all four, with missing ones set to None (never "").
    """
    if profile is None:
        profile = {}
    if not isinstance(profile, dict):
        raise ValidationError("profile must be an object")

    sanitized = {}
    for field, aliases in PROFILE_ALIASES.items():
        value = _pick(profile, field, aliases, _clean_text)
        if value is not None or replace:
            sanitized[field] = value
    return sanitized


def sanitize_location(location: Any, now: datetime) -> Optional[Dict[str, Any]]:
    """Canonical location snapshot, or None when the payload carries no position data."""
    if location is None:
        return None
    if not isinstance(location, dict):
        raise ValidationError("location must be an object")

    latitude = _pick(location, "latitude", LOCATION_ALIASES["latitude"], _to_float)
    longitude = _pick(location, "longitude", LOCATION_ALIASES["longitude"], _to_float)
    if latitude is not None and not -90.0 <= latitude <= 90.0:
        raise ValidationError("latitude out of range")
    if longitude is not None and not -180.0 <= longitude <= 180.0:
        raise ValidationError("longitude out of range")

    sanitized = {
        "address": _pick(location, "address", LOCATION_ALIASES["address"], _clean_text),
        "latitude": latitude,
        "longitude": longitude,
        "precision_label": _pick(
            location, "precision_label", LOCATION_ALIASES["precision_label"], _clean_text
        ),
        "raw_text": _pick(location, "raw_text", LOCATION_ALIASES["raw_text"], _clean_text),
    }
    # A precision label alone does not locate anyone
    if all(sanitized[k] is None for k in ("address", "latitude", "longitude", "raw_text")):
        return None
    sanitized["updated_at"] = now
    return sanitized


def sanitize_weather(weather: Any, now: datetime) -> Optional[Dict[str, Any]]:
    """Canonical weather snapshot, or None when no observation fields are present."""
    if weather is None:
        return None
    if not isinstance(weather, dict):
        raise ValidationError("weather must be an object")

    sanitized = {
        "temperature": _pick(weather, "temperature", WEATHER_ALIASES["temperature"], _to_float),
        "humidity": _pick(weather, "humidity", WEATHER_ALIASES["humidity"], _to_float),
        "condition": _pick(weather, "condition", WEATHER_ALIASES["condition"], _clean_text),
        "wind_speed": _pick(weather, "wind_speed", WEATHER_ALIASES["wind_speed"], _to_float),
        "precipitation_probability": _pick(
            weather,
            "precipitation_probability",
            WEATHER_ALIASES["precipitation_probability"],
            _to_float,
        ),
    }
    if all(value is None for value in sanitized.values()):
        return None
    sanitized["source"] = _pick(weather, "source", WEATHER_ALIASES["source"], _clean_text) or "app"
    sanitized["updated_at"] = now
    return sanitized


# =============================================================================
# CHAT WINDOW
# =============================================================================

class ChatWindow:
    """
    Fixed-size rolling chat history.

    prepare() turns raw entries into stored chat items; the store applies
    the cap (keep last `size`) in the same operation that appends them.
    """

    def __init__(self, size: int = CHAT_WINDOW_SIZE):
        if size < 1:
            raise ValueError("chat window size must be at least 1")
        self.size = size

    @staticmethod
    def _timestamp(value: Any, now: datetime) -> datetime:
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return now
        return now

    def prepare(
        self,
        entries: Union[Dict[str, Any], List[Dict[str, Any]], None],
        now: datetime,
    ) -> List[Dict[str, Any]]:
        if entries is None:
            return []
        if isinstance(entries, dict):
            entries = [entries]

        prepared = []
        for entry in entries:
            if not isinstance(entry, dict):
                raise ValidationError("chat entry must be an object")
            message = entry.get("message")
            message = "" if message is None else str(message)
            if not message.strip():
                continue

            role = ChatRole.ASSISTANT if entry.get("role") == ChatRole.ASSISTANT.value else ChatRole.USER
            metadata = entry.get("metadata")
            prepared.append({
                "role": role.value,
                "message": message,
                "metadata": metadata if isinstance(metadata, dict) else {},
                "timestamp": self._timestamp(entry.get("timestamp"), now),
            })
        return prepared

    def trim(self, chats: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return list(chats[-self.size:])


# =============================================================================
# CONTEXT STORE
# =============================================================================

class ContextStore:
    """Per-user aggregate with merge-not-overwrite semantics."""

    CHATS_FIELD = "chats"

    def __init__(
        self,
        store: DocumentStore,
        window: Optional[ChatWindow] = None,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.window = window or ChatWindow()
        self._clock = clock

    def _now(self) -> datetime:
        return to_datetime(self._clock())

    def _insert_defaults(self, now: datetime) -> Dict[str, Any]:
        defaults: Dict[str, Any] = {f"profile.{field}": None for field in PROFILE_FIELDS}
        defaults.update({
            "location": None,
            "weather": None,
            self.CHATS_FIELD: [],
            "created_at": now,
            "updated_at": now,
        })
        return defaults

    async def ensure_exists(
        self,
        user_id: Any,
        profile: Optional[Dict[str, Any]] = None,
        replace_profile: bool = False,
    ) -> Dict[str, Any]:
        """Create the document if absent; otherwise write supplied profile fields only."""
        key = normalize_user_id(user_id)
        fields = sanitize_profile(profile, replace=replace_profile)
        now = self._now()

        updates: Dict[str, Any] = {f"profile.{k}": v for k, v in fields.items()}
        updates["updated_at"] = now

        doc = await self.store.upsert_merge(key, updates, self._insert_defaults(now))
        logger.info(f"UserContext ensured: user={key} profile_fields={sorted(fields)}")
        return doc

    async def update_location_and_weather(
        self,
        user_id: Any,
        profile: Optional[Dict[str, Any]] = None,
        location: Optional[Dict[str, Any]] = None,
        weather: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Apply location and weather independently, each only if meaningful.

        Creates a minimal shell when the user has no document yet, and
        always bumps updated_at. Returns the post-update document.
        """
        key = normalize_user_id(user_id)
        now = self._now()

        # Validate everything before writing anything
        fields = sanitize_profile(profile)
        sanitized_location = sanitize_location(location, now)
        sanitized_weather = sanitize_weather(weather, now)

        updates: Dict[str, Any] = {f"profile.{k}": v for k, v in fields.items()}
        if sanitized_location:
            updates["location"] = sanitized_location
        if sanitized_weather:
            updates["weather"] = sanitized_weather
        updates["updated_at"] = now

        if location is not None and sanitized_location is None:
            logger.info(f"UserContext: empty location payload ignored for user={key}")
        if weather is not None and sanitized_weather is None:
            logger.info(f"UserContext: empty weather payload ignored for user={key}")

        doc = await self.store.upsert_merge(key, updates, self._insert_defaults(now))
        logger.info(
            f"UserContext updated: user={key} "
            f"location={'set' if sanitized_location else 'kept'} "
            f"weather={'set' if sanitized_weather else 'kept'}"
        )
        return doc

    async def append_chat_messages(
        self,
        user_id: Any,
        entries: Union[Dict[str, Any], List[Dict[str, Any]], None],
    ) -> Dict[str, Any]:
        """
        Append chat turns keeping only the last `window.size`.

        Entries with blank messages are dropped. If nothing is left this is
        a no-op that leaves chats and updated_at untouched (the document is
        still created when missing) and returns the current document.
        """
        key = normalize_user_id(user_id)
        now = self._now()
        prepared = self.window.prepare(entries, now)

        if not prepared:
            logger.debug(f"UserContext: no non-empty chat entries for user={key}")
            return await self.store.upsert_merge(key, {}, self._insert_defaults(now))

        doc = await self.store.atomic_append_capped(
            key,
            self.CHATS_FIELD,
            prepared,
            self.window.size,
            updates={"updated_at": now},
            defaults=self._insert_defaults(now),
        )
        logger.info(
            f"UserContext chats appended: user={key} added={len(prepared)} "
            f"window={len(doc.get(self.CHATS_FIELD) or [])}/{self.window.size}"
        )
        return doc

    async def fetch(self, user_id: Any) -> Optional[Dict[str, Any]]:
        """Full document, or None when the user has no context yet."""
        return await self.store.find_one(normalize_user_id(user_id))

    async def snapshot(self, user_id: Any) -> Optional[Dict[str, Any]]:
        """
        LLM-ready aggregate for prompt construction.

        Same content as fetch() without storage internals.
        """
        doc = await self.fetch(user_id)
        if doc is None:
            return None
        return {
            "user_id": doc.get("user_id"),
            "profile": doc.get("profile") or {field: None for field in PROFILE_FIELDS},
            "location": doc.get("location"),
            "weather": doc.get("weather"),
            "chats": self.window.trim(doc.get(self.CHATS_FIELD) or []),
            "updated_at": doc.get("updated_at"),
        }

    async def delete(self, user_id: Any) -> bool:
        """Administrative / test-only removal."""
        key = normalize_user_id(user_id)
        deleted = await self.store.delete(key)
        logger.info(f"UserContext deleted: user={key} deleted={deleted}")
        return deleted
