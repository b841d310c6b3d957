"""
KrushiMitra Core Types
======================

Shared dataclasses, enums, and type definitions used across the
context store, weather cache and OTP authenticator.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional


# Seconds since epoch. Injected everywhere so tests can drive time.
Clock = Callable[[], float]

system_clock: Clock = time.time


def to_datetime(ts: float) -> datetime:
    """Convert a clock reading to an aware UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class ChatRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


class AdvisoryCategory(Enum):
    """
    Farm advisory derived from current conditions.

    Evaluated in declaration order, first match wins
    (UNAVAILABLE is only used for the fallback payload).
    """
    POSTPONE_SPRAYING = "postpone_spraying"
    IRRIGATION_PLANNING = "irrigation_planning"
    HEAT_STRESS = "heat_stress"
    FROST_WATCH = "frost_watch"
    WIND_HAZARD = "wind_hazard"
    FAVORABLE = "favorable"
    UNAVAILABLE = "unavailable"


# =============================================================================
# WEATHER
# =============================================================================

@dataclass
class WeatherCacheEntry:
    """Last successful upstream payload for one coordinate bucket."""
    payload: Dict[str, Any]
    fetched_at: float


@dataclass
class WeatherResult:
    """What WeatherCache.get returns to the request layer."""
    payload: Dict[str, Any]
    bucket: str
    cached: bool = False
    stale: bool = False
    fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.payload)
        data["cached"] = self.cached
        if self.stale:
            data["stale"] = True
        if self.fallback:
            data["fallback"] = True
        return data


# =============================================================================
# OTP
# =============================================================================

@dataclass
class OtpRecord:
    """One outstanding code per email address."""
    code: str
    expires_at: float
    attempts_used: int = 0


@dataclass
class OtpIssue:
    """Result of a successful issue (never carries the code)."""
    email: str
    expires_at: datetime


@dataclass
class SignInResult:
    """Outcome of a verified OTP: login for known emails, signup otherwise."""
    identity: Dict[str, Any]
    is_new_user: bool
    context: Optional[Dict[str, Any]] = None
