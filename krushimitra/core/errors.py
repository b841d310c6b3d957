"""
KrushiMitra Error Taxonomy
==========================

Every failure the core surfaces is an AdvisoryError subclass with:
- code: stable machine-readable identifier (used in HTTP error bodies)
- retryable: whether the caller may retry the same request

Propagation:
- ValidationError / NotFoundError: surfaced immediately, never retried
- TransientError family: absorbed by WeatherCache, surfaced elsewhere
- DeliveryError: surfaced, does not roll back the stored OTP record
- ConcurrencyError: atomic store operation lost an unresolvable race
"""
from typing import Optional


class AdvisoryError(Exception):
    """Base class for all core errors."""

    code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(self, message: str = "", key: Optional[str] = None):
        self.message = message or self.__class__.__name__
        self.key = key
        super().__init__(self.message)


# =============================================================================
# INPUT ERRORS
# =============================================================================

class ValidationError(AdvisoryError):
    """Malformed input: bad coordinates, bad email, missing identity."""
    code = "VALIDATION_ERROR"


class InvalidIdentity(ValidationError):
    """User id cannot be normalized to a valid key."""
    code = "INVALID_IDENTITY"


class NotFoundError(AdvisoryError):
    """Referenced OTP record, user or document is absent."""
    code = "NOT_FOUND"


# =============================================================================
# UPSTREAM ERRORS
# =============================================================================

class TransientError(AdvisoryError):
    """Upstream failure that may succeed on retry."""
    code = "TRANSIENT_ERROR"
    retryable = True


class RateLimited(TransientError):
    """Upstream answered 429."""
    code = "RATE_LIMITED"


class UpstreamTimeout(TransientError):
    """Upstream call exceeded its timeout."""
    code = "UPSTREAM_TIMEOUT"


class ProviderNotConfigured(AdvisoryError):
    """Upstream credentials are missing."""
    code = "CONFIG_ERROR"


class DeliveryError(AdvisoryError):
    """Mail dispatch failed or mailer is not configured."""
    code = "DELIVERY_ERROR"
    retryable = True


class ConcurrencyError(AdvisoryError):
    """Atomic store operation lost a race it could not resolve."""
    code = "CONCURRENCY_ERROR"
    retryable = True


# =============================================================================
# OTP OUTCOMES
# =============================================================================

class OtpExpired(AdvisoryError):
    code = "OTP_EXPIRED"


class OtpAttemptsExhausted(AdvisoryError):
    code = "OTP_ATTEMPTS_EXHAUSTED"


class InvalidOtpCode(AdvisoryError):
    """Wrong code submitted; the record stays until attempts run out."""
    code = "INVALID_OTP"

    def __init__(self, remaining_attempts: int, key: Optional[str] = None):
        self.remaining_attempts = remaining_attempts
        super().__init__(
            f"Invalid code. {remaining_attempts} attempt(s) remaining",
            key=key,
        )
