"""
Email OTP Authenticator
=======================

Per email address:

    NoCode --issue--> Issued --verify--> Verified | Expired | AttemptsExhausted
                         ^                   (each terminal state clears the record)
                         '-- issue again overwrites the outstanding code

- Codes are 6 random digits (leading zeros allowed), valid 10 minutes
- A wrong code costs one attempt; the third wrong code clears the record
- The record is kept when mail delivery fails

OtpStore performs each verification transition (check expiry, check
attempts, compare, increment or clear) under one lock, so two parallel
wrong guesses are both charged.

Records live in process memory: multi-instance deployments need sticky
routing for the send/verify pair.
"""
import hmac
import logging
import re
import secrets
import threading
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from krushimitra.auth.mailer import Mailer
from krushimitra.core.errors import (
    DeliveryError,
    InvalidOtpCode,
    NotFoundError,
    OtpAttemptsExhausted,
    OtpExpired,
    ValidationError,
)
from krushimitra.core.types import (
    Clock,
    OtpIssue,
    OtpRecord,
    SignInResult,
    system_clock,
    to_datetime,
)
from krushimitra.memory.context_store import ContextStore
from krushimitra.memory.user_directory import Directory

logger = logging.getLogger(__name__)

OTP_TTL_SECONDS = 10 * 60
OTP_MAX_ATTEMPTS = 3
OTP_LENGTH = 6

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_email(email: Any) -> str:
    if not isinstance(email, str) or not _EMAIL_PATTERN.match(email.strip()):
        raise ValidationError("A valid email address is required")
    return email.strip()


def generate_code(length: int = OTP_LENGTH) -> str:
    return str(secrets.randbelow(10 ** length)).zfill(length)


class Verdict(Enum):
    VERIFIED = "verified"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    MISMATCH = "mismatch"


class OtpStore:
    """Process-local OTP records with atomic per-call transitions."""

    def __init__(self):
        self._records: Dict[str, OtpRecord] = {}
        self._lock = threading.RLock()

    def put(self, email: str, record: OtpRecord) -> None:
        with self._lock:
            self._records[email] = record

    def get(self, email: str) -> Optional[OtpRecord]:
        with self._lock:
            return self._records.get(email)

    def attempt(self, email: str, code: str, now: float, max_attempts: int) -> Tuple[Verdict, int]:
        """Run one verification; returns the verdict and attempts remaining."""
        with self._lock:
            record = self._records.get(email)
            if record is None:
                return Verdict.NOT_FOUND, 0

            if now > record.expires_at:
                del self._records[email]
                return Verdict.EXPIRED, 0

            if record.attempts_used >= max_attempts:
                del self._records[email]
                return Verdict.EXHAUSTED, 0

            if hmac.compare_digest(record.code.encode(), str(code).strip().encode()):
                del self._records[email]
                return Verdict.VERIFIED, max_attempts - record.attempts_used

            record.attempts_used += 1
            remaining = max_attempts - record.attempts_used
            if remaining <= 0:
                del self._records[email]
                return Verdict.EXHAUSTED, 0
            return Verdict.MISMATCH, remaining

    def sweep(self, now: float) -> int:
        with self._lock:
            expired = [email for email, r in self._records.items() if now > r.expires_at]
            for email in expired:
                del self._records[email]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class OtpAuthenticator:
    """Issues and verifies short-lived email codes."""

    SUBJECT = "Your KrushiMitra verification code"

    def __init__(
        self,
        mailer: Optional[Mailer],
        store: Optional[OtpStore] = None,
        clock: Clock = system_clock,
        ttl_seconds: int = OTP_TTL_SECONDS,
        max_attempts: int = OTP_MAX_ATTEMPTS,
        code_length: int = OTP_LENGTH,
    ):
        self.mailer = mailer
        self.store = store or OtpStore()
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self.code_length = code_length
        self._clock = clock

    def _body(self, code: str) -> str:
        minutes = max(1, self.ttl_seconds // 60)
        return (
            f"Your verification code is {code}.\n\n"
            f"It expires in {minutes} minutes. Do not share this code with anyone."
        )

    async def issue(self, email: str) -> OtpIssue:
        """Store a fresh code for email (replacing any outstanding one) and mail it."""
        email = validate_email(email)
        code = generate_code(self.code_length)
        expires_at = self._clock() + self.ttl_seconds
        self.store.put(email, OtpRecord(code=code, expires_at=expires_at))
        logger.info(f"OTP issued: email={email}")

        if self.mailer is None or not self.mailer.configured:
            logger.error(f"OTP delivery failed: kind=DELIVERY_ERROR email={email} (mailer not configured)")
            raise DeliveryError("Email service not configured", key=email)

        try:
            await self.mailer.send(email, self.SUBJECT, self._body(code))
        except DeliveryError as e:
            logger.error(f"OTP delivery failed: kind={e.code} email={email}")
            raise
        except Exception as e:
            logger.error(f"OTP delivery failed: kind={type(e).__name__} email={email}")
            raise DeliveryError("Failed to send verification email", key=email) from e

        return OtpIssue(email=email, expires_at=to_datetime(expires_at))

    async def verify(self, email: str, code: str) -> None:
        """Return normally on success; raise the matching OTP error otherwise."""
        email = validate_email(email)
        if code is None or not str(code).strip():
            raise ValidationError("Verification code is required", key=email)

        verdict, remaining = self.store.attempt(email, code, self._clock(), self.max_attempts)

        if verdict is Verdict.VERIFIED:
            logger.info(f"OTP verified: email={email}")
            return
        if verdict is Verdict.NOT_FOUND:
            logger.warning(f"OTP verify failed: kind=NOT_FOUND email={email}")
            raise NotFoundError("No verification code pending for this email", key=email)
        if verdict is Verdict.EXPIRED:
            logger.warning(f"OTP verify failed: kind=OTP_EXPIRED email={email}")
            raise OtpExpired("Verification code expired", key=email)
        if verdict is Verdict.EXHAUSTED:
            logger.warning(f"OTP verify failed: kind=OTP_ATTEMPTS_EXHAUSTED email={email}")
            raise OtpAttemptsExhausted("Too many failed attempts, request a new code", key=email)

        logger.warning(f"OTP verify failed: kind=INVALID_OTP email={email} remaining={remaining}")
        raise InvalidOtpCode(remaining_attempts=remaining, key=email)

    def sweep(self) -> int:
        removed = self.store.sweep(self._clock())
        if removed:
            logger.info(f"OTP sweep removed {removed} expired record(s)")
        return removed


class SignInFlow:
    """
    Verify an OTP, then log in the existing identity or sign up a new one.

    Signup needs a display name. That is checked before the code is
    consumed so a missing name does not burn the user's code.
    """

    def __init__(
        self,
        authenticator: OtpAuthenticator,
        directory: Directory,
        contexts: Optional[ContextStore] = None,
    ):
        self.authenticator = authenticator
        self.directory = directory
        self.contexts = contexts

    async def complete(
        self,
        email: str,
        code: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        preferred_language: Optional[str] = None,
    ) -> SignInResult:
        email = validate_email(email)
        existing = await self.directory.find_by_email(email)
        if existing is None and not (name or "").strip():
            raise ValidationError("Name is required to create an account", key=email)

        await self.authenticator.verify(email, code)

        if existing is not None:
            identity = await self.directory.record_login(email)
            context = None
            if self.contexts is not None:
                context = await self.contexts.ensure_exists(identity["user_id"], {"email": email})
            logger.info(f"Sign-in: login email={email} user_id={identity.get('user_id')}")
            return SignInResult(identity=identity, is_new_user=False, context=context)

        identity = await self.directory.create({
            "email": email,
            "name": name,
            "phone": phone,
            "preferred_language": preferred_language,
        })
        context = None
        if self.contexts is not None:
            context = await self.contexts.ensure_exists(
                identity["user_id"],
                {
                    "name": name,
                    "email": email,
                    "phone": phone,
                    "preferred_language": preferred_language,
                },
                replace_profile=True,
            )
        logger.info(f"Sign-in: signup email={email} user_id={identity.get('user_id')}")
        return SignInResult(identity=identity, is_new_user=True, context=context)
