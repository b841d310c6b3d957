"""
KrushiMitra Context Service
===========================

FastAPI server for the farm-advisory assistant's context layer:
- Per-user context aggregate (profile, location, weather, last 5 chats)
- Weather lookup with 10-minute coordinate-bucket cache, stale-serve and fallback
- Email OTP login/signup

The LLM call itself lives elsewhere; this service only assembles and
stores what goes into the prompt.

Storage:
- MONGODB_URI set   -> MongoDB (user_context, users collections)
- MONGODB_URI empty -> in-memory stores (single process, development only)
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

# FastAPI
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

# Rate Limiting
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from config import settings
from krushimitra import __version__
from krushimitra.auth.mailer import SmtpMailer
from krushimitra.auth.otp import OtpAuthenticator, SignInFlow
from krushimitra.core.circuit_breaker import CircuitBreaker
from krushimitra.core.errors import (
    AdvisoryError,
    ConcurrencyError,
    DeliveryError,
    InvalidOtpCode,
    NotFoundError,
    OtpAttemptsExhausted,
    OtpExpired,
    ProviderNotConfigured,
    TransientError,
    ValidationError,
)
from krushimitra.core.scheduler import MaintenanceScheduler
from krushimitra.memory.context_store import ChatWindow, ContextStore
from krushimitra.memory.document_store import DocumentStore, InMemoryDocumentStore
from krushimitra.memory.mongo_store import (
    USER_CONTEXT_COLLECTION,
    USERS_COLLECTION,
    DatabaseManager,
    MongoDocumentStore,
)
from krushimitra.memory.user_directory import UserDirectory
from krushimitra.weather.cache import WeatherCache
from krushimitra.weather.provider import TomorrowIoProvider

limiter = Limiter(key_func=get_remote_address)

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


# =============================================================================
# SERVICE WIRING
# =============================================================================

@dataclass
class Services:
    backend: str
    db_manager: DatabaseManager
    contexts: ContextStore
    directory: UserDirectory
    provider: TomorrowIoProvider
    breaker: CircuitBreaker
    weather: WeatherCache
    authenticator: OtpAuthenticator
    sign_in: SignInFlow
    scheduler: MaintenanceScheduler


def build_services(
    context_backend: DocumentStore,
    users_backend: DocumentStore,
    db_manager: DatabaseManager,
    backend: str,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Services:
    """Assemble the service graph from settings and the chosen storage backend."""
    contexts = ContextStore(context_backend, window=ChatWindow(settings.chat_window_size))
    directory = UserDirectory(users_backend)

    provider = TomorrowIoProvider(
        api_key=settings.weather_api_key,
        base_url=settings.weather_api_url,
        timeout_seconds=settings.weather_timeout_seconds,
        client=http_client,
    )
    breaker = CircuitBreaker(
        failure_threshold=settings.circuit_failure_threshold,
        recovery_timeout=settings.circuit_recovery_seconds,
    )
    weather = WeatherCache(
        provider,
        ttl_seconds=settings.weather_cache_ttl_seconds,
        timeout_seconds=settings.weather_timeout_seconds,
        breaker=breaker,
    )

    mailer = SmtpMailer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        sender=settings.smtp_from,
        use_tls=settings.smtp_use_tls,
        timeout_seconds=settings.smtp_timeout_seconds,
    )
    authenticator = OtpAuthenticator(
        mailer,
        ttl_seconds=settings.otp_ttl_seconds,
        max_attempts=settings.otp_max_attempts,
        code_length=settings.otp_length,
    )

    scheduler = MaintenanceScheduler(
        weather_cache=weather,
        authenticator=authenticator,
        weather_sweep_minutes=settings.weather_cache_sweep_minutes,
        weather_max_age_seconds=settings.weather_cache_max_age_hours * 3600,
        otp_sweep_minutes=settings.otp_sweep_minutes,
    )

    return Services(
        backend=backend,
        db_manager=db_manager,
        contexts=contexts,
        directory=directory,
        provider=provider,
        breaker=breaker,
        weather=weather,
        authenticator=authenticator,
        sign_in=SignInFlow(authenticator, directory, contexts),
        scheduler=scheduler,
    )


# =============================================================================
# FASTAPI APP
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting KrushiMitra context service...")

    db_manager = DatabaseManager()
    if settings.mongodb_uri:
        await db_manager.connect(settings.mongodb_uri, settings.mongodb_database)
        context_backend = MongoDocumentStore(db_manager, USER_CONTEXT_COLLECTION)
        users_backend = MongoDocumentStore(db_manager, USERS_COLLECTION, key_field="email")
        backend = "mongodb"
    else:
        logger.warning(
            "⚠️ MONGODB_URI not set: using in-memory stores "
            "(data is lost on restart, single process only)"
        )
        context_backend = InMemoryDocumentStore()
        users_backend = InMemoryDocumentStore(key_field="email")
        backend = "memory"

    if not settings.weather_api_key:
        logger.warning("⚠️ TOMORROW_API_KEY not set: /weather will serve fallback data")
    if not (settings.smtp_host and settings.smtp_from):
        logger.warning("⚠️ SMTP not configured: OTP delivery will fail")

    http_client = httpx.AsyncClient(timeout=settings.weather_timeout_seconds)
    services = build_services(context_backend, users_backend, db_manager, backend, http_client)
    app.state.services = services

    await services.scheduler.start()

    yield

    # Shutdown
    logger.info("Shutting down...")
    await services.scheduler.shutdown()
    await services.provider.aclose()
    await db_manager.disconnect()


app = FastAPI(
    title="KrushiMitra Context Service",
    description="User context, weather cache and OTP sign-in for the farm advisory assistant",
    version=__version__,
    lifespan=lifespan
)

# CORS - Security: Validate configuration
cors_origins = settings.allowed_origins.split(",")
if "*" in cors_origins and not settings.debug:
    logger.warning(
        "⚠️ SECURITY: CORS allows all origins (*) in production mode! "
        "Set ALLOWED_ORIGINS env var to restrict access."
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate Limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


def get_services(request: Request) -> Services:
    return request.app.state.services


# =============================================================================
# ERROR MAPPING
# =============================================================================

# Checked in order; first isinstance match wins
ERROR_STATUS = (
    (ValidationError, 400),
    (InvalidOtpCode, 400),
    (NotFoundError, 404),
    (OtpExpired, 410),
    (OtpAttemptsExhausted, 429),
    (DeliveryError, 502),
    (ProviderNotConfigured, 503),
    (TransientError, 503),
    (ConcurrencyError, 503),
)


def status_for(error: AdvisoryError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


@app.exception_handler(AdvisoryError)
async def advisory_error_handler(request: Request, exc: AdvisoryError) -> JSONResponse:
    status = status_for(exc)
    body: Dict[str, Any] = {"code": exc.code, "message": exc.message}
    if isinstance(exc, InvalidOtpCode):
        body["remaining_attempts"] = exc.remaining_attempts
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: kind={exc.code} key={exc.key}")
    return JSONResponse(status_code=status, content={"error": body})


# =============================================================================
# REQUEST MODELS
# =============================================================================

class OtpSendRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)

    @field_validator('email')
    @classmethod
    def strip_email(cls, v: str) -> str:
        return v.strip()


class OtpVerifyRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    code: str = Field(..., min_length=1, max_length=12)
    name: Optional[str] = Field(None, max_length=128)
    phone: Optional[str] = Field(None, max_length=32)
    preferred_language: Optional[str] = Field(None, max_length=32)

    @field_validator('email', 'code')
    @classmethod
    def strip_value(cls, v: str) -> str:
        return v.strip()


class ProfileRequest(BaseModel):
    profile: Optional[Dict[str, Any]] = None
    replace: bool = False


class LocationUpdateRequest(BaseModel):
    profile: Optional[Dict[str, Any]] = None
    location: Optional[Dict[str, Any]] = None
    weather: Optional[Dict[str, Any]] = None


class ChatAppendRequest(BaseModel):
    messages: List[Dict[str, Any]] = Field(..., max_length=50)


# =============================================================================
# ADMIN AUTHENTICATION
# =============================================================================

async def verify_admin_token(x_admin_token: str = Header(None)) -> bool:
    """Verify admin token for protected endpoints"""
    if not settings.admin_token:
        # If no admin token configured, block access entirely
        raise HTTPException(status_code=403, detail="Admin access not configured")
    if x_admin_token != settings.admin_token:
        raise HTTPException(status_code=403, detail="Invalid admin token")
    return True


def public_document(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Strip storage internals and make the document JSON-safe."""
    if doc is None:
        return None
    return jsonable_encoder({k: v for k, v in doc.items() if k != "_id"})


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "KrushiMitra Context Service",
        "version": __version__,
        "status": "running"
    }


@app.get("/health")
async def health(services: Services = Depends(get_services)):
    """Health check endpoint"""
    if services.backend == "mongodb":
        db_status = await services.db_manager.ping()
    else:
        db_status = True

    return {
        "status": "healthy" if db_status else "degraded",
        "database": "connected" if db_status else "disconnected",
        "backend": services.backend,
        "weather_circuit": services.breaker.state,
        "weather_configured": services.provider.configured,
        "weather_cache_entries": len(services.weather),
        "pending_otps": len(services.authenticator.store),
        "scheduler": "running" if services.scheduler.is_running else "stopped",
        "scheduled_jobs": [job.id for job in services.scheduler.get_jobs()],
    }


@app.get("/weather")
async def get_weather(
    lat: Optional[str] = None,
    lon: Optional[str] = None,
    services: Services = Depends(get_services),
):
    """
    Weather and farm advisory for a coordinate.

    Never fails for valid coordinates: upstream problems are answered
    with the last cached payload (stale=true) or estimated conditions
    (fallback=true).
    """
    result = await services.weather.get(lat, lon)
    return {"status": "success", "data": result.to_dict()}


@app.get("/weather/stats")
async def weather_stats(
    services: Services = Depends(get_services),
    authorized: bool = Depends(verify_admin_token),
):
    """Weather cache and circuit breaker metrics"""
    return {
        "cache": services.weather.stats(),
        "circuit": services.breaker.get_metrics(),
    }


@app.post("/weather/circuit/reset")
async def reset_weather_circuit(
    services: Services = Depends(get_services),
    authorized: bool = Depends(verify_admin_token),
):
    """Close the weather upstream circuit after the provider has recovered."""
    services.breaker.reset()
    return {"success": True, "circuit": services.breaker.state}


@app.post("/auth/otp/send")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def send_otp(
    request: Request,
    body: OtpSendRequest,
    services: Services = Depends(get_services),
):
    """Email a fresh verification code (replaces any outstanding one)."""
    issued = await services.authenticator.issue(body.email)
    return {
        "success": True,
        "message": "Verification code sent",
        "email": issued.email,
        "expires_at": issued.expires_at.isoformat(),
    }


@app.post("/auth/otp/verify")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def verify_otp(
    request: Request,
    body: OtpVerifyRequest,
    services: Services = Depends(get_services),
):
    """Verify the code, then log in the existing user or sign up a new one."""
    result = await services.sign_in.complete(
        body.email,
        body.code,
        name=body.name,
        phone=body.phone,
        preferred_language=body.preferred_language,
    )
    return {
        "success": True,
        "is_new_user": result.is_new_user,
        "user": public_document(result.identity),
        "context": public_document(result.context),
    }


@app.post("/context/{user_id}")
async def ensure_context(
    user_id: str,
    body: Optional[ProfileRequest] = None,
    services: Services = Depends(get_services),
):
    """Create the user's context if missing; merge any supplied profile fields."""
    body = body or ProfileRequest()
    doc = await services.contexts.ensure_exists(user_id, body.profile, replace_profile=body.replace)
    return {"success": True, "context": public_document(doc)}


@app.post("/context/{user_id}/location")
async def update_location(
    user_id: str,
    body: LocationUpdateRequest,
    services: Services = Depends(get_services),
):
    """Store location and/or weather snapshot; empty sections are ignored."""
    doc = await services.contexts.update_location_and_weather(
        user_id,
        profile=body.profile,
        location=body.location,
        weather=body.weather,
    )
    return {"success": True, "context": public_document(doc)}


@app.post("/context/{user_id}/chats")
async def append_chats(
    user_id: str,
    body: ChatAppendRequest,
    services: Services = Depends(get_services),
):
    """Append chat turns; only the most recent window is kept."""
    doc = await services.contexts.append_chat_messages(user_id, body.messages)
    return {"success": True, "chats": jsonable_encoder(doc.get(ContextStore.CHATS_FIELD) or [])}


@app.get("/context/{user_id}")
async def get_context(user_id: str, services: Services = Depends(get_services)):
    """Prompt-ready context aggregate for one user."""
    snapshot = await services.contexts.snapshot(user_id)
    if snapshot is None:
        raise NotFoundError("No context for this user", key=user_id)
    return {"success": True, "context": jsonable_encoder(snapshot)}


@app.delete("/context/{user_id}")
async def delete_context(
    user_id: str,
    services: Services = Depends(get_services),
    authorized: bool = Depends(verify_admin_token),
):
    """Remove a user's context document (admin only)."""
    deleted = await services.contexts.delete(user_id)
    if not deleted:
        raise NotFoundError("No context for this user", key=user_id)
    return {"success": True, "deleted": True}


# =============================================================================
# RUN
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
