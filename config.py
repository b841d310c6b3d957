"""
Configuration for KrushiMitra Context Service
Covers storage, weather upstream, OTP mail delivery and HTTP limits
"""
import os
from typing import Optional
from pydantic import BaseModel, Field
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseModel):
    """Application settings with production defaults"""

    # MongoDB
    # Empty URI = in-memory stores (single process, development only)
    mongodb_uri: str = Field(default_factory=lambda: os.getenv("MONGODB_URI", ""))
    mongodb_database: str = Field(default_factory=lambda: os.getenv("MONGODB_DATABASE", "KrushiMitraDB"))

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default_factory=lambda: int(os.getenv("PORT", "3001")))
    debug: bool = Field(default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true")

    # CORS - Use env var for production restriction, default "*" for dev
    allowed_origins: str = Field(default_factory=lambda: os.getenv("ALLOWED_ORIGINS", "*"))

    # Security: Admin token for protected endpoints
    admin_token: Optional[str] = Field(default_factory=lambda: os.getenv("ADMIN_TOKEN"))

    # Rate Limiting (OTP endpoints)
    rate_limit_per_minute: int = Field(
        default_factory=lambda: int(os.getenv("RATE_LIMIT_PER_MINUTE", "10"))
    )

    # ==========================================================================
    # USER CONTEXT
    # ==========================================================================
    # Rolling chat window kept on the context document
    chat_window_size: int = Field(
        default_factory=lambda: int(os.getenv("CHAT_WINDOW_SIZE", "5"))
    )

    # ==========================================================================
    # WEATHER
    # ==========================================================================
    weather_api_key: str = Field(default_factory=lambda: os.getenv("TOMORROW_API_KEY", ""))
    weather_api_url: str = Field(
        default_factory=lambda: os.getenv(
            "WEATHER_API_URL", "https://api.tomorrow.io/v4/weather/forecast"
        )
    )
    weather_cache_ttl_seconds: int = Field(
        default_factory=lambda: int(os.getenv("WEATHER_CACHE_TTL_SECONDS", "600"))
    )
    weather_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("WEATHER_TIMEOUT_SECONDS", "10"))
    )
    # Entries older than this are swept; also the stale-serve horizon
    weather_cache_max_age_hours: int = Field(
        default_factory=lambda: int(os.getenv("WEATHER_CACHE_MAX_AGE_HOURS", "24"))
    )
    weather_cache_sweep_minutes: int = Field(
        default_factory=lambda: int(os.getenv("WEATHER_CACHE_SWEEP_MINUTES", "30"))
    )

    # Circuit Breaker: Open after N failures within recovery window
    circuit_failure_threshold: int = Field(
        default_factory=lambda: int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5"))
    )
    circuit_recovery_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CIRCUIT_RECOVERY_SECONDS", "60.0"))
    )

    # ==========================================================================
    # OTP
    # ==========================================================================
    otp_ttl_seconds: int = Field(default_factory=lambda: int(os.getenv("OTP_TTL_SECONDS", "600")))
    otp_max_attempts: int = Field(default_factory=lambda: int(os.getenv("OTP_MAX_ATTEMPTS", "3")))
    otp_length: int = Field(default_factory=lambda: int(os.getenv("OTP_LENGTH", "6")))
    otp_sweep_minutes: int = Field(
        default_factory=lambda: int(os.getenv("OTP_SWEEP_MINUTES", "5"))
    )

    # SMTP (OTP delivery)
    smtp_host: str = Field(default_factory=lambda: os.getenv("SMTP_HOST", ""))
    smtp_port: int = Field(default_factory=lambda: int(os.getenv("SMTP_PORT", "587")))
    smtp_username: str = Field(default_factory=lambda: os.getenv("SMTP_USERNAME", ""))
    smtp_password: str = Field(default_factory=lambda: os.getenv("SMTP_PASSWORD", ""))
    smtp_from: str = Field(default_factory=lambda: os.getenv("SMTP_FROM", ""))
    smtp_use_tls: bool = Field(
        default_factory=lambda: os.getenv("SMTP_USE_TLS", "true").lower() == "true"
    )
    smtp_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("SMTP_TIMEOUT_SECONDS", "15"))
    )


settings = Settings()
