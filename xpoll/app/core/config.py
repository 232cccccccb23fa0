import json
import re
from typing import Annotated, Any, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _expand_origin(entry: str) -> list[str]:
    if "://" in entry:
        return [entry]
    # Browsers send the scheme in the Origin header; accept both.
    return [f"http://{entry}", f"https://{entry}"]


def _parse_cors_origins(raw: Any) -> list[str]:
    """Accept a list, a JSON array, a JSON string or a comma/space separated
    string of origins. Bare hosts are expanded to http and https origins.
    """
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(item).strip() for item in raw if str(item).strip()]

    text = str(raw).strip()
    if text.startswith(("[", '"')):
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, (list, str)):
            return _parse_cors_origins(decoded)

    entries = [entry for entry in re.split(r"[,\s]+", text) if entry]
    if "*" in entries:
        return ["*"]
    origins = [origin for entry in entries for origin in _expand_origin(entry)]
    return list(dict.fromkeys(origins))


class Settings(BaseSettings):
    """Service settings, read from the environment and an optional .env file."""

    # Debug mode - enables exception messages in 500 responses
    debug: bool = False
    environment: Literal["development", "production"] = "development"

    # Hosted auth/database service
    supabase_url: str = ""
    supabase_anon_key: str = ""

    # HTTP client pool for calls to the hosted service
    httpx_connect_timeout: float = 10.0
    httpx_read_timeout: float = 30.0
    httpx_write_timeout: float = 10.0
    httpx_pool_timeout: float = 5.0
    httpx_max_connections: int = 100
    httpx_max_keepalive_connections: int = 20
    httpx_keepalive_expiry: float = 30.0

    # Rate limiting (fixed window, per limit class)
    rate_limit_enabled: bool = True
    rate_limit_default_requests: int = 100
    rate_limit_default_window_seconds: int = 15 * 60
    rate_limit_create_poll_requests: int = 10
    rate_limit_create_poll_window_seconds: int = 60 * 60
    rate_limit_vote_requests: int = 50
    rate_limit_vote_window_seconds: int = 15 * 60
    rate_limit_auth_requests: int = 20
    rate_limit_auth_window_seconds: int = 15 * 60
    rate_limit_sweep_probability: float = 0.01

    # CSRF protection
    csrf_token_bytes: int = 32
    csrf_token_ttl_seconds: int = 24 * 60 * 60
    csrf_header_name: str = "X-CSRF-Token"
    csrf_cookie_name: str = "csrf-token"
    csrf_sweep_interval_seconds: int = 60 * 60

    # Session inactivity tracking
    session_inactivity_timeout_seconds: int = 2 * 60 * 60
    session_warning_seconds: int = 5 * 60
    session_max_duration_seconds: int = 8 * 60 * 60
    session_refresh_threshold_seconds: int = 10 * 60
    session_sweep_interval_seconds: int = 5 * 60
    access_token_cookie_name: str = "sb-access-token"
    refresh_token_cookie_name: str = "sb-refresh-token"

    # Browser hardening headers
    security_headers_enabled: bool = True
    hsts_max_age_seconds: int = 31536000

    # Shared state store (optional)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Use NoDecode so a bare host value does not crash JSON parsing at startup.
    cors_origins: Annotated[list[str], NoDecode] = ["http://localhost:3000"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator(
        "rate_limit_default_requests",
        "rate_limit_default_window_seconds",
        "rate_limit_create_poll_requests",
        "rate_limit_create_poll_window_seconds",
        "rate_limit_vote_requests",
        "rate_limit_vote_window_seconds",
        "rate_limit_auth_requests",
        "rate_limit_auth_window_seconds",
    )
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Request counts and windows must be at least 1."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator("rate_limit_sweep_probability")
    @classmethod
    def validate_sweep_probability(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("rate_limit_sweep_probability must be between 0 and 1")
        return v

    @field_validator("csrf_token_bytes")
    @classmethod
    def validate_csrf_entropy(cls, v: int) -> int:
        """CSRF tokens carry at least 32 bytes of entropy."""
        if v < 32:
            raise ValueError("csrf_token_bytes must be at least 32")
        return v

    @field_validator(
        "csrf_token_ttl_seconds",
        "csrf_sweep_interval_seconds",
        "session_inactivity_timeout_seconds",
        "session_warning_seconds",
        "session_max_duration_seconds",
        "session_refresh_threshold_seconds",
        "session_sweep_interval_seconds",
        "hsts_max_age_seconds",
    )
    @classmethod
    def validate_duration_positive(cls, v: int) -> int:
        """Validate durations and intervals are positive."""
        if v <= 0:
            raise ValueError("Durations and intervals must be positive")
        return v

    @field_validator("httpx_connect_timeout", "httpx_read_timeout", "httpx_write_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """HTTP timeouts must be positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @model_validator(mode="after")
    def validate_session_windows(self) -> "Settings":
        if self.session_warning_seconds >= self.session_inactivity_timeout_seconds:
            raise ValueError(
                "session_warning_seconds must be shorter than session_inactivity_timeout_seconds"
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Imported by every module that needs configuration
settings = Settings()
