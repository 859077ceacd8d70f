"""
Configuration Management

Uses Pydantic BaseSettings to load configuration from environment variables.
All settings can be overridden via .env file or environment variables.

Environment Variables:
    REDIS_URL: Redis connection string
    TEAMS_WEBHOOK_URL: Nurse team webhook for crisis alerts
    SAFETY_ANALYSIS_SLA_MS: Safety analysis latency budget (default: 500)
    NOTIFICATION_MAX_RETRIES: Max webhook delivery attempts (default: 3)
    NOTIFICATION_RETRY_DELAY_SECONDS: Delay between attempts (default: 1.0)
    CONTENT_SEARCH_URL: Health content search service
    APP_ENV: Environment name (development/staging/production)
    DEBUG: Enable debug mode (default: False)
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis Configuration
    redis_url: str = "redis://localhost:6379/0"
    """Redis connection URL.

    Format: redis://host:port/db
    Example: redis://localhost:6379/0

    Used for conversation state storage.
    """

    conversation_ttl_seconds: int = 60 * 60 * 24 * 30
    """Conversation state retention in seconds (default: 30 days).

    Conversation state is never deleted by the engine; expiry is
    governed by this GDPR retention window.
    """

    max_recent_messages: int = 20
    """Number of recent user messages kept for contextual safety analysis."""

    # Safety Analysis
    safety_analysis_sla_ms: float = 500.0
    """Soft latency budget for a single safety analysis call.

    Overruns are logged and flagged on the result, never cancelled.
    """

    fuzzy_match_threshold: float = 0.8
    """Minimum Levenshtein similarity (exclusive) for a fuzzy trigger match."""

    trigger_table_path: Optional[str] = None
    """Optional JSON file overriding the built-in trigger table."""

    # Nurse Team Notifications
    teams_webhook_url: str = ""
    """Incoming webhook URL for the nurse team channel (MessageCard format)."""

    notification_max_retries: int = 3
    """Maximum delivery attempts per crisis alert."""

    notification_retry_delay_seconds: float = 1.0
    """Delay awaited between delivery attempts."""

    notification_backoff_multiplier: float = 1.0
    """Multiplier applied to the delay after each failed attempt.

    1.0 keeps a fixed delay between attempts.
    """

    notification_timeout_seconds: float = 10.0
    """HTTP timeout for a single webhook call."""

    notification_recipients: str = "nurse-team"
    """Comma-separated list of recipients recorded on each delivery."""

    dashboard_base_url: str = "https://dashboard.askeve.ai/safety/escalations"
    """Base URL for the safety dashboard escalation view."""

    # Nurse Callback Scheduling
    business_hours_start: int = 9
    """Hour (24h) the nurse team starts taking callbacks."""

    business_hours_end: int = 17
    """Hour (24h) the nurse team stops taking callbacks."""

    # Content Search
    content_search_url: str = ""
    """Health content search service base URL. Empty disables search."""

    content_search_timeout_seconds: float = 5.0
    """HTTP timeout for content search requests."""

    trusted_content_domain: str = "eveappeal.org.uk"
    """Only content whose source URL is on this domain is shown to users."""

    # GDPR Consent
    consent_validity_days: int = 365
    """Days a granted consent stays valid before it expires."""

    consent_version: str = "1.0"
    """Version of the consent wording shown to users."""

    # Application Environment
    app_env: Literal["development", "staging", "production"] = "development"
    """Current application environment.

    Options:
    - development: Local development, verbose logging, debug enabled
    - staging: Pre-production testing environment
    - production: Live production environment, minimal logging
    """

    debug: bool = False
    """Enable debug mode.

    Should be False in production for security.
    """

    # Application Configuration
    app_name: str = "ask-eve-assist"
    """Application name."""

    host: str = "0.0.0.0"
    """Host to bind the application server."""

    port: int = 8000
    """Port to bind the application server."""

    # CORS Configuration
    cors_origins: str = "http://localhost:3000"
    """Comma-separated list of allowed CORS origins."""

    # Pydantic configuration
    model_config = SettingsConfigDict(
        env_file=".env",  # Load from .env file if it exists
        env_file_encoding="utf-8",
        case_sensitive=False,  # Allow REDIS_URL or redis_url
        extra="ignore",  # Ignore extra environment variables
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"

    @property
    def cors_origins_list(self) -> list[str]:
        """Split cors_origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def notification_recipients_list(self) -> list[str]:
        """Split notification_recipients into a list."""
        return [r.strip() for r in self.notification_recipients.split(",") if r.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: Cached settings instance

    Example:
        >>> from app.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.safety_analysis_sla_ms)
        500.0
    """
    return Settings()


# Module-level settings instance for easy imports
settings = get_settings()
