"""
Configuration management for the Giving Sync service.

Loads configuration from environment variables and .env files
with validation and type conversion. Complex values (secret lists and
the webhook secret mapping) are read as JSON, e.g.::

    TRIGGER_SECRETS='["s3cret-a", "s3cret-b"]'
    WEBHOOK_SECRETS='{"giving.v2.events.donation.created": "abc"}'
"""

from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GivingSyncSettings(BaseSettings):
    """
    Settings for the giving → ledger synchronization engine.

    Settings are loaded in this order of precedence:
    1. Environment variables
    2. .env file in current directory
    3. Default values

    Ledger account/class/location names can additionally be overridden at
    run time through the ``sync_settings`` table (see ``account_name``).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Source (giving platform) API
    source_base_url: str = Field(
        default="https://api.planningcenteronline.com",
        description="Base URL for the giving/registrations API"
    )

    source_app_id: str = Field(
        default="",
        description="Application id used as the HTTP Basic username"
    )

    source_secret: str = Field(
        default="",
        description="Application secret used as the HTTP Basic password"
    )

    source_page_size: int = Field(
        default=100,
        ge=1,
        le=100,
        description="Records per page requested from the source API"
    )

    # Ledger API
    ledger_base_url: str = Field(
        default="https://quickbooks.api.intuit.com",
        description="Base URL for the ledger accounting API"
    )

    ledger_token_url: str = Field(
        default="https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer",
        description="OAuth2 token endpoint used for refresh-token exchange"
    )

    ledger_client_id: str = Field(
        default="",
        description="OAuth2 client id for the ledger app"
    )

    ledger_client_secret: str = Field(
        default="",
        description="OAuth2 client secret for the ledger app"
    )

    ledger_minor_version: int = Field(
        default=65,
        ge=1,
        description="Ledger API minorversion query parameter"
    )

    token_refresh_margin_seconds: int = Field(
        default=60,
        ge=0,
        description="Refresh the access token when it expires within this margin"
    )

    # HTTP client behaviour
    http_timeout: float = Field(
        default=30.0,
        gt=0,
        le=300.0,
        description="HTTP request timeout in seconds"
    )

    http_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum attempts per HTTP call (first try included)"
    )

    backoff_base_delay: float = Field(
        default=1.0,
        ge=0,
        description="Base delay in seconds for exponential backoff"
    )

    backoff_max_jitter: float = Field(
        default=0.3,
        ge=0,
        description="Upper bound in seconds of the random jitter added to each backoff"
    )

    retry_log_path: Optional[str] = Field(
        default="logs/api-retries.log",
        description="JSON-lines file receiving one entry per retried HTTP attempt"
    )

    # Storage
    database_url: Optional[str] = Field(
        default=None,
        description="Database connection string (PostgreSQL, or SQLite for local runs)"
    )

    # Engine behaviour
    lock_ttl_seconds: int = Field(
        default=900,
        ge=1,
        description="Run lock lease TTL in seconds"
    )

    default_backfill_days: int = Field(
        default=7,
        ge=1,
        description="Lookback used when an operator resets the window"
    )

    max_backfill_days: int = Field(
        default=90,
        ge=1,
        description="Upper clamp for backfill days on batch/registrations syncs"
    )

    # Ledger account names
    deposit_bank_account_name: str = Field(
        default="TRINITY 2000 CHECKING",
        description="Bank account receiving donation deposits"
    )

    income_account_name: str = Field(
        default="OPERATING INCOME:WEEKLY OFFERINGS:PLEDGES",
        description="Income account (fully qualified name) for donation lines"
    )

    fee_account_name: str = Field(
        default="OPERATING EXPENSES:MINISTRY EXPENSES:PROCESSING FEES",
        description="Expense account (fully qualified name) for processing fees"
    )

    registration_deposit_account_name: str = Field(
        default="TRINITY 2000 CHECKING",
        description="Bank account receiving registration deposits"
    )

    registration_income_account_name: str = Field(
        default="OPERATING INCOME:EVENTS:REGISTRATIONS",
        description="Income account (fully qualified name) for registration lines"
    )

    registration_class_name: str = Field(
        default="",
        description="Ledger class applied to registration lines (empty = none)"
    )

    registration_location_name: str = Field(
        default="",
        description="Ledger location applied to registration transactions (empty = none)"
    )

    refund_account_name: str = Field(
        default="OPERATING INCOME:EVENTS:REGISTRATIONS",
        description="Account (fully qualified name) debited by registration refunds"
    )

    # Trigger and webhook authentication
    trigger_secrets: List[str] = Field(
        default_factory=list,
        description="Pre-shared secrets accepted as ?webhook_secret= on trigger endpoints"
    )

    webhook_secrets: Dict[str, str] = Field(
        default_factory=dict,
        description="Per-event-type HMAC secrets for inbound webhooks"
    )

    operator_token: Optional[str] = Field(
        default=None,
        description="Bearer token accepted as an authenticated operator"
    )

    app_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL the webhook handler uses to reach trigger endpoints"
    )

    # Notification
    notification_email: Optional[str] = Field(
        default=None,
        description="Recipient for partial/error run notifications"
    )

    mail_from: Optional[str] = Field(
        default=None,
        description="Sender address for notifications"
    )

    smtp_host: Optional[str] = Field(
        default=None,
        description="SMTP relay host"
    )

    smtp_port: int = Field(
        default=587,
        ge=1,
        le=65535,
        description="SMTP relay port"
    )

    smtp_user: Optional[str] = Field(default=None, description="SMTP username")

    smtp_password: Optional[str] = Field(default=None, description="SMTP password")

    smtp_starttls: bool = Field(default=True, description="Use STARTTLS on the SMTP connection")

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    log_format: str = Field(
        default="json",
        description="Log output format (json, text)"
    )

    service_name: str = Field(
        default="giving-sync",
        description="Service name for logging and monitoring"
    )

    environment: str = Field(
        default="development",
        description="Environment name (development, staging, production)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one of the standard levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        """Validate log format is supported."""
        valid_formats = {"json", "text"}
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {', '.join(sorted(valid_formats))}")
        return v.lower()

    @field_validator("trigger_secrets")
    @classmethod
    def drop_empty_secrets(cls, v):
        """Empty strings would match an empty ?webhook_secret= and are discarded."""
        return [s for s in v if s and s.strip()]

    @field_validator("webhook_secrets")
    @classmethod
    def drop_empty_webhook_secrets(cls, v):
        return {k: s for k, s in v.items() if s and s.strip()}

    def require_source_credentials(self) -> None:
        """Raise a configuration error when the Source credentials are missing."""
        from .errors import ConfigurationError

        if not self.source_app_id or not self.source_secret:
            raise ConfigurationError(
                "Source credentials are not configured. "
                "Set SOURCE_APP_ID and SOURCE_SECRET."
            )

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


@lru_cache()
def get_settings() -> GivingSyncSettings:
    """
    Get cached settings instance.

    Returns:
        Singleton instance of settings
    """
    return GivingSyncSettings()


# Convenience alias
settings = get_settings
