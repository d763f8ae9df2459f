"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Secure defaults (no provider credentials in code)
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load environment variables from .env file
load_dotenv()


class EscalationConfig(BaseModel):
    """Emergency controller behaviour."""

    rate_limit_window_seconds: float = Field(
        default=60.0, gt=0.0, description="Lookback window for repeated triggers per patient"
    )
    privileged_roles: frozenset[str] = Field(
        default=frozenset({"doctor", "admin"}),
        description="Roles allowed to act on another patient's emergency data",
    )
    trigger_note: str = Field(
        default="Emergency triggered by patient", description="Note stored on new events"
    )


class ConsentConfig(BaseModel):
    """Location consent and device location read settings."""

    location_timeout_seconds: float = Field(
        default=10.0, gt=0.0, description="Upper bound for a single location fix"
    )
    max_location_age_seconds: float = Field(
        default=60.0, ge=0.0, description="Cached fixes younger than this may be reused"
    )
    poor_accuracy_meters: float = Field(
        default=1000.0, gt=0.0, description="Accuracy above this is flagged as poor"
    )
    recent_consent_minutes: int = Field(
        default=60, gt=0, description="Default window for has_recent_consent"
    )
    high_accuracy: bool = Field(default=True, description="Request a high accuracy fix")


class NotificationConfig(BaseModel):
    """Outbound transport configuration for the two notification channels."""

    email_provider: Literal["resend", "sendgrid", "console"] = Field(default="console")
    email_api_key: str | None = Field(default=None, description="Email provider API key")
    email_from_address: str = Field(default="emergency@example.com")
    email_from_name: str = Field(default="Emergency Escalation System")

    sms_provider: Literal["twilio", "console"] = Field(default="console")
    sms_account_sid: str | None = Field(default=None, description="Twilio account SID")
    sms_auth_token: str | None = Field(default=None, description="Twilio auth token")
    sms_from_number: str | None = Field(default=None, description="Verified sender number")

    request_timeout_seconds: float = Field(
        default=10.0, gt=0.0, description="Network timeout for provider calls"
    )
    system_name: str = Field(default="Emergency Escalation System")
    emergency_number: str = Field(
        default="911", min_length=1, description="Public emergency number quoted in content"
    )

    # Pipeline retry behaviour; every retry creates a new notification attempt
    max_attempts: int = Field(default=1, ge=1, le=5)
    retry_backoff_seconds: float = Field(default=1.0, ge=0.0)

    @model_validator(mode="after")
    def providers_have_credentials(self) -> "NotificationConfig":
        """Credentials are required only for the providers actually selected."""
        if self.email_provider != "console" and not self.email_api_key:
            raise ValueError(f"EMAIL_API_KEY must be set for email provider {self.email_provider}")
        if self.sms_provider == "twilio" and not (
            self.sms_account_sid and self.sms_auth_token and self.sms_from_number
        ):
            raise ValueError(
                "SMS_ACCOUNT_SID, SMS_AUTH_TOKEN and SMS_FROM_NUMBER must be set for twilio"
            )
        return self


class DatabaseConfig(BaseModel):
    """Relational store configuration."""

    url: str = Field(default="sqlite:///./escalation.db", description="Database URL")
    echo: bool = Field(default=False, description="Echo SQL statements")

    @field_validator("url")
    def validate_url(cls, v):
        if "://" not in v:
            raise ValueError("Database URL must include a scheme, e.g. sqlite:///./escalation.db")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    consent: ConsentConfig = Field(default_factory=ConsentConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self

    @model_validator(mode="after")
    def console_transports_only_in_dev(self) -> "AppConfig":
        """Production must deliver through a real provider."""
        if self.environment == "production" and (
            self.notifications.email_provider == "console"
            or self.notifications.sms_provider == "console"
        ):
            raise ValueError("console transports are not allowed in production")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    escalation_config = EscalationConfig(
        rate_limit_window_seconds=float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60.0")),
    )

    consent_config = ConsentConfig(
        location_timeout_seconds=float(os.getenv("LOCATION_TIMEOUT_SECONDS", "10.0")),
        max_location_age_seconds=float(os.getenv("LOCATION_MAX_AGE_SECONDS", "60.0")),
        high_accuracy=_parse_bool(os.getenv("LOCATION_HIGH_ACCURACY"), True),
    )

    notification_config = NotificationConfig(
        email_provider=cast(
            Literal["resend", "sendgrid", "console"],
            os.getenv("EMAIL_PROVIDER", "console").strip().lower(),
        ),
        email_api_key=os.getenv("EMAIL_API_KEY") or None,
        email_from_address=os.getenv("EMAIL_FROM_ADDRESS", "emergency@example.com"),
        email_from_name=os.getenv("EMAIL_FROM_NAME", "Emergency Escalation System"),
        sms_provider=cast(
            Literal["twilio", "console"], os.getenv("SMS_PROVIDER", "console").strip().lower()
        ),
        sms_account_sid=os.getenv("SMS_ACCOUNT_SID") or None,
        sms_auth_token=os.getenv("SMS_AUTH_TOKEN") or None,
        sms_from_number=os.getenv("SMS_FROM_NUMBER") or None,
        request_timeout_seconds=float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10.0")),
        emergency_number=os.getenv("EMERGENCY_NUMBER", "911"),
        max_attempts=int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "1")),
    )

    database_config = DatabaseConfig(
        url=os.getenv("DATABASE_URL", "sqlite:///./escalation.db"),
        echo=_parse_bool(os.getenv("DATABASE_ECHO"), False),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        escalation=escalation_config,
        consent=consent_config,
        notifications=notification_config,
        database=database_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()
