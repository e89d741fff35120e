"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./salon_agenda.db"

    # Session Token (supports key rotation)
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 12

    # CORS
    CORS_ORIGINS: str = "http://localhost:5173"

    # Frontend (confirmation links, WhatsApp messages)
    FRONTEND_URL: str = "http://localhost:5173"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute)
    RATE_LIMIT_API: int = 120  # General API
    RATE_LIMIT_PUBLIC_BOOKING: int = 10  # Public booking / token responses

    # Scheduling
    DEFAULT_TIMEZONE: str = "America/Guatemala"
    SLOT_GRANULARITY_MINUTES: int = 30
    BOOKING_LEAD_MINUTES: int = 30  # Same-day slots must start after now + lead
    BOOKING_WINDOW_DAYS: int = 30  # Public booking horizon

    # Reminders
    REMINDER_THRESHOLDS_MINUTES: str = "60,30,15"
    REMINDER_POLL_SECONDS: int = 60

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def reminder_thresholds(self) -> tuple[int, ...]:
        """Parse REMINDER_THRESHOLDS_MINUTES into a descending tuple."""
        values = {
            int(v.strip()) for v in self.REMINDER_THRESHOLDS_MINUTES.split(",") if v.strip()
        }
        return tuple(sorted(values, reverse=True))

    @property
    def jwt_secrets(self) -> list[str]:
        """Returns list of valid secrets (current first, then previous if set)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets


settings = Settings()
