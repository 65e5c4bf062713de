"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./premarket_platform.db"

    # Auth / JWT
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 1440

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    payment_currency: str = "usd"
    max_payment_attempts: int = 3

    # Visibility
    # Agent that owns PRIVATE requests whose renter has no referring agent
    default_referral_agent_id: str = ""

    # Email
    sendgrid_api_key: str = ""
    email_from: str = ""
    admin_alert_email: str = ""

    # CORS / Frontend
    cors_origins: str = "http://localhost:3000"
    frontend_url: str = "https://beforelisted.com"

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin.
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
