"""
Application configuration using pydantic-settings.

WHAT: Centralized config from environment variables
WHY: Type-safe, validated config with sensible defaults
HOW: Pydantic BaseSettings reads from .env and environment
"""

from pydantic_settings import BaseSettings
from pydantic import field_validator
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # App metadata
    APP_NAME: str = "Bazaar Negotiation Core"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./data/bazaar.db"
    DATABASE_BUSY_TIMEOUT: int = 30  # seconds a writer waits for the SQLite lock

    # Negotiations
    NEGOTIATION_TTL_SECONDS: int = 24 * 60 * 60
    RESERVATION_QUANTITY: int = 1  # units held per negotiation

    # Resource ledger
    RESERVATION_TTL_SECONDS: int = 300  # default hold for standalone reservations

    # QR sessions
    QR_SESSION_TTL_SECONDS: int = 30 * 60
    QR_TOKEN_BYTES: int = 32
    QR_BASE_URL: str = "https://bazaar.local/qr"

    # Rate limiting (max requests per window, per actor)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_AUTH_MAX: int = 10
    RATE_LIMIT_AUTH_WINDOW_SECONDS: int = 15 * 60
    RATE_LIMIT_GENERAL_MAX: int = 1000
    RATE_LIMIT_GENERAL_WINDOW_SECONDS: int = 15 * 60
    RATE_LIMIT_VOICE_MAX: int = 30
    RATE_LIMIT_VOICE_WINDOW_SECONDS: int = 60
    RATE_LIMIT_UPLOAD_MAX: int = 20
    RATE_LIMIT_UPLOAD_WINDOW_SECONDS: int = 5 * 60
    RATE_LIMIT_NEGOTIATION_MAX: int = 10
    RATE_LIMIT_NEGOTIATION_WINDOW_SECONDS: int = 60
    RATE_LIMIT_PAYMENT_MAX: int = 5
    RATE_LIMIT_PAYMENT_WINDOW_SECONDS: int = 5 * 60
    RATE_LIMIT_TRANSLATION_MAX: int = 100
    RATE_LIMIT_TRANSLATION_WINDOW_SECONDS: int = 60

    # Maintenance sweeps
    MAINTENANCE_ENABLED: bool = True
    MAINTENANCE_INTERVAL_SECONDS: int = 60

    # CORS - accepts comma-separated string or list
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from comma-separated string or list."""
        if isinstance(v, list):
            return ",".join(v)
        return v

    def get_cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    def get_rate_limit(self, category: str) -> tuple[int, int]:
        """
        Get the configured (max, window_seconds) pair for a rate-limit category.

        Args:
            category: Category name (auth, general, voice, ...)

        Returns:
            Tuple of (max requests, window length in seconds)
        """
        prefix = f"RATE_LIMIT_{category.upper()}"
        try:
            return getattr(self, f"{prefix}_MAX"), getattr(self, f"{prefix}_WINDOW_SECONDS")
        except AttributeError:
            raise KeyError(f"No rate limit configured for category: {category}") from None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "./data/logs/app.log"

    class Config:
        # Look for .env in project root first, then backend/.env
        env_file = [
            str(Path(__file__).parent.parent.parent.parent / ".env"),
            str(Path(__file__).parent.parent.parent / ".env"),
        ]
        env_file_encoding = "utf-8"
        case_sensitive = True


# Singleton instance
settings = Settings()
