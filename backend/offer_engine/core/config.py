"""
Application configuration using pydantic-settings.

WHAT: Centralized config from environment variables
WHY: Type-safe, validated config with sensible defaults for offer rules
HOW: Pydantic BaseSettings reads from .env and environment
"""

from pydantic_settings import BaseSettings
from pydantic import field_validator
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # App metadata
    APP_NAME: str = "Catalog Offer Engine"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./data/catalog_offers.db"

    # Offer creation rules
    MAX_ITEMS_PER_OFFER: int = 50
    MAX_UNIT_PRICE: float = 999999.99
    SUSPICIOUS_PRICE_RATIO: float = 0.01  # below 1% of retail is rejected
    SUGGESTED_MINIMUM_RATIO: float = 0.05  # suggested floor returned to the buyer
    MAX_OFFER_EXPIRY_DAYS: int = 90
    MAX_RISK_SCORE: int = 80

    # Negotiation rules
    REOPEN_WINDOW_DAYS: int = 7

    # Orders
    PAYMENT_DUE_DAYS: int = 3

    # Identifiers
    PUBLIC_ID_LENGTH: int = 14

    # Notifications (empty webhook URL = log-only sink)
    NOTIFICATIONS_ENABLED: bool = True
    NOTIFICATION_WEBHOOK_URL: str = ""
    NOTIFICATION_TIMEOUT: float = 5.0  # seconds

    # CORS - accepts comma-separated string or list
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

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

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "./data/logs/app.log"

    class Config:
        # Repository root .env first, then backend/.env
        env_file = [
            str(Path(__file__).parent.parent.parent.parent / ".env"),
            str(Path(__file__).parent.parent.parent / ".env"),
        ]
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


# Singleton instance
settings = Settings()
