"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    ENVIRONMENT: str = "development"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./credit_ledger.db"
    AUTO_CREATE_DB_SCHEMA: bool = True

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Security
    JWT_SECRET: str = "change_me_in_production"
    JWT_ALGORITHM: str = "HS256"
    ENCRYPTION_KEY: str = "change_me_32_byte_key_for_prod"
    ADMIN_API_KEY: str = ""
    PAYMENT_WEBHOOK_SECRET: str = ""

    # Credits
    SIGNUP_BONUS_CREDITS: int = 2
    CREDIT_COST_SCHEMA_GENERATION: int = 1

    # Pending connection handoff
    PENDING_CLAIM_TTL_SECONDS: int = 1800
    PENDING_CLAIM_MAX_TTL_SECONDS: int = 3600
    CLAIM_SWEEP_INTERVAL_MINUTES: int = 15
    CLAIM_RETENTION_HOURS: int = 24

    # Rate limits (requests per window). Consume and connection starts are per account.
    RATE_LIMIT_CONSUME: int = 120
    RATE_LIMIT_CONSUME_WINDOW_SECONDS: int = 60
    RATE_LIMIT_WEBHOOK: int = 300
    RATE_LIMIT_WEBHOOK_WINDOW_SECONDS: int = 60
    RATE_LIMIT_CONNECTION_START: int = 30
    RATE_LIMIT_CONNECTION_CALLBACK: int = 60
    RATE_LIMIT_CONNECTION_WINDOW_SECONDS: int = 300
    RATE_LIMIT_LOCAL_MAX_KEYS: int = 10000

    # OAuth providers
    HUBSPOT_CLIENT_ID: str = ""
    HUBSPOT_REDIRECT_URI: str = "http://localhost:3000/integrations/hubspot/callback"
    HUBSPOT_SCOPES: str = "oauth content"
    GOOGLE_CLIENT_ID: str = ""
    GA4_REDIRECT_URI: str = "http://localhost:3000/integrations/ga4/callback"
    GA4_SCOPES: str = "https://www.googleapis.com/auth/analytics.readonly"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()


def validate_security_settings() -> None:
    """Fail fast when insecure default secrets are still configured."""
    if settings.ENVIRONMENT == "test":
        return

    insecure_values = {
        "",
        "change_me_in_production",
        "change_me_32_byte_key_for_prod",
        "your_jwt_secret_change_in_production",
        "your_32_byte_encryption_key_here",
    }
    jwt_secret = (settings.JWT_SECRET or "").strip()
    encryption_key = (settings.ENCRYPTION_KEY or "").strip()

    if jwt_secret in insecure_values or len(jwt_secret) < 24:
        raise ValueError("JWT_SECRET is insecure. Configure a strong non-default secret (>=24 chars).")
    if encryption_key in insecure_values or len(encryption_key) < 32:
        raise ValueError("ENCRYPTION_KEY is insecure. Configure a strong non-default key (>=32 chars).")
