# healthgrant/config.py - Environment driven configuration
from dotenv import load_dotenv

load_dotenv()
from typing import Optional, Union
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings with validation and environment variable support (Pydantic V2 Syntax)"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False
    )

    # Application
    app_name: str = "HealthGrant Consent Engine"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    public_base_url: str = Field(default="", alias="PUBLIC_BASE_URL")

    # Database
    database_url: str = Field(..., alias="DATABASE_URL")

    # API principals
    secret_key: str = Field(..., alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # Capability tokens
    qr_signing_key: str = Field(..., alias="QR_SIGNING_KEY")
    qr_key_id: str = Field(default="qr-key-1", alias="QR_KEY_ID")
    prescription_token_secret: str = Field(..., alias="PRESCRIPTION_TOKEN_SECRET")
    token_issuer: str = Field(default="healthrecords-system", alias="TOKEN_ISSUER")
    token_audience: str = Field(default="pharmacy-verification", alias="TOKEN_AUDIENCE")
    access_token_audience: str = Field(default="grant-access", alias="ACCESS_TOKEN_AUDIENCE")
    prescription_validity_days: int = Field(default=30, alias="PRESCRIPTION_VALIDITY_DAYS")
    patient_token_stale_hours: int = Field(default=24, alias="PATIENT_TOKEN_STALE_HOURS")
    grant_access_token_ttl_seconds: int = Field(default=900, alias="GRANT_ACCESS_TOKEN_TTL_SECONDS")

    # Notification queue
    queue_default_max_retries: int = Field(default=3, ge=0, le=10, alias="QUEUE_DEFAULT_MAX_RETRIES")
    queue_max_backoff_seconds: int = Field(default=300, alias="QUEUE_MAX_BACKOFF_SECONDS")
    queue_default_expires_hours: int = Field(default=24, alias="QUEUE_DEFAULT_EXPIRES_HOURS")
    queue_batch_size: int = Field(default=10, alias="QUEUE_BATCH_SIZE")
    queue_max_batch_size: int = Field(default=100, alias="QUEUE_MAX_BATCH_SIZE")
    delivery_timeout_seconds: float = Field(default=10.0, alias="DELIVERY_TIMEOUT_SECONDS")

    # Push gateway
    push_gateway_url: Optional[str] = Field(default=None, alias="PUSH_GATEWAY_URL")
    push_server_key: Optional[str] = Field(default=None, alias="PUSH_SERVER_KEY")

    # E-mail alerts
    sendgrid_api_key: Optional[str] = Field(default=None, alias="SENDGRID_API_KEY")
    sender_email: str = Field(default="noreply@healthgrant.local", alias="SENDER_EMAIL")
    alert_email: Optional[str] = Field(default=None, alias="ALERT_EMAIL")

    # CORS
    cors_origins: Union[str, list[str]] = Field(default=["http://localhost:3000"], alias="CORS_ORIGINS")

    # --- Pydantic V2 Validators ---
    @field_validator("cors_origins", mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:3000"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite:///")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("secret_key", "qr_signing_key", "prescription_token_secret")
    @classmethod
    def validate_key_length(cls, v):
        if not v or len(v) < 32:
            raise ValueError("SECRET_KEY, QR_SIGNING_KEY and PRESCRIPTION_TOKEN_SECRET must be at least 32 characters long")
        return v

    @property
    def push_enabled(self) -> bool:
        return bool(self.push_gateway_url and self.push_server_key)

    @property
    def email_enabled(self) -> bool:
        return bool(self.sendgrid_api_key and self.alert_email)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

# Note: Do not instantiate settings at import time to avoid failing
# on missing environment variables. Use `get_settings()` instead.
