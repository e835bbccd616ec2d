"""Configuration utilities for the Glucose Sync Service."""

import logging
from functools import lru_cache
from typing import Any, List, Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEXCOM_SANDBOX_URL = "https://sandbox-api.dexcom.com"
DEXCOM_PRODUCTION_URL = "https://api.dexcom.com"

# Settings whose absence leaves part of the service degraded
REQUIRED_FOR_FULL_SERVICE = ("database_url", "dexcom_client_id", "openai_api_key")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env."""

    # Service configuration
    service_env: str = Field("development", description="Service environment (development, staging, production)")
    log_level: str = Field("INFO", description="Logging level")
    log_output: str = Field("stdout", description="Log destination: stdout or file")
    log_file_path: Optional[str] = Field(None, description="Log file path when log_output is 'file'")
    cors_origins: List[str] = Field(["*"], description="CORS allowed origins")
    app_version: str = Field("1.2.3", description="Version reported by the status endpoints")

    # Database
    database_url: Optional[str] = Field(None, description="Postgres connection string")
    database_pool_size: int = Field(10, description="Connection pool size")

    # Dexcom API Configuration
    dexcom_environment: Literal["sandbox", "production"] = Field(
        "production", description="Dexcom environment; selects the sync strategy"
    )
    dexcom_api_base_url: Optional[str] = Field(None, description="Override for the Dexcom API base URL")
    dexcom_client_id: Optional[str] = Field(None, description="Dexcom API client ID")
    dexcom_client_secret: Optional[SecretStr] = Field(None, description="Dexcom API client secret")
    dexcom_redirect_uri: Optional[str] = Field(None, description="Dexcom OAuth redirect URI")
    dexcom_scope: str = Field("offline_access", description="OAuth scope requested at login")
    frontend_url: str = Field("http://localhost:3001", description="Where the OAuth callback redirects to")

    # OpenAI
    openai_api_key: Optional[SecretStr] = Field(None, description="OpenAI API key; insights are disabled without it")
    openai_model: str = Field("gpt-4o", description="Chat completion model")
    openai_timeout_seconds: float = Field(45.0, description="Timeout for OpenAI calls")

    # State store
    state_backend: Literal["file", "memory", "dynamodb"] = Field("file", description="Token/sync state backend")
    token_file: str = Field("dexcom_tokens.json", description="Token file for the file backend")
    sync_state_file: str = Field("dexcom_sync_state.json", description="Sync state file for the file backend")
    aws_region: str = Field("us-east-1", description="AWS region for the dynamodb backend")
    dynamodb_endpoint: Optional[str] = Field(None, description="DynamoDB endpoint URL, primarily for local development")
    dynamodb_state_table: str = Field("glucose_sync_state", description="DynamoDB table holding state records")

    # Sync Configuration
    poll_interval_seconds: int = Field(0, description="Interval between scheduled syncs; 0 disables polling")
    max_retries: int = Field(3, description="Total attempts per provider request")
    retry_base_delay_ms: int = Field(500, description="Base delay for exponential backoff")
    request_timeout_seconds: int = Field(30, description="HTTP request timeout in seconds")
    insert_batch_size: int = Field(500, description="Rows per batched insert statement")
    carb_gap_alert_hours: float = Field(24.0, description="Carb gap that raises the CARB_GAP_ALERT log")

    # Metrics
    metrics_user: Optional[str] = Field(None, description="Basic auth user for /metrics")
    metrics_pass: Optional[SecretStr] = Field(None, description="Basic auth password for /metrics")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",
        extra="ignore"
    )

    @field_validator("cors_origins")
    @classmethod
    def validate_cors_origins(cls, v: List[str]) -> List[str]:
        """
        Validate CORS origins.

        Args:
            v: List of CORS origins

        Returns:
            List[str]: Validated list of CORS origins
        """
        if len(v) == 1 and v[0] == "*":
            return v
        if len(v) == 1 and "," in v[0]:
            v = v[0].split(",")
        validated = []
        for origin in v:
            origin = origin.strip()
            if not origin.startswith(("http://", "https://")):
                origin = f"https://{origin}"
            validated.append(origin)
        return validated

    @field_validator("openai_api_key", mode="before")
    @classmethod
    def strip_quoted_key(cls, v: Any) -> Any:
        """Strip quotes and whitespace that .env files tend to leave around keys."""
        if isinstance(v, str):
            v = v.strip().strip('"').strip()
            return v or None
        return v

    @property
    def dexcom_base_url(self) -> str:
        """Base URL of the Dexcom API for the configured environment."""
        if self.dexcom_api_base_url:
            return self.dexcom_api_base_url.rstrip("/")
        if self.dexcom_environment == "sandbox":
            return DEXCOM_SANDBOX_URL
        return DEXCOM_PRODUCTION_URL

    @property
    def async_database_url(self) -> Optional[str]:
        """The database URL rewritten for the asyncpg driver."""
        if not self.database_url:
            return None
        url = self.database_url
        for prefix in ("postgres://", "postgresql://"):
            if url.startswith(prefix):
                return "postgresql+asyncpg://" + url[len(prefix):]
        return url

    @property
    def is_production(self) -> bool:
        return self.service_env == "production"

    @property
    def ai_enabled(self) -> bool:
        key = self.openai_api_key.get_secret_value() if self.openai_api_key else ""
        return len(key) >= 10

    def missing_settings(self) -> List[str]:
        """
        List the settings whose absence degrades the service.

        Returns:
            List[str]: Upper-case environment variable names that are unset
        """
        missing = []
        for name in REQUIRED_FOR_FULL_SERVICE:
            if not getattr(self, name):
                missing.append(name.upper())
        return missing


def report_missing_settings(settings: Settings) -> List[str]:
    """
    Log every missing setting loudly without stopping the process.

    Args:
        settings: The application settings

    Returns:
        List[str]: The missing environment variable names
    """
    missing = settings.missing_settings()
    for name in missing:
        logger.error(
            f"Missing environment variable: {name}",
            extra={"log_type": "config_missing", "setting": name},
        )
    if not missing:
        logger.info("All required environment variables are present", extra={"log_type": "config_ok"})
    return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Create and cache settings instance.

    Returns:
        Settings: Application settings
    """
    return Settings()
