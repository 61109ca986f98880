"""Configuration management for the stream worker and report refresh."""

from __future__ import annotations

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ingestor.exceptions import ConfigurationError

CREDENTIAL_FAILURE_POLICIES = {"exit", "idle"}


class IngestorConfig(BaseSettings):
    """Configuration for the AMS queue worker and the report refresh jobs."""

    model_config = SettingsConfigDict(
        env_file="config.env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Required fields
    ams_queue_url: str = Field(..., description="URL of the SQS queue receiving AMS notifications")

    # AWS
    aws_region: str = Field(default="us-east-1")

    # Queue polling
    queue_wait_seconds: int = Field(default=10, ge=0, le=20, description="SQS long-poll window")
    queue_batch_size: int = Field(default=10, ge=1, le=10)
    queue_visibility_timeout_seconds: int = Field(default=30, ge=0, le=43200)

    # Worker loop
    disabled_poll_interval_seconds: float = Field(default=5.0, gt=0)
    idle_backoff_seconds: float = Field(default=0.0, ge=0)
    error_backoff_seconds: float = Field(default=1.0, ge=0)
    credential_failure_policy: str = Field(default="exit")

    # Azure SQL
    azure_sql_server: str | None = Field(default=None)
    azure_sql_database: str | None = Field(default=None)

    # Reporting API
    ads_api_base_url: str = Field(default="https://advertising-api.amazon.com")
    ads_api_client_id: str | None = Field(default=None)
    ads_api_access_token: str | None = Field(default=None, description="Bearer token minted outside this service")
    ads_api_timeout_seconds: int = Field(default=30, ge=1, le=300)
    ads_api_download_timeout_seconds: int = Field(default=60, ge=1, le=600)
    ads_api_max_retries: int = Field(default=3, ge=1, le=10)
    ads_api_requests_per_second: float = Field(default=2.0, ge=0, description="0 disables throttling")
    report_poll_minutes: int = Field(default=5, ge=1)

    # Refresh
    refresh_max_workers: int = Field(default=4, ge=1, le=64)
    notification_queue_size: int = Field(default=1000, ge=1)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @field_validator("ams_queue_url", "ads_api_base_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("AMS_QUEUE_URL and ADS_API_BASE_URL must start with http:// or https://")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in {"json", "text"}:
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        return v

    @field_validator("credential_failure_policy")
    @classmethod
    def validate_credential_policy(cls, v: str) -> str:
        v = v.lower()
        if v not in CREDENTIAL_FAILURE_POLICIES:
            raise ValueError(f"CREDENTIAL_FAILURE_POLICY must be one of {CREDENTIAL_FAILURE_POLICIES}")
        return v

    @model_validator(mode="after")
    def validate_azure_sql(self) -> "IngestorConfig":
        if (self.azure_sql_server is None) != (self.azure_sql_database is None):
            raise ValueError("Both AZURE_SQL_SERVER and AZURE_SQL_DATABASE must be set together")
        return self

    @property
    def sql_enabled(self) -> bool:
        return self.azure_sql_server is not None and self.azure_sql_database is not None

    @property
    def queue_name(self) -> str:
        return self.ams_queue_url.rsplit("/", 1)[-1]


def get_config() -> IngestorConfig:
    """Load configuration from environment."""
    try:
        load_dotenv("config.env")
        return IngestorConfig()
    except Exception as e:
        raise ConfigurationError(f"Failed to load configuration: {e}") from e
