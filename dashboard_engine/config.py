from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the dashboard aggregation service."""

    model_config = SettingsConfigDict(
        env_prefix="DASHBOARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    boundary_hour: int = Field(default=7, description="Hour the reporting cycle resets")
    boundary_minute: int = Field(default=0, description="Minute the reporting cycle resets")
    source_timeout_seconds: float = 10.0

    directory_base_dn: str = "dc=example,dc=com"
    directory_filter: str = "(objectClass=user)"
    directory_retry_attempts: int = 3
    directory_retry_backoff_seconds: float = 1.0
    directory_retry_backoff_max_seconds: float = 10.0

    allowed_domains: List[str] = ["example.com"]
    erp_schema: str = "DEMO"
    default_seed_records: int = 5

    log_level: str = "info"
    log_format: str = "console"  # options: console, json

    @field_validator("boundary_hour")
    @classmethod
    def _check_hour(cls, value: int) -> int:
        if not 0 <= value <= 23:
            raise ValueError("boundary_hour must be between 0 and 23")
        return value

    @field_validator("boundary_minute")
    @classmethod
    def _check_minute(cls, value: int) -> int:
        if not 0 <= value <= 59:
            raise ValueError("boundary_minute must be between 0 and 59")
        return value


settings = Settings()
