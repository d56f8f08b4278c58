"""Application configuration via environment variables."""

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"
    frontend_url: str = "http://localhost:5173"

    store_backend: Literal["memory", "dynamodb"] = "memory"
    dynamodb_table: str = "atrium_kv"
    dynamodb_endpoint: str = ""  # For local DynamoDB
    dynamodb_region: str = "us-east-1"

    s3_endpoint: str = ""
    s3_region: str = "us-east-1"
    s3_force_path_style: bool = True

    session_ttl_seconds: int = 86400
    session_secret: str = "change-me-in-production"
    session_https_only: bool = False
    cookie_name: str = "atrium_session"

    s3_list_cache_enabled: bool = True
    s3_list_cache_ttl_seconds: int = 300
    s3_list_cache_invalidation_mode: Literal["targeted", "bucket"] = "targeted"
    s3_list_cache_include_headers: bool = True

    max_upload_size_mb: int = 100

    bucket_size_max_duration_ms: int = 600_000
    bucket_size_max_objects: int = 1_000_000
    bucket_size_calc_interval_hours: float = 1

    ofrep_endpoint: str = ""  # Remote flag evaluation; env flags only when empty

    @property
    def max_upload_size_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024

    @property
    def bucket_size_calc_interval_seconds(self) -> float:
        return self.bucket_size_calc_interval_hours * 3600

    model_config = {"env_prefix": "", "case_sensitive": False}


settings: Settings | None = None


def get_settings() -> Settings:
    global settings
    if settings is None:
        settings = Settings()
    return settings


def override_settings(s: Settings) -> None:
    """For testing: inject a Settings instance."""
    global settings
    settings = s
