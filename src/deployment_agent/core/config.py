"""Configuration management for the Deployment Agent."""

import os
from typing import Optional, Tuple

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from deployment_agent.utils.logging import resolve_level

DEFAULT_RETENTION_COUNT = 5


def resolve_retention_count(value: Optional[object]) -> int:
    """Parse the backup retention setting.

    Falls back to 5 when the value is absent, non-numeric or negative.
    """
    if value is None:
        return DEFAULT_RETENTION_COUNT
    try:
        count = int(str(value).strip())
    except ValueError:
        return DEFAULT_RETENTION_COUNT
    if count < 0:
        return DEFAULT_RETENTION_COUNT
    return count


def parse_delays(value: Optional[str]) -> Tuple[float, ...]:
    """Parse a comma-separated list of delays in seconds."""
    if not value:
        return ()
    return tuple(float(part.strip()) for part in value.split(",") if part.strip())


class Settings(BaseSettings):
    """Agent configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server configuration
    host: str = Field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"), description="Server host")
    port: int = Field(default_factory=lambda: int(os.getenv("PORT", "10993")), description="Server port")

    # Backups
    backup_preserve_number_of_versions: Optional[str] = Field(
        None,
        description="Number of compressed backups kept per service directory",
    )

    # Retry schedules (comma-separated seconds)
    stop_retry_delays: str = Field("5,10,15", description="Waits between service stop attempts")
    start_retry_delays: str = Field("5,10,15", description="Waits between service start attempts")
    move_retry_delays: str = Field("5,10,15,20", description="Waits between filesystem move attempts")

    # Service control
    stop_timeout_seconds: float = Field(10.0, description="Time the OS is given to honor a stop")
    control_timeout_seconds: float = Field(30.0, description="Timeout for a single systemctl call")
    systemctl_path: str = Field("systemctl", description="systemctl binary")

    # Uploads
    max_upload_size_mb: int = Field(512, description="Maximum artifact size in MB")

    # Request capture
    log_requests_enabled: bool = Field(False, description="Write request/response bodies to disk")
    log_requests_directory: Optional[str] = Field(None, description="Directory for captured requests")

    # Observability
    log_level: str = Field("INFO")
    log_format: str = Field("json")
    metrics_enabled: bool = Field(True)

    @validator("log_level")
    def validate_log_level(cls, v: str) -> str:
        resolve_level(v)
        return v

    @validator("log_format")
    def validate_log_format(cls, v: str) -> str:
        """Only json and console renderers are supported."""
        if v not in ("json", "console"):
            raise ValueError(f"Invalid log format: {v}")
        return v

    @validator("stop_retry_delays", "start_retry_delays", "move_retry_delays")
    def validate_delays(cls, v: str) -> str:
        delays = parse_delays(v)
        if any(delay < 0 for delay in delays):
            raise ValueError(f"Retry delays must not be negative: {v}")
        return v

    @property
    def retention_count(self) -> int:
        return resolve_retention_count(self.backup_preserve_number_of_versions)

    @property
    def stop_delays(self) -> Tuple[float, ...]:
        return parse_delays(self.stop_retry_delays)

    @property
    def start_delays(self) -> Tuple[float, ...]:
        return parse_delays(self.start_retry_delays)

    @property
    def move_delays(self) -> Tuple[float, ...]:
        return parse_delays(self.move_retry_delays)

    @property
    def request_log_dir(self) -> str:
        """Directory for captured request/response bodies."""
        if self.log_requests_directory:
            return self.log_requests_directory
        return os.path.join(os.getcwd(), "Requests")
