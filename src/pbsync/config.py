"""Configuration models for pbsync using Pydantic v2."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


class InstanceCredentials(BaseModel):
    """Login data for one PocketBase instance. Never persisted."""

    url: str = Field(..., description="Base URL of the instance")
    email: str = Field(..., min_length=1, description="Superuser email")
    password: SecretStr = Field(..., description="Superuser password")

    @field_validator("url")
    @classmethod
    def normalize_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"URL must start with http:// or https:// (got '{v}')")
        return v.rstrip("/")

    @field_validator("password")
    @classmethod
    def password_not_empty(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value():
            raise ValueError("password must not be empty")
        return v


class ApiSettings(BaseModel):
    """HTTP behaviour of the control-plane client."""

    request_timeout: float = Field(30.0, gt=0, description="Timeout for regular API calls (seconds)")
    backup_timeout: Optional[float] = Field(
        None, gt=0, description="Timeout for create/upload/restore calls (None = no limit)"
    )


class TransferSettings(BaseModel):
    """Local artifact handling."""

    work_dir: Path = Field(Path("backups"), description="Directory holding the local backup copy")
    chunk_size: int = Field(64 * 1024, ge=1024, description="Download chunk size in bytes")
    read_timeout: float = Field(
        60.0, gt=0, description="Socket timeout while streaming the download (seconds)"
    )
    content_type: str = Field("application/zip", description="Content type of uploaded archives")
    keep_local: bool = Field(False, description="Keep the local artifact after a successful upload")


class ReadinessSettings(BaseModel):
    """Readiness poll after restore."""

    interval: float = Field(1.5, gt=0, description="Delay between health probes (seconds)")
    timeout: Optional[float] = Field(None, gt=0, description="Give up after this many seconds (None = never)")
    backoff: float = Field(1.0, ge=1.0, description="Interval multiplier per failed probe (1.0 = fixed)")
    max_interval: float = Field(30.0, gt=0, description="Upper bound for the probe interval")

    @model_validator(mode="after")
    def check_bounds(self) -> "ReadinessSettings":
        if self.max_interval < self.interval:
            self.max_interval = self.interval
        return self


class CredentialSettings(BaseModel):
    """Where credentials come from."""

    env_file: Path = Field(Path(".env"), description="Env file with <ROLE>_URL/_EMAIL/_PASSWORD")
    use_environment: bool = Field(True, description="Fall back to process environment variables")
    interactive: bool = Field(True, description="Prompt on the terminal when nothing else matches")


class AppConfig(BaseModel):
    """Root application configuration."""

    api: ApiSettings = ApiSettings()
    transfer: TransferSettings = TransferSettings()
    readiness: ReadinessSettings = ReadinessSettings()
    credentials: CredentialSettings = CredentialSettings()

    @classmethod
    def from_yaml(cls, path: str | Path) -> "AppConfig":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def from_env_and_args(cls, **overrides) -> "AppConfig":
        """Build config from environment variables with CLI overrides."""
        base: dict[str, dict] = {"api": {}, "transfer": {}, "readiness": {}, "credentials": {}}
        if os.environ.get("PBSYNC_WORK_DIR"):
            base["transfer"]["work_dir"] = os.environ["PBSYNC_WORK_DIR"]
        if os.environ.get("PBSYNC_POLL_INTERVAL"):
            base["readiness"]["interval"] = float(os.environ["PBSYNC_POLL_INTERVAL"])
        if os.environ.get("PBSYNC_READY_TIMEOUT"):
            base["readiness"]["timeout"] = float(os.environ["PBSYNC_READY_TIMEOUT"])
        if os.environ.get("PBSYNC_ENV_FILE"):
            base["credentials"]["env_file"] = os.environ["PBSYNC_ENV_FILE"]
        return cls(**_deep_merge(base, overrides))

    def with_overrides(self, **overrides) -> "AppConfig":
        """Return a copy with per-section overrides applied (None values ignored)."""
        data = self.model_dump()
        return AppConfig(**_deep_merge(data, overrides))


def _deep_merge(base: dict, overrides: dict) -> dict:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key].update({k: v for k, v in value.items() if v is not None})
        elif value is not None:
            base[key] = value
    return base
