"""Runtime settings, read from RELAYCI_* environment variables or a .env file."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .artifacts import DEFAULT_ARTIFACT_DIR, DEFAULT_RETENTION_DAYS


class Settings(BaseSettings):
    """Defaults for the CLI and the control plane. Command-line flags win."""

    model_config = SettingsConfigDict(env_prefix="RELAYCI_", env_file=Path(".env"), extra="ignore")

    pipeline: Optional[Path] = None
    max_workers: Optional[int] = Field(default=None, ge=1)
    fail_fast: bool = False
    grace_period: float = Field(default=10.0, ge=0)
    artifact_dir: Path = Path(DEFAULT_ARTIFACT_DIR)
    retention_days: float = Field(default=DEFAULT_RETENTION_DAYS, gt=0)
    work_dir: Path = Path(".relayci/work")
    secret_prefix: str = "RELAYCI_SECRET_"
    webhook_url: Optional[str] = None
    database_url: str = "sqlite+aiosqlite:///relayci.db"
    redis_url: Optional[str] = None
    log_level: str = "INFO"


def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
