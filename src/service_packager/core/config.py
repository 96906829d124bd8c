from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LogFormat = Literal["json", "console"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SERVICE_PACKAGER_",
        env_file=".env",
        extra="ignore",
    )

    work_root: Path = Field(default=Path(".packager"))
    out_dir: Path = Field(default=Path("out"))
    log_level: str = Field(default="INFO")
    log_format: LogFormat = Field(default="console")

    # None means "one worker per CPU"
    parallelism: Optional[int] = Field(default=None, ge=1)

    fetch_max_attempts: int = Field(default=5, ge=1)
    fetch_timeout_s: float = Field(default=30.0, gt=0)
    fetch_backoff_base: float = Field(default=0.5, ge=0)
    fetch_backoff_cap: float = Field(default=8.0, ge=0)

    build_timeout_s: float = Field(default=1800.0, gt=0)

    checksum_algorithm: str = Field(default="sha256")
    service_manifest_format: str = Field(default="smf")

    archive_intermediates: bool = Field(default=False)
    keep_staging: bool = Field(default=False)
    source_date_epoch: int = Field(default=0, ge=0)


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    return Settings()
