from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from service_packager.core.config import Settings


@dataclass(frozen=True, slots=True)
class OrchestratorConfig:
    work_root: Path = Path(".packager")
    out_dir: Path = Path("out")

    # None means "one worker per CPU"
    parallelism: Optional[int] = None

    fetch_max_attempts: int = 5
    fetch_timeout_s: float = 30.0
    fetch_backoff_base: float = 0.5
    fetch_backoff_cap: float = 8.0

    build_timeout_s: float = 1800.0

    checksum_algorithm: str = "sha256"
    service_manifest_format: str = "smf"

    archive_intermediates: bool = False
    keep_staging: bool = False
    source_date_epoch: int = 0

    extra_env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, s: Settings, **overrides: object) -> "OrchestratorConfig":
        values: dict[str, object] = {
            "work_root": Path(s.work_root),
            "out_dir": Path(s.out_dir),
            "parallelism": s.parallelism,
            "fetch_max_attempts": s.fetch_max_attempts,
            "fetch_timeout_s": s.fetch_timeout_s,
            "fetch_backoff_base": s.fetch_backoff_base,
            "fetch_backoff_cap": s.fetch_backoff_cap,
            "build_timeout_s": s.build_timeout_s,
            "checksum_algorithm": s.checksum_algorithm,
            "service_manifest_format": s.service_manifest_format,
            "archive_intermediates": s.archive_intermediates,
            "keep_staging": s.keep_staging,
            "source_date_epoch": s.source_date_epoch,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)  # type: ignore[arg-type]

    def worker_count(self) -> int:
        if self.parallelism is not None:
            return max(1, int(self.parallelism))
        return os.cpu_count() or 1

    def to_dict(self) -> dict[str, object]:
        return {
            "work_root": str(self.work_root),
            "out_dir": str(self.out_dir),
            "parallelism": self.worker_count(),
            "fetch_max_attempts": self.fetch_max_attempts,
            "fetch_timeout_s": self.fetch_timeout_s,
            "build_timeout_s": self.build_timeout_s,
            "checksum_algorithm": self.checksum_algorithm,
            "service_manifest_format": self.service_manifest_format,
            "archive_intermediates": self.archive_intermediates,
            "keep_staging": self.keep_staging,
            "source_date_epoch": self.source_date_epoch,
        }
