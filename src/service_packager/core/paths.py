from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class BuildLayout:
    """
    Canonical path layout for a run:

      {work_root}/staging/{run_id}/{package}/tree/
      {work_root}/staging/{run_id}/{package}/.tmp/
      {work_root}/runs/{run_id}/events.jsonl
      {work_root}/runs/{run_id}/run_report.json
      {out_dir}/{package}.tar[.gz]
    """

    work_root: Path
    out_dir: Path
    run_id: str

    def staging_root(self) -> Path:
        return self.work_root / "staging" / self.run_id

    def staging(self, package: str) -> Path:
        return self.staging_root() / package

    def tree(self, package: str) -> Path:
        return self.staging(package) / "tree"

    def scratch(self, package: str) -> Path:
        return self.staging(package) / ".tmp"

    def run_dir(self) -> Path:
        return self.work_root / "runs" / self.run_id

    def events_jsonl(self) -> Path:
        return self.run_dir() / "events.jsonl"

    def run_report_json(self) -> Path:
        return self.run_dir() / "run_report.json"

    def ensure_package_dirs(self, package: str) -> None:
        for p in (self.staging(package), self.scratch(package)):
            p.mkdir(parents=True, exist_ok=True)
