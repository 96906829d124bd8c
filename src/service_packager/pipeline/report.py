from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from service_packager.core.errors import FailureRecord
from service_packager.core.json import atomic_write_json

from .types import NodeStatus


@dataclass(slots=True)
class PackageOutcome:
    name: str
    source_kind: str
    requested: bool
    status: NodeStatus
    duration_ms: Optional[int] = None
    content_hash: Optional[str] = None
    failure: Optional[FailureRecord] = None

    archive_path: Optional[str] = None
    manifest_digest: Optional[str] = None
    archive_reused: bool = False
    archive_failure: Optional[FailureRecord] = None

    @property
    def ok(self) -> bool:
        if self.status is not NodeStatus.succeeded:
            return False
        return self.archive_failure is None

    @property
    def failure_kind(self) -> Optional[str]:
        if self.failure is not None:
            return self.failure.kind
        if self.archive_failure is not None:
            return self.archive_failure.kind
        return None

    @property
    def message(self) -> Optional[str]:
        rec = self.failure or self.archive_failure
        return rec.message if rec is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "source_kind": self.source_kind,
            "requested": self.requested,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "content_hash": self.content_hash,
            "failure": self.failure.to_dict() if self.failure else None,
            "archive_path": self.archive_path,
            "manifest_digest": self.manifest_digest,
            "archive_reused": self.archive_reused,
            "archive_failure": (
                self.archive_failure.to_dict() if self.archive_failure else None
            ),
        }


@dataclass(slots=True)
class RunReport:
    run_id: str
    started_at_utc: str
    finished_at_utc: str
    status: str  # "success" | "failed" | "cancelled"
    duration_ms: int

    packages: list[PackageOutcome] = field(default_factory=list)
    events_jsonl: Optional[str] = None
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        if self.status == "success":
            return 0
        return 130 if self.status == "cancelled" else 1

    def outcome(self, name: str) -> PackageOutcome:
        for p in self.packages:
            if p.name == name:
                return p
        raise KeyError(name)

    def failed(self) -> list[PackageOutcome]:
        """Every package that did not end up built (and archived, if requested)."""
        return [
            p
            for p in self.packages
            if p.status is not NodeStatus.succeeded
            or (p.requested and p.archive_failure is not None)
        ]

    def archives(self) -> dict[str, str]:
        return {p.name: p.archive_path for p in self.packages if p.archive_path}

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at_utc": self.started_at_utc,
            "finished_at_utc": self.finished_at_utc,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "packages": [p.to_dict() for p in self.packages],
            "events_jsonl": self.events_jsonl,
            "config": self.config,
        }

    def write_json(self, path: Path) -> None:
        atomic_write_json(Path(path), self.to_dict())


def build_run_report(
    *,
    run_id: str,
    started_at_utc: str,
    finished_at_utc: str,
    duration_ms: int,
    packages: list[PackageOutcome],
    cancelled: bool,
    events_jsonl: str | None,
    config: dict[str, Any] | None = None,
) -> RunReport:
    requested_ok = all(p.ok for p in packages if p.requested)
    if cancelled:
        status = "cancelled"
    else:
        status = "success" if requested_ok else "failed"
    return RunReport(
        run_id=run_id,
        started_at_utc=started_at_utc,
        finished_at_utc=finished_at_utc,
        status=status,
        duration_ms=duration_ms,
        packages=packages,
        events_jsonl=events_jsonl,
        config=config or {},
    )
