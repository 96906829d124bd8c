from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Optional

from service_packager.core.errors import FailureRecord


class NodeStatus(StrEnum):
    pending = "pending"
    in_progress = "in_progress"
    succeeded = "succeeded"
    failed = "failed"
    # a failed variant: an ancestor failed before this node was dispatched
    skipped = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (NodeStatus.succeeded, NodeStatus.failed, NodeStatus.skipped)


@dataclass(slots=True)
class BuildArtifact:
    """
    The resolved output of one package's fetch/build/assembly step.
    """

    package_name: str
    output_tree_root: Path
    status: NodeStatus = NodeStatus.pending
    content_hash: Optional[str] = None
    failure: Optional[FailureRecord] = None

    @property
    def succeeded(self) -> bool:
        return self.status is NodeStatus.succeeded


@dataclass(frozen=True, slots=True)
class ActionResult:
    """What an action hands back to the orchestrator on success."""

    tree: Path
    content_hash: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Event:
    """
    Structured event emitted during a run.
    """

    type: str
    ts_utc: str
    run_id: str
    package: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
