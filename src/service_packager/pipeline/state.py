from __future__ import annotations

import dataclasses
import threading
from pathlib import Path
from typing import Callable, Iterable

from service_packager.core.errors import FailureRecord, InternalError

from .types import ActionResult, BuildArtifact, NodeStatus

_ALLOWED: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.pending: frozenset(
        {NodeStatus.in_progress, NodeStatus.skipped, NodeStatus.failed}
    ),
    NodeStatus.in_progress: frozenset({NodeStatus.succeeded, NodeStatus.failed}),
    NodeStatus.succeeded: frozenset(),
    NodeStatus.failed: frozenset(),
    NodeStatus.skipped: frozenset(),
}


class IllegalTransition(InternalError):
    pass


class NodeStateTable:
    """
    The only mutable structure shared between the orchestrator and workers.

    Every transition goes through `_transition` under one lock; terminal
    states are final, and a node can be claimed (pending -> in_progress) once.
    """

    def __init__(self, names: Iterable[str], tree_for: Callable[[str], Path]) -> None:
        self._lock = threading.Lock()
        self._artifacts: dict[str, BuildArtifact] = {
            name: BuildArtifact(package_name=name, output_tree_root=tree_for(name))
            for name in names
        }

    def __contains__(self, name: object) -> bool:
        return name in self._artifacts

    def names(self) -> list[str]:
        return list(self._artifacts)

    def status(self, name: str) -> NodeStatus:
        with self._lock:
            return self._artifacts[name].status

    def get(self, name: str) -> BuildArtifact:
        """A point-in-time copy; callers never mutate table entries."""
        with self._lock:
            return dataclasses.replace(self._artifacts[name])

    def snapshot(self) -> dict[str, BuildArtifact]:
        with self._lock:
            return {k: dataclasses.replace(v) for k, v in self._artifacts.items()}

    def with_status(self, *statuses: NodeStatus) -> list[str]:
        wanted = set(statuses)
        with self._lock:
            return [k for k, v in self._artifacts.items() if v.status in wanted]

    def all_terminal(self) -> bool:
        with self._lock:
            return all(v.status.terminal for v in self._artifacts.values())

    def _transition(self, name: str, to: NodeStatus) -> BuildArtifact:
        art = self._artifacts[name]
        if to not in _ALLOWED[art.status]:
            raise IllegalTransition(f"{name}: {art.status.value} -> {to.value}")
        art.status = to
        return art

    def claim(self, name: str) -> bool:
        """pending -> in_progress; False if the node was already claimed or finished."""
        with self._lock:
            if self._artifacts[name].status is not NodeStatus.pending:
                return False
            self._transition(name, NodeStatus.in_progress)
            return True

    def mark_succeeded(self, name: str, result: ActionResult) -> None:
        with self._lock:
            art = self._transition(name, NodeStatus.succeeded)
            art.output_tree_root = result.tree
            art.content_hash = result.content_hash

    def mark_failed(self, name: str, failure: FailureRecord) -> None:
        with self._lock:
            art = self._transition(name, NodeStatus.failed)
            art.failure = failure

    def mark_skipped(self, name: str, failure: FailureRecord) -> None:
        with self._lock:
            art = self._transition(name, NodeStatus.skipped)
            art.failure = failure
