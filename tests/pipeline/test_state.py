from __future__ import annotations

from pathlib import Path

import pytest

from service_packager.core import FailureRecord
from service_packager.pipeline import ActionResult, IllegalTransition, NodeStateTable, NodeStatus


def _table(tmp_path: Path) -> NodeStateTable:
    return NodeStateTable(["A", "B", "C"], lambda n: tmp_path / n)


def test_claim_once_then_succeed(tmp_path: Path) -> None:
    t = _table(tmp_path)
    assert t.claim("A")
    assert not t.claim("A")

    t.mark_succeeded("A", ActionResult(tree=tmp_path / "A-tree", content_hash="h"))
    art = t.get("A")
    assert art.succeeded
    assert art.output_tree_root == tmp_path / "A-tree"
    assert art.content_hash == "h"

    # copies, not live entries
    art.content_hash = "changed"
    assert t.get("A").content_hash == "h"


def test_terminal_states_are_final(tmp_path: Path) -> None:
    t = _table(tmp_path)
    rec = FailureRecord(kind="SkippedDueToDependencyFailure", message="x")
    t.mark_skipped("B", rec)
    assert t.status("B") is NodeStatus.skipped
    assert not t.claim("B")

    with pytest.raises(IllegalTransition):
        t.mark_failed("B", rec)
    with pytest.raises(IllegalTransition):
        t.mark_succeeded("C", ActionResult(tree=tmp_path, content_hash="h"))

    t.claim("C")
    t.mark_failed("C", FailureRecord(kind="BuildCommandFailed", message="exit 1"))
    assert t.with_status(NodeStatus.pending) == ["A"]
    assert not t.all_terminal()
    assert "A" in t and "Z" not in t
