from __future__ import annotations

import os
from pathlib import Path

import pytest
from conftest import make_spec

from service_packager.actions.composite import assemble_composite
from service_packager.core import AssemblyFailed, MissingPart
from service_packager.pipeline import BuildArtifact, NodeStatus


def _part(tmp_path: Path, name: str, files: dict[str, str]) -> BuildArtifact:
    root = tmp_path / "parts" / name
    for rel, text in files.items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text)
    return BuildArtifact(
        package_name=name, output_tree_root=root, status=NodeStatus.succeeded, content_hash="x"
    )


def _composite(*parts: str, layout: str = "namespaced"):
    return make_spec("C", {"type": "composite", "parts": list(parts), "layout": layout})


def test_namespaced_layout_nests_each_part(make_ctx, tmp_path: Path) -> None:
    parts = {
        "A": _part(tmp_path, "A", {"bin/a": "a"}),
        "B": _part(tmp_path, "B", {"bin/b": "b"}),
    }
    os.symlink("bin/a", parts["A"].output_tree_root / "current")

    ctx = make_ctx()
    result = assemble_composite(ctx, _composite("A", "B"), parts)

    tree = ctx.layout.tree("C")
    assert result.tree == tree
    assert sorted(p.name for p in tree.iterdir()) == ["A", "B"]
    assert (tree / "A" / "bin" / "a").read_text() == "a"
    assert (tree / "B" / "bin" / "b").read_text() == "b"
    assert os.readlink(tree / "A" / "current") == "bin/a"
    # parts are only read
    assert (parts["A"].output_tree_root / "bin" / "a").exists()


def test_flatten_layout_merges_and_tolerates_identical_files(make_ctx, tmp_path: Path) -> None:
    parts = {
        "A": _part(tmp_path, "A", {"bin/a": "a", "LICENSE": "mit"}),
        "B": _part(tmp_path, "B", {"bin/b": "b", "LICENSE": "mit"}),
    }
    ctx = make_ctx()
    result = assemble_composite(ctx, _composite("A", "B", layout="flatten"), parts)
    assert sorted(p.relative_to(result.tree).as_posix() for p in result.tree.rglob("*")) == [
        "LICENSE",
        "bin",
        "bin/a",
        "bin/b",
    ]


def test_flatten_layout_conflict_fails(make_ctx, tmp_path: Path) -> None:
    parts = {
        "A": _part(tmp_path, "A", {"etc/conf": "one"}),
        "B": _part(tmp_path, "B", {"etc/conf": "two"}),
    }
    ctx = make_ctx()
    with pytest.raises(AssemblyFailed, match="etc/conf"):
        assemble_composite(ctx, _composite("A", "B", layout="flatten"), parts)
    assert not ctx.layout.tree("C").exists()


def test_unresolved_part_is_an_internal_error(make_ctx, tmp_path: Path) -> None:
    parts = {
        "A": _part(tmp_path, "A", {"a": "a"}),
        "B": BuildArtifact(package_name="B", output_tree_root=tmp_path / "nowhere"),
    }
    with pytest.raises(MissingPart) as ei:
        assemble_composite(make_ctx(), _composite("A", "B"), parts)
    assert ei.value.missing == ("B",)
