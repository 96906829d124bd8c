from __future__ import annotations

import gzip
import os
import tarfile
from pathlib import Path

import pytest
from conftest import make_spec

from service_packager.actions.archive import archive_package, write_archive
from service_packager.core import ArchiveWriteFailed
from service_packager.pipeline import BuildArtifact, NodeStatus

LOCAL = {"type": "local", "build_command": ["true"], "source_paths": ["x"]}


def _tree(root: Path, *, touch: int) -> Path:
    (root / "bin").mkdir(parents=True)
    (root / "etc").mkdir()
    tool = root / "bin" / "tool"
    tool.write_text("#!/bin/sh\necho tool\n")
    tool.chmod(0o750)
    (root / "etc" / "tool.conf").write_text("level=1\n")
    os.symlink("bin/tool", root / "tool")
    for p in (tool, root / "etc" / "tool.conf"):
        os.utime(p, (touch, touch))
    return root


def test_tarball_is_deterministic_and_normalized(tmp_path: Path) -> None:
    spec = make_spec("svc", LOCAL)
    a = write_archive(spec, _tree(tmp_path / "a", touch=1_000), tmp_path / "out-a", source_date_epoch=42)
    b = write_archive(spec, _tree(tmp_path / "b", touch=2_000_000), tmp_path / "out-b", source_date_epoch=42)

    assert a.archive_path.name == "svc.tar"
    assert a.archive_path.read_bytes() == b.archive_path.read_bytes()
    assert a.manifest_digest == b.manifest_digest

    with tarfile.open(a.archive_path) as tf:
        members = tf.getmembers()
    assert [m.name for m in members] == ["bin", "bin/tool", "etc", "etc/tool.conf", "tool"]
    by_name = {m.name: m for m in members}
    assert all(m.mtime == 42 and m.uid == 0 and m.gid == 0 for m in members)
    assert all(m.uname == "root" and m.gname == "root" for m in members)
    assert by_name["bin"].mode == 0o755
    assert by_name["bin/tool"].mode == 0o755
    assert by_name["etc/tool.conf"].mode == 0o644
    assert by_name["tool"].issym() and by_name["tool"].linkname == "bin/tool"


def test_identical_archive_is_reused(tmp_path: Path) -> None:
    spec = make_spec("svc", LOCAL)
    tree = _tree(tmp_path / "t", touch=1)
    out = tmp_path / "out"

    first = write_archive(spec, tree, out)
    inode = first.archive_path.stat().st_ino
    second = write_archive(spec, tree, out)

    assert not first.reused and second.reused
    assert second.archive_path.stat().st_ino == inode
    assert sorted(p.name for p in out.iterdir()) == ["svc.tar"]

    (tree / "etc" / "tool.conf").write_text("level=2\n")
    third = write_archive(spec, tree, out)
    assert not third.reused
    assert third.manifest_digest != first.manifest_digest


def test_zone_archive_layout(tmp_path: Path) -> None:
    spec = make_spec("zone1", LOCAL, output_kind="zone")
    bundle = write_archive(spec, _tree(tmp_path / "t", touch=5), tmp_path / "out")

    raw = bundle.archive_path.read_bytes()
    assert bundle.archive_path.name == "zone1.tar.gz"
    assert raw[:2] == b"\x1f\x8b"
    assert raw[4:8] == b"\x00\x00\x00\x00"

    with tarfile.open(bundle.archive_path, mode="r:gz") as tf:
        names = tf.getnames()
        meta = tf.extractfile("oxide.json").read()
    assert names[0] == "oxide.json"
    assert names[1:] == ["root", "root/bin", "root/bin/tool", "root/etc", "root/etc/tool.conf", "root/tool"]
    assert meta == b'{"t":"layer","v":"1"}\n'
    assert gzip.decompress(raw)


def test_unsupported_entries_fail_cleanly(tmp_path: Path) -> None:
    tree = tmp_path / "t"
    tree.mkdir()
    os.mkfifo(tree / "pipe")
    out = tmp_path / "out"

    with pytest.raises(ArchiveWriteFailed, match="unsupported file type"):
        write_archive(make_spec("svc", LOCAL), tree, out)
    assert list(out.iterdir()) == []


def test_archive_package_emits_and_refuses_unbuilt(make_ctx, tmp_path: Path) -> None:
    ctx = make_ctx(source_date_epoch=7)
    spec = make_spec("svc", LOCAL)
    tree = _tree(tmp_path / "t", touch=1)

    bundle = archive_package(
        ctx,
        spec,
        BuildArtifact(package_name="svc", output_tree_root=tree, status=NodeStatus.succeeded),
    )
    assert bundle.archive_path == ctx.layout.out_dir / "svc.tar"
    with tarfile.open(bundle.archive_path) as tf:
        assert {m.mtime for m in tf.getmembers()} == {7}

    with pytest.raises(ArchiveWriteFailed):
        archive_package(ctx, spec, BuildArtifact(package_name="svc", output_tree_root=tree))
