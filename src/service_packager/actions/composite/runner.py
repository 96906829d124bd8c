from __future__ import annotations

import filecmp
import os
from pathlib import Path
from typing import Mapping

import structlog

from service_packager.core import (
    AssemblyFailed,
    MissingPart,
    copy_into,
    make_tmp_dir_for,
    safe_rmtree,
    tree_digest,
)
from service_packager.core.fs import atomic_dir_commit
from service_packager.manifest import CompositeLayout, CompositeSource, PackageSpec
from service_packager.pipeline.context import RunContext
from service_packager.pipeline.events import EventType
from service_packager.pipeline.types import ActionResult, BuildArtifact

log = structlog.get_logger(__name__)


def _same_entry(a: Path, b: Path) -> bool:
    if a.is_symlink() or b.is_symlink():
        return a.is_symlink() and b.is_symlink() and os.readlink(a) == os.readlink(b)
    if a.is_dir() or b.is_dir():
        return a.is_dir() and b.is_dir()
    return filecmp.cmp(a, b, shallow=False)


def _flatten_into(package: str, part: str, part_tree: Path, dest: Path) -> None:
    for p in sorted(part_tree.rglob("*")):
        rel = p.relative_to(part_tree)
        target = dest / rel
        if target.exists() or target.is_symlink():
            if not _same_entry(p, target):
                raise AssemblyFailed(
                    package,
                    f"part '{part}' conflicts with another part at {rel.as_posix()}",
                )
            continue
        if p.is_dir() and not p.is_symlink():
            target.mkdir(parents=True, exist_ok=True)
        else:
            copy_into(p, target)


def assemble_composite(
    ctx: RunContext,
    spec: PackageSpec,
    parts: Mapping[str, BuildArtifact],
) -> ActionResult:
    """
    Merge the (succeeded) part trees into a new tree for `spec`.

    namespaced: {tree}/{part}/...   flatten: parts merged into {tree}/...

    Part trees are only read. A part that has not succeeded is a scheduler
    bug and raises MissingPart.
    """
    src = spec.source
    if not isinstance(src, CompositeSource):
        raise TypeError(f"{spec.name}: assemble_composite requires a composite source")

    name = spec.name
    missing = [
        p for p in src.parts if p not in parts or not parts[p].succeeded
    ]
    if missing:
        raise MissingPart(name, missing)

    ctx.layout.ensure_package_dirs(name)
    final_tree = ctx.layout.tree(name)
    tmp_tree = make_tmp_dir_for(final_tree)

    try:
        for part in src.parts:
            ctx.check_cancelled(name)
            part_tree = parts[part].output_tree_root
            if src.layout is CompositeLayout.namespaced:
                (tmp_tree / part).mkdir(parents=True, exist_ok=True)
                copy_into(part_tree, tmp_tree / part)
            else:
                _flatten_into(name, part, part_tree, tmp_tree)
        atomic_dir_commit(tmp_dir=tmp_tree, final_dir=final_tree)
    except BaseException:
        safe_rmtree(tmp_tree)
        raise

    ctx.emit(
        EventType.ASSEMBLE_FINISH,
        package=name,
        parts=list(src.parts),
        layout=src.layout.value,
    )
    log.info("Composite assembled", package=name, parts=len(src.parts))

    return ActionResult(
        tree=final_tree,
        content_hash=tree_digest(final_tree, algorithm=ctx.config.checksum_algorithm),
        details={"parts": list(src.parts), "layout": src.layout.value},
    )
