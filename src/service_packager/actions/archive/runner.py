from __future__ import annotations

import gzip
import io
import os
import stat
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Optional

import structlog

from service_packager.core import (
    ArchiveWriteFailed,
    InternalError,
    atomic_replace,
    digest_bytes,
    digest_file,
    new_hasher,
    safe_unlink,
    stable_json_dumps,
)
from service_packager.manifest import OutputKind, PackageSpec
from service_packager.pipeline.context import RunContext
from service_packager.pipeline.events import EventType
from service_packager.pipeline.types import BuildArtifact

log = structlog.get_logger(__name__)

ZONE_ROOT = "root"
ZONE_METADATA_NAME = "oxide.json"
ZONE_METADATA = {"v": "1", "t": "layer"}


@dataclass(frozen=True, slots=True)
class ArchiveBundle:
    package_name: str
    archive_path: Path
    # digest over the sorted entry listing (path, type, mode, content digest)
    manifest_digest: str
    reused: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "package_name": self.package_name,
            "archive_path": str(self.archive_path),
            "manifest_digest": self.manifest_digest,
            "reused": self.reused,
        }


@dataclass(frozen=True, slots=True)
class _Entry:
    arcname: str
    path: Optional[Path] = None
    data: Optional[bytes] = None
    is_dir: bool = False

    def source(self) -> Path:
        if self.path is None:
            raise InternalError(f"archive entry {self.arcname!r} has no source path")
        return self.path


def archive_filename(spec: PackageSpec) -> str:
    if spec.output_kind is OutputKind.zone:
        return f"{spec.name}.tar.gz"
    return f"{spec.name}.tar"


def _collect_entries(spec: PackageSpec, tree: Path) -> list[_Entry]:
    prefix = ""
    entries: list[_Entry] = []
    if spec.output_kind is OutputKind.zone:
        prefix = f"{ZONE_ROOT}/"
        entries.append(_Entry(arcname=ZONE_ROOT, is_dir=True))
        entries.append(
            _Entry(
                arcname=ZONE_METADATA_NAME,
                data=(stable_json_dumps(ZONE_METADATA, indent=None) + "\n").encode("utf-8"),
            )
        )

    for p in tree.rglob("*"):
        rel = p.relative_to(tree).as_posix()
        is_dir = p.is_dir() and not p.is_symlink()
        entries.append(_Entry(arcname=prefix + rel, path=p, is_dir=is_dir))

    entries.sort(key=lambda e: e.arcname)
    return entries


def _tarinfo(entry: _Entry, *, mtime: int, package: str) -> tarfile.TarInfo:
    ti = tarfile.TarInfo(entry.arcname)
    ti.mtime = mtime
    ti.uid = ti.gid = 0
    ti.uname = ti.gname = "root"

    if entry.data is not None:
        ti.type = tarfile.REGTYPE
        ti.mode = 0o644
        ti.size = len(entry.data)
        return ti

    if entry.is_dir:
        ti.type = tarfile.DIRTYPE
        ti.mode = 0o755
        return ti

    path = entry.source()
    st = path.lstat()
    if stat.S_ISLNK(st.st_mode):
        ti.type = tarfile.SYMTYPE
        ti.linkname = os.readlink(path)
        ti.mode = 0o777
    elif stat.S_ISREG(st.st_mode):
        ti.type = tarfile.REGTYPE
        ti.mode = 0o755 if st.st_mode & 0o111 else 0o644
        ti.size = st.st_size
    else:
        raise ArchiveWriteFailed(package, f"unsupported file type in tree: {path}")
    return ti


def _listing_line(ti: tarfile.TarInfo, entry: _Entry, algorithm: str) -> str:
    if ti.isdir():
        return f"D {ti.name} {ti.mode:o}\n"
    if ti.issym():
        return f"L {ti.name} {ti.linkname}\n"
    if entry.data is not None:
        content = digest_bytes(entry.data, algorithm=algorithm)
    else:
        content = digest_file(entry.source(), algorithm=algorithm).hexdigest
    return f"F {ti.name} {ti.mode:o} {ti.size} {content}\n"


def _write_tar(
    fileobj: BinaryIO,
    entries: list[_Entry],
    *,
    mtime: int,
    algorithm: str,
    package: str,
    checkpoint: Callable[[], None] | None,
) -> str:
    listing = new_hasher(algorithm)
    with tarfile.open(fileobj=fileobj, mode="w", format=tarfile.GNU_FORMAT) as tf:
        for entry in entries:
            if checkpoint is not None:
                checkpoint()
            ti = _tarinfo(entry, mtime=mtime, package=package)
            listing.update(_listing_line(ti, entry, algorithm).encode("utf-8"))
            if ti.isreg():
                if entry.data is not None:
                    tf.addfile(ti, io.BytesIO(entry.data))
                else:
                    with entry.source().open("rb") as f:
                        tf.addfile(ti, f)
            else:
                tf.addfile(ti)
    return listing.hexdigest()


def write_archive(
    spec: PackageSpec,
    tree: Path,
    out_dir: Path,
    *,
    source_date_epoch: int = 0,
    algorithm: str = "sha256",
    checkpoint: Callable[[], None] | None = None,
) -> ArchiveBundle:
    """
    Write a byte-reproducible archive of `tree` to {out_dir}/{name}.tar[.gz].

    Entries are sorted by path; timestamps, ownership and permissions are
    normalized. The archive is written to a temp file and renamed into place;
    an existing archive with identical bytes is left untouched.
    """
    name = spec.name
    out_dir = Path(out_dir)
    final_path = out_dir / archive_filename(spec)
    tmp_path: Path | None = None

    try:
        out_dir.mkdir(parents=True, exist_ok=True)
        entries = _collect_entries(spec, Path(tree))

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{final_path.name}.", suffix=".tmp", dir=str(out_dir)
        )
        tmp_path = Path(tmp_name)
        with os.fdopen(fd, "wb") as raw:
            if spec.output_kind is OutputKind.zone:
                with gzip.GzipFile(
                    filename="", mode="wb", fileobj=raw, mtime=0, compresslevel=9
                ) as gz:
                    manifest_digest = _write_tar(
                        gz, entries, mtime=source_date_epoch, algorithm=algorithm,
                        package=name, checkpoint=checkpoint,
                    )
            else:
                manifest_digest = _write_tar(
                    raw, entries, mtime=source_date_epoch, algorithm=algorithm,
                    package=name, checkpoint=checkpoint,
                )
            raw.flush()
            os.fsync(raw.fileno())
        os.chmod(tmp_path, 0o644)

        if checkpoint is not None:
            checkpoint()

        if final_path.exists():
            old = digest_file(final_path, algorithm=algorithm)
            new = digest_file(tmp_path, algorithm=algorithm)
            if old.hexdigest == new.hexdigest:
                safe_unlink(tmp_path)
                return ArchiveBundle(
                    package_name=name,
                    archive_path=final_path,
                    manifest_digest=manifest_digest,
                    reused=True,
                )

        atomic_replace(tmp_path, final_path)
        tmp_path = None
    except (OSError, tarfile.TarError) as e:
        raise ArchiveWriteFailed(name, f"cannot write {final_path}: {e}") from e
    finally:
        if tmp_path is not None:
            safe_unlink(tmp_path)

    return ArchiveBundle(
        package_name=name,
        archive_path=final_path,
        manifest_digest=manifest_digest,
    )


def archive_package(ctx: RunContext, spec: PackageSpec, artifact: BuildArtifact) -> ArchiveBundle:
    if not artifact.succeeded:
        raise ArchiveWriteFailed(
            spec.name, f"cannot archive artifact in state {artifact.status.value}"
        )

    bundle = write_archive(
        spec,
        artifact.output_tree_root,
        ctx.layout.out_dir,
        source_date_epoch=ctx.config.source_date_epoch,
        algorithm=ctx.config.checksum_algorithm,
        checkpoint=lambda: ctx.check_cancelled(spec.name),
    )

    ctx.emit(
        EventType.ARCHIVE_REUSED if bundle.reused else EventType.ARCHIVE_WRITTEN,
        package=spec.name,
        path=str(bundle.archive_path),
        manifest_digest=bundle.manifest_digest,
    )
    log.info(
        "Archive ready",
        package=spec.name,
        path=str(bundle.archive_path),
        reused=bundle.reused,
    )
    return bundle
