from __future__ import annotations

import os
import tarfile
from pathlib import Path

import httpx
import structlog

from service_packager.core import (
    ArtifactFetchFailed,
    ArtifactVerificationFailed,
    InternalError,
    atomic_replace,
    make_tmp_dir_for,
    parse_checksum,
    safe_rmtree,
    safe_unlink,
    tree_digest,
    utc_now_iso,
)
from service_packager.core.fs import atomic_dir_commit
from service_packager.manifest import PackageSpec, PrebuiltSource
from service_packager.pipeline.context import RunContext
from service_packager.pipeline.events import EventType
from service_packager.pipeline.types import ActionResult

from .http import (
    HttpFetchError,
    make_http_client,
    stream_get_to_file_with_retries,
)

log = structlog.get_logger(__name__)


def _new_tmp_path(tmp_dir: Path, filename: str) -> Path:
    stamp = utc_now_iso().replace(":", "").replace("-", "").replace(".", "")
    return tmp_dir / f"{filename}.{os.getpid()}.{stamp}.part"


def _unpack_into(archive: Path, dest: Path, *, package: str) -> None:
    try:
        with tarfile.open(archive, mode="r:*") as tf:
            tf.extractall(dest, filter="data")
    except (tarfile.TarError, OSError) as e:
        raise ArtifactFetchFailed(package, f"cannot unpack {archive.name}: {e}") from e


def fetch_prebuilt(
    ctx: RunContext,
    spec: PackageSpec,
    *,
    client: httpx.Client | None = None,
) -> ActionResult:
    """
    Download a prebuilt artifact, verify its checksum and move it into the
    package tree:

      {staging}/{package}/.tmp/{file}.part   (download target)
      {staging}/{package}/tree/{file}        (after verification)

    Nothing is visible at the tree path unless verification passed.
    """
    src = spec.source
    if not isinstance(src, PrebuiltSource):
        raise TypeError(f"{spec.name}: fetch_prebuilt requires a prebuilt source")
    if not src.url or not src.checksum:
        raise InternalError(f"{spec.name}: prebuilt source reached fetch without url or checksum")

    cfg = ctx.config
    name = spec.name
    expected = parse_checksum(src.checksum, default_algorithm=cfg.checksum_algorithm)

    ctx.layout.ensure_package_dirs(name)
    scratch = ctx.layout.scratch(name)
    final_tree = ctx.layout.tree(name)
    filename = src.effective_filename()
    part_path = _new_tmp_path(scratch, Path(filename).name)

    ctx.emit(
        EventType.FETCH_START,
        package=name,
        url=src.url,
        version=src.version,
        max_attempts=cfg.fetch_max_attempts,
    )

    def _on_retry(attempt: int, sleep: float | None, exc: BaseException | None) -> None:
        ctx.emit(
            EventType.FETCH_RETRY,
            package=name,
            attempt=attempt,
            sleep_s=sleep,
            error=repr(exc) if exc else None,
        )

    owns_client = client is None
    if client is None:
        client = make_http_client(timeout_s=cfg.fetch_timeout_s)

    try:
        try:
            dl = stream_get_to_file_with_retries(
                client,
                url=src.url,
                dest_path=part_path,
                max_attempts=cfg.fetch_max_attempts,
                backoff_base=cfg.fetch_backoff_base,
                backoff_cap=cfg.fetch_backoff_cap,
                algorithm=expected.algorithm,
                checkpoint=lambda: ctx.check_cancelled(name),
                on_retry=_on_retry,
            )
        except HttpFetchError as e:
            raise ArtifactFetchFailed(name, str(e)) from e
    finally:
        if owns_client:
            client.close()

    if not expected.matches(dl.digest):
        safe_unlink(part_path)
        raise ArtifactVerificationFailed(
            name, expected=str(expected), actual=f"{dl.digest.algorithm}:{dl.digest.hexdigest}"
        )

    ctx.emit(
        EventType.FETCH_VERIFIED,
        package=name,
        checksum=str(expected),
        bytes=dl.digest.bytes,
        attempts=dl.attempts,
    )
    ctx.check_cancelled(name)

    tmp_tree = make_tmp_dir_for(final_tree)
    try:
        if src.unpack:
            _unpack_into(part_path, tmp_tree, package=name)
            safe_unlink(part_path)
        else:
            dest = tmp_tree / filename
            dest.parent.mkdir(parents=True, exist_ok=True)
            atomic_replace(part_path, dest)
            os.chmod(dest, 0o644)
        atomic_dir_commit(tmp_dir=tmp_tree, final_dir=final_tree)
    except BaseException:
        safe_unlink(part_path)
        safe_rmtree(tmp_tree)
        raise

    log.info(
        "Prebuilt fetched",
        package=name,
        bytes=dl.digest.bytes,
        attempts=dl.attempts,
        unpacked=src.unpack,
    )
    return ActionResult(
        tree=final_tree,
        content_hash=tree_digest(final_tree, algorithm=cfg.checksum_algorithm),
        details={
            "url": src.url,
            "final_url": dl.info.final_url,
            "checksum": str(expected),
            "bytes": dl.digest.bytes,
            "attempts": dl.attempts,
        },
    )
