from __future__ import annotations

import os
import signal
import subprocess
import time
from pathlib import Path

import structlog

from service_packager.core import (
    BuildCommandFailed,
    BuildTimeout,
    Timer,
    copy_into,
    make_tmp_dir_for,
    safe_rmtree,
    tree_digest,
)
from service_packager.core.fs import atomic_dir_commit
from service_packager.manifest import LocalSource, PackageSpec
from service_packager.pipeline.context import RunContext
from service_packager.pipeline.events import EventType
from service_packager.pipeline.types import ActionResult

log = structlog.get_logger(__name__)

# how long a single process wait blocks before checking cancel/deadline
_POLL_S = 0.2
_OUTPUT_TAIL = 64 * 1024


def _tail(text: str, limit: int = _OUTPUT_TAIL) -> str:
    return text if len(text) <= limit else text[-limit:]


def render_command(
    argv: list[str], *, package: str, output_dir: Path, sources: list[Path]
) -> list[str]:
    """
    Substitute {package}, {output_dir} and {sources} in each argument.
    """
    values = {
        "package": package,
        "output_dir": str(output_dir),
        "sources": os.pathsep.join(str(s) for s in sources),
    }
    out: list[str] = []
    for arg in argv:
        try:
            out.append(arg.format(**values))
        except (KeyError, IndexError, ValueError):
            # literal braces in an argument the command owns
            out.append(arg)
    return out


def _build_env(
    ctx: RunContext, src: LocalSource, *, package: str, output_dir: Path, sources: list[Path]
) -> dict[str, str]:
    env = dict(os.environ)
    env.update(ctx.config.extra_env)
    env.update(src.env)
    env["PACKAGER_PACKAGE"] = package
    env["PACKAGER_OUTPUT_DIR"] = str(output_dir)
    env["PACKAGER_SOURCE_PATHS"] = os.pathsep.join(str(s) for s in sources)
    return env


def _kill_group(proc: subprocess.Popen[str]) -> None:
    # the command runs in its own session; grandchildren share the stdout pipe
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _wait(
    ctx: RunContext,
    proc: subprocess.Popen[str],
    *,
    package: str,
    timeout_s: float,
) -> tuple[int, str]:
    deadline = time.monotonic() + timeout_s
    chunks: list[str] = []
    while True:
        try:
            out, _ = proc.communicate(timeout=_POLL_S)
            chunks.append(out or "")
            return proc.returncode, "".join(chunks)
        except subprocess.TimeoutExpired:
            pass

        if ctx.cancelled or time.monotonic() >= deadline:
            _kill_group(proc)
            out, _ = proc.communicate()
            chunks.append(out or "")
            captured = _tail("".join(chunks))
            ctx.check_cancelled(package)
            raise BuildTimeout(
                package,
                f"build command exceeded {timeout_s:g}s",
                exit_status=proc.returncode,
                captured_output=captured,
            )


def run_local_build(ctx: RunContext, spec: PackageSpec) -> ActionResult:
    """
    Run the package's build command, then copy its declared source paths
    into a fresh tree. Build failures are deterministic and never retried.
    """
    src = spec.source
    if not isinstance(src, LocalSource):
        raise TypeError(f"{spec.name}: run_local_build requires a local source")

    name = spec.name
    cfg = ctx.config
    base_dir = ctx.base_dir
    ctx.layout.ensure_package_dirs(name)
    final_tree = ctx.layout.tree(name)
    tmp_tree = make_tmp_dir_for(final_tree)

    sources = [p.resolve(base_dir) for p in src.source_paths]
    argv = render_command(
        src.build_command, package=name, output_dir=tmp_tree, sources=sources
    )
    env = _build_env(ctx, src, package=name, output_dir=tmp_tree, sources=sources)

    ctx.emit(EventType.BUILD_COMMAND, package=name, argv=argv, cwd=str(base_dir))

    try:
        ctx.check_cancelled(name)
        with Timer() as t:
            try:
                proc = subprocess.Popen(
                    argv,
                    cwd=str(base_dir),
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    errors="replace",
                    start_new_session=True,
                )
            except OSError as e:
                raise BuildCommandFailed(
                    name,
                    f"cannot start build command {argv[0]!r}: {e}",
                    exit_status=None,
                    captured_output="",
                ) from e

            code, output = _wait(ctx, proc, package=name, timeout_s=cfg.build_timeout_s)

        if code != 0:
            raise BuildCommandFailed(
                name,
                f"build command exited with status {code}",
                exit_status=code,
                captured_output=_tail(output),
            )

        missing = [str(s) for s in sources if not s.exists() and not s.is_symlink()]
        if missing:
            raise BuildCommandFailed(
                name,
                f"declared output not present after build: {', '.join(missing)}",
                exit_status=code,
                captured_output=_tail(output),
            )

        for sp, resolved in zip(src.source_paths, sources):
            ctx.check_cancelled(name)
            copy_into(resolved, tmp_tree / sp.dest)

        atomic_dir_commit(tmp_dir=tmp_tree, final_dir=final_tree)
    except BaseException:
        safe_rmtree(tmp_tree)
        raise

    ctx.emit(EventType.BUILD_FINISH, package=name, duration_ms=t.duration_ms)
    log.info("Local build finished", package=name, duration_ms=t.duration_ms)

    return ActionResult(
        tree=final_tree,
        content_hash=tree_digest(final_tree, algorithm=cfg.checksum_algorithm),
        details={"argv": argv, "duration_ms": t.duration_ms},
    )
