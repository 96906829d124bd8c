from __future__ import annotations

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional, Protocol, Sequence

import httpx

from service_packager.actions import (
    ArchiveBundle,
    archive_package,
    assemble_composite,
    embed_service_manifest,
    fetch_prebuilt,
    run_local_build,
)
from service_packager.actions.composite import get_renderer
from service_packager.actions.fetch import make_http_client
from service_packager.core import (
    ActionCancelled,
    ArchiveWriteFailed,
    BuildLayout,
    DependencyFailed,
    FailureRecord,
    ILogger,
    InternalError,
    InvalidManifest,
    PackageActionError,
    failure_from_exc,
    get_logger,
    monotonic_ms,
    new_run_id,
    relpath_posix,
    safe_rmtree,
    tree_digest,
    utc_now_iso,
)
from service_packager.manifest import Manifest, PackageSpec

from .config import OrchestratorConfig
from .context import RunContext
from .events import EventSink, EventType
from .graph import DependencyGraph, build_graph
from .report import PackageOutcome, RunReport, build_run_report
from .state import NodeStateTable
from .types import ActionResult, BuildArtifact, NodeStatus


class FetchAction(Protocol):
    def __call__(
        self, ctx: RunContext, spec: PackageSpec, *, client: httpx.Client | None = None
    ) -> ActionResult: ...


BuildAction = Callable[[RunContext, PackageSpec], ActionResult]
AssembleAction = Callable[[RunContext, PackageSpec, Mapping[str, BuildArtifact]], ActionResult]
ArchiveAction = Callable[[RunContext, PackageSpec, BuildArtifact], ArchiveBundle]


@dataclass(slots=True)
class PackageActions:
    """The per-kind actions a run dispatches to; swappable in tests."""

    fetch: FetchAction = fetch_prebuilt
    build: BuildAction = run_local_build
    assemble: AssembleAction = assemble_composite
    archive: ArchiveAction = archive_package


_ACTION = "action"
_ARCHIVE = "archive"


@dataclass(slots=True)
class _RunState:
    ctx: RunContext
    graph: DependencyGraph
    manifest: Manifest
    table: NodeStateTable
    order: list[str]
    requested: list[str]
    to_archive: set[str]

    futures: dict[Future, tuple[str, str]] = field(default_factory=dict)
    dispatched_ms: dict[str, int] = field(default_factory=dict)
    durations_ms: dict[str, int] = field(default_factory=dict)
    archives: dict[str, ArchiveBundle] = field(default_factory=dict)
    archive_failures: dict[str, FailureRecord] = field(default_factory=dict)


class Orchestrator:
    """
    Runs a manifest: plans the dependency graph, dispatches each package's
    action to a bounded worker pool once all of its parts have succeeded,
    propagates failures to dependents, archives the requested packages and
    writes a run report.

    The orchestrator thread is the only one that decides what runs next;
    workers only execute actions and hand results back through futures.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        *,
        logger: Optional[ILogger] = None,
        actions: Optional[PackageActions] = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.config = config
        self.logger: ILogger = logger or get_logger(__name__)
        self.actions = actions or PackageActions()
        self._http_client = http_client
        self._cancel_event = threading.Event()

    def cancel(self) -> None:
        """Stop dispatching; in-flight actions abort at their next checkpoint."""
        self._cancel_event.set()

    # ------------------------------------------------------------------ run

    def run(
        self,
        manifest: Manifest,
        targets: Optional[Sequence[str]] = None,
        *,
        run_id: Optional[str] = None,
    ) -> RunReport:
        cfg = self.config

        # Structural errors surface here, before any work is started.
        graph = build_graph(manifest)
        requested = list(dict.fromkeys(targets)) if targets else manifest.default_targets()
        unknown = [t for t in requested if t not in graph.index]
        if unknown:
            raise InvalidManifest([f"unknown target package: {t!r}" for t in unknown])
        try:
            get_renderer(cfg.service_manifest_format)
        except ValueError as e:
            raise InvalidManifest([f"service_manifest_format: {e}"]) from e

        work = graph.closure(requested)
        order = [n for n in graph.topological_order() if n in work]
        to_archive = set(work) if cfg.archive_intermediates else set(requested)

        run_id = run_id or new_run_id()
        layout = BuildLayout(
            work_root=Path(cfg.work_root), out_dir=Path(cfg.out_dir), run_id=run_id
        )
        layout.run_dir().mkdir(parents=True, exist_ok=True)
        events = EventSink(layout.events_jsonl())

        self._cancel_event = threading.Event()
        ctx = RunContext(
            run_id=run_id,
            layout=layout,
            config=cfg,
            logger=self.logger.bind(run_id=run_id),
            events=events,
            base_dir=Path(manifest.base_dir),
            cancel_event=self._cancel_event,
        )
        rs = _RunState(
            ctx=ctx,
            graph=graph,
            manifest=manifest,
            table=NodeStateTable(order, layout.tree),
            order=order,
            requested=requested,
            to_archive=to_archive,
        )

        started_at = utc_now_iso()
        t0 = monotonic_ms()
        ctx.emit(EventType.RUN_START, requested=requested, config=cfg.to_dict())
        ctx.emit(EventType.RUN_PLAN, order=order, archive=sorted(to_archive))
        ctx.logger.info(
            "Run Start",
            packages=len(order),
            requested=len(requested),
            workers=cfg.worker_count(),
        )

        owns_client = self._http_client is None and any(
            manifest.get(n).kind == "prebuilt" for n in order
        )
        if owns_client:
            self._http_client = make_http_client(timeout_s=cfg.fetch_timeout_s)

        pool = ThreadPoolExecutor(
            max_workers=cfg.worker_count(), thread_name_prefix="packager"
        )
        try:
            self._schedule(pool, rs)
        except BaseException as e:
            ctx.cancel_event.set()
            pool.shutdown(wait=True, cancel_futures=True)
            ctx.emit(EventType.RUN_FINISH, status="aborted", error=repr(e))
            ctx.logger.error("Run Aborted", error=repr(e))
            self._teardown(layout, owns_client)
            raise
        pool.shutdown(wait=True)
        self._teardown(layout, owns_client)

        duration_ms = monotonic_ms() - t0
        report = build_run_report(
            run_id=run_id,
            started_at_utc=started_at,
            finished_at_utc=utc_now_iso(),
            duration_ms=duration_ms,
            packages=self._outcomes(rs),
            cancelled=ctx.cancelled,
            events_jsonl=str(layout.events_jsonl()),
            config=cfg.to_dict(),
        )
        report.write_json(layout.run_report_json())
        ctx.emit(EventType.RUN_FINISH, status=report.status, duration_ms=duration_ms)
        events.close()

        ctx.logger.info(
            "Run Complete",
            status=report.status,
            failed=len(report.failed()),
            duration_ms=duration_ms,
            report=str(layout.run_report_json()),
        )
        return report

    # ----------------------------------------------------------- scheduling

    def _schedule(self, pool: ThreadPoolExecutor, rs: _RunState) -> None:
        ctx = rs.ctx
        self._dispatch_ready(pool, rs)
        while rs.futures:
            try:
                done, _ = wait(list(rs.futures), return_when=FIRST_COMPLETED)
            except KeyboardInterrupt:
                ctx.logger.warning("Interrupted, cancelling run")
                self._cancel_event.set()
                ctx.emit(EventType.RUN_CANCELLED, reason="interrupt")
                continue
            for fut in done:
                job, name = rs.futures.pop(fut)
                if job == _ACTION:
                    self._on_action_done(pool, rs, name, fut)
                else:
                    self._on_archive_done(rs, name, fut)
            self._dispatch_ready(pool, rs)

        leftover = rs.table.with_status(NodeStatus.pending)
        if leftover and not ctx.cancelled:
            raise InternalError(f"scheduler stalled with pending packages: {leftover}")
        for name in leftover:
            exc = ActionCancelled(name, "run cancelled before the package was started")
            rs.table.mark_failed(name, failure_from_exc(exc, with_traceback=False))
            ctx.emit(EventType.PACKAGE_FAILED, package=name, kind=exc.kind, message=str(exc))
        if not rs.table.all_terminal():
            raise InternalError("run finished with packages still in flight")

    def _dispatch_ready(self, pool: ThreadPoolExecutor, rs: _RunState) -> None:
        if rs.ctx.cancelled:
            return
        for name in rs.order:
            if rs.table.status(name) is not NodeStatus.pending:
                continue
            parts = rs.graph.parts_of(name)
            if any(rs.table.status(p) is not NodeStatus.succeeded for p in parts):
                continue
            if not rs.table.claim(name):
                continue

            spec = rs.manifest.get(name)
            inputs = {p: rs.table.get(p) for p in parts}
            rs.ctx.emit(EventType.PACKAGE_START, package=name, kind=spec.kind)
            rs.dispatched_ms[name] = monotonic_ms()
            fut = pool.submit(self._execute, rs.ctx, spec, inputs)
            rs.futures[fut] = (_ACTION, name)

    def _execute(
        self, ctx: RunContext, spec: PackageSpec, parts: Mapping[str, BuildArtifact]
    ) -> ActionResult:
        """Worker side: run the package's action, then embed its service manifest."""
        ctx.check_cancelled(spec.name)
        if spec.kind == "local":
            result = self.actions.build(ctx, spec)
        elif spec.kind == "prebuilt":
            result = self.actions.fetch(ctx, spec, client=self._http_client)
        else:
            result = self.actions.assemble(ctx, spec, parts)

        written = embed_service_manifest(
            spec, result.tree, default_format=ctx.config.service_manifest_format
        )
        if written is None:
            return result

        ctx.emit(
            EventType.SERVICE_MANIFEST_WRITTEN,
            package=spec.name,
            path=relpath_posix(written, result.tree),
        )
        ctx.package_logger(spec.name).info("Service manifest embedded", path=str(written))
        return ActionResult(
            tree=result.tree,
            content_hash=tree_digest(result.tree, algorithm=ctx.config.checksum_algorithm),
            details=result.details,
        )

    def _on_action_done(
        self, pool: ThreadPoolExecutor, rs: _RunState, name: str, fut: Future
    ) -> None:
        ctx = rs.ctx
        rs.durations_ms[name] = monotonic_ms() - rs.dispatched_ms.get(name, monotonic_ms())
        try:
            result: ActionResult = fut.result()
        except InternalError:
            raise
        except PackageActionError as e:
            self._fail(rs, name, e)
            return
        except Exception as e:
            ctx.logger.exception("Unexpected action error", package=name)
            self._fail(rs, name, e)
            return

        rs.table.mark_succeeded(name, result)
        ctx.emit(
            EventType.PACKAGE_SUCCESS,
            package=name,
            content_hash=result.content_hash,
            duration_ms=rs.durations_ms[name],
        )
        ctx.logger.info("Package Built", package=name, duration_ms=rs.durations_ms[name])

        if name in rs.to_archive and not ctx.cancelled:
            spec = rs.manifest.get(name)
            job = pool.submit(self.actions.archive, ctx, spec, rs.table.get(name))
            rs.futures[job] = (_ARCHIVE, name)

    def _on_archive_done(self, rs: _RunState, name: str, fut: Future) -> None:
        ctx = rs.ctx
        try:
            rs.archives[name] = fut.result()
        except InternalError:
            raise
        except Exception as e:
            exc = e if isinstance(e, PackageActionError) else ArchiveWriteFailed(name, repr(e))
            rs.archive_failures[name] = failure_from_exc(exc)
            ctx.emit(EventType.ARCHIVE_FAILED, package=name, kind=exc.kind, message=str(exc))
            ctx.logger.error("Archive Failed", package=name, error=str(exc))

    def _fail(self, rs: _RunState, name: str, exc: BaseException) -> None:
        ctx = rs.ctx
        record = failure_from_exc(exc)
        rs.table.mark_failed(name, record)
        ctx.emit(EventType.PACKAGE_FAILED, package=name, kind=record.kind, message=record.message)
        ctx.logger.error("Package Failed", package=name, kind=record.kind, error=record.message)

        for dep in sorted(rs.graph.transitive_dependents(name)):
            if dep not in rs.table or rs.table.status(dep) is not NodeStatus.pending:
                continue
            skip = DependencyFailed(dep, name)
            rs.table.mark_skipped(dep, failure_from_exc(skip, with_traceback=False))
            ctx.emit(EventType.PACKAGE_SKIPPED, package=dep, failed_part=name)
            ctx.logger.warning("Package Skipped", package=dep, failed_part=name)

    # ------------------------------------------------------------- teardown

    def _teardown(self, layout: BuildLayout, owns_client: bool) -> None:
        if owns_client and self._http_client is not None:
            self._http_client.close()
            self._http_client = None
        if not self.config.keep_staging:
            safe_rmtree(layout.staging_root())

    def _outcomes(self, rs: _RunState) -> list[PackageOutcome]:
        snapshot = rs.table.snapshot()
        requested = set(rs.requested)
        out: list[PackageOutcome] = []
        for name in rs.order:
            art = snapshot[name]
            bundle = rs.archives.get(name)
            out.append(
                PackageOutcome(
                    name=name,
                    source_kind=rs.manifest.get(name).kind,
                    requested=name in requested,
                    status=art.status,
                    duration_ms=rs.durations_ms.get(name),
                    content_hash=art.content_hash,
                    failure=art.failure,
                    archive_path=str(bundle.archive_path) if bundle else None,
                    manifest_digest=bundle.manifest_digest if bundle else None,
                    archive_reused=bundle.reused if bundle else False,
                    archive_failure=rs.archive_failures.get(name),
                )
            )
        return out
