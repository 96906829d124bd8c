from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from service_packager.core import (
    CyclicDependency,
    InvalidManifest,
    bind,
    clear_bindings,
    configure_logging,
    get_logger,
    load_settings,
    new_run_id,
)
from service_packager.manifest import Manifest, load_manifest
from service_packager.pipeline import OrchestratorConfig, RunReport, build_graph
from service_packager.pipeline.orchestrator import Orchestrator

console = Console()

EXIT_STRUCTURAL = 2


@dataclass(frozen=True, slots=True)
class _CommonArgs:
    cmd: str
    manifest: Path
    targets: list[str] | None


def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--manifest",
        "-m",
        default="packages.toml",
        help="Package manifest (.toml or .json). Relative paths inside it resolve against its directory.",
    )
    p.add_argument(
        "--target",
        action="append",
        dest="targets",
        help="Only build this package and what it contains (repeatable). If omitted, builds every non-intermediate package.",
    )


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="service-packager")
    sub = p.add_subparsers(dest="cmd", required=True)

    check = sub.add_parser("check", help="Validate the manifest and print the build order")
    _add_common_args(check)

    pkg = sub.add_parser("package", help="Build and archive packages")
    _add_common_args(pkg)
    pkg.add_argument("--out", default=None, help="Archive output directory")
    pkg.add_argument("--work-root", default=None, help="Staging and run-report directory")
    pkg.add_argument("--parallelism", "-j", type=int, default=None, help="Worker count")
    pkg.add_argument(
        "--keep-staging",
        action="store_true",
        default=None,
        help="Keep staged package trees after the run",
    )
    pkg.add_argument(
        "--archive-intermediates",
        action="store_true",
        default=None,
        help="Also archive packages that are only built as parts",
    )
    return p


def _common(args: argparse.Namespace) -> _CommonArgs:
    return _CommonArgs(
        cmd=str(args.cmd),
        manifest=Path(args.manifest),
        targets=list(args.targets) if args.targets else None,
    )


def _print_structural(e: Exception) -> None:
    if isinstance(e, InvalidManifest):
        body = "\n".join(f"- {p}" for p in e.problems)
        console.print(Panel(body, title="Invalid manifest", style="red"))
    else:
        console.print(Panel(str(e), title="Dependency cycle", style="red"))


def _cmd_check(common: _CommonArgs, manifest: Manifest) -> int:
    graph = build_graph(manifest)
    targets = common.targets or manifest.default_targets()
    work = graph.closure(targets)

    tbl = Table(title="Build order", show_header=True)
    tbl.add_column("#", justify="right")
    tbl.add_column("package")
    tbl.add_column("kind")
    tbl.add_column("parts")
    tbl.add_column("archived")
    for i, name in enumerate(n for n in graph.topological_order() if n in work):
        spec = manifest.get(name)
        tbl.add_row(
            str(i + 1),
            name,
            spec.kind,
            ", ".join(spec.parts) or "-",
            "yes" if name in targets else "no",
        )
    console.print(tbl)
    return 0


def _print_report(report: RunReport) -> None:
    tbl = Table(title="Packages", show_header=True)
    tbl.add_column("package")
    tbl.add_column("status")
    tbl.add_column("archive")
    tbl.add_column("failure")
    for o in report.packages:
        if o.ok:
            status = "[green]ok[/green]"
        elif o.status.value == "skipped":
            status = "[yellow]skipped[/yellow]"
        else:
            status = "[red]failed[/red]"
        tbl.add_row(
            o.name,
            status,
            o.archive_path or "-",
            f"{o.failure_kind}: {o.message}" if o.failure_kind else "",
        )
    console.print(tbl)

    result = Table(title="Result", show_header=True, box=None)
    colour = "green" if report.exit_code == 0 else "red"
    result.add_row("status", f"[{colour}]{report.status}[/{colour}]")
    result.add_row("run_id", report.run_id)
    result.add_row("events", str(report.events_jsonl))
    console.print(result)


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    common = _common(args)

    s = load_settings()
    configure_logging(level=s.log_level, fmt=s.log_format)
    log = get_logger("service_packager")

    run_id = new_run_id()
    clear_bindings()
    bind(run_id=run_id, command=common.cmd)

    try:
        manifest = load_manifest(common.manifest, checksum_algorithm=s.checksum_algorithm)
        if common.cmd == "check":
            return _cmd_check(common, manifest)
    except (InvalidManifest, CyclicDependency) as e:
        _print_structural(e)
        return EXIT_STRUCTURAL

    cfg = OrchestratorConfig.from_settings(
        s,
        out_dir=Path(args.out) if args.out else None,
        work_root=Path(args.work_root) if args.work_root else None,
        parallelism=args.parallelism,
        keep_staging=args.keep_staging,
        archive_intermediates=args.archive_intermediates,
    )

    console.print(
        Panel.fit(
            Text(
                f"service-packager - {common.cmd}\nrun_id={run_id}\nmanifest={common.manifest}",
                style="bold",
            ),
            title="Run",
        )
    )

    orchestrator = Orchestrator(cfg, logger=log)
    try:
        report = orchestrator.run(manifest, common.targets, run_id=run_id)
    except (InvalidManifest, CyclicDependency) as e:
        _print_structural(e)
        return EXIT_STRUCTURAL

    _print_report(report)
    return report.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
