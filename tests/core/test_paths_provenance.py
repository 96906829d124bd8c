from __future__ import annotations

from pathlib import Path

from service_packager.core import errors, paths, provenance, time


def test_build_layout_paths_and_dirs(tmp_path: Path) -> None:
    layout = paths.BuildLayout(work_root=tmp_path / "w", out_dir=tmp_path / "o", run_id="r1")
    assert layout.tree("web") == tmp_path / "w" / "staging" / "r1" / "web" / "tree"
    assert layout.run_report_json() == tmp_path / "w" / "runs" / "r1" / "run_report.json"

    layout.ensure_package_dirs("web")
    assert layout.scratch("web").is_dir()
    assert not layout.tree("web").exists()


def test_failure_records_and_run_id() -> None:
    try:
        raise ValueError("boom")
    except Exception as exc:
        rec = errors.failure_from_exc(exc)
    assert rec.kind == "ValueError"
    assert "boom" in rec.message
    assert rec.traceback is not None and "ValueError" in rec.traceback

    skipped = errors.failure_from_exc(
        errors.DependencyFailed("C", "A"), with_traceback=False
    )
    assert skipped.kind == "SkippedDueToDependencyFailure"
    assert skipped.traceback is None
    assert "'A'" in skipped.message

    assert issubclass(errors.MissingPart, errors.InternalError)
    assert errors.BuildTimeout.kind == "BuildTimeout"

    rid1, rid2 = provenance.new_run_id(), provenance.new_run_id()
    assert rid1 != rid2 and len(rid1) == 32


def test_timer_records_duration() -> None:
    with provenance.Timer() as t:
        pass
    assert t.duration_ms is not None and t.duration_ms >= 0


def test_time_helpers_format() -> None:
    assert time.utc_now_iso().endswith("Z")
    assert time.format_duration_ms(5) == "5 ms"
    assert time.format_duration_ms(1500) == "1.50 s"
