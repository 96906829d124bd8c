from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import pytest

from service_packager.core import BuildLayout, get_logger
from service_packager.manifest import PackageSpec
from service_packager.pipeline import EventSink, OrchestratorConfig, RunContext


def make_config(tmp_path: Path, **overrides: Any) -> OrchestratorConfig:
    values: dict[str, Any] = {
        "work_root": tmp_path / "work",
        "out_dir": tmp_path / "out",
        "parallelism": 2,
        "fetch_backoff_base": 0.0,
        "fetch_backoff_cap": 0.0,
    }
    values.update(overrides)
    return OrchestratorConfig(**values)


def make_spec(name: str, source: dict[str, Any], **extra: Any) -> PackageSpec:
    return PackageSpec.model_validate({"name": name, "source": source, **extra})


def read_events(path: Path) -> list[dict[str, Any]]:
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


@pytest.fixture
def make_ctx(tmp_path: Path) -> Callable[..., RunContext]:
    def _make(**overrides: Any) -> RunContext:
        cfg = make_config(tmp_path, **overrides)
        layout = BuildLayout(work_root=cfg.work_root, out_dir=cfg.out_dir, run_id="test-run")
        return RunContext(
            run_id="test-run",
            layout=layout,
            config=cfg,
            logger=get_logger("tests"),
            events=EventSink(layout.events_jsonl()),
            base_dir=tmp_path,
        )

    return _make
