from __future__ import annotations

import json
from pathlib import Path

import pytest

from service_packager.core import InvalidManifest
from service_packager.manifest import (
    CompositeLayout,
    LocalSource,
    OutputKind,
    PrebuiltSource,
    load_manifest,
    validate_manifest,
)

SHA = "sha256:" + "ab" * 32


def _local(*paths: str) -> dict:
    return {"type": "local", "build_command": ["true"], "source_paths": list(paths)}


def test_validate_manifest_table_form() -> None:
    raw = {
        "package": {
            "A": {"source": _local("a")},
            "B": {
                "source": {"type": "prebuilt", "url": "https://example.test/b.tar", "checksum": SHA},
                "intermediate": True,
            },
            "C": {
                "source": {"type": "composite", "parts": ["A", "B"]},
                "output_kind": "zone",
            },
        }
    }
    m = validate_manifest(raw, base_dir=Path("/srv/project"))

    assert m.names() == ["A", "B", "C"]
    assert m.default_targets() == ["A", "C"]
    assert m.base_dir == Path("/srv/project")
    assert isinstance(m.get("A").source, LocalSource)
    assert isinstance(m.get("B").source, PrebuiltSource)
    assert m.get("B").source.effective_filename() == "b.tar"
    assert m.get("C").parts == ("A", "B")
    assert m.get("C").source.layout is CompositeLayout.namespaced
    assert m.get("C").output_kind is OutputKind.zone
    assert m.get("A").output_kind is OutputKind.tarball


def test_validate_manifest_list_form_and_command_string() -> None:
    raw = {
        "package": [
            {
                "name": "web",
                "source": {
                    "type": "local",
                    "build_command": "make -C web 'OUT={output_dir}'",
                    "source_paths": [{"from": "web/dist", "to": "opt/web"}],
                },
            }
        ]
    }
    spec = validate_manifest(raw).get("web")
    assert spec.source.build_command == ["make", "-C", "web", "OUT={output_dir}"]
    assert spec.source.source_paths[0].dest == "opt/web"


def test_validate_manifest_collects_every_problem() -> None:
    raw = {
        "package": [
            {"name": "A", "source": _local("a")},
            {"name": "A", "source": _local("a2")},
            {"name": "E", "source": {"type": "local", "build_command": ["true"], "source_paths": []}},
            {"name": "P", "source": {"type": "prebuilt", "url": "https://example.test/p.tar"}},
            {"name": "Q", "source": {"type": "prebuilt", "url": "https://example.test/q", "checksum": "sha256:xyz"}},
            {"name": "C", "source": {"type": "composite", "parts": ["A", "ghost"]}},
        ]
    }
    with pytest.raises(InvalidManifest) as ei:
        validate_manifest(raw)

    text = "\n".join(ei.value.problems)
    assert "package 'A': duplicated name" in text
    assert "package 'E'" in text and "source_paths" in text
    assert "package 'P'" in text and "checksum" in text
    assert "package 'Q'" in text and "hex" in text
    assert "composite part 'ghost' is not declared" in text


@pytest.mark.parametrize(
    "source",
    [
        {"type": "prebuilt", "checksum": SHA},
        {"type": "prebuilt", "url": "ftp://example.test/x", "checksum": SHA},
        {"type": "composite", "parts": []},
        {"type": "composite", "parts": ["A", "A"]},
        {"type": "local", "build_command": [], "source_paths": ["a"]},
        {"type": "vendored"},
    ],
)
def test_validate_manifest_rejects_bad_sources(source: dict) -> None:
    raw = {"package": {"A": {"source": _local("a")}, "X": {"source": source}}}
    with pytest.raises(InvalidManifest):
        validate_manifest(raw)


def test_validate_manifest_rejects_colliding_destinations() -> None:
    raw = {"package": {"A": {"source": _local("x/bin", "y/bin")}}}
    with pytest.raises(InvalidManifest, match="collide"):
        validate_manifest(raw)


def test_validate_manifest_rejects_unknown_fields() -> None:
    raw = {"package": {"A": {"source": _local("a"), "colour": "blue"}}}
    with pytest.raises(InvalidManifest, match="colour"):
        validate_manifest(raw)


def test_validate_manifest_rejects_unknown_service_manifest_format() -> None:
    sm = {"service_name": "api", "exec_path": "/opt/api/bin/api", "format": "nope"}
    raw = {
        "package": {
            "A": {"source": _local("a"), "service_manifest": sm},
            "B": {"source": _local("b"), "service_manifest": {**sm, "format": "json"}},
        }
    }
    with pytest.raises(InvalidManifest) as ei:
        validate_manifest(raw)
    assert len(ei.value.problems) == 1
    assert ei.value.problems[0].startswith("package 'A': unknown service manifest format 'nope'")

    m = validate_manifest(raw, service_manifest_formats={"nope", "json"})
    assert m.names() == ["A", "B"]


def test_load_manifest_toml_resolves_against_its_directory(tmp_path: Path) -> None:
    proj = tmp_path / "proj"
    proj.mkdir()
    path = proj / "packages.toml"
    path.write_text(
        """
[package.A]
source = { type = "local", build_command = ["true"], source_paths = ["a"] }

[package.C]
output_kind = "zone"
source = { type = "composite", parts = ["A"], layout = "flatten" }

[package.C.service_manifest]
service_name = "c-svc"
exec_path = "/opt/c/bin/c"
properties = { port = 8080, "log/level" = "debug" }
"""
    )
    m = load_manifest(path)
    assert m.base_dir == proj.resolve()
    assert m.get("A").source.source_paths[0].resolve(m.base_dir) == proj.resolve() / "a"
    sm = m.get("C").service_manifest
    assert sm is not None and sm.properties == {"port": 8080, "log/level": "debug"}


def test_load_manifest_json_and_bad_files(tmp_path: Path) -> None:
    path = tmp_path / "packages.json"
    path.write_text(json.dumps({"package": {"A": {"source": _local("a")}}}))
    assert load_manifest(path).names() == ["A"]

    bad = tmp_path / "packages.yaml"
    bad.write_text("package: {}")
    with pytest.raises(InvalidManifest, match="unsupported"):
        load_manifest(bad)

    with pytest.raises(InvalidManifest, match="cannot read"):
        load_manifest(tmp_path / "missing.toml")

    broken = tmp_path / "broken.toml"
    broken.write_text("[package.A\n")
    with pytest.raises(InvalidManifest):
        load_manifest(broken)
