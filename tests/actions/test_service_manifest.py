from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from pathlib import Path

import pytest
from conftest import make_spec

from service_packager.actions.composite import (
    JsonManifestRenderer,
    SmfManifestRenderer,
    embed_service_manifest,
    get_renderer,
    register_renderer,
)
from service_packager.manifest import ServiceManifestSpec

LOCAL = {"type": "local", "build_command": ["true"], "source_paths": ["x"]}


def _sm(**extra: object) -> ServiceManifestSpec:
    return ServiceManifestSpec.model_validate(
        {
            "service_name": "nexus",
            "exec_path": "/opt/nexus/bin/nexus",
            "properties": {"port": 12221, "tls": True, "log/level": "info"},
            **extra,
        }
    )


def test_smf_manifest_shape() -> None:
    raw = SmfManifestRenderer().render(_sm(description="Nexus API"))
    text = raw.decode()
    assert text.startswith('<?xml version="1.0"?>\n<!DOCTYPE service_bundle')

    root = ET.fromstring(raw)
    assert root.tag == "service_bundle" and root.get("name") == "nexus"
    svc = root.find("service")
    assert svc is not None and svc.get("name") == "site/nexus"

    start = svc.find("exec_method[@name='start']")
    assert start is not None and start.get("exec") == "/opt/nexus/bin/nexus &"

    groups = {pg.get("name"): pg for pg in svc.findall("property_group")}
    assert sorted(groups) == ["config", "log"]
    props = {p.get("name"): (p.get("type"), p.get("value")) for p in groups["config"]}
    assert props == {"port": ("integer", "12221"), "tls": ("boolean", "true")}
    assert groups["log"][0].get("value") == "info"


def test_rendering_is_deterministic() -> None:
    a = _sm()
    b = ServiceManifestSpec.model_validate(
        {
            "service_name": "nexus",
            "exec_path": "/opt/nexus/bin/nexus",
            "properties": {"log/level": "info", "tls": True, "port": 12221},
        }
    )
    assert SmfManifestRenderer().render(a) == SmfManifestRenderer().render(b)


def test_json_renderer() -> None:
    doc = json.loads(JsonManifestRenderer().render(_sm()))
    assert doc["exec_path"] == "/opt/nexus/bin/nexus"
    assert doc["properties"] == {"config": {"port": 12221, "tls": True}, "log": {"level": "info"}}


def test_embed_locations(tmp_path: Path) -> None:
    tarball = make_spec("t", LOCAL, service_manifest=_sm().model_dump())
    assert embed_service_manifest(tarball, tmp_path / "t") == tmp_path / "t" / "manifest.xml"

    zone = make_spec("z", LOCAL, output_kind="zone", service_manifest=_sm().model_dump())
    written = embed_service_manifest(zone, tmp_path / "z", default_format="json")
    assert written == tmp_path / "z" / "var/svc/manifest/site/nexus/manifest.json"

    custom = make_spec("c", LOCAL, service_manifest=_sm(path="etc/svc.xml").model_dump())
    assert embed_service_manifest(custom, tmp_path / "c") == tmp_path / "c" / "etc" / "svc.xml"

    assert embed_service_manifest(make_spec("n", LOCAL), tmp_path / "n") is None


def test_renderer_registry() -> None:
    class UnitRenderer:
        format = "unit"
        filename = "nexus.service"

        def render(self, spec: ServiceManifestSpec) -> bytes:
            return f"[Service]\nExecStart={spec.exec_path}\n".encode()

    register_renderer(UnitRenderer())
    assert get_renderer("unit").filename == "nexus.service"
    with pytest.raises(ValueError, match="Unknown service manifest format"):
        get_renderer("launchd")
