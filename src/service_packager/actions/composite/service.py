from __future__ import annotations

import xml.etree.ElementTree as ET
from pathlib import Path, PurePosixPath
from typing import Protocol

from service_packager.core import atomic_write_bytes, stable_json_dumps
from service_packager.manifest import OutputKind, PackageSpec, ServiceManifestSpec
from service_packager.manifest.models import PropertyValue

SMF_DTD = "/usr/share/lib/xml/dtd/service_bundle.dtd.1"
DEFAULT_PROPERTY_GROUP = "config"


class ServiceManifestRenderer(Protocol):
    format: str
    filename: str

    def render(self, spec: ServiceManifestSpec) -> bytes: ...


def _property_type(value: PropertyValue) -> tuple[str, str]:
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "boolean", "true" if value else "false"
    if isinstance(value, int):
        return "integer", str(value)
    return "astring", str(value)


def group_properties(
    properties: dict[str, PropertyValue],
) -> dict[str, dict[str, PropertyValue]]:
    groups: dict[str, dict[str, PropertyValue]] = {}
    for key, value in properties.items():
        group, sep, name = key.partition("/")
        if not sep:
            group, name = DEFAULT_PROPERTY_GROUP, key
        groups.setdefault(group, {})[name] = value
    return groups


class SmfManifestRenderer:
    """
    SMF service bundle (service_bundle.dtd.1). Output is deterministic:
    property groups and properties are sorted by name.
    """

    format = "smf"
    filename = "manifest.xml"

    def render(self, spec: ServiceManifestSpec) -> bytes:
        bundle = ET.Element(
            "service_bundle", {"type": "manifest", "name": spec.service_name}
        )
        svc = ET.SubElement(
            bundle,
            "service",
            {"name": f"site/{spec.service_name}", "type": "service", "version": "1"},
        )
        ET.SubElement(svc, "create_default_instance", {"enabled": "false"})
        ET.SubElement(svc, "single_instance")

        dep = ET.SubElement(
            svc,
            "dependency",
            {
                "name": "multi_user",
                "grouping": "require_all",
                "restart_on": "none",
                "type": "service",
            },
        )
        ET.SubElement(dep, "service_fmri", {"value": "svc:/milestone/multi-user:default"})

        ET.SubElement(
            svc,
            "exec_method",
            {
                "type": "method",
                "name": "start",
                "exec": f"{spec.exec_path} &",
                "timeout_seconds": "0",
            },
        )
        ET.SubElement(
            svc,
            "exec_method",
            {"type": "method", "name": "stop", "exec": ":kill", "timeout_seconds": "0"},
        )

        for group, props in sorted(group_properties(spec.properties).items()):
            pg = ET.SubElement(svc, "property_group", {"name": group, "type": "application"})
            for name, value in sorted(props.items()):
                ptype, pvalue = _property_type(value)
                ET.SubElement(pg, "propval", {"name": name, "type": ptype, "value": pvalue})

        ET.SubElement(svc, "stability", {"value": "Unstable"})

        if spec.description:
            tmpl = ET.SubElement(svc, "template")
            name = ET.SubElement(tmpl, "common_name")
            ET.SubElement(name, "loctext", {"xml:lang": "C"}).text = spec.description

        ET.indent(bundle, space="  ")
        body = ET.tostring(bundle, encoding="unicode")
        header = f'<?xml version="1.0"?>\n<!DOCTYPE service_bundle SYSTEM "{SMF_DTD}">\n'
        return (header + body + "\n").encode("utf-8")


class JsonManifestRenderer:
    format = "json"
    filename = "manifest.json"

    def render(self, spec: ServiceManifestSpec) -> bytes:
        doc = {
            "service_name": spec.service_name,
            "exec_path": spec.exec_path,
            "description": spec.description,
            "properties": group_properties(spec.properties),
        }
        return (stable_json_dumps(doc) + "\n").encode("utf-8")


_RENDERERS: dict[str, ServiceManifestRenderer] = {
    SmfManifestRenderer.format: SmfManifestRenderer(),
    JsonManifestRenderer.format: JsonManifestRenderer(),
}


def register_renderer(renderer: ServiceManifestRenderer) -> None:
    _RENDERERS[renderer.format] = renderer


def known_formats() -> list[str]:
    return sorted(_RENDERERS)


def get_renderer(fmt: str) -> ServiceManifestRenderer:
    try:
        return _RENDERERS[fmt]
    except KeyError:
        raise ValueError(
            f"Unknown service manifest format {fmt!r}; known: {known_formats()}"
        ) from None


def service_manifest_relpath(
    spec: PackageSpec, sm: ServiceManifestSpec, renderer: ServiceManifestRenderer
) -> str:
    if sm.path:
        return sm.path
    if spec.output_kind is OutputKind.zone:
        return str(
            PurePosixPath("var/svc/manifest/site") / sm.service_name / renderer.filename
        )
    return renderer.filename


def embed_service_manifest(
    spec: PackageSpec, tree: Path, *, default_format: str = "smf"
) -> Path | None:
    """
    Render the package's service manifest into `tree`. Returns the written
    path, or None when the package declares no service manifest.
    """
    sm = spec.service_manifest
    if sm is None:
        return None
    renderer = get_renderer(sm.format or default_format)
    dest = Path(tree) / service_manifest_relpath(spec, sm, renderer)
    atomic_write_bytes(dest, renderer.render(sm))
    return dest
