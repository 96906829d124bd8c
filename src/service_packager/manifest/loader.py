from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any, Collection, Iterable, Mapping, Optional

from pydantic import ValidationError

from service_packager.core.errors import InvalidManifest
from service_packager.core.hashing import parse_checksum

from .models import CompositeSource, LocalSource, Manifest, PackageSpec, PrebuiltSource


def format_errors(prefix: str, errors: Iterable[Mapping[str, Any]]) -> list[str]:
    lines: list[str] = []
    for e in errors:
        loc = ".".join(str(p) for p in e.get("loc", ())) or "<root>"
        lines.append(f"{prefix}: {loc}: {e.get('msg')}")
    return lines


def _declarations(raw: Mapping[str, Any], problems: list[str]) -> list[tuple[str, Any]]:
    """
    Accepts either a name-keyed table ([package.<name>]) or a list of entries
    carrying their own `name` ([[package]]).
    """
    if "package" not in raw:
        problems.append("manifest has no 'package' section")
        return []

    section = raw["package"]
    out: list[tuple[str, Any]] = []

    if isinstance(section, Mapping):
        for name, body in section.items():
            if isinstance(body, Mapping) and "name" in body and body["name"] != name:
                problems.append(
                    f"package '{name}': declared name {body['name']!r} does not match its key"
                )
                continue
            out.append((str(name), body))
        return out

    if isinstance(section, list):
        for idx, body in enumerate(section):
            if not isinstance(body, Mapping) or not body.get("name"):
                problems.append(f"package entry #{idx}: missing 'name'")
                continue
            out.append((str(body["name"]), body))
        return out

    problems.append(
        f"'package' must be a table or a list, got {type(section).__name__}"
    )
    return []


def validate_manifest(
    raw: Mapping[str, Any],
    *,
    base_dir: Path | None = None,
    checksum_algorithm: str = "sha256",
    service_manifest_formats: Optional[Collection[str]] = None,
) -> Manifest:
    """
    Validate raw package declarations into a Manifest.

    Collects every problem before raising so a single InvalidManifest lists
    all of them. Cycles are not checked here (see pipeline.graph).
    `service_manifest_formats` defaults to the registered renderers.
    """
    if service_manifest_formats is None:
        # actions imports this package; resolve the registry at call time
        from service_packager.actions.composite.service import known_formats

        service_manifest_formats = known_formats()

    if not isinstance(raw, Mapping):
        raise InvalidManifest([f"manifest must be a mapping, got {type(raw).__name__}"])

    problems: list[str] = []
    decls = _declarations(raw, problems)

    declared = [name for name, _ in decls]
    seen: set[str] = set()
    for name in declared:
        if name in seen:
            problems.append(f"package '{name}': duplicated name")
        seen.add(name)

    specs: list[PackageSpec] = []
    emitted: set[str] = set()
    for name, body in decls:
        if not isinstance(body, Mapping):
            problems.append(f"package '{name}': declaration must be a table")
            continue
        try:
            spec = PackageSpec.model_validate({**body, "name": name})
        except ValidationError as e:
            problems.extend(format_errors(f"package '{name}'", e.errors()))
            continue
        if name in emitted:
            continue
        emitted.add(name)
        specs.append(spec)

    for spec in specs:
        sm = spec.service_manifest
        if sm is not None and sm.format is not None and sm.format not in service_manifest_formats:
            problems.append(
                f"package '{spec.name}': unknown service manifest format {sm.format!r}"
                f" (known: {sorted(service_manifest_formats)})"
            )
        src = spec.source
        if isinstance(src, CompositeSource):
            for part in src.parts:
                if part not in seen:
                    problems.append(
                        f"package '{spec.name}': composite part '{part}' is not declared"
                    )
        elif isinstance(src, PrebuiltSource):
            try:
                parse_checksum(src.checksum or "", default_algorithm=checksum_algorithm)
            except ValueError as e:
                problems.append(f"package '{spec.name}': {e}")
        elif isinstance(src, LocalSource):
            dests = [p.dest for p in src.source_paths]
            dupes = sorted({d for d in dests if dests.count(d) > 1 and d != "."})
            if dupes:
                problems.append(
                    f"package '{spec.name}': source paths collide at {dupes}"
                )

    if problems:
        raise InvalidManifest(problems)

    return Manifest(
        packages=tuple(specs),
        base_dir=(base_dir or Path.cwd()).resolve(),
    )


def read_manifest_file(path: Path) -> dict[str, Any]:
    path = Path(path)
    suffix = path.suffix.lower()
    try:
        if suffix == ".toml":
            with path.open("rb") as f:
                return tomllib.load(f)
        if suffix == ".json":
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)
    except (tomllib.TOMLDecodeError, json.JSONDecodeError) as e:
        raise InvalidManifest([f"{path}: {e}"]) from e
    except OSError as e:
        raise InvalidManifest([f"{path}: cannot read manifest: {e}"]) from e

    raise InvalidManifest([f"{path}: unsupported manifest format '{suffix}'"])


def load_manifest(path: Path, *, checksum_algorithm: str = "sha256") -> Manifest:
    """
    Load a .toml or .json manifest; relative source paths resolve against
    the manifest's directory.
    """
    path = Path(path).expanduser().resolve()
    raw = read_manifest_file(path)
    return validate_manifest(
        raw, base_dir=path.parent, checksum_algorithm=checksum_algorithm
    )
