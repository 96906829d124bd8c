from __future__ import annotations

import pytest

from service_packager.core import CyclicDependency, InvalidManifest
from service_packager.manifest import validate_manifest
from service_packager.pipeline import build_graph

LOCAL = {"type": "local", "build_command": ["true"], "source_paths": ["x"]}


def _composite(*parts: str) -> dict:
    return {"source": {"type": "composite", "parts": list(parts)}}


def test_topological_order_puts_parts_first() -> None:
    m = validate_manifest(
        {
            "package": {
                "app": _composite("lib", "assets"),
                "bundle": _composite("app", "tool"),
                "lib": {"source": LOCAL},
                "assets": {"source": LOCAL},
                "tool": {"source": LOCAL},
            }
        }
    )
    g = build_graph(m)
    order = g.topological_order()

    assert sorted(order) == sorted(m.names())
    pos = {name: i for i, name in enumerate(order)}
    for spec in m.packages:
        for part in spec.parts:
            assert pos[part] < pos[spec.name]
    # ties broken by declaration order
    assert order == ["lib", "assets", "app", "tool", "bundle"]

    assert g.parts_of("bundle") == ["app", "tool"]
    assert g.dependents_of("lib") == ["app"]
    assert g.transitive_dependents("lib") == {"app", "bundle"}
    assert g.closure(["app"]) == {"app", "lib", "assets"}


def test_two_package_cycle_names_both() -> None:
    m = validate_manifest({"package": {"A": _composite("B"), "B": _composite("A")}})
    with pytest.raises(CyclicDependency) as ei:
        build_graph(m)
    cycle = ei.value.cycle
    assert set(cycle) == {"A", "B"}
    assert cycle[0] == cycle[-1]
    assert "A" in str(ei.value) and "B" in str(ei.value)


def test_self_cycle_and_longer_cycle() -> None:
    with pytest.raises(CyclicDependency):
        build_graph(validate_manifest({"package": {"A": _composite("A")}}))

    m = validate_manifest(
        {
            "package": {
                "leaf": {"source": LOCAL},
                "A": _composite("B", "leaf"),
                "B": _composite("C"),
                "C": _composite("A"),
            }
        }
    )
    with pytest.raises(CyclicDependency) as ei:
        build_graph(m)
    assert set(ei.value.cycle) == {"A", "B", "C"}


def test_unknown_names_are_structural_errors() -> None:
    g = build_graph(validate_manifest({"package": {"A": {"source": LOCAL}}}))
    with pytest.raises(InvalidManifest):
        g.closure(["nope"])
