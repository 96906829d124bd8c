from __future__ import annotations

import heapq
from dataclasses import dataclass
from typing import Iterable

from service_packager.core.errors import CyclicDependency, InvalidManifest
from service_packager.manifest import Manifest

_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass(frozen=True, slots=True)
class DependencyGraph:
    """
    Composite -> part edges over package names, stored as an arena of
    declaration-ordered names with integer adjacency lists.

    `order` is a topological order in which every part precedes each
    composite that contains it; ties are broken by declaration index.
    """

    names: tuple[str, ...]
    index: dict[str, int]
    parts: tuple[tuple[int, ...], ...]
    dependents: tuple[tuple[int, ...], ...]
    order: tuple[int, ...]

    def __len__(self) -> int:
        return len(self.names)

    def parts_of(self, name: str) -> list[str]:
        return [self.names[j] for j in self.parts[self.index[name]]]

    def dependents_of(self, name: str) -> list[str]:
        return [self.names[j] for j in self.dependents[self.index[name]]]

    def topological_order(self) -> list[str]:
        return [self.names[i] for i in self.order]

    def closure(self, targets: Iterable[str]) -> set[str]:
        """`targets` plus every package they (transitively) contain."""
        out: set[int] = set()
        stack = [self._require(t) for t in targets]
        while stack:
            i = stack.pop()
            if i in out:
                continue
            out.add(i)
            stack.extend(self.parts[i])
        return {self.names[i] for i in out}

    def transitive_dependents(self, name: str) -> set[str]:
        """Every composite that (transitively) contains `name`."""
        out: set[int] = set()
        stack = list(self.dependents[self._require(name)])
        while stack:
            i = stack.pop()
            if i in out:
                continue
            out.add(i)
            stack.extend(self.dependents[i])
        return {self.names[i] for i in out}

    def _require(self, name: str) -> int:
        try:
            return self.index[name]
        except KeyError:
            raise InvalidManifest([f"unknown package '{name}'"]) from None


def _find_cycle(parts: list[list[int]]) -> list[int] | None:
    """
    Iterative DFS with white/gray/black colors. Returns the cycle as a node
    path whose first and last element are the same node.
    """
    n = len(parts)
    color = [_WHITE] * n

    for start in range(n):
        if color[start] != _WHITE:
            continue
        path: list[int] = [start]
        iters = [iter(parts[start])]
        color[start] = _GRAY

        while iters:
            nxt = next(iters[-1], None)
            if nxt is None:
                color[path.pop()] = _BLACK
                iters.pop()
                continue
            if color[nxt] == _GRAY:
                return path[path.index(nxt) :] + [nxt]
            if color[nxt] == _WHITE:
                color[nxt] = _GRAY
                path.append(nxt)
                iters.append(iter(parts[nxt]))

    return None


def _kahn_order(parts: list[list[int]], dependents: list[list[int]]) -> list[int]:
    remaining = [len(p) for p in parts]
    ready = [i for i, deg in enumerate(remaining) if deg == 0]
    heapq.heapify(ready)

    order: list[int] = []
    while ready:
        i = heapq.heappop(ready)
        order.append(i)
        for d in dependents[i]:
            remaining[d] -= 1
            if remaining[d] == 0:
                heapq.heappush(ready, d)
    return order


def build_graph(manifest: Manifest) -> DependencyGraph:
    names = tuple(manifest.names())
    index = {name: i for i, name in enumerate(names)}

    parts: list[list[int]] = [[] for _ in names]
    dependents: list[list[int]] = [[] for _ in names]

    unknown: list[str] = []
    for spec in manifest.packages:
        i = index[spec.name]
        for part in spec.parts:
            j = index.get(part)
            if j is None:
                unknown.append(f"package '{spec.name}': composite part '{part}' is not declared")
                continue
            parts[i].append(j)
            dependents[j].append(i)
    if unknown:
        raise InvalidManifest(unknown)

    cycle = _find_cycle(parts)
    if cycle is not None:
        raise CyclicDependency([names[i] for i in cycle])

    order = _kahn_order(parts, dependents)
    if len(order) != len(names):
        raise CyclicDependency(
            sorted(names[i] for i in set(range(len(names))) - set(order))
        )

    return DependencyGraph(
        names=names,
        index=index,
        parts=tuple(tuple(p) for p in parts),
        dependents=tuple(tuple(sorted(d)) for d in dependents),
        order=tuple(order),
    )
