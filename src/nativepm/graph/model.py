"""Arena-backed dependency graph and validated build plan.

Nodes live in a list owned by the graph and refer to each other by index.
A package reached through several parents (a diamond) is one shared node.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field

from nativepm.abi import ABIFingerprint
from nativepm.cache.keys import CacheKey
from nativepm.config import BuildConfiguration
from nativepm.errors import StructuralCycleError, ValidationError
from nativepm.models import (
    BuildState,
    PackageId,
    PackageManifest,
    PackageRequest,
    check_transition,
)


@dataclass(slots=True)
class GraphNode:
    index: int
    manifest: PackageManifest
    path: tuple[str, ...]
    dependencies: tuple[int, ...] = ()
    configuration: BuildConfiguration | None = None
    fingerprint: ABIFingerprint | None = None
    state: BuildState = BuildState.PENDING
    diagnostics: str = ""

    @property
    def package(self) -> PackageId:
        return self.manifest.package

    @property
    def name(self) -> str:
        return self.manifest.name

    def transition(self, new: BuildState) -> None:
        check_transition(self.state, new)
        self.state = new


@dataclass(slots=True)
class DependencyGraph:
    nodes: list[GraphNode] = field(default_factory=list)
    requests: dict[int, PackageRequest] = field(default_factory=dict)
    _by_name: dict[str, int] = field(default_factory=dict, repr=False)

    def add_node(self, manifest: PackageManifest, *, path: tuple[str, ...]) -> int:
        if manifest.name in self._by_name:
            raise ValidationError(
                f"Package `{manifest.name}` is already part of the graph.",
                context={"operation": "add_node", "package": manifest.name},
            )
        index = len(self.nodes)
        self.nodes.append(GraphNode(index=index, manifest=manifest, path=path))
        self._by_name[manifest.name] = index
        return index

    def set_dependencies(self, index: int, dependencies: tuple[int, ...]) -> None:
        self.nodes[index].dependencies = dependencies

    def index_of(self, name: str) -> int:
        try:
            return self._by_name[name]
        except KeyError as exc:
            raise ValidationError(
                f"Package `{name}` is not part of the graph.",
                context={"operation": "index_of", "package": name},
            ) from exc

    def node(self, name: str) -> GraphNode:
        return self.nodes[self.index_of(name)]

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self.nodes)

    def edges(self) -> Iterator[tuple[int, int]]:
        for node in self.nodes:
            for dependency in node.dependencies:
                yield node.index, dependency

    def parents_of(self, index: int) -> tuple[int, ...]:
        return tuple(node.index for node in self.nodes if index in node.dependencies)

    def transitive_dependents(self, index: int) -> set[int]:
        found: set[int] = set()
        frontier = [index]
        while frontier:
            current = frontier.pop()
            for parent in self.parents_of(current):
                if parent not in found:
                    found.add(parent)
                    frontier.append(parent)
        return found

    def find_cycle(self) -> tuple[str, ...] | None:
        """Return one dependency cycle as package names, first name repeated last."""
        white, grey, black = 0, 1, 2
        color = [white] * len(self.nodes)
        stack: list[int] = []

        def visit(index: int) -> tuple[str, ...] | None:
            color[index] = grey
            stack.append(index)
            for dependency in self.nodes[index].dependencies:
                if color[dependency] == grey:
                    start = stack.index(dependency)
                    cycle = stack[start:] + [dependency]
                    return tuple(self.nodes[i].name for i in cycle)
                if color[dependency] == white:
                    found = visit(dependency)
                    if found is not None:
                        return found
            stack.pop()
            color[index] = black
            return None

        for node in self.nodes:
            if color[node.index] == white:
                found = visit(node.index)
                if found is not None:
                    return found
        return None

    def topological_order(self) -> tuple[int, ...]:
        """Return node indices with every dependency ahead of its dependents."""
        cycle = self.find_cycle()
        if cycle is not None:
            raise StructuralCycleError(
                "Dependency graph contains a cycle.",
                cycle=cycle,
                hint="Break the cycle in the package manifests; cyclic builds cannot be ordered.",
                context={"operation": "topological_order"},
            )

        order: list[int] = []
        placed: set[int] = set()

        def place(index: int) -> None:
            if index in placed:
                return
            for dependency in sorted(
                self.nodes[index].dependencies, key=lambda i: self.nodes[i].name
            ):
                place(dependency)
            placed.add(index)
            order.append(index)

        for node in sorted(self.nodes, key=lambda n: n.name):
            place(node.index)
        return tuple(order)


@dataclass(slots=True)
class BuildPlan:
    graph: DependencyGraph
    order: tuple[int, ...]
    cache_keys: dict[int, CacheKey]

    @property
    def nodes(self) -> list[GraphNode]:
        return self.graph.nodes

    def node(self, name: str) -> GraphNode:
        return self.graph.node(name)

    def cache_key(self, index: int) -> CacheKey:
        return self.cache_keys[index]

    def ordered_nodes(self) -> list[GraphNode]:
        return [self.graph.nodes[index] for index in self.order]

    def states(self) -> dict[str, BuildState]:
        return {node.name: node.state for node in self.graph.nodes}

    def to_payload(self) -> dict[str, object]:
        payload: list[dict[str, object]] = []
        for node in self.ordered_nodes():
            key = self.cache_keys[node.index]
            payload.append(
                {
                    "package": node.name,
                    "version": node.package.version,
                    "dependencies": sorted(self.graph.nodes[i].name for i in node.dependencies),
                    "fingerprint": key.fingerprint.to_record(),
                    "configuration": node.configuration.to_payload()
                    if node.configuration is not None
                    else None,
                    "cache_key": key.digest,
                    "state": node.state.value,
                }
            )
        return {"nodes": payload}


__all__ = ["BuildPlan", "DependencyGraph", "GraphNode"]
