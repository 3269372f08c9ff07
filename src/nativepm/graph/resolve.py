"""Dependency graph resolution into an ABI-validated build plan."""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, Self

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from nativepm.abi import ABIFingerprint, BuildMode, CxxStandard, fingerprint, is_compatible
from nativepm.cache.keys import cache_key
from nativepm.cache.store import ArtifactCache
from nativepm.config import EMPTY_LAYER, BuildConfiguration, ConfigLayer, propagate
from nativepm.errors import (
    AbiIncompatibilityError,
    ResolutionError,
    StructuralCycleError,
    ValidationError,
)
from nativepm.graph.model import BuildPlan, DependencyGraph
from nativepm.models import PackageId, PackageManifest, PackageRequest
from nativepm.observability import StructuredLogger
from nativepm.settings import Settings
from nativepm.toolchain import TargetDescriptor, ToolchainIdentity

REQUEST_LABEL = "<request>"


class VersionProvider(Protocol):
    def candidates(self, package_name: str, constraint: str) -> Sequence[str]:
        """Return available versions of *package_name* satisfying *constraint*."""


class ManifestProvider(Protocol):
    def manifest(self, package: PackageId) -> PackageManifest:
        """Return the declared metadata of one package version."""


def version_sort_key(version: str) -> tuple[Any, ...]:
    """Sort key placing PEP 440 versions above opaque strings."""
    try:
        return (1, Version(version), version)
    except InvalidVersion:
        return (0, version)


def _release(version: str) -> tuple[Any, ...]:
    return version_sort_key(version)[:2]


class PackageCatalog:
    """In-memory package index serving both versions and manifests."""

    def __init__(self, manifests: Iterable[PackageManifest] = ()) -> None:
        self._manifests: dict[str, dict[str, PackageManifest]] = defaultdict(dict)
        for manifest in manifests:
            self.add(manifest)

    def add(self, manifest: PackageManifest) -> Self:
        self._manifests[manifest.name][manifest.version] = manifest
        return self

    def candidates(self, package_name: str, constraint: str) -> list[str]:
        versions = list(self._manifests.get(package_name, {}))
        if constraint.strip():
            try:
                specifier = SpecifierSet(constraint)
            except InvalidSpecifier as exc:
                raise ValidationError(
                    f"Invalid version constraint `{constraint}`.",
                    hint="Use comma-separated specifiers such as `>=1.2,<2`.",
                    context={"operation": "candidates", "package": package_name},
                ) from exc
            versions = [v for v in versions if _satisfies(specifier, v)]
        return sorted(versions, key=version_sort_key, reverse=True)

    def manifest(self, package: PackageId) -> PackageManifest:
        try:
            return self._manifests[package.name][package.version]
        except KeyError as exc:
            raise ResolutionError(
                f"No manifest for `{package}`.",
                context={"operation": "manifest", "package": package.name},
            ) from exc


def _satisfies(specifier: SpecifierSet, version: str) -> bool:
    try:
        return specifier.contains(Version(version), prereleases=True)
    except InvalidVersion:
        return False


@dataclass(slots=True)
class _Closure:
    graph: DependencyGraph
    allowed: dict[str, list[str]]
    repin: dict[str, str]


@dataclass(slots=True)
class Resolver:
    """Resolve requested packages into an acyclic, ABI-compatible build plan.

    Single-threaded. Each pass rebuilds the graph from scratch; a pass that
    finds an incompatible edge may pin one alternate version of the
    offending dependency and start over, at most once per dependency.
    """

    versions: VersionProvider
    manifests: ManifestProvider
    toolchain: ToolchainIdentity
    target: TargetDescriptor
    settings: Settings = field(default_factory=Settings)
    cache: ArtifactCache | None = None
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def resolve(
        self,
        requests: Sequence[PackageRequest],
        root_config: BuildConfiguration | None = None,
        overrides: Mapping[str, ConfigLayer] | None = None,
    ) -> BuildPlan:
        if not requests:
            raise ValidationError(
                "resolve() requires at least one requested package.",
                context={"operation": "resolve"},
            )
        root = root_config or self.settings.global_defaults()
        overrides = overrides or {}
        pins: dict[str, str] = {}
        remediated: set[str] = set()

        for _ in range(self.settings.max_resolution_passes):
            closure = self._closure(requests, pins)
            if closure.repin:
                pins.update(closure.repin)
                continue

            graph = closure.graph
            cycle = graph.find_cycle()
            if cycle is not None:
                self.logger.log(
                    operation="resolve",
                    message="Dependency cycle detected.",
                    level="error",
                    extra={"cycle": list(cycle)},
                )
                raise StructuralCycleError(
                    "Dependency graph contains a cycle.",
                    cycle=cycle,
                    hint="Break the cycle in the package manifests; cyclic builds cannot be ordered.",
                    context={"operation": "resolve"},
                )

            configs = propagate(root, graph, overrides)
            self._assign_fingerprints(graph, configs)

            edge = self._first_incompatible_edge(graph)
            if edge is None:
                return self._plan(graph)

            parent, child = edge
            name = graph.nodes[child].name
            if name in remediated:
                raise self._abi_error(graph, parent, child)
            alternate = self._alternate_version(
                graph, child, closure.allowed[name], root, overrides
            )
            if alternate is None:
                raise self._abi_error(graph, parent, child)
            self.logger.log(
                operation="resolve",
                package=name,
                version=alternate,
                message=(
                    f"Replacing {graph.nodes[child].package} with {name}@{alternate} "
                    "to satisfy ABI requirements."
                ),
                level="warning",
            )
            remediated.add(name)
            pins[name] = alternate

        raise ResolutionError(
            "Resolution did not converge.",
            hint="Relax conflicting version constraints or raise max_resolution_passes.",
            context={
                "operation": "resolve",
                "passes": str(self.settings.max_resolution_passes),
            },
        )

    # ── Closure and version selection ───────────────────────────────

    def _closure(self, requests: Sequence[PackageRequest], pins: Mapping[str, str]) -> _Closure:
        graph = DependencyGraph()
        constraints: dict[str, list[tuple[str, str]]] = defaultdict(list)
        merged = _merge_requests(requests)
        for request in requests:
            constraints[request.name].append((REQUEST_LABEL, request.constraint))

        def choose(name: str) -> str:
            allowed = self._allowed(name, constraints[name])
            pin = pins.get(name)
            return pin if pin in allowed else allowed[0]

        queue: deque[int] = deque()
        for request in merged:
            version = choose(request.name)
            manifest = self.manifests.manifest(PackageId(request.name, version))
            index = graph.add_node(manifest, path=(request.name,))
            graph.requests[index] = request
            queue.append(index)

        while queue:
            index = queue.popleft()
            node = graph.nodes[index]
            dependencies: list[int] = []
            for spec in node.manifest.dependencies:
                constraints[spec.name].append((str(node.package), spec.constraint))
                if spec.name not in graph:
                    version = choose(spec.name)
                    manifest = self.manifests.manifest(PackageId(spec.name, version))
                    child = graph.add_node(manifest, path=node.path + (spec.name,))
                    queue.append(child)
                dependencies.append(graph.index_of(spec.name))
            graph.set_dependencies(index, tuple(dict.fromkeys(dependencies)))

        # Later requesters may exclude a version that was chosen before they were seen.
        allowed_map: dict[str, list[str]] = {}
        repin: dict[str, str] = {}
        for node in graph.nodes:
            allowed = self._allowed(node.name, constraints[node.name])
            allowed_map[node.name] = allowed
            if node.package.version not in allowed:
                repin[node.name] = allowed[0]
        return _Closure(graph=graph, allowed=allowed_map, repin=repin)

    def _allowed(self, name: str, constraints: list[tuple[str, str]]) -> list[str]:
        allowed: list[str] | None = None
        for _requester, constraint in constraints:
            candidates = list(self.versions.candidates(name, constraint))
            allowed = candidates if allowed is None else [v for v in allowed if v in candidates]
        allowed = sorted(allowed or [], key=version_sort_key, reverse=True)
        if not allowed:
            raise ResolutionError(
                f"No available version of `{name}` satisfies every constraint.",
                hint="Relax the version constraints or publish a matching version.",
                context={
                    "operation": "resolve",
                    "package": name,
                    "constraints": "; ".join(
                        f"{requester}: {constraint or '*'}"
                        for requester, constraint in constraints
                    ),
                },
            )
        return allowed

    # ── Fingerprints and compatibility ──────────────────────────────

    def _required_standard(self, graph: DependencyGraph, index: int) -> CxxStandard:
        needs: list[CxxStandard] = []
        request = graph.requests.get(index)
        if request is not None and request.cxx_standard is not None:
            needs.append(request.cxx_standard)
        for parent in graph.parents_of(index):
            parent_fp = graph.nodes[parent].fingerprint
            if parent_fp is not None:
                needs.append(parent_fp.cxx_standard)
        return max(needs) if needs else self.settings.cxx_standard

    def _assign_fingerprints(
        self, graph: DependencyGraph, configs: Mapping[int, BuildConfiguration]
    ) -> None:
        # Consumers first: a shared dependency is built for its strictest consumer.
        for index in reversed(graph.topological_order()):
            node = graph.nodes[index]
            config = configs[index]
            standard = node.manifest.built_standard(self._required_standard(graph, index))
            node.configuration = config
            node.fingerprint = fingerprint(
                self.toolchain,
                self.target,
                BuildMode.from_build_type(config.build_type),
                standard,
            )

    def _first_incompatible_edge(self, graph: DependencyGraph) -> tuple[int, int] | None:
        for parent in sorted(graph.nodes, key=lambda n: n.name):
            for child in sorted(parent.dependencies, key=lambda i: graph.nodes[i].name):
                required = _fingerprint_of(graph, parent.index)
                candidate = _fingerprint_of(graph, child)
                if not is_compatible(required, candidate):
                    return parent.index, child
        return None

    def _alternate_version(
        self,
        graph: DependencyGraph,
        index: int,
        allowed: list[str],
        root: BuildConfiguration,
        overrides: Mapping[str, ConfigLayer],
    ) -> str | None:
        """Pick the highest alternate version every parent can consume.

        Spellings of one release (``1.5`` and ``1.5.0``) tie; a tie goes to
        the spelling whose fingerprint is already cached. The cache is only
        consulted for ties.
        """
        node = graph.nodes[index]
        parents = graph.parents_of(index)
        usable: list[tuple[str, ABIFingerprint]] = []
        for version in allowed:
            if version == node.package.version:
                continue
            manifest = self.manifests.manifest(PackageId(node.name, version))
            prospective = self._prospective_fingerprint(graph, index, manifest, root, overrides)
            if prospective is None:
                continue
            if not all(
                is_compatible(_fingerprint_of(graph, parent), prospective) for parent in parents
            ):
                continue
            usable.append((version, prospective))
        if not usable:
            return None
        best = _release(usable[0][0])
        tied = [item for item in usable if _release(item[0]) == best]
        if len(tied) > 1 and self.cache is not None:
            for version, prospective in tied:
                if self.cache.find_compatible(node.name, version, prospective) is not None:
                    return version
        return tied[0][0]

    def _prospective_fingerprint(
        self,
        graph: DependencyGraph,
        index: int,
        manifest: PackageManifest,
        root: BuildConfiguration,
        overrides: Mapping[str, ConfigLayer],
    ) -> ABIFingerprint | None:
        override = overrides.get(manifest.name, EMPTY_LAYER)
        build_type = override.build_type or manifest.defaults.build_type
        if build_type is None:
            inherited = {
                _configuration_of(graph, parent).build_type for parent in graph.parents_of(index)
            }
            if index in graph.requests:
                inherited.add(root.build_type)
            if len(inherited) != 1:
                return None
            build_type = inherited.pop()
        standard = manifest.built_standard(self._required_standard(graph, index))
        return fingerprint(
            self.toolchain, self.target, BuildMode.from_build_type(build_type), standard
        )

    def _abi_error(self, graph: DependencyGraph, parent: int, child: int) -> AbiIncompatibilityError:
        parent_node = graph.nodes[parent]
        child_node = graph.nodes[child]
        others = [p for p in graph.parents_of(child) if p != parent]
        other_path = (
            graph.nodes[others[0]].path + (child_node.name,) if others else child_node.path
        )
        required = _fingerprint_of(graph, parent)
        candidate = _fingerprint_of(graph, child)
        self.logger.log(
            operation="resolve",
            package=child_node.name,
            version=child_node.package.version,
            message="ABI incompatibility could not be remediated.",
            level="error",
        )
        return AbiIncompatibilityError(
            f"No version of `{child_node.name}` satisfies the ABI requirements of every dependent.",
            hint="Align build types and language standards, or publish a compatible version.",
            context={
                "operation": "resolve",
                "package": child_node.name,
                "version": child_node.package.version,
                "requesting_path": " -> ".join(parent_node.path + (child_node.name,)),
                "other_path": " -> ".join(other_path),
                "required_fingerprint": required.canonical(),
                "candidate_fingerprint": candidate.canonical(),
            },
        )

    def _plan(self, graph: DependencyGraph) -> BuildPlan:
        order = graph.topological_order()
        keys = {
            node.index: cache_key(
                node.name,
                node.package.version,
                _fingerprint_of(graph, node.index),
                _configuration_of(graph, node.index),
            )
            for node in graph.nodes
        }
        self.logger.log(
            operation="resolve",
            message=f"Resolved build plan with {len(graph)} package(s).",
            extra={"order": [str(graph.nodes[i].package) for i in order]},
        )
        return BuildPlan(graph=graph, order=order, cache_keys=keys)


def _fingerprint_of(graph: DependencyGraph, index: int) -> ABIFingerprint:
    value = graph.nodes[index].fingerprint
    if value is None:
        raise ValidationError(
            "Node fingerprint accessed before assignment.",
            context={"operation": "resolve", "package": graph.nodes[index].name},
        )
    return value


def _configuration_of(graph: DependencyGraph, index: int) -> BuildConfiguration:
    value = graph.nodes[index].configuration
    if value is None:
        raise ValidationError(
            "Node configuration accessed before assignment.",
            context={"operation": "resolve", "package": graph.nodes[index].name},
        )
    return value


def _merge_requests(requests: Sequence[PackageRequest]) -> list[PackageRequest]:
    merged: dict[str, PackageRequest] = {}
    for request in requests:
        previous = merged.get(request.name)
        if previous is None:
            merged[request.name] = request
            continue
        standards = [s for s in (previous.cxx_standard, request.cxx_standard) if s is not None]
        merged[request.name] = PackageRequest(
            name=request.name,
            constraint=previous.constraint,
            cxx_standard=max(standards) if standards else None,
            features=previous.features | request.features,
        )
    return list(merged.values())


__all__ = [
    "ManifestProvider",
    "PackageCatalog",
    "Resolver",
    "VersionProvider",
    "version_sort_key",
]
