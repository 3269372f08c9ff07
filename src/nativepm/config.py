"""Effective build configuration per graph node.

Inheritable settings (build type, install prefix) flow from requesters to
their dependencies. Precedence for a node is: explicit override for that
package, then the package's declared defaults, then the value inherited from
its requesters. Feature flags only cross an edge when the parent forwards
them explicitly.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from nativepm.errors import ConfigurationConflictError

if TYPE_CHECKING:
    from nativepm.graph.model import DependencyGraph

INHERITED_FIELDS = ("build_type", "install_prefix")


@dataclass(frozen=True, slots=True)
class BuildConfiguration:
    build_type: str = "Release"
    install_prefix: str = "/usr/local"
    extra_args: tuple[str, ...] = ()
    verbose: bool = False
    features: frozenset[str] = frozenset()

    def to_payload(self) -> dict[str, Any]:
        return {
            "build_type": self.build_type,
            "install_prefix": self.install_prefix,
            "extra_args": list(self.extra_args),
            "verbose": self.verbose,
            "features": sorted(self.features),
        }


@dataclass(frozen=True, slots=True)
class ConfigLayer:
    """A partial configuration: package defaults or an explicit override."""

    build_type: str | None = None
    install_prefix: str | None = None
    extra_args: tuple[str, ...] = ()
    verbose: bool | None = None
    features: frozenset[str] = field(default_factory=frozenset)


EMPTY_LAYER = ConfigLayer()


def propagate(
    root_request: BuildConfiguration,
    graph: DependencyGraph,
    overrides: Mapping[str, ConfigLayer] | None = None,
) -> dict[int, BuildConfiguration]:
    """Compute the effective configuration of every node in *graph*.

    Raises :class:`ConfigurationConflictError` when two requesters hand a
    shared node different inheritable values and nothing closer settles it.
    """
    overrides = overrides or {}
    results: dict[int, BuildConfiguration] = {}

    # Requesters must be settled before anything inherits from them.
    for index in reversed(graph.topological_order()):
        node = graph.nodes[index]
        override = overrides.get(node.name, EMPTY_LAYER)
        defaults = node.manifest.defaults

        sources: list[tuple[tuple[str, ...], BuildConfiguration]] = []
        if index in graph.requests:
            sources.append((("<request>", node.name), root_request))
        for parent in graph.parents_of(index):
            sources.append((graph.nodes[parent].path + (node.name,), results[parent]))

        picked = {
            name: _pick(
                package=node.name,
                field_name=name,
                override=getattr(override, name),
                default=getattr(defaults, name),
                sources=[(path, getattr(config, name)) for path, config in sources],
                fallback=getattr(root_request, name),
            )
            for name in INHERITED_FIELDS
        }

        if override.verbose is not None:
            verbose = override.verbose
        elif defaults.verbose is not None:
            verbose = defaults.verbose
        else:
            verbose = root_request.verbose

        features = set(defaults.features) | set(override.features)
        if index in graph.requests:
            features |= root_request.features | graph.requests[index].features
        for parent in graph.parents_of(index):
            forwarded = graph.nodes[parent].manifest.forwarded_features(node.name)
            features |= forwarded & results[parent].features

        results[index] = BuildConfiguration(
            build_type=picked["build_type"],
            install_prefix=picked["install_prefix"],
            extra_args=defaults.extra_args + override.extra_args,
            verbose=verbose,
            features=frozenset(features),
        )
    return results


def _pick(
    *,
    package: str,
    field_name: str,
    override: str | None,
    default: str | None,
    sources: list[tuple[tuple[str, ...], str]],
    fallback: str,
) -> str:
    if override is not None:
        return override
    if default is not None:
        return default
    if not sources:
        return fallback

    first_path, first_value = sources[0]
    for path, value in sources[1:]:
        if value != first_value:
            raise ConfigurationConflictError(
                f"Requesters disagree on `{field_name}` for shared package `{package}`.",
                hint=(
                    f"Pin `{field_name}` for `{package}` with an explicit override "
                    "or align the requesting packages."
                ),
                context={
                    "operation": "propagate",
                    "package": package,
                    "field": field_name,
                    "first_path": " -> ".join(first_path),
                    "first_value": first_value,
                    "second_path": " -> ".join(path),
                    "second_value": value,
                },
            )
    return first_value


__all__ = ["BuildConfiguration", "ConfigLayer", "EMPTY_LAYER", "propagate"]
