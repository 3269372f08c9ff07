"""Dependency graph model and resolver."""

from .model import BuildPlan, DependencyGraph, GraphNode
from .resolve import ManifestProvider, PackageCatalog, Resolver, VersionProvider, version_sort_key

__all__ = [
    "BuildPlan",
    "DependencyGraph",
    "GraphNode",
    "ManifestProvider",
    "PackageCatalog",
    "Resolver",
    "VersionProvider",
    "version_sort_key",
]
