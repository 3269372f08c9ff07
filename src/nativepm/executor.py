"""Parallel, dependency-ordered execution of a build plan."""

from __future__ import annotations

import threading
import time
from collections.abc import Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from nativepm.builders import BuildContext, BuildSystem, default_build_systems
from nativepm.cache.keys import CacheKey
from nativepm.cache.store import ArtifactCache, CacheEntry
from nativepm.errors import (
    BuildCancelledError,
    ExternalToolError,
    NativePmError,
    ValidationError,
)
from nativepm.graph.model import BuildPlan, GraphNode
from nativepm.models import BuildKind, BuildState
from nativepm.observability import StructuredLogger
from nativepm.process import CancelToken, CommandSpec, ProcessRunner, run_command, scoped_build_dir
from nativepm.settings import Settings
from nativepm.toolchain import ToolchainIdentity


@dataclass(slots=True)
class NodeOutcome:
    package: str
    version: str
    state: BuildState
    cache_key: str
    cache_hit: bool = False
    entry: CacheEntry | None = None
    error_code: str | None = None
    diagnostics: str = ""
    duration: float = 0.0

    def to_payload(self) -> dict[str, Any]:
        return {
            "package": self.package,
            "version": self.version,
            "state": self.state.value,
            "cache_key": self.cache_key,
            "cache_hit": self.cache_hit,
            "artifact_path": str(self.entry.artifact_path) if self.entry is not None else None,
            "checksum": self.entry.checksum if self.entry is not None else None,
            "error_code": self.error_code,
            "diagnostics": self.diagnostics,
            "duration": round(self.duration, 3),
        }


@dataclass(slots=True)
class ExecutionResult:
    outcomes: dict[str, NodeOutcome] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return all(outcome.state is BuildState.CACHED for outcome in self.outcomes.values())

    def failed(self) -> list[str]:
        return sorted(
            name
            for name, outcome in self.outcomes.items()
            if outcome.state is BuildState.FAILED
        )

    def to_payload(self) -> dict[str, Any]:
        return {name: outcome.to_payload() for name, outcome in sorted(self.outcomes.items())}


@dataclass(slots=True)
class BuildExecutor:
    """Drive every plan node through configure, build and install.

    A node starts only after all of its dependencies are Cached. A failed
    node fails its pending dependents without running them; unrelated
    subtrees keep going. Nothing is retried.
    """

    cache: ArtifactCache
    runner: ProcessRunner
    settings: Settings = field(default_factory=Settings)
    build_systems: Mapping[BuildKind, BuildSystem] = field(default_factory=default_build_systems)
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    cancel: CancelToken = field(default_factory=CancelToken)
    _state_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _key_guard: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _key_locks: dict[str, threading.Lock] = field(default_factory=dict, repr=False)
    _outcomes: dict[int, NodeOutcome] = field(default_factory=dict, repr=False)

    def execute(self, plan: BuildPlan, toolchain: ToolchainIdentity) -> ExecutionResult:
        self._outcomes = {
            node.index: NodeOutcome(
                package=node.name,
                version=node.package.version,
                state=node.state,
                cache_key=plan.cache_key(node.index).digest,
            )
            for node in plan.nodes
        }
        remaining = list(plan.order)
        running: dict[Future[None], int] = {}

        with ThreadPoolExecutor(max_workers=self.settings.jobs) as pool:
            while True:
                if self.cancel.cancelled:
                    for index in remaining:
                        self._fail(
                            plan.nodes[index],
                            BuildCancelledError(
                                "Build run was aborted before this package started.",
                                context={"operation": "execute", "package": plan.nodes[index].name},
                            ),
                        )
                    remaining.clear()
                else:
                    for index in [i for i in remaining if self._ready(plan, i)]:
                        remaining.remove(index)
                        future = pool.submit(self._run_node, plan, index, toolchain)
                        running[future] = index

                if not running:
                    break
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    index = running.pop(future)
                    future.result()
                    if self._state_of(plan.nodes[index]) is BuildState.FAILED:
                        self._fail_dependents(plan, index, remaining)

        for index in remaining:
            self._fail(
                plan.nodes[index],
                ValidationError(
                    "Package could not be scheduled; its dependencies never completed.",
                    context={"operation": "execute", "package": plan.nodes[index].name},
                ),
            )

        result = ExecutionResult()
        for node in plan.nodes:
            outcome = self._outcomes[node.index]
            outcome.state = node.state
            result.outcomes[node.name] = outcome
        self.logger.log(
            operation="execute",
            message=(
                f"Build run finished: {len(plan.nodes) - len(result.failed())} cached, "
                f"{len(result.failed())} failed."
            ),
            level="info" if result.succeeded else "error",
        )
        return result

    # ── Scheduling ──────────────────────────────────────────────────

    def _ready(self, plan: BuildPlan, index: int) -> bool:
        return all(
            self._state_of(plan.nodes[dependency]) is BuildState.CACHED
            for dependency in plan.nodes[index].dependencies
        )

    def _fail_dependents(self, plan: BuildPlan, index: int, remaining: list[int]) -> None:
        failed = plan.nodes[index]
        for dependent in sorted(plan.graph.transitive_dependents(index)):
            if dependent in remaining:
                remaining.remove(dependent)
                self._fail(
                    plan.nodes[dependent],
                    ExternalToolError(
                        f"Dependency `{failed.package}` failed; package was not attempted.",
                        context={
                            "operation": "execute",
                            "package": plan.nodes[dependent].name,
                            "dependency": failed.name,
                        },
                    ),
                )

    # ── Per-node state machine ──────────────────────────────────────

    def _run_node(self, plan: BuildPlan, index: int, toolchain: ToolchainIdentity) -> None:
        node = plan.nodes[index]
        key = plan.cache_key(index)
        started = time.perf_counter()
        try:
            entry = self._lookup(key)
            if entry is not None:
                self._finish(node, entry, cache_hit=True)
                return

            self._transition(node, BuildState.RESOLVING)
            with self._key_lock(key):
                # Another worker may have produced this key while we waited.
                entry = self._lookup(key)
                if entry is not None:
                    self._finish(node, entry, cache_hit=True)
                    return
                entry = self._build(node, key, toolchain)
            self._finish(node, entry, cache_hit=False)
        except NativePmError as exc:
            self._fail(node, exc)
        except OSError as exc:
            self._fail(
                node,
                ExternalToolError(
                    f"Filesystem error while building `{node.package}`.",
                    hint="Check free space and permissions under the work and cache roots.",
                    context={
                        "operation": "build",
                        "package": node.name,
                        "path": str(exc.filename or ""),
                        "error": str(exc),
                    },
                ),
            )
        finally:
            self._outcomes[index].duration = time.perf_counter() - started

    def _build(self, node: GraphNode, key: CacheKey, toolchain: ToolchainIdentity) -> CacheEntry:
        system = self.build_systems.get(node.manifest.build_kind)
        if system is None:
            raise ValidationError(
                f"No build system registered for `{node.manifest.build_kind}`.",
                context={"operation": "build", "package": node.name},
            )
        if node.configuration is None or node.fingerprint is None:
            raise ValidationError(
                f"Package `{node.package}` was not resolved before execution.",
                context={"operation": "build", "package": node.name},
            )

        with scoped_build_dir(self.settings.work_root, prefix=f"{node.name}-") as workdir:
            ctx = BuildContext(
                manifest=node.manifest,
                configuration=node.configuration,
                fingerprint=node.fingerprint,
                toolchain=toolchain,
                build_dir=workdir / "build",
                stage_dir=workdir / "stage",
                parallelism=self.settings.build_parallelism,
            )
            ctx.build_dir.mkdir(parents=True)
            ctx.stage_dir.mkdir(parents=True)

            self._transition(node, BuildState.CONFIGURE_PENDING)
            self._transition(node, BuildState.CONFIGURING)
            self._step(node, "configure", system.configure(ctx))
            self._transition(node, BuildState.BUILDING)
            self._step(node, "build", system.build(ctx))
            self._transition(node, BuildState.INSTALLING)
            self._step(node, "install", system.install(ctx))

            # An aborted install must never be registered.
            self._check_cancelled(node, "register")
            return self.cache.store_artifact(key, ctx.stage_dir)

    def _step(self, node: GraphNode, phase: str, spec: CommandSpec | None) -> None:
        if spec is None:
            self.logger.log(
                operation="build",
                package=node.name,
                version=node.package.version,
                phase=phase,
                message=f"No {phase} step for this build system.",
            )
            return
        self._check_cancelled(node, phase)
        self.logger.log(
            operation="build",
            package=node.name,
            version=node.package.version,
            phase=phase,
            message=f"Running {spec.display()}",
        )
        try:
            result = run_command(self.runner, spec)
        except OSError as exc:
            raise ExternalToolError(
                f"Could not start the {phase} step for `{node.package}`.",
                hint="Ensure the build tool is installed and on PATH.",
                context={
                    "operation": phase,
                    "package": node.name,
                    "command": spec.display(),
                    "error": str(exc),
                },
            ) from exc
        if not result.ok:
            raise ExternalToolError(
                f"The {phase} step for `{node.package}` failed.",
                hint="Inspect the captured diagnostics; re-run the package once fixed.",
                context={
                    "operation": phase,
                    "package": node.name,
                    "returncode": str(result.exit_code),
                    "command": spec.display(),
                    "diagnostics": result.diagnostics(),
                },
            )

    def _check_cancelled(self, node: GraphNode, phase: str) -> None:
        if self.cancel.cancelled:
            raise BuildCancelledError(
                f"Build of `{node.package}` was cancelled.",
                context={"operation": phase, "package": node.name},
            )

    def _lookup(self, key: CacheKey) -> CacheEntry | None:
        entry = self.cache.get(key)
        if entry is not None:
            return entry
        return self.cache.find_compatible(
            key.package, key.version, key.fingerprint, config_hash=key.config_hash
        )

    def _key_lock(self, key: CacheKey) -> threading.Lock:
        with self._key_guard:
            return self._key_locks.setdefault(key.digest, threading.Lock())

    # ── State bookkeeping ───────────────────────────────────────────

    def _state_of(self, node: GraphNode) -> BuildState:
        with self._state_lock:
            return node.state

    def _transition(self, node: GraphNode, new: BuildState) -> None:
        with self._state_lock:
            node.transition(new)
        self.logger.log(
            operation="transition",
            package=node.name,
            version=node.package.version,
            phase=new.value,
            message=f"{node.package} -> {new.value}",
        )

    def _finish(self, node: GraphNode, entry: CacheEntry, *, cache_hit: bool) -> None:
        outcome = self._outcomes[node.index]
        outcome.entry = entry
        outcome.cache_hit = cache_hit
        self._transition(node, BuildState.CACHED)

    def _fail(self, node: GraphNode, error: NativePmError) -> None:
        with self._state_lock:
            if node.state.is_terminal:
                return
            node.diagnostics = str(error)
            node.transition(BuildState.FAILED)
        outcome = self._outcomes[node.index]
        outcome.error_code = error.code
        outcome.diagnostics = str(error)
        self.logger.log(
            operation="transition",
            package=node.name,
            version=node.package.version,
            phase=BuildState.FAILED.value,
            message=error.args[0] if error.args else str(error),
            level="error",
            extra=error.to_dict(),
        )


__all__ = ["BuildExecutor", "ExecutionResult", "NodeOutcome"]
