"""Top-level orchestration: detect once, resolve, execute, report."""

from __future__ import annotations

import json
import shutil
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from nativepm.builders import BuildSystem, default_build_systems
from nativepm.cache.store import ArtifactCache
from nativepm.config import BuildConfiguration, ConfigLayer
from nativepm.executor import BuildExecutor, ExecutionResult
from nativepm.graph.model import BuildPlan
from nativepm.graph.resolve import ManifestProvider, Resolver, VersionProvider
from nativepm.models import BuildKind, PackageRequest
from nativepm.observability import StructuredLogger
from nativepm.process import CancelToken, ProcessRunner, SubprocessRunner
from nativepm.settings import Settings
from nativepm.toolchain import (
    TargetDescriptor,
    ToolchainDetector,
    ToolchainIdentity,
    describe_toolchain,
    host_target,
    require_toolchain,
)


@dataclass(frozen=True, slots=True)
class RunContext:
    """Values fixed for the lifetime of one orchestration run."""

    run_id: str
    toolchain: ToolchainIdentity
    target: TargetDescriptor
    settings: Settings


@dataclass(slots=True)
class RunResult:
    context: RunContext
    plan: BuildPlan
    execution: ExecutionResult
    report_path: Path | None = None

    @property
    def succeeded(self) -> bool:
        return self.execution.succeeded


@dataclass(slots=True)
class Orchestrator:
    versions: VersionProvider
    manifests: ManifestProvider
    cache: ArtifactCache
    settings: Settings = field(default_factory=Settings)
    runner: ProcessRunner | None = None
    target: TargetDescriptor | None = None
    which: Callable[[str], str | None] = shutil.which
    build_systems: Mapping[BuildKind, BuildSystem] = field(default_factory=default_build_systems)
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    cancel: CancelToken = field(default_factory=CancelToken)
    _context: RunContext | None = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        if self.runner is None:
            self.runner = SubprocessRunner(
                cancel=self.cancel, poll_interval=self.settings.poll_interval
            )

    def start_run(self, *, redetect: bool = False) -> RunContext:
        """Detect the host toolchain once and pin it for the rest of the run."""
        if self._context is not None and not redetect:
            return self._context
        toolchain = ToolchainDetector(
            runner=self._runner(), which=self.which, logger=self.logger
        ).detect()
        if self.settings.require_toolchain:
            require_toolchain(toolchain)
        self._context = RunContext(
            run_id=uuid.uuid4().hex[:12],
            toolchain=toolchain,
            target=self.target or host_target(),
            settings=self.settings,
        )
        return self._context

    def plan(
        self,
        requests: Sequence[PackageRequest],
        *,
        root_config: BuildConfiguration | None = None,
        overrides: Mapping[str, ConfigLayer] | None = None,
    ) -> BuildPlan:
        context = self.start_run()
        resolver = Resolver(
            versions=self.versions,
            manifests=self.manifests,
            toolchain=context.toolchain,
            target=context.target,
            settings=self.settings,
            cache=self.cache,
            logger=self.logger,
        )
        return resolver.resolve(requests, root_config=root_config, overrides=overrides)

    def install(
        self,
        requests: Sequence[PackageRequest],
        *,
        root_config: BuildConfiguration | None = None,
        overrides: Mapping[str, ConfigLayer] | None = None,
    ) -> RunResult:
        context = self.start_run()
        # Each install is a fresh attempt; an earlier abort does not carry over.
        self.cancel.reset()
        build_plan = self.plan(requests, root_config=root_config, overrides=overrides)
        executor = BuildExecutor(
            cache=self.cache,
            runner=self._runner(),
            settings=self.settings,
            build_systems=self.build_systems,
            logger=self.logger,
            cancel=self.cancel,
        )
        execution = executor.execute(build_plan, context.toolchain)
        result = RunResult(context=context, plan=build_plan, execution=execution)
        if self.settings.report_dir is not None:
            result.report_path = self.write_report(result, self.settings.report_dir)
        return result

    def abort(self) -> None:
        """Cancel the install in progress and fail everything not yet cached."""
        self.logger.log(operation="abort", message="Orchestration run aborted.", level="warning")
        self.cancel.cancel()

    def write_report(self, result: RunResult, directory: Path) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        context = result.context
        outcomes = result.execution.outcomes
        payload = {
            "run_id": context.run_id,
            "toolchain": context.toolchain.to_record(),
            "toolchain_description": describe_toolchain(context.toolchain),
            "target": context.target.triple,
            "plan": result.plan.to_payload(),
            "outcomes": result.execution.to_payload(),
            "cache": {
                "hits": sorted(n for n, o in outcomes.items() if o.cache_hit),
                "misses": sorted(
                    n for n, o in outcomes.items() if not o.cache_hit and o.entry is not None
                ),
            },
            "failed": result.execution.failed(),
            "logs": self.logger.records,
        }
        report_path = directory / f"report-{context.run_id}.json"
        report_path.write_text(
            json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n",
            encoding="utf-8",
        )
        return report_path

    def _runner(self) -> ProcessRunner:
        if self.runner is None:
            raise RuntimeError("Orchestrator runner is not initialised.")
        return self.runner


__all__ = ["Orchestrator", "RunContext", "RunResult"]
