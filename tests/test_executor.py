from pathlib import Path

import pytest
from conftest import FakeRunner, RecordedCall

from nativepm.abi import CxxStandard
from nativepm.cache import CacheEntry, CacheKey, MemoryArtifactCache
from nativepm.executor import BuildExecutor
from nativepm.graph import BuildPlan, PackageCatalog, Resolver
from nativepm.models import (
    BuildKind,
    BuildState,
    DependencySpec,
    PackageId,
    PackageManifest,
    PackageRequest,
)
from nativepm.observability import StructuredLogger
from nativepm.process import CancelToken, ProcessResult
from nativepm.settings import Settings
from nativepm.toolchain import CompilerFamily, TargetDescriptor, ToolchainIdentity

GCC = ToolchainIdentity(CompilerFamily.GCC, "13.2.0", "/usr/bin/g++", "libstdc++")


def _script(name: str, *deps: str) -> PackageManifest:
    return PackageManifest(
        package=PackageId(name, "1.0"),
        dependencies=tuple(DependencySpec(dep) for dep in deps),
        build_kind=BuildKind.SCRIPT,
        script=f"echo build-{name}",
    )


NETWORK_STACK = (
    _script("app", "net", "json"),
    _script("net", "ssl"),
    _script("ssl", "zlib"),
    _script("json"),
    _script("zlib"),
)


@pytest.fixture
def make_plan(
    gcc_toolchain: ToolchainIdentity, linux_target: TargetDescriptor, settings: Settings
):
    def factory(*manifests: PackageManifest, root: str = "app") -> BuildPlan:
        catalog = PackageCatalog(manifests)
        resolver = Resolver(
            versions=catalog,
            manifests=catalog,
            toolchain=gcc_toolchain,
            target=linux_target,
            settings=settings,
        )
        return resolver.resolve([PackageRequest(root, cxx_standard=CxxStandard.CXX17)])

    return factory


def _executor(
    cache: MemoryArtifactCache,
    runner: FakeRunner,
    settings: Settings,
    *,
    cancel: CancelToken | None = None,
    logger: StructuredLogger | None = None,
) -> BuildExecutor:
    return BuildExecutor(
        cache=cache,
        runner=runner,
        settings=settings,
        logger=logger or StructuredLogger(),
        cancel=cancel or CancelToken(),
    )


def _built(runner: FakeRunner) -> list[str]:
    return [call.arguments[-1].removeprefix("echo build-") for call in runner.calls]


def test_fresh_plan_builds_every_node_in_dependency_order(
    make_plan, memory_cache: MemoryArtifactCache, settings: Settings
) -> None:
    plan = make_plan(*NETWORK_STACK)
    runner = FakeRunner()

    result = _executor(memory_cache, runner, settings).execute(plan, GCC)

    assert result.succeeded
    assert result.failed() == []
    assert set(plan.states().values()) == {BuildState.CACHED}
    built = _built(runner)
    assert sorted(built) == ["app", "json", "net", "ssl", "zlib"]
    assert built.index("zlib") < built.index("ssl") < built.index("net") < built.index("app")
    assert built.index("json") < built.index("app")
    for node in plan.nodes:
        assert memory_cache.get(plan.cache_key(node.index)) is not None
        assert result.outcomes[node.name].cache_hit is False


def test_script_steps_receive_build_environment(
    make_plan, memory_cache: MemoryArtifactCache, settings: Settings
) -> None:
    plan = make_plan(_script("app"))
    runner = FakeRunner()

    _executor(memory_cache, runner, settings).execute(plan, GCC)

    (call,) = runner.calls
    assert call.command == "sh"
    assert call.env is not None
    assert call.env["NATIVEPM_PACKAGE"] == "app"
    assert call.env["NATIVEPM_CXX_STANDARD"] == "c++17"
    assert call.env["NATIVEPM_BUILD_TYPE"] == "Release"
    assert call.env["CXX"] == "/usr/bin/g++"


def test_second_run_is_served_from_cache_without_spawning(
    make_plan, memory_cache: MemoryArtifactCache, settings: Settings
) -> None:
    _executor(memory_cache, FakeRunner(), settings).execute(make_plan(*NETWORK_STACK), GCC)
    plan = make_plan(*NETWORK_STACK)
    runner = FakeRunner()

    result = _executor(memory_cache, runner, settings).execute(plan, GCC)

    assert result.succeeded
    assert runner.calls == []
    assert all(outcome.cache_hit for outcome in result.outcomes.values())


def test_compatible_newer_standard_artifact_is_reused(
    make_plan, memory_cache: MemoryArtifactCache, settings: Settings, tmp_path: Path
) -> None:
    plan = make_plan(_script("app", "zlib"), _script("zlib"))
    zlib = plan.node("zlib")
    key = plan.cache_key(zlib.index)
    newer = CacheKey(
        package=key.package,
        version=key.version,
        fingerprint=key.fingerprint.with_standard(CxxStandard.CXX20),
        config_hash=key.config_hash,
    )
    staged = tmp_path / "prebuilt"
    staged.mkdir()
    prebuilt = memory_cache.store_artifact(newer, staged)
    runner = FakeRunner()

    result = _executor(memory_cache, runner, settings).execute(plan, GCC)

    assert result.outcomes["zlib"].cache_hit is True
    assert result.outcomes["zlib"].entry == prebuilt
    assert _built(runner) == ["app"]


def test_older_standard_artifact_is_rebuilt_for_newer_consumer(
    make_plan, memory_cache: MemoryArtifactCache, settings: Settings, tmp_path: Path
) -> None:
    modern = PackageManifest(
        package=PackageId("modern", "1.0"),
        dependencies=(DependencySpec("shared"),),
        cxx_standard=CxxStandard.CXX20,
        build_kind=BuildKind.SCRIPT,
        script="echo build-modern",
    )
    plan = make_plan(
        _script("app", "legacy", "modern"),
        _script("legacy", "shared"),
        modern,
        _script("shared"),
    )
    shared = plan.node("shared")
    assert shared.fingerprint.cxx_standard is CxxStandard.CXX20
    key = plan.cache_key(shared.index)
    older = CacheKey(
        package=key.package,
        version=key.version,
        fingerprint=key.fingerprint.with_standard(CxxStandard.CXX17),
        config_hash=key.config_hash,
    )
    staged = tmp_path / "prebuilt"
    staged.mkdir()
    prebuilt = memory_cache.store_artifact(older, staged)
    runner = FakeRunner()

    result = _executor(memory_cache, runner, settings).execute(plan, GCC)

    assert result.succeeded
    assert "shared" in _built(runner)
    outcome = result.outcomes["shared"]
    assert outcome.cache_hit is False
    assert outcome.entry != prebuilt
    assert outcome.entry.key.fingerprint.cxx_standard is CxxStandard.CXX20


def test_artifact_storage_failure_fails_nodes_without_crashing(
    make_plan, settings: Settings, tmp_path: Path
) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("", encoding="utf-8")
    cache = MemoryArtifactCache(artifact_root=blocker / "artifacts")
    plan = make_plan(*NETWORK_STACK)

    result = _executor(cache, FakeRunner(), settings).execute(plan, GCC)

    assert result.failed() == ["app", "json", "net", "ssl", "zlib"]
    assert all(state.is_terminal for state in plan.states().values())
    assert result.outcomes["zlib"].error_code == "E_EXTERNAL_TOOL"
    assert "Filesystem error" in result.outcomes["zlib"].diagnostics
    assert cache.entries("zlib", "1.0") == []


def test_failure_propagates_to_dependents_only(
    make_plan, memory_cache: MemoryArtifactCache, settings: Settings
) -> None:
    plan = make_plan(*NETWORK_STACK)
    logger = StructuredLogger()
    runner = FakeRunner({"build-ssl": ProcessResult(2, "", "ssl.c:12: compile error")})

    result = _executor(memory_cache, runner, settings, logger=logger).execute(plan, GCC)

    assert not result.succeeded
    assert result.failed() == ["app", "net", "ssl"]
    assert result.outcomes["zlib"].state is BuildState.CACHED
    assert result.outcomes["json"].state is BuildState.CACHED

    ssl = result.outcomes["ssl"]
    assert ssl.error_code == "E_EXTERNAL_TOOL"
    assert "compile error" in ssl.diagnostics
    assert "ssl@1.0" in result.outcomes["net"].diagnostics
    assert "ssl@1.0" in result.outcomes["app"].diagnostics

    assert "net" not in _built(runner)
    assert "app" not in _built(runner)
    assert memory_cache.get(plan.cache_key(plan.node("ssl").index)) is None
    assert any(record["level"] == "error" for record in logger.records_for_package("ssl"))


def test_tool_that_cannot_start_fails_the_node(
    make_plan, memory_cache: MemoryArtifactCache, settings: Settings
) -> None:
    plan = make_plan(_script("app"))
    runner = FakeRunner({"build-app": FileNotFoundError("sh")})

    result = _executor(memory_cache, runner, settings).execute(plan, GCC)

    assert result.failed() == ["app"]
    assert result.outcomes["app"].error_code == "E_EXTERNAL_TOOL"
    assert "Could not start" in result.outcomes["app"].diagnostics


def test_artifact_is_registered_before_node_is_cached(
    make_plan, settings: Settings, tmp_path: Path
) -> None:
    plan = make_plan(_script("app", "zlib"), _script("zlib"))
    seen: dict[str, BuildState] = {}

    class RecordingCache(MemoryArtifactCache):
        def put(self, key: CacheKey, entry: CacheEntry) -> CacheEntry:
            seen[key.package] = plan.node(key.package).state
            return super().put(key, entry)

    cache = RecordingCache(artifact_root=tmp_path / "artifacts")
    _executor(cache, FakeRunner(), settings).execute(plan, GCC)

    assert seen == {"zlib": BuildState.INSTALLING, "app": BuildState.INSTALLING}
    assert set(plan.states().values()) == {BuildState.CACHED}


def test_cancellation_kills_the_run_and_registers_nothing(
    make_plan, memory_cache: MemoryArtifactCache, settings: Settings
) -> None:
    plan = make_plan(_script("app", "lib"), _script("lib", "base"), _script("base"))
    cancel = CancelToken()

    def abort_during_base(call: RecordedCall) -> None:
        if "build-base" in call.display:
            cancel.cancel()

    runner = FakeRunner(on_run=abort_during_base)
    result = _executor(memory_cache, runner, settings, cancel=cancel).execute(plan, GCC)

    assert result.failed() == ["app", "base", "lib"]
    assert result.outcomes["base"].error_code == "E_CANCELLED"
    assert _built(runner) == ["base"]
    assert memory_cache.entries("base", "1.0") == []


def test_cancelled_before_start_attempts_nothing(
    make_plan, memory_cache: MemoryArtifactCache, settings: Settings
) -> None:
    plan = make_plan(*NETWORK_STACK)
    cancel = CancelToken()
    cancel.cancel()
    runner = FakeRunner()

    result = _executor(memory_cache, runner, settings, cancel=cancel).execute(plan, GCC)

    assert runner.calls == []
    assert len(result.failed()) == 5
    assert {outcome.error_code for outcome in result.outcomes.values()} == {"E_CANCELLED"}


def test_build_directories_are_released(
    make_plan, memory_cache: MemoryArtifactCache, settings: Settings
) -> None:
    plan = make_plan(*NETWORK_STACK)
    runner = FakeRunner({"build-net": ProcessResult(1, "", "boom")})

    _executor(memory_cache, runner, settings).execute(plan, GCC)

    assert list(settings.work_root.iterdir()) == []


def test_missing_build_system_fails_the_node(
    make_plan, memory_cache: MemoryArtifactCache, settings: Settings
) -> None:
    plan = make_plan(_script("app"))
    executor = BuildExecutor(
        cache=memory_cache,
        runner=FakeRunner(),
        settings=settings,
        build_systems={},
    )

    result = executor.execute(plan, GCC)

    assert result.outcomes["app"].error_code == "E_VALIDATION"


def test_execution_payload_is_serialisable(
    make_plan, memory_cache: MemoryArtifactCache, settings: Settings
) -> None:
    plan = make_plan(_script("app"))
    result = _executor(memory_cache, FakeRunner(), settings).execute(plan, GCC)

    payload = result.to_payload()
    assert payload["app"]["state"] == "Cached"
    assert payload["app"]["cache_key"] == plan.cache_key(plan.node("app").index).digest
    assert len(payload["app"]["checksum"]) == 64

