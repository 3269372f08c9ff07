import pytest

from nativepm.config import EMPTY_LAYER, BuildConfiguration, ConfigLayer, propagate
from nativepm.errors import ConfigurationConflictError
from nativepm.graph import DependencyGraph
from nativepm.models import DependencySpec, PackageId, PackageManifest, PackageRequest


def _manifest(
    name: str,
    *deps: str | DependencySpec,
    defaults: ConfigLayer = EMPTY_LAYER,
) -> PackageManifest:
    return PackageManifest(
        package=PackageId(name, "1.0"),
        dependencies=tuple(d if isinstance(d, DependencySpec) else DependencySpec(d) for d in deps),
        defaults=defaults,
    )


def _graph(*manifests: PackageManifest, roots: tuple[PackageRequest, ...]) -> DependencyGraph:
    """Assemble a graph by hand; node paths follow the first parent seen."""
    graph = DependencyGraph()
    by_name = {m.name: m for m in manifests}
    pending = [(request.name, (request.name,)) for request in roots]
    while pending:
        name, path = pending.pop(0)
        if name in graph:
            continue
        graph.add_node(by_name[name], path=path)
        for spec in by_name[name].dependencies:
            pending.append((spec.name, path + (spec.name,)))
    for node in graph.nodes:
        graph.set_dependencies(
            node.index, tuple(graph.index_of(spec.name) for spec in node.manifest.dependencies)
        )
    for request in roots:
        graph.requests[graph.index_of(request.name)] = request
    return graph


def _diamond(left: ConfigLayer, right: ConfigLayer) -> DependencyGraph:
    return _graph(
        _manifest("app", "left", "right"),
        _manifest("left", "shared", defaults=left),
        _manifest("right", "shared", defaults=right),
        _manifest("shared"),
        roots=(PackageRequest("app"),),
    )


def _by_name(
    graph: DependencyGraph, configs: dict[int, BuildConfiguration]
) -> dict[str, BuildConfiguration]:
    return {graph.nodes[index].name: config for index, config in configs.items()}


def test_root_request_values_flow_down_the_graph() -> None:
    graph = _graph(_manifest("app", "lib"), _manifest("lib"), roots=(PackageRequest("app"),))
    root = BuildConfiguration(build_type="Debug", install_prefix="/opt/sdk")

    configs = _by_name(graph, propagate(root, graph))

    assert configs["lib"].build_type == "Debug"
    assert configs["lib"].install_prefix == "/opt/sdk"


def test_package_default_beats_inherited_value() -> None:
    graph = _graph(
        _manifest("app", "lib"),
        _manifest("lib", defaults=ConfigLayer(build_type="Release")),
        roots=(PackageRequest("app"),),
    )
    configs = _by_name(graph, propagate(BuildConfiguration(build_type="Debug"), graph))

    assert configs["app"].build_type == "Debug"
    assert configs["lib"].build_type == "Release"


def test_explicit_override_beats_package_default() -> None:
    graph = _graph(
        _manifest("app", "lib"),
        _manifest("lib", defaults=ConfigLayer(build_type="Release", install_prefix="/usr")),
        roots=(PackageRequest("app"),),
    )
    overrides = {"lib": ConfigLayer(build_type="RelWithDebInfo")}

    configs = _by_name(graph, propagate(BuildConfiguration(), graph, overrides))

    assert configs["lib"].build_type == "RelWithDebInfo"
    assert configs["lib"].install_prefix == "/usr"


def test_overridden_value_is_what_dependents_inherit() -> None:
    graph = _graph(
        _manifest("app", "mid"),
        _manifest("mid", "leaf"),
        _manifest("leaf"),
        roots=(PackageRequest("app"),),
    )
    overrides = {"mid": ConfigLayer(install_prefix="/opt/mid")}

    configs = _by_name(graph, propagate(BuildConfiguration(), graph, overrides))

    assert configs["app"].install_prefix == "/usr/local"
    assert configs["leaf"].install_prefix == "/opt/mid"


def test_disagreeing_parents_raise_configuration_conflict() -> None:
    graph = _diamond(ConfigLayer(build_type="Debug"), ConfigLayer(build_type="Release"))

    with pytest.raises(ConfigurationConflictError) as excinfo:
        propagate(BuildConfiguration(), graph)

    error = excinfo.value
    assert error.code == "E_CONFIG_CONFLICT"
    assert error.context["package"] == "shared"
    assert error.context["field"] == "build_type"
    assert {error.context["first_value"], error.context["second_value"]} == {"Debug", "Release"}
    assert {error.context["first_path"], error.context["second_path"]} == {
        "app -> left -> shared",
        "app -> right -> shared",
    }


def test_conflict_is_settled_by_an_override() -> None:
    graph = _diamond(ConfigLayer(build_type="Debug"), ConfigLayer(build_type="Release"))
    overrides = {"shared": ConfigLayer(build_type="Release")}

    configs = _by_name(graph, propagate(BuildConfiguration(), graph, overrides))

    assert configs["shared"].build_type == "Release"


def test_conflict_is_settled_by_the_package_default() -> None:
    graph = _graph(
        _manifest("app", "left", "right"),
        _manifest("left", "shared", defaults=ConfigLayer(install_prefix="/a")),
        _manifest("right", "shared", defaults=ConfigLayer(install_prefix="/b")),
        _manifest("shared", defaults=ConfigLayer(install_prefix="/shared")),
        roots=(PackageRequest("app"),),
    )

    configs = _by_name(graph, propagate(BuildConfiguration(), graph))

    assert configs["shared"].install_prefix == "/shared"


def test_agreeing_parents_do_not_conflict() -> None:
    graph = _diamond(ConfigLayer(build_type="Debug"), ConfigLayer(build_type="Debug"))

    configs = _by_name(graph, propagate(BuildConfiguration(), graph))

    assert configs["shared"].build_type == "Debug"
    assert configs["app"].build_type == "Release"


def test_features_are_not_inherited_without_forwarding() -> None:
    graph = _graph(
        _manifest("app", "lib"),
        _manifest("lib"),
        roots=(PackageRequest("app", features=frozenset({"ssl"})),),
    )

    configs = _by_name(graph, propagate(BuildConfiguration(), graph))

    assert configs["app"].features == frozenset({"ssl"})
    assert configs["lib"].features == frozenset()


def test_forwarded_features_cross_the_edge_only_when_enabled() -> None:
    graph = _graph(
        _manifest("app", DependencySpec("lib", forward_features=frozenset({"ssl", "zstd"}))),
        _manifest("lib", defaults=ConfigLayer(features=frozenset({"threads"}))),
        roots=(PackageRequest("app", features=frozenset({"ssl"})),),
    )

    configs = _by_name(graph, propagate(BuildConfiguration(), graph))

    assert configs["lib"].features == frozenset({"ssl", "threads"})


def test_extra_args_and_verbose_precedence() -> None:
    graph = _graph(
        _manifest("app", "lib"),
        _manifest("lib", defaults=ConfigLayer(extra_args=("-DA=1",), verbose=False)),
        roots=(PackageRequest("app"),),
    )
    overrides = {"lib": ConfigLayer(extra_args=("-DB=2",), verbose=True)}

    configs = _by_name(graph, propagate(BuildConfiguration(verbose=False), graph, overrides))

    assert configs["lib"].extra_args == ("-DA=1", "-DB=2")
    assert configs["lib"].verbose is True
    assert configs["app"].verbose is False


def test_propagation_is_idempotent() -> None:
    graph = _diamond(ConfigLayer(install_prefix="/x"), ConfigLayer(install_prefix="/x"))
    root = BuildConfiguration(build_type="Debug", features=frozenset({"tests"}))

    first = propagate(root, graph)
    second = propagate(root, graph)

    assert first == second
    assert _by_name(graph, first)["shared"].install_prefix == "/x"


def test_configuration_payload_is_sorted() -> None:
    config = BuildConfiguration(features=frozenset({"zstd", "ssl"}), extra_args=("-DX=1",))
    assert config.to_payload() == {
        "build_type": "Release",
        "install_prefix": "/usr/local",
        "extra_args": ["-DX=1"],
        "verbose": False,
        "features": ["ssl", "zstd"],
    }
