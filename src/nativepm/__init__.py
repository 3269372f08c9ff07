"""Public package entrypoint for the nativepm build orchestrator."""

from .abi import ABIFingerprint, BuildMode, CxxStandard, fingerprint, is_compatible
from .cache import CacheEntry, CacheKey, FileArtifactCache, MemoryArtifactCache
from .config import BuildConfiguration, ConfigLayer, propagate
from .errors import (
    AbiIncompatibilityError,
    BuildCancelledError,
    CacheIntegrityError,
    ConfigurationConflictError,
    DetectionUnavailableError,
    ExternalToolError,
    NativePmError,
    ResolutionError,
    StructuralCycleError,
    ValidationError,
)
from .executor import BuildExecutor, ExecutionResult
from .graph import BuildPlan, PackageCatalog, Resolver
from .models import (
    BuildKind,
    BuildState,
    DependencySpec,
    PackageId,
    PackageManifest,
    PackageRequest,
)
from .orchestrator import Orchestrator, RunContext, RunResult
from .settings import Settings
from .toolchain import (
    CompilerFamily,
    TargetDescriptor,
    ToolchainDetector,
    ToolchainIdentity,
    host_target,
)

__all__ = [
    "ABIFingerprint",
    "AbiIncompatibilityError",
    "BuildCancelledError",
    "BuildConfiguration",
    "BuildExecutor",
    "BuildKind",
    "BuildMode",
    "BuildPlan",
    "BuildState",
    "CacheEntry",
    "CacheIntegrityError",
    "CacheKey",
    "CompilerFamily",
    "ConfigLayer",
    "ConfigurationConflictError",
    "CxxStandard",
    "DependencySpec",
    "DetectionUnavailableError",
    "ExecutionResult",
    "ExternalToolError",
    "FileArtifactCache",
    "MemoryArtifactCache",
    "NativePmError",
    "Orchestrator",
    "PackageCatalog",
    "PackageId",
    "PackageManifest",
    "PackageRequest",
    "ResolutionError",
    "Resolver",
    "RunContext",
    "RunResult",
    "Settings",
    "StructuralCycleError",
    "TargetDescriptor",
    "ToolchainDetector",
    "ToolchainIdentity",
    "ValidationError",
    "fingerprint",
    "host_target",
    "is_compatible",
    "propagate",
]
