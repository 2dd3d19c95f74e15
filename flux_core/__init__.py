"""
flux-core: blue/green lifecycle control for a locally supervised core binary.

This package provides:
- Side-by-side installs under ``versions/`` with a ``current`` symlink
- Checksum-verified download and install of GitHub release assets
- Canary runs of new versions before promotion
- Automatic rollback to the last known-good version on failed health checks
- Crash-safe ``state.json`` and host-wide advisory locks

Installation:
    pip install flux-core

Quickstart:
    from flux_core import CoreConfig, CoreOrchestrator

    orchestrator = CoreOrchestrator.from_config(CoreConfig.from_env())
    orchestrator.subscribe(lambda state: print(state.kind))

    await orchestrator.install("6.6.103-0")
    await orchestrator.start()

Quickstart (local binary):
    await orchestrator.install_from_file("/path/to/CLIProxyAPI", version="dev")
"""

from flux_core.config import FLUX_CORE_VERSION, CoreConfig, default_core_root
from flux_core.errors import (
    FluxCoreError,
    CoreError,
    CoreErrorCode,
    FileMissingError,
    VersionNotInstalledError,
    BinaryMissingError,
    ParseError,
    WriteError,
    PermissionDeniedError,
    LockError,
    CannotDeleteCurrentVersionError,
    ChecksumMismatchError,
    UnsupportedPlatformError,
)
from flux_core.types import (
    HostArch,
    LockName,
    ArchiveKind,
    ErrorInfo,
    Asset,
    Release,
    InstalledVersion,
    SourceInfo,
    BinaryInfo,
    VersionMetadata,
    UpgradeAttempt,
    PersistedCoreState,
)
from flux_core.state import (
    LifecycleState,
    Idle,
    Starting,
    Running,
    Stopping,
    Installing,
    Testing,
    Promoting,
    RollingBack,
    Error,
    encode_lifecycle_state,
    decode_lifecycle_state,
)
from flux_core._core.locks import HeldLock, LockManager
from flux_core._core.storage import VersionStore
from flux_core._core.state_store import LifecycleStateStore
from flux_core._core.releases import CachePolicy, ReleaseService
from flux_core._core.upgrader import CoreUpgrader
from flux_core._core.orchestrator import CoreOrchestrator

__version__ = FLUX_CORE_VERSION

__all__ = [
    # Version / config
    "__version__",
    "FLUX_CORE_VERSION",
    "CoreConfig",
    "default_core_root",
    # Errors
    "FluxCoreError",
    "CoreError",
    "CoreErrorCode",
    "FileMissingError",
    "VersionNotInstalledError",
    "BinaryMissingError",
    "ParseError",
    "WriteError",
    "PermissionDeniedError",
    "LockError",
    "CannotDeleteCurrentVersionError",
    "ChecksumMismatchError",
    "UnsupportedPlatformError",
    # Types
    "HostArch",
    "LockName",
    "ArchiveKind",
    "ErrorInfo",
    "Asset",
    "Release",
    "InstalledVersion",
    "SourceInfo",
    "BinaryInfo",
    "VersionMetadata",
    "UpgradeAttempt",
    "PersistedCoreState",
    # Lifecycle state
    "LifecycleState",
    "Idle",
    "Starting",
    "Running",
    "Stopping",
    "Installing",
    "Testing",
    "Promoting",
    "RollingBack",
    "Error",
    "encode_lifecycle_state",
    "decode_lifecycle_state",
    # Stores / locks
    "HeldLock",
    "LockManager",
    "VersionStore",
    "LifecycleStateStore",
    # Orchestration
    "CachePolicy",
    "ReleaseService",
    "CoreUpgrader",
    "CoreOrchestrator",
]
