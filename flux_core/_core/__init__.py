"""
Core-process lifecycle internals for flux-core.

This module handles:
- Host platform detection and binary inspection
- Release feed, asset download and archive installation
- Version storage, lifecycle state persistence and advisory locks
- Process running, health probing, upgrades and rollback
"""

from flux_core._core.hashing import sha256_hex
from flux_core._core.arch import (
    current_host_arch,
    host_os_token,
    is_running_under_translation,
    is_translation_available,
)
from flux_core._core.locks import HeldLock, LockManager
from flux_core._core.storage import VersionStore
from flux_core._core.state_store import LifecycleStateStore
from flux_core._core.releases import CachePolicy, ReleaseCache, ReleaseService
from flux_core._core.assets import ChecksumVerifier, parse_checksums, select_asset
from flux_core._core.download import download_asset, download_asset_async
from flux_core._core.extract import extract_archive, find_executable, install_from_archive
from flux_core._core.inspector import binary_format, supported_architectures, validate_executable
from flux_core._core.runner import CoreRunner, ensure_core_config
from flux_core._core.health import is_healthy, is_healthy_async, wait_healthy
from flux_core._core.upgrader import CoreUpgrader
from flux_core._core.orchestrator import CoreOrchestrator

__all__ = [
    # Hashing / platform
    "sha256_hex",
    "current_host_arch",
    "host_os_token",
    "is_running_under_translation",
    "is_translation_available",
    # Locks / storage
    "HeldLock",
    "LockManager",
    "VersionStore",
    "LifecycleStateStore",
    # Releases
    "CachePolicy",
    "ReleaseCache",
    "ReleaseService",
    "ChecksumVerifier",
    "parse_checksums",
    "select_asset",
    "download_asset",
    "download_asset_async",
    # Install
    "extract_archive",
    "find_executable",
    "install_from_archive",
    "binary_format",
    "supported_architectures",
    "validate_executable",
    # Runtime
    "CoreRunner",
    "ensure_core_config",
    "is_healthy",
    "is_healthy_async",
    "wait_healthy",
    # Orchestration
    "CoreUpgrader",
    "CoreOrchestrator",
]
