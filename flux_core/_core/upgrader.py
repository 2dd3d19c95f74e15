"""
Install / upgrade workflow for core versions.

One run, under the host-wide ``upgrade`` lock:

    fetch_release -> select_asset -> download -> verify_checksum
      -> extract_install -> validate_binary -> write_metadata
      -> dry_run_start -> dry_run_health -> dry_run_stop      (canary)
      -> promote -> prune -> done

Everything up to the canary happens in ``versions/.staging-<id>/``; the
staged directory only becomes ``versions/<version>/`` once the canary
passes (or straight away when the version is not being activated). A
failure discards the staging directory, so an existing installation of
the same version, current or not, is never touched. The failed attempt is
recorded in ``state.json`` and re-raised. A failed canary also counts as a
health failure and re-asserts ``current`` on the last known-good version
before the error propagates.

The canary runs on a ``CoreRunner`` of its own, never the production one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from flux_core.config import GITHUB_REPO, CoreConfig
from flux_core.errors import ChecksumMismatchError, CoreError, CoreErrorCode
from flux_core.serialization import utcnow
from flux_core.state import LifecycleState, Promoting, RollingBack, Testing
from flux_core.types import (
    BinaryInfo,
    HostArch,
    InstalledVersion,
    LockName,
    PersistedCoreState,
    SourceInfo,
    UpgradeAttempt,
    VersionMetadata,
)
from flux_core._core.arch import current_host_arch, host_os_token
from flux_core._core.assets import ChecksumVerifier, select_asset
from flux_core._core.download import download_asset_async
from flux_core._core.extract import install_binary, install_from_archive
from flux_core._core.hashing import sha256_hex
from flux_core._core.health import is_healthy_async
from flux_core._core.inspector import FORMAT_MACHO, binary_format, validate_executable
from flux_core._core.locks import LockManager
from flux_core._core.releases import CachePolicy, ReleaseService
from flux_core._core.runner import CoreRunner, ensure_core_config
from flux_core._core.state_store import LifecycleStateStore
from flux_core._core.storage import VersionStore, validate_version_name

logger = logging.getLogger(__name__)

# (stage, fraction or None)
ProgressCallback = Callable[[str, Optional[float]], None]
LifecycleCallback = Callable[[LifecycleState], None]

# Stages reported while the new version is still being prepared.
INSTALL_STAGES = (
    "fetch_latest",
    "fetch_release",
    "select_asset",
    "download",
    "verify_checksum",
    "extract_install",
    "copy_local_binary",
    "validate_binary",
    "write_metadata",
)

ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".zip")

RESULT_SUCCESS = "success"
RESULT_FAILED = "failed"

LOCAL_SOURCE_REPO = "local"


def normalize_tag(version_or_tag: str) -> str:
    """``6.6.103-0`` -> ``v6.6.103-0``; tags pass through."""
    return version_or_tag if version_or_tag.startswith("v") else f"v{version_or_tag}"


@dataclass
class _Attempt:
    version: str
    started_at: datetime
    staging: Optional[Path] = None
    committed: bool = False
    # True when the commit replaced an existing installation.
    replaced: bool = False


class CoreUpgrader:
    """
    Installs core versions and promotes them after a canary run.

    Usage:
        upgrader = CoreUpgrader(store, state_store, locks, releases, canary_runner, config)
        installed = await upgrader.install("6.6.103-0")

    ``canary_runner`` must be dedicated to canaries; it is stopped after
    every dry run.
    """

    def __init__(
        self,
        store: VersionStore,
        state_store: LifecycleStateStore,
        locks: LockManager,
        releases: ReleaseService,
        canary_runner: CoreRunner,
        config: CoreConfig,
        checksum_verifier: Optional[ChecksumVerifier] = None,
        host_arch: Optional[HostArch] = None,
        os_name: Optional[str] = None,
    ):
        self.store = store
        self.state_store = state_store
        self.locks = locks
        self.releases = releases
        self.canary_runner = canary_runner
        self.config = config
        self.checksum_verifier = checksum_verifier or ChecksumVerifier()
        self.host_arch = host_arch
        self.os_name = os_name

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def install(
        self,
        version: str,
        set_active: bool = True,
        progress: Optional[ProgressCallback] = None,
        on_lifecycle: Optional[LifecycleCallback] = None,
    ) -> InstalledVersion:
        """
        Download, verify and install ``version`` (tag or bare version).

        With ``set_active`` the new version is canaried and promoted.

        Raises:
            CoreError: Any failure along the pipeline; the attempt is recorded
        """
        async with self.locks.hold(LockName.UPGRADE, self.config.lock_poll_interval):
            attempt = _Attempt(version=normalize_tag(version)[1:], started_at=utcnow())
            return await self._guarded(
                attempt,
                lambda: self._install_release(attempt, version, set_active, progress, on_lifecycle),
            )

    async def install_from_file(
        self,
        path: Path,
        version: str = "custom",
        set_active: bool = True,
        progress: Optional[ProgressCallback] = None,
        on_lifecycle: Optional[LifecycleCallback] = None,
    ) -> InstalledVersion:
        """
        Install a local release archive or bare binary as ``version``.
        """
        validate_version_name(version)
        async with self.locks.hold(LockName.UPGRADE, self.config.lock_poll_interval):
            attempt = _Attempt(version=version, started_at=utcnow())
            return await self._guarded(
                attempt,
                lambda: self._install_local(attempt, Path(path), set_active, progress, on_lifecycle),
            )

    async def upgrade_to_latest(
        self,
        progress: Optional[ProgressCallback] = None,
        on_lifecycle: Optional[LifecycleCallback] = None,
    ) -> InstalledVersion:
        """Install and promote the newest published release."""
        _report(progress, "fetch_latest")
        latest = await self.releases.fetch_latest_async(CachePolicy.RELOAD_REVALIDATING_CACHE_DATA)
        logger.info(f"Latest core release is {latest.tag_name}")
        return await self.install(
            latest.version_string,
            set_active=True,
            progress=progress,
            on_lifecycle=on_lifecycle,
        )

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    async def _install_release(
        self,
        attempt: _Attempt,
        version: str,
        set_active: bool,
        progress: Optional[ProgressCallback],
        on_lifecycle: Optional[LifecycleCallback],
    ) -> InstalledVersion:
        loop = asyncio.get_running_loop()

        _report(progress, "fetch_release")
        release = await self.releases.fetch_release_async(
            normalize_tag(version),
            CachePolicy.RELOAD_REVALIDATING_CACHE_DATA,
        )
        attempt.version = validate_version_name(release.version_string)

        _report(progress, "select_asset")
        host_arch = self.host_arch or current_host_arch()
        asset = select_asset(release, host_arch, self.os_name or host_os_token())

        _report(progress, "download", 0.0)

        def on_download(received: int, expected: int) -> None:
            fraction = min(1.0, received / expected) if expected > 0 else None
            loop.call_soon_threadsafe(_report, progress, "download", fraction)

        archive = await download_asset_async(
            asset,
            self.store.downloads_dir,
            timeout=self.config.download_timeout,
            progress=on_download if progress is not None else None,
        )

        try:
            _report(progress, "verify_checksum")
            await self.checksum_verifier.verify_async(archive, asset, release)

            _report(progress, "extract_install")
            attempt.staging = self.store.create_staging_dir()
            installed_path, name_in_archive = await loop.run_in_executor(
                None, install_from_archive, archive, attempt.staging, self.store.binary_name
            )
        finally:
            _discard_download(archive)

        _report(progress, "validate_binary")
        selected_arch = await loop.run_in_executor(None, validate_executable, installed_path, host_arch)

        _report(progress, "write_metadata")
        source = SourceInfo(
            repo=GITHUB_REPO,
            tag=release.tag_name,
            asset_name=asset.name,
            asset_url=asset.browser_download_url,
            asset_sha256=asset.sha256_digest,
        )
        await loop.run_in_executor(
            None, self._write_metadata, attempt, installed_path, source, selected_arch, name_in_archive
        )

        return await self._finish(attempt, installed_path, set_active, progress, on_lifecycle)

    async def _install_local(
        self,
        attempt: _Attempt,
        path: Path,
        set_active: bool,
        progress: Optional[ProgressCallback],
        on_lifecycle: Optional[LifecycleCallback],
    ) -> InstalledVersion:
        loop = asyncio.get_running_loop()
        name_in_archive = None

        if path.name.lower().endswith(ARCHIVE_SUFFIXES):
            _report(progress, "extract_install")
            attempt.staging = self.store.create_staging_dir()
            installed_path, name_in_archive = await loop.run_in_executor(
                None, install_from_archive, path, attempt.staging, self.store.binary_name
            )
        else:
            _report(progress, "copy_local_binary")
            if not path.is_file():
                raise CoreError("Local core binary not found", details=str(path), code=CoreErrorCode.FILE_MISSING)
            attempt.staging = self.store.create_staging_dir()
            installed_path = await loop.run_in_executor(
                None, install_binary, path, attempt.staging, self.store.binary_name
            )

        _report(progress, "validate_binary")
        selected_arch = await loop.run_in_executor(None, validate_executable, installed_path, self.host_arch)

        _report(progress, "write_metadata")
        source = SourceInfo(
            repo=LOCAL_SOURCE_REPO,
            tag=attempt.version,
            asset_name=path.name,
            asset_url=path.resolve().as_uri(),
            asset_sha256=await loop.run_in_executor(None, sha256_hex, path),
        )
        await loop.run_in_executor(
            None, self._write_metadata, attempt, installed_path, source, selected_arch, name_in_archive
        )

        return await self._finish(attempt, installed_path, set_active, progress, on_lifecycle)

    async def _finish(
        self,
        attempt: _Attempt,
        staged_executable: Path,
        set_active: bool,
        progress: Optional[ProgressCallback],
        on_lifecycle: Optional[LifecycleCallback],
    ) -> InstalledVersion:
        if set_active:
            await self._canary(attempt.version, staged_executable, progress, on_lifecycle)

        attempt.replaced = self.store.commit_staged(attempt.staging, attempt.version)
        attempt.committed = True

        if set_active:
            self._promote(attempt.version, progress, on_lifecycle)

        _report(progress, "done", 1.0)
        return self._installed_version(attempt.version)

    # ------------------------------------------------------------------
    # Canary / promotion
    # ------------------------------------------------------------------

    async def _canary(
        self,
        version: str,
        executable: Path,
        progress: Optional[ProgressCallback],
        on_lifecycle: Optional[LifecycleCallback],
    ) -> None:
        config_path = ensure_core_config(self.store.config_file, self.config.port)

        _report(progress, "dry_run_start")
        pid, port = await self.canary_runner.start_dry_run(executable, config_path)
        _emit(on_lifecycle, Testing(version=version, pid=pid, port=port, started_at=utcnow()))

        try:
            await asyncio.sleep(self.config.dry_run_wait)
            _report(progress, "dry_run_health")
            healthy = await is_healthy_async(
                port,
                retries=self.config.health_check_retries,
                timeout=self.config.health_check_timeout,
            )
        finally:
            _report(progress, "dry_run_stop")
            await self.canary_runner.stop()

        if not healthy:
            self._revert_failed_canary(version, on_lifecycle)
            raise CoreError(
                "Dry-run health check failed",
                details=f"version={version} port={port}",
                code=CoreErrorCode.HEALTH_CHECK_FAILED,
            )

    def _promote(
        self,
        version: str,
        progress: Optional[ProgressCallback],
        on_lifecycle: Optional[LifecycleCallback],
    ) -> None:
        _report(progress, "promote")
        _emit(on_lifecycle, Promoting(version=version))
        try:
            self.store.set_current(version)
        except CoreError as e:
            raise CoreError(
                "Failed to set current core version",
                details=e.details or e.message,
                code=CoreErrorCode.PROMOTE_FAILED,
            ) from e

        def promoted(state: PersistedCoreState) -> None:
            state.active_version = version
            state.last_known_good_version = version
            state.consecutive_health_failures = 0
            attempt = state.last_upgrade_attempt or UpgradeAttempt(version=version, started_at=utcnow())
            attempt.version = version
            attempt.finished_at = utcnow()
            attempt.result = RESULT_SUCCESS
            attempt.error_code = None
            state.last_upgrade_attempt = attempt

        self.state_store.update(promoted)
        logger.info(f"Promoted core version {version}")

        _report(progress, "prune")
        self.store.prune(self.config.keep_versions)

    def _revert_failed_canary(self, version: str, on_lifecycle: Optional[LifecycleCallback]) -> None:
        def count_failure(state: PersistedCoreState) -> None:
            state.consecutive_health_failures += 1

        state = self.state_store.update(count_failure)
        target = state.last_known_good_version or self.store.current_version()
        logger.warning(
            f"Canary for {version} failed its health check "
            f"(consecutive failures: {state.consecutive_health_failures})"
        )
        if target is None or target == version:
            return

        _emit(on_lifecycle, RollingBack(from_version=version, to_version=target))
        if self.store.current_version() == target:
            return
        try:
            self.store.set_current(target)
        except CoreError as e:
            raise CoreError(
                "Failed to roll back core version",
                details=e.details or e.message,
                code=CoreErrorCode.ROLLBACK_FAILED,
            ) from e
        logger.info(f"Rolled back current core version to {target}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _guarded(
        self,
        attempt: _Attempt,
        body: Callable[[], Awaitable[InstalledVersion]],
    ) -> InstalledVersion:
        def started(state: PersistedCoreState) -> None:
            state.last_upgrade_attempt = UpgradeAttempt(version=attempt.version, started_at=attempt.started_at)

        self.store.clean_stale_staging()
        self.state_store.update(started)
        try:
            return await body()
        except BaseException as e:
            self._clean_up(attempt)
            self._record_failure(attempt, e)
            raise

    def _clean_up(self, attempt: _Attempt) -> None:
        """Undo only what this attempt created."""
        if not attempt.committed:
            if attempt.staging is not None:
                self.store.discard_staged(attempt.staging)
            return
        if attempt.replaced:
            return
        try:
            if self.store.current_version() == attempt.version:
                return
            self.store.remove(attempt.version)
        except CoreError as e:
            logger.warning(f"Failed to clean up core version {attempt.version}: {e}")

    def _record_failure(self, attempt: _Attempt, error: BaseException) -> None:
        code = error.code if isinstance(error, CoreError) else None

        def failed(state: PersistedCoreState) -> None:
            record = state.last_upgrade_attempt or UpgradeAttempt(
                version=attempt.version,
                started_at=attempt.started_at,
            )
            record.version = attempt.version
            record.finished_at = utcnow()
            record.result = RESULT_FAILED
            record.error_code = code
            state.last_upgrade_attempt = record

        try:
            self.state_store.update(failed)
        except CoreError as e:
            logger.warning(f"Failed to record failed upgrade attempt: {e}")
        logger.error(f"Core install of {attempt.version} failed: {error}")

    def _write_metadata(
        self,
        attempt: _Attempt,
        installed_path: Path,
        source: SourceInfo,
        arch: HostArch,
        name_in_archive: Optional[str],
    ) -> VersionMetadata:
        version = attempt.version
        now = utcnow()
        metadata = VersionMetadata(
            version=version,
            installed_at=now,
            validated_at=now,
            source=source,
            binary=BinaryInfo(
                sha256=sha256_hex(installed_path),
                final_name=self.store.binary_name,
                name_in_archive=name_in_archive,
                arch=arch,
                format=binary_format(installed_path) or FORMAT_MACHO,
                is_executable=True,
            ),
        )
        self.store.write_metadata(metadata, directory=attempt.staging)

        # The sidecar must describe the bytes actually on disk.
        written = self.store.read_metadata(version, directory=attempt.staging)
        actual = sha256_hex(installed_path)
        if written.binary.sha256 != actual:
            raise ChecksumMismatchError(
                "Installed binary does not match its metadata",
                details=f"expected={written.binary.sha256} actual={actual}",
            )
        return metadata

    def _installed_version(self, version: str) -> InstalledVersion:
        for item in self.store.list_installed():
            if item.version == version:
                return item
        return InstalledVersion(
            version=version,
            installed_at=utcnow(),
            executable_path=self.store.executable_path(version),
            is_current=self.store.current_version() == version,
        )


def _report(progress: Optional[ProgressCallback], stage: str, fraction: Optional[float] = None) -> None:
    if progress is not None:
        progress(stage, fraction)


def _emit(on_lifecycle: Optional[LifecycleCallback], state: LifecycleState) -> None:
    if on_lifecycle is not None:
        on_lifecycle(state)


def _discard_download(path: Path) -> None:
    try:
        path.unlink()
    except OSError as e:
        logger.debug(f"Could not remove downloaded archive {path}: {e}")
