"""Tests for flux_core._core.upgrader module."""

import asyncio
import hashlib
import shutil
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import requests

from flux_core.errors import ChecksumMismatchError, CoreError, CoreErrorCode
from flux_core.state import Promoting, RollingBack, Testing
from flux_core.types import Asset, HostArch, LockName, PersistedCoreState, Release
from flux_core._core.assets import ChecksumVerifier
from flux_core._core.locks import LockManager
from flux_core._core.releases import CachePolicy
from flux_core._core.runner import CoreRunner, allocate_ephemeral_port
from flux_core._core.upgrader import CoreUpgrader, normalize_tag

from conftest import elf_header, macho_header

TAG = "v6.6.103-0"
VERSION = "6.6.103-0"
ASSET_NAME = "CLIProxyAPIPlus_6.6.103-0_darwin_arm64.tar.gz"
BINARY_BYTES = macho_header(HostArch.ARM64) + b"core 6.6.103-0"


@pytest.fixture
def archive(tmp_path, make_tar_gz):
    """Release archive as published, outside the core root."""
    return make_tar_gz(tmp_path / "published" / ASSET_NAME, [
        ("CLIProxyAPIPlus_6.6.103-0", None),
        ("CLIProxyAPIPlus_6.6.103-0/cli-proxy-api-plus", BINARY_BYTES),
        ("CLIProxyAPIPlus_6.6.103-0/README.md", b"readme"),
    ])


def release_for(archive_path: Path, digest: str = None) -> Release:
    if digest is None:
        digest = hashlib.sha256(archive_path.read_bytes()).hexdigest()
    return Release(
        tag_name=TAG,
        assets=(
            Asset(
                name=ASSET_NAME,
                browser_download_url=f"https://example.invalid/{ASSET_NAME}",
                size=archive_path.stat().st_size,
                digest=f"sha256:{digest}",
            ),
        ),
    )


def serve(archive_path: Path) -> AsyncMock:
    """Stand-in for download_asset_async that copies ``archive_path`` into downloads/."""
    async def fake_download(asset, downloads_dir, timeout=None, progress=None):
        target = Path(downloads_dir) / asset.name
        shutil.copyfile(archive_path, target)
        return target

    return AsyncMock(side_effect=fake_download)


@pytest.fixture
def runner():
    mock = MagicMock()
    mock.start_dry_run = AsyncMock(return_value=(31337, 50123))
    mock.stop = AsyncMock()
    return mock


@pytest.fixture
def releases():
    mock = MagicMock()
    mock.fetch_release_async = AsyncMock()
    mock.fetch_latest_async = AsyncMock()
    return mock


@pytest.fixture
def upgrader(store, state_store, releases, runner, core_config):
    return CoreUpgrader(
        store,
        state_store,
        LockManager(store.locks_dir, poll_interval=0.01),
        releases,
        runner,
        core_config,
        checksum_verifier=ChecksumVerifier(session=MagicMock(spec=requests.Session)),
        host_arch=HostArch.ARM64,
        os_name="darwin",
    )


def promote_existing(store, state_store, install_version, version="6.6.102-0", installed_at=None):
    install_version(version, installed_at=installed_at)
    store.set_current(version)
    state_store.write(PersistedCoreState(active_version=version, last_known_good_version=version))


class TestNormalizeTag:
    def test_adds_prefix(self):
        assert normalize_tag("6.6.103-0") == "v6.6.103-0"

    def test_keeps_tag(self):
        assert normalize_tag("v6.6.103-0") == "v6.6.103-0"


class TestInstall:
    """End-to-end install of a published release."""

    async def test_install_and_promote(self, upgrader, store, state_store, releases, runner, archive):
        releases.fetch_release_async.return_value = release_for(archive)
        stages = []
        emitted = []

        with patch("flux_core._core.upgrader.download_asset_async", serve(archive)), \
                patch("flux_core._core.upgrader.is_healthy_async", AsyncMock(return_value=True)) as probe:
            installed = await upgrader.install(
                VERSION,
                progress=lambda stage, fraction: stages.append(stage),
                on_lifecycle=emitted.append,
            )

        releases.fetch_release_async.assert_awaited_once_with(TAG, CachePolicy.RELOAD_REVALIDATING_CACHE_DATA)
        assert probe.await_args[0][0] == 50123

        assert installed.version == VERSION
        assert installed.is_current
        assert store.current_version() == VERSION
        assert store.executable_path(VERSION).read_bytes() == BINARY_BYTES

        metadata = store.read_metadata(VERSION)
        assert metadata.version == VERSION
        assert metadata.binary.sha256 == hashlib.sha256(BINARY_BYTES).hexdigest()
        assert metadata.binary.arch == HostArch.ARM64
        assert metadata.binary.format == "macho"
        assert metadata.binary.name_in_archive == "CLIProxyAPIPlus_6.6.103-0/cli-proxy-api-plus"
        assert metadata.source.tag == TAG
        assert metadata.source.asset_name == ASSET_NAME
        assert metadata.source.asset_sha256 == hashlib.sha256(archive.read_bytes()).hexdigest()

        state = state_store.read()
        assert state.active_version == VERSION
        assert state.last_known_good_version == VERSION
        assert state.consecutive_health_failures == 0
        assert state.last_upgrade_attempt.result == "success"
        assert state.last_upgrade_attempt.finished_at is not None

        ordered = [s for i, s in enumerate(stages) if i == 0 or stages[i - 1] != s]
        assert ordered == [
            "fetch_release", "select_asset", "download", "verify_checksum",
            "extract_install", "validate_binary", "write_metadata",
            "dry_run_start", "dry_run_health", "dry_run_stop",
            "promote", "prune", "done",
        ]
        assert [type(s) for s in emitted] == [Testing, Promoting]
        assert emitted[0].port == 50123
        runner.stop.assert_awaited_once()
        assert list(store.downloads_dir.iterdir()) == []

    async def test_install_without_activation(self, upgrader, store, state_store, releases, runner, archive):
        releases.fetch_release_async.return_value = release_for(archive)

        with patch("flux_core._core.upgrader.download_asset_async", serve(archive)):
            installed = await upgrader.install(TAG, set_active=False)

        assert installed.version == VERSION
        assert not installed.is_current
        assert store.current_version() is None
        runner.start_dry_run.assert_not_awaited()
        assert state_store.read().last_known_good_version is None

    async def test_prunes_old_versions(self, upgrader, store, state_store, releases, archive, install_version):
        install_version("6.6.100-0", installed_at=datetime(2025, 1, 1, tzinfo=timezone.utc))
        promote_existing(
            store, state_store, install_version, "6.6.101-0",
            installed_at=datetime(2025, 1, 2, tzinfo=timezone.utc),
        )
        releases.fetch_release_async.return_value = release_for(archive)

        with patch("flux_core._core.upgrader.download_asset_async", serve(archive)), \
                patch("flux_core._core.upgrader.is_healthy_async", AsyncMock(return_value=True)):
            await upgrader.install(VERSION)

        assert sorted(v.version for v in store.list_installed()) == ["6.6.101-0", VERSION]


class TestInstallFailures:
    """Failed installs clean up and record the attempt."""

    async def test_checksum_mismatch(self, upgrader, store, state_store, releases, archive, install_version):
        promote_existing(store, state_store, install_version)
        releases.fetch_release_async.return_value = release_for(archive, digest="0" * 64)

        with patch("flux_core._core.upgrader.download_asset_async", serve(archive)):
            with pytest.raises(ChecksumMismatchError):
                await upgrader.install(VERSION)

        assert [v.version for v in store.list_installed()] == ["6.6.102-0"]
        assert not store.version_dir(VERSION).exists()
        assert store.current_version() == "6.6.102-0"
        assert list(store.downloads_dir.iterdir()) == []

        attempt = state_store.read().last_upgrade_attempt
        assert attempt.version == VERSION
        assert attempt.result == "failed"
        assert attempt.error_code == CoreErrorCode.CHECKSUM_MISMATCH

    async def test_no_compatible_asset(self, upgrader, releases, state_store, archive):
        upgrader.os_name = "linux"
        releases.fetch_release_async.return_value = release_for(archive)

        with pytest.raises(CoreError) as exc_info:
            await upgrader.install(VERSION)

        assert exc_info.value.code == CoreErrorCode.NO_COMPATIBLE_ASSET
        assert state_store.read().last_upgrade_attempt.error_code == CoreErrorCode.NO_COMPATIBLE_ASSET

    async def test_wrong_architecture_removes_version(self, upgrader, store, state_store, releases, tmp_path, make_tar_gz):
        archive = make_tar_gz(tmp_path / "published" / ASSET_NAME, [
            ("cli-proxy-api-plus", elf_header(HostArch.X86_64) + b"intel"),
        ])
        releases.fetch_release_async.return_value = release_for(archive)

        with patch("flux_core._core.upgrader.download_asset_async", serve(archive)):
            with pytest.raises(CoreError) as exc_info:
                await upgrader.install(VERSION)

        assert exc_info.value.code == CoreErrorCode.CORE_BINARY_ARCH_MISMATCH
        assert not store.version_dir(VERSION).exists()
        assert state_store.read().last_upgrade_attempt.result == "failed"

    async def test_failed_canary_rolls_back(self, upgrader, store, state_store, releases, runner, archive, install_version):
        promote_existing(store, state_store, install_version)
        releases.fetch_release_async.return_value = release_for(archive)
        emitted = []

        with patch("flux_core._core.upgrader.download_asset_async", serve(archive)), \
                patch("flux_core._core.upgrader.is_healthy_async", AsyncMock(return_value=False)):
            with pytest.raises(CoreError) as exc_info:
                await upgrader.install(VERSION, on_lifecycle=emitted.append)

        assert exc_info.value.code == CoreErrorCode.HEALTH_CHECK_FAILED
        assert emitted[-1] == RollingBack(from_version=VERSION, to_version="6.6.102-0")
        assert store.current_version() == "6.6.102-0"
        assert not store.version_dir(VERSION).exists()
        runner.stop.assert_awaited_once()

        state = state_store.read()
        assert state.consecutive_health_failures == 1
        assert state.active_version == "6.6.102-0"
        assert state.last_known_good_version == "6.6.102-0"
        assert state.last_upgrade_attempt.result == "failed"
        assert state.last_upgrade_attempt.error_code == CoreErrorCode.HEALTH_CHECK_FAILED

    async def test_failed_canary_without_previous_version(self, upgrader, store, state_store, releases, archive):
        releases.fetch_release_async.return_value = release_for(archive)
        emitted = []

        with patch("flux_core._core.upgrader.download_asset_async", serve(archive)), \
                patch("flux_core._core.upgrader.is_healthy_async", AsyncMock(return_value=False)):
            with pytest.raises(CoreError):
                await upgrader.install(VERSION, on_lifecycle=emitted.append)

        assert not any(isinstance(s, RollingBack) for s in emitted)
        assert store.current_version() is None
        assert store.list_installed() == []

    async def test_dry_run_start_failure(self, upgrader, store, releases, runner, archive):
        releases.fetch_release_async.return_value = release_for(archive)
        runner.start_dry_run.side_effect = CoreError("boom", code=CoreErrorCode.CORE_START_FAILED)

        with patch("flux_core._core.upgrader.download_asset_async", serve(archive)):
            with pytest.raises(CoreError) as exc_info:
                await upgrader.install(VERSION)

        assert exc_info.value.code == CoreErrorCode.CORE_START_FAILED
        assert not store.version_dir(VERSION).exists()


class TestInstallFromFile:
    """Tests for local installs."""

    async def test_bare_binary(self, upgrader, store, state_store, tmp_path, make_binary):
        source = make_binary(tmp_path / "build" / "CLIProxyAPI", payload=b"dev build")
        stages = []

        with patch("flux_core._core.upgrader.is_healthy_async", AsyncMock(return_value=True)):
            installed = await upgrader.install_from_file(
                source, progress=lambda stage, fraction: stages.append(stage)
            )

        assert installed.version == "custom"
        assert store.current_version() == "custom"
        assert "copy_local_binary" in stages
        metadata = store.read_metadata("custom")
        assert metadata.source.repo == "local"
        assert metadata.source.asset_url.startswith("file://")
        assert metadata.source.asset_sha256 == hashlib.sha256(source.read_bytes()).hexdigest()
        assert metadata.binary.name_in_archive is None
        assert state_store.read().last_known_good_version == "custom"

    async def test_local_archive(self, upgrader, store, archive):
        installed = await upgrader.install_from_file(archive, version="6.6.103-local", set_active=False)

        assert installed.version == "6.6.103-local"
        assert store.read_metadata("6.6.103-local").binary.name_in_archive.endswith("cli-proxy-api-plus")

    async def test_missing_file(self, upgrader, store, state_store, tmp_path):
        with pytest.raises(CoreError) as exc_info:
            await upgrader.install_from_file(tmp_path / "nope")

        assert exc_info.value.code == CoreErrorCode.FILE_MISSING
        assert state_store.read().last_upgrade_attempt.result == "failed"

    async def test_invalid_version_name(self, upgrader):
        with pytest.raises(CoreError) as exc_info:
            await upgrader.install_from_file(Path("/tmp/core"), version="../escape")
        assert exc_info.value.code == CoreErrorCode.PARSE_ERROR


class TestUpgradeToLatest:
    async def test_installs_latest(self, upgrader, store, releases, archive):
        release = release_for(archive)
        releases.fetch_latest_async.return_value = release
        releases.fetch_release_async.return_value = release
        stages = []

        with patch("flux_core._core.upgrader.download_asset_async", serve(archive)), \
                patch("flux_core._core.upgrader.is_healthy_async", AsyncMock(return_value=True)):
            installed = await upgrader.upgrade_to_latest(progress=lambda stage, fraction: stages.append(stage))

        assert stages[0] == "fetch_latest"
        assert installed.version == VERSION
        assert store.current_version() == VERSION
        releases.fetch_latest_async.assert_awaited_once_with(CachePolicy.RELOAD_REVALIDATING_CACHE_DATA)


class TestLocking:
    async def test_waits_for_upgrade_lock(self, upgrader, store, releases, archive):
        releases.fetch_release_async.return_value = release_for(archive)
        other = LockManager(store.locks_dir).try_acquire(LockName.UPGRADE)

        with patch("flux_core._core.upgrader.download_asset_async", serve(archive)):
            task = asyncio.create_task(upgrader.install(VERSION, set_active=False))
            await asyncio.sleep(0.05)
            assert not task.done()
            releases.fetch_release_async.assert_not_awaited()

            other.unlock()
            installed = await asyncio.wait_for(task, timeout=5)

        assert installed.version == VERSION


def fake_process(pid):
    process = MagicMock()
    process.pid = pid
    process.returncode = None

    async def wait():
        process.returncode = -15
        return process.returncode

    process.wait = wait
    return process


class TestCanaryIsolation:
    """The canary gets its own process and port; production is left alone."""

    @pytest.fixture
    def production(self, store):
        return CoreRunner(store.logs_dir, confirm_delay=0, stop_timeout=0.05)

    @pytest.fixture
    def isolated_upgrader(self, store, state_store, releases, core_config):
        return CoreUpgrader(
            store,
            state_store,
            LockManager(store.locks_dir, poll_interval=0.01),
            releases,
            CoreRunner(store.logs_dir, confirm_delay=0, stop_timeout=0.05),
            core_config,
            checksum_verifier=ChecksumVerifier(session=MagicMock(spec=requests.Session)),
            host_arch=HostArch.ARM64,
            os_name="darwin",
        )

    @pytest.mark.parametrize("healthy", [True, False])
    async def test_canary_beside_running_production(
        self, isolated_upgrader, production, store, state_store, releases, archive, install_version, healthy
    ):
        promote_existing(store, state_store, install_version)
        releases.fetch_release_async.return_value = release_for(archive)
        production_process = fake_process(4262)
        canary_process = fake_process(5150)
        spawn = AsyncMock(side_effect=[production_process, canary_process])
        production_port = allocate_ephemeral_port()
        emitted = []

        with patch("flux_core._core.runner.asyncio.create_subprocess_exec", spawn), \
                patch("flux_core._core.upgrader.download_asset_async", serve(archive)), \
                patch("flux_core._core.upgrader.is_healthy_async", AsyncMock(return_value=healthy)) as probe:
            await production.start(store.current_executable(), store.config_file, production_port)
            if healthy:
                await isolated_upgrader.install(VERSION, on_lifecycle=emitted.append)
            else:
                with pytest.raises(CoreError) as exc_info:
                    await isolated_upgrader.install(VERSION, on_lifecycle=emitted.append)
                assert exc_info.value.code == CoreErrorCode.HEALTH_CHECK_FAILED

        testing = emitted[0]
        assert isinstance(testing, Testing)
        assert testing.pid == 5150
        assert testing.port != production_port
        assert probe.await_args[0][0] == testing.port

        canary_executable = spawn.await_args_list[1][0][0]
        assert ".staging-" in canary_executable
        canary_process.terminate.assert_called_once()

        production_process.terminate.assert_not_called()
        assert production.current_pid == 4262
        assert production.current_port == production_port
        assert store.current_version() == (VERSION if healthy else "6.6.102-0")
        await production.stop()


class TestStagedInstall:
    """Installs are staged; failures never disturb an existing installation."""

    def hidden_entries(self, store):
        return [p.name for p in store.versions_dir.iterdir() if p.name.startswith(".")]

    async def test_failed_reinstall_of_current_keeps_live_binary(
        self, upgrader, store, state_store, releases, archive, install_version
    ):
        live = install_version(VERSION)
        store.set_current(VERSION)
        state_store.write(PersistedCoreState(active_version=VERSION, last_known_good_version=VERSION))
        live_bytes = live.read_bytes()
        releases.fetch_release_async.return_value = release_for(archive)
        emitted = []

        with patch("flux_core._core.upgrader.download_asset_async", serve(archive)), \
                patch("flux_core._core.upgrader.is_healthy_async", AsyncMock(return_value=False)):
            with pytest.raises(CoreError):
                await upgrader.install(VERSION, on_lifecycle=emitted.append)

        assert store.current_version() == VERSION
        assert store.executable_path(VERSION).read_bytes() == live_bytes
        assert not any(isinstance(s, RollingBack) for s in emitted)
        assert self.hidden_entries(store) == []

    async def test_successful_reinstall_of_current_replaces_binary(
        self, upgrader, store, state_store, releases, archive, install_version
    ):
        install_version(VERSION)
        store.set_current(VERSION)
        state_store.write(PersistedCoreState(active_version=VERSION, last_known_good_version=VERSION))
        releases.fetch_release_async.return_value = release_for(archive)

        with patch("flux_core._core.upgrader.download_asset_async", serve(archive)), \
                patch("flux_core._core.upgrader.is_healthy_async", AsyncMock(return_value=True)):
            await upgrader.install(VERSION)

        assert store.current_version() == VERSION
        assert store.executable_path(VERSION).read_bytes() == BINARY_BYTES
        assert store.read_metadata(VERSION).source.tag == TAG
        assert self.hidden_entries(store) == []

    @pytest.mark.parametrize("failure", ["checksum", "canary"])
    async def test_failed_reinstall_keeps_previous_directory(
        self, upgrader, store, state_store, releases, archive, install_version, failure
    ):
        promote_existing(store, state_store, install_version)
        previous = install_version(VERSION).read_bytes()
        digest = "0" * 64 if failure == "checksum" else None
        releases.fetch_release_async.return_value = release_for(archive, digest=digest)

        with patch("flux_core._core.upgrader.download_asset_async", serve(archive)), \
                patch("flux_core._core.upgrader.is_healthy_async", AsyncMock(return_value=False)):
            with pytest.raises(CoreError):
                await upgrader.install(VERSION)

        assert store.executable_path(VERSION).read_bytes() == previous
        assert store.read_metadata(VERSION).source.repo == "local"
        assert store.current_version() == "6.6.102-0"
        assert self.hidden_entries(store) == []

    async def test_removes_stale_staging(self, upgrader, store, releases, archive):
        stale = store.versions_dir / ".staging-leftover"
        stale.mkdir()
        (stale / "CLIProxyAPI").write_bytes(b"partial")
        releases.fetch_release_async.return_value = release_for(archive)

        with patch("flux_core._core.upgrader.download_asset_async", serve(archive)):
            await upgrader.install(VERSION, set_active=False)

        assert not stale.exists()
        assert self.hidden_entries(store) == []
        assert store.executable_path(VERSION).read_bytes() == BINARY_BYTES
