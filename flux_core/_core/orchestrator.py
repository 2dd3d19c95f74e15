"""
Lifecycle orchestration for the supervised core process.

Handles:
- The in-memory ``LifecycleState`` and its subscribers
- Start / stop / restart of the production core
- Install, local install and upgrade (delegated to ``CoreUpgrader``)
- Background health monitoring with automatic rollback to the last
  known-good version
- Recovery from ``Error`` back to ``Idle``
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional

from flux_core.config import CoreConfig
from flux_core.errors import CoreError, CoreErrorCode, FileMissingError
from flux_core.serialization import utcnow
from flux_core.state import (
    Error,
    Idle,
    Installing,
    LifecycleState,
    Running,
    RollingBack,
    Starting,
    Stopping,
)
from flux_core.types import HostArch, InstalledVersion, LockName, PersistedCoreState
from flux_core._core.health import is_healthy_async
from flux_core._core.inspector import validate_executable
from flux_core._core.locks import LockManager
from flux_core._core.releases import CachePolicy, ReleaseCache, ReleaseService
from flux_core._core.runner import CoreRunner, ensure_core_config
from flux_core._core.state_store import LifecycleStateStore
from flux_core._core.storage import VersionStore
from flux_core._core.upgrader import INSTALL_STAGES, CoreUpgrader, ProgressCallback

logger = logging.getLogger(__name__)

LifecycleSubscriber = Callable[[LifecycleState], None]


def _as_core_error(error: Exception, code: CoreErrorCode, message: str) -> CoreError:
    if isinstance(error, CoreError):
        return error
    return CoreError(message, details=str(error), code=code)


class CoreOrchestrator:
    """
    Drives install -> test -> promote / rollback for one core root.

    Usage:
        orchestrator = CoreOrchestrator.from_config(CoreConfig.from_env())
        unsubscribe = orchestrator.subscribe(print)
        await orchestrator.install("6.6.103-0")
        await orchestrator.start()
    """

    def __init__(
        self,
        config: CoreConfig,
        store: VersionStore,
        state_store: LifecycleStateStore,
        runner: CoreRunner,
        upgrader: CoreUpgrader,
        releases: ReleaseService,
        locks: LockManager,
        host_arch: Optional[HostArch] = None,
    ):
        self.config = config
        self.store = store
        self.state_store = state_store
        self.runner = runner
        self.upgrader = upgrader
        self.releases = releases
        self.locks = locks
        self.host_arch = host_arch

        self._lifecycle: LifecycleState = Idle()
        self._subscribers: Dict[str, LifecycleSubscriber] = {}
        self._monitor_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: CoreConfig) -> "CoreOrchestrator":
        """Wire the default collaborators for ``config.core_root``."""
        store = VersionStore(config.core_root)
        store.ensure_directories()
        state_store = LifecycleStateStore(store.state_file)
        locks = LockManager(store.locks_dir, poll_interval=config.lock_poll_interval)
        releases = ReleaseService(ReleaseCache(store.releases_dir, config.release_cache_ttl))
        runner = CoreRunner(store.logs_dir)
        # Canaries never share the production runner.
        canary_runner = CoreRunner(store.logs_dir)
        upgrader = CoreUpgrader(store, state_store, locks, releases, canary_runner, config)
        return cls(config, store, state_store, runner, upgrader, releases, locks)

    # ------------------------------------------------------------------
    # Lifecycle state
    # ------------------------------------------------------------------

    @property
    def state(self) -> LifecycleState:
        return self._lifecycle

    def subscribe(self, callback: LifecycleSubscriber) -> Callable[[], None]:
        """
        Register ``callback`` for lifecycle changes.

        The callback is invoked immediately with the current state.

        Returns:
            A function that removes the subscription
        """
        token = uuid.uuid4().hex
        self._subscribers[token] = callback
        callback(self._lifecycle)

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    def _set_lifecycle(self, state: LifecycleState) -> None:
        self._lifecycle = state
        logger.debug(f"Core lifecycle -> {state.kind}")
        for callback in list(self._subscribers.values()):
            try:
                callback(state)
            except Exception as e:
                logger.warning(f"Lifecycle subscriber failed: {e}")

    def _fail(self, error: CoreError) -> None:
        logger.error(f"Core lifecycle error: {error}")
        self._set_lifecycle(Error(error=error.info))

    def reset(self) -> None:
        """Leave ``Error`` for ``Idle``. No-op in any other state."""
        if isinstance(self._lifecycle, Error):
            self._set_lifecycle(Idle())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_versions(self) -> List[InstalledVersion]:
        return self.store.list_installed()

    def list_releases(self, policy: CachePolicy = CachePolicy.RETURN_CACHE_ELSE_LOAD):
        return self.releases.fetch_releases(policy)

    def read_state(self) -> PersistedCoreState:
        return self.state_store.read()

    @property
    def log_path(self) -> Path:
        return self.runner.log_path

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Start the current version on the production port.

        Failures move the lifecycle to ``Error`` rather than raising.
        """
        port = self.config.port
        self._set_lifecycle(Starting(port=port, target_version=self.store.current_version()))
        try:
            config_path = ensure_core_config(self.store.config_file, port)
            executable = self.store.current_executable()
            if executable is None:
                raise FileMissingError("Core not installed", details=str(self.store.current_link))

            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, validate_executable, executable, self.host_arch)
            pid = await self.runner.start(executable, config_path, port)

            def healthy_start(state: PersistedCoreState) -> None:
                state.consecutive_health_failures = 0

            self.state_store.update(healthy_start)
        except Exception as e:
            self._fail(_as_core_error(e, CoreErrorCode.CORE_START_FAILED, "Failed to start core"))
            return

        self._set_lifecycle(
            Running(
                active_version=self.store.current_version() or "unknown",
                pid=pid,
                port=port,
                started_at=utcnow(),
            )
        )
        self._start_monitor()

    async def stop(self) -> None:
        self._stop_monitor()
        self._set_lifecycle(Stopping())
        await self.runner.stop()
        self._set_lifecycle(Idle())

    async def restart(self) -> None:
        await self.stop()
        await self.start()

    # ------------------------------------------------------------------
    # Install / upgrade
    # ------------------------------------------------------------------

    def _progress_for(self, version: str, progress: Optional[ProgressCallback]) -> ProgressCallback:
        def report(stage: str, fraction: Optional[float]) -> None:
            if progress is not None:
                progress(stage, fraction)
            if stage in INSTALL_STAGES:
                self._set_lifecycle(Installing(version=version, phase=stage))

        return report

    async def install(
        self,
        version: str,
        progress: Optional[ProgressCallback] = None,
    ) -> InstalledVersion:
        """
        Install and promote ``version``.

        Raises:
            CoreError: After moving the lifecycle to ``Error``
        """
        self._set_lifecycle(Installing(version=version, phase="start"))
        try:
            installed = await self.upgrader.install(
                version,
                set_active=True,
                progress=self._progress_for(version, progress),
                on_lifecycle=self._set_lifecycle,
            )
        except Exception as e:
            error = _as_core_error(e, CoreErrorCode.UNKNOWN, "Install failed")
            self._fail(error)
            raise error from e
        self._set_lifecycle(Idle())
        return installed

    async def install_from_file(
        self,
        path: Path,
        version: str = "custom",
        set_active: bool = True,
        progress: Optional[ProgressCallback] = None,
    ) -> InstalledVersion:
        self._set_lifecycle(Installing(version=version, phase="local"))
        try:
            installed = await self.upgrader.install_from_file(
                path,
                version=version,
                set_active=set_active,
                progress=self._progress_for(version, progress),
                on_lifecycle=self._set_lifecycle,
            )
        except Exception as e:
            error = _as_core_error(e, CoreErrorCode.UNKNOWN, "Install failed")
            self._fail(error)
            raise error from e
        self._set_lifecycle(Idle())
        return installed

    async def upgrade_to_latest(self, progress: Optional[ProgressCallback] = None) -> InstalledVersion:
        self._set_lifecycle(Installing(version="latest", phase="upgrade"))
        try:
            installed = await self.upgrader.upgrade_to_latest(
                progress=self._progress_for("latest", progress),
                on_lifecycle=self._set_lifecycle,
            )
        except Exception as e:
            error = _as_core_error(e, CoreErrorCode.UNKNOWN, "Upgrade failed")
            self._fail(error)
            raise error from e
        self._set_lifecycle(Idle())
        return installed

    # ------------------------------------------------------------------
    # Health / rollback
    # ------------------------------------------------------------------

    async def health_check_once(self) -> bool:
        """Probe the production core and record the outcome."""
        healthy = await is_healthy_async(
            self.config.port,
            retries=self.config.health_check_retries,
            timeout=self.config.health_check_timeout,
        )
        await self.record_health_probe(healthy)
        return healthy

    async def record_health_probe(self, healthy: bool) -> int:
        """
        Update the consecutive-failure counter and roll back at the threshold.

        Returns:
            The counter after this probe
        """
        def record(state: PersistedCoreState) -> None:
            if healthy:
                state.consecutive_health_failures = 0
            else:
                state.consecutive_health_failures += 1

        state = self.state_store.update(record)
        if not healthy:
            logger.warning(
                f"Core health probe failed "
                f"({state.consecutive_health_failures}/{self.config.max_consecutive_health_failures})"
            )
            if state.consecutive_health_failures >= self.config.max_consecutive_health_failures:
                await self.rollback_if_needed()
        return state.consecutive_health_failures

    async def rollback_if_needed(self) -> bool:
        """
        Revert ``current`` to the last known-good version once the failure
        threshold is reached, then restart the core.

        Skipped while another process holds the upgrade lock.

        Returns:
            True if a rollback was performed
        """
        held = self.locks.try_acquire(LockName.UPGRADE)
        if held is None:
            logger.info("Upgrade in progress elsewhere, skipping rollback check")
            return False

        with held:
            try:
                state = self.state_store.read()
                if state.consecutive_health_failures < self.config.max_consecutive_health_failures:
                    return False
                target = state.last_known_good_version
                if target is None:
                    return False

                current = self.store.current_version()
                if current is None or current == target:
                    def clear(s: PersistedCoreState) -> None:
                        s.consecutive_health_failures = 0

                    self.state_store.update(clear)
                    return False

                self._stop_monitor()
                self._set_lifecycle(RollingBack(from_version=current, to_version=target))
                await self.runner.stop()

                try:
                    self.store.set_current(target)
                except CoreError as e:
                    raise CoreError(
                        "Failed to rollback core version",
                        details=e.details or e.message,
                        code=CoreErrorCode.ROLLBACK_FAILED,
                    ) from e

                def rolled_back(s: PersistedCoreState) -> None:
                    s.active_version = target
                    s.consecutive_health_failures = 0

                self.state_store.update(rolled_back)
                logger.info(f"Rolled back core from {current} to {target}")
            except Exception as e:
                self._fail(_as_core_error(e, CoreErrorCode.ROLLBACK_FAILED, "Rollback failed"))
                return False

        await self.start()
        return True

    def _start_monitor(self) -> None:
        self._stop_monitor()
        self._monitor_task = asyncio.create_task(self._monitor_loop())

    def _stop_monitor(self) -> None:
        task = self._monitor_task
        self._monitor_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.health_check_interval)
            if not isinstance(self._lifecycle, Running):
                continue
            try:
                await self.health_check_once()
            except CoreError as e:
                logger.warning(f"Health monitor could not record probe: {e}")
            except Exception as e:
                logger.error(f"Health monitor probe raised unexpectedly: {e!r}")
            # A rollback restarts the core with a fresh monitor.
            if self._monitor_task is not asyncio.current_task():
                return

    async def close(self) -> None:
        """Stop monitoring and the core process."""
        self._stop_monitor()
        await self.runner.stop()
