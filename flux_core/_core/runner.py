"""
Core process runner.

Handles:
- Writing a default core config when none exists
- Starting the core on the production port
- Starting a canary ("dry run") on an ephemeral port with a temp config
- Graceful termination (SIGTERM, then SIGKILL after a grace period)

Process output is appended to ``logs/core.log``. At most one process is
managed at a time.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import subprocess
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Optional, Tuple

from flux_core.config import CORE_LOG_FILE_NAME
from flux_core.errors import CoreError, CoreErrorCode, WriteError
from flux_core.serialization import atomic_write_text

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"
DEFAULT_AUTH_DIR = "~/.cli-proxy-api"

DEFAULT_CONFIG_TEMPLATE = """host: "127.0.0.1"
port: {port}
auth-dir: "{auth_dir}"
proxy-url: ""

api-keys:
  - "{api_key}"

remote-management:
  allow-remote: false
"""


def render_default_config(port: int, api_key: str, auth_dir: str = DEFAULT_AUTH_DIR) -> str:
    return DEFAULT_CONFIG_TEMPLATE.format(port=port, auth_dir=auth_dir, api_key=api_key)


def ensure_core_config(path: Path, port: int) -> Path:
    """
    Create the core's YAML config at ``path`` if it does not exist.

    An existing file is left untouched.

    Raises:
        WriteError: If the config cannot be written
    """
    path = Path(path)
    if path.exists():
        return path
    content = render_default_config(port, api_key=f"flux-local-{uuid.uuid4().hex[:8]}")
    try:
        atomic_write_text(path, content)
        os.chmod(path, 0o600)
    except OSError as e:
        raise WriteError("Failed to write core config", details=f"{path} - {e}") from e
    logger.info(f"Wrote default core config to {path}")
    return path


def rewrite_port(text: str, port: int) -> str:
    """Replace the first top-level ``port:`` line, or prepend one."""
    lines = text.split("\n")
    for index, line in enumerate(lines):
        if line.strip().startswith("port:"):
            indent = line[: len(line) - len(line.lstrip(" \t"))]
            lines[index] = f"{indent}port: {port}"
            return "\n".join(lines)
    return "\n".join([f"port: {port}"] + lines)


def is_port_available(port: int, host: str = LOOPBACK) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def allocate_ephemeral_port(host: str = LOOPBACK) -> int:
    """
    Ask the kernel for a free port.

    Raises:
        CoreError: CORE_START_FAILED if no port can be bound
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, 0))
            return sock.getsockname()[1]
    except OSError as e:
        raise CoreError(
            "Failed to allocate ephemeral port",
            details=str(e),
            code=CoreErrorCode.CORE_START_FAILED,
        ) from e


@dataclass
class _RunningProcess:
    process: asyncio.subprocess.Process
    port: int
    is_dry_run: bool
    log_handle: IO[bytes]
    temp_config: Optional[Path] = None

    @property
    def pid(self) -> int:
        return self.process.pid


class CoreRunner:
    """
    Starts and stops the core binary.

    Usage:
        runner = CoreRunner(store.logs_dir)
        pid = await runner.start(executable, store.config_file, port=8080)
        ...
        await runner.stop()
    """

    def __init__(
        self,
        logs_dir: Path,
        confirm_delay: float = 0.2,
        stop_timeout: float = 2.0,
    ):
        self.logs_dir = Path(logs_dir)
        self.confirm_delay = confirm_delay
        self.stop_timeout = stop_timeout
        self._running: Optional[_RunningProcess] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def log_path(self) -> Path:
        return self.logs_dir / CORE_LOG_FILE_NAME

    @property
    def current_pid(self) -> Optional[int]:
        return self._running.pid if self._running else None

    @property
    def current_port(self) -> Optional[int]:
        return self._running.port if self._running else None

    @property
    def is_dry_run(self) -> bool:
        return self._running.is_dry_run if self._running else False

    @property
    def is_running(self) -> bool:
        return self._running is not None and self._running.process.returncode is None

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start(self, executable: Path, config_path: Path, port: int) -> int:
        """
        Start the core on ``port``.

        Returns the existing pid if a process is already managed.

        Raises:
            CoreError: PORT_IN_USE, CORE_START_FAILED or CORE_START_TIMEOUT
        """
        if self._running is not None:
            return self._running.pid

        if not is_port_available(port):
            raise CoreError(
                "Port already in use",
                details=f"port={port}",
                code=CoreErrorCode.PORT_IN_USE,
            )

        await self._spawn(Path(executable), Path(config_path), port, is_dry_run=False)
        logger.info(f"Started core (PID: {self.current_pid}) on port {port}")
        return self._running.pid

    async def start_dry_run(self, executable: Path, config_path: Path) -> Tuple[int, int]:
        """
        Start a canary on an ephemeral port.

        The config at ``config_path`` (or the default one, if missing) is
        copied to a temp file with its port rewritten; the copy is removed
        by ``stop()``. Canaries get a runner of their own; one that already
        manages a process refuses to start another.

        Returns:
            (pid, port)

        Raises:
            CoreError: CORE_START_FAILED if a process is already managed
        """
        if self._running is not None:
            raise CoreError(
                "Runner already manages a core process",
                details=f"pid={self._running.pid} port={self._running.port}",
                code=CoreErrorCode.CORE_START_FAILED,
            )

        port = allocate_ephemeral_port()
        temp_config = self._write_dry_run_config(Path(config_path), port)
        try:
            await self._spawn(Path(executable), temp_config, port, is_dry_run=True)
        except BaseException:
            _remove_quietly(temp_config)
            raise
        self._running.temp_config = temp_config
        logger.info(f"Started canary core (PID: {self.current_pid}) on port {port}")
        return self._running.pid, port

    async def stop(self) -> None:
        """Terminate the managed process; kill it if it ignores SIGTERM."""
        running = self._running
        if running is None:
            return
        self._running = None

        process = running.process
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Core (PID: {running.pid}) ignored SIGTERM, killing")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        running.log_handle.close()
        if running.temp_config is not None:
            _remove_quietly(running.temp_config)
        logger.debug(f"Stopped core (PID: {running.pid})")

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _open_log(self) -> IO[bytes]:
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            return open(self.log_path, "ab")
        except OSError as e:
            raise WriteError("Failed to open core log", details=f"{self.log_path} - {e}") from e

    async def _spawn(self, executable: Path, config_path: Path, port: int, is_dry_run: bool) -> None:
        log_handle = self._open_log()
        cmd = [str(executable), "-config", str(config_path)]

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(executable.parent),
                stdout=log_handle,
                stderr=subprocess.STDOUT,
            )
        except OSError as e:
            log_handle.close()
            raise CoreError(
                "Failed to start core process",
                details=f"{executable} - {e}",
                code=CoreErrorCode.CORE_START_FAILED,
            ) from e

        self._running = _RunningProcess(
            process=process,
            port=port,
            is_dry_run=is_dry_run,
            log_handle=log_handle,
        )

        await asyncio.sleep(self.confirm_delay)
        if process.returncode is not None:
            self._running = None
            log_handle.close()
            raise CoreError(
                "Core process exited during startup",
                details=f"exit={process.returncode} log={self.log_path}",
                code=CoreErrorCode.CORE_START_TIMEOUT,
            )

    def _write_dry_run_config(self, config_path: Path, port: int) -> Path:
        try:
            base = config_path.read_text(encoding="utf-8")
        except OSError:
            base = render_default_config(port, api_key="flux-dryrun")

        fd, temp_name = tempfile.mkstemp(prefix="flux-core-dryrun-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(rewrite_port(base, port))
        except OSError as e:
            _remove_quietly(Path(temp_name))
            raise WriteError("Failed to write dry-run config", details=f"{temp_name} - {e}") from e
        return Path(temp_name)


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except OSError:
        pass
