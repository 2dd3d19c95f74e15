"""
Host platform detection.

Resolves the running machine's CPU architecture and OS into the tokens used
by release asset names, and probes for x86_64 instruction-set translation
(Rosetta) on Apple Silicon.
"""

from __future__ import annotations

import logging
import platform
import subprocess

from flux_core.errors import UnsupportedPlatformError
from flux_core.types import HostArch

logger = logging.getLogger(__name__)

ARCH_TOOL = "/usr/bin/arch"
TRUE_TOOL = "/usr/bin/true"


def current_host_arch() -> HostArch:
    """
    Determine the host CPU architecture.

    Raises:
        UnsupportedPlatformError: If the machine is neither arm64 nor x86_64
    """
    machine = platform.machine()
    arch = HostArch.from_machine(machine)
    if arch is None:
        raise UnsupportedPlatformError(
            "Unsupported host architecture",
            details=f"machine={machine!r}",
        )
    return arch


def host_os_token() -> str:
    """
    OS token used in release asset names.

    Raises:
        UnsupportedPlatformError: If the OS is neither macOS nor Linux
    """
    system = platform.system().lower()
    if system == "darwin":
        return "darwin"
    if system == "linux":
        return "linux"
    raise UnsupportedPlatformError("Unsupported operating system", details=f"system={system!r}")


def _is_apple_silicon_host() -> bool:
    if platform.system().lower() != "darwin":
        return False
    return HostArch.from_machine(platform.machine()) == HostArch.ARM64


def is_running_under_translation() -> bool:
    """True when this process is an x86_64 binary translated on arm64 macOS."""
    if platform.system().lower() != "darwin":
        return False
    try:
        result = subprocess.run(
            ["sysctl", "-n", "sysctl.proc_translated"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"sysctl probe failed: {e}")
        return False
    return result.returncode == 0 and result.stdout.strip() == "1"


def is_translation_available() -> bool:
    """
    True when x86_64 binaries can run on this host via translation.

    A failure to launch the probe process counts as "unavailable".
    """
    if is_running_under_translation():
        return True
    if not _is_apple_silicon_host():
        return False
    try:
        result = subprocess.run(
            [ARCH_TOOL, "-x86_64", TRUE_TOOL],
            capture_output=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"Translation probe failed to run: {e}")
        return False
    return result.returncode == 0
