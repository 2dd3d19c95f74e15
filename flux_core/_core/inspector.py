"""
Native executable inspection.

Reads just enough of a binary's header to tell Mach-O (thin or universal)
and ELF apart and to list the CPU architectures it carries, then decides
which architecture the host will execute it as.
"""

from __future__ import annotations

import logging
import struct
from pathlib import Path
from typing import FrozenSet, Optional

from flux_core.errors import CoreError, CoreErrorCode, FileMissingError
from flux_core.types import HostArch
from flux_core._core.arch import current_host_arch, is_translation_available

logger = logging.getLogger(__name__)

FORMAT_MACHO = "macho"
FORMAT_ELF = "elf"

# Thin Mach-O magics as they appear on disk, mapped to header byte order.
_MACHO_THIN = {
    b"\xfe\xed\xfa\xce": ">",  # MH_MAGIC
    b"\xce\xfa\xed\xfe": "<",  # MH_CIGAM
    b"\xfe\xed\xfa\xcf": ">",  # MH_MAGIC_64
    b"\xcf\xfa\xed\xfe": "<",  # MH_CIGAM_64
}
_MACHO_FAT = {
    b"\xca\xfe\xba\xbe": ">",  # FAT_MAGIC
    b"\xbe\xba\xfe\xca": "<",  # FAT_CIGAM
}
_ELF_MAGIC = b"\x7fELF"

CPU_TYPE_X86_64 = 0x01000007
CPU_TYPE_ARM64 = 0x0100000C

EM_X86_64 = 62
EM_AARCH64 = 183

# Java class files share FAT_MAGIC; their "arch count" is the class version.
_MAX_FAT_ARCHS = 32

_MACHO_CPU_TYPES = {
    CPU_TYPE_X86_64: HostArch.X86_64,
    CPU_TYPE_ARM64: HostArch.ARM64,
}
_ELF_MACHINES = {
    EM_X86_64: HostArch.X86_64,
    EM_AARCH64: HostArch.ARM64,
}


def _read_prefix(path: Path, size: int) -> bytes:
    with open(path, "rb") as f:
        return f.read(size)


def format_from_header(header: bytes) -> Optional[str]:
    """``macho``, ``elf`` or None for the first bytes of a file."""
    magic = header[:4]
    if magic in _MACHO_THIN or magic in _MACHO_FAT:
        return FORMAT_MACHO
    if magic == _ELF_MAGIC:
        return FORMAT_ELF
    return None


def binary_format(path: Path) -> Optional[str]:
    """Executable format of ``path``, or None if it is not a native binary."""
    return format_from_header(_read_prefix(path, 4))


def is_native_executable(path: Path) -> bool:
    try:
        return binary_format(path) is not None
    except OSError:
        return False


def supported_architectures(path: Path) -> FrozenSet[HostArch]:
    """
    Architectures contained in a Mach-O or ELF binary.

    Slices for CPUs we do not ship for are ignored, so the result may be empty.

    Raises:
        CoreError: CORE_BINARY_INVALID_FORMAT if the file is not a native
            executable, PARSE_ERROR if its header is truncated
    """
    path = Path(path)
    header = _read_prefix(path, 8 + 20 * _MAX_FAT_ARCHS)
    magic = header[:4]

    try:
        if magic in _MACHO_THIN:
            order = _MACHO_THIN[magic]
            (cputype,) = struct.unpack_from(f"{order}I", header, 4)
            arch = _MACHO_CPU_TYPES.get(cputype)
            return frozenset([arch] if arch else [])

        if magic in _MACHO_FAT:
            order = _MACHO_FAT[magic]
            (count,) = struct.unpack_from(f"{order}I", header, 4)
            if count > _MAX_FAT_ARCHS:
                raise CoreError(
                    "Core binary is not a native executable",
                    details=f"{path.name}: implausible fat arch count {count}",
                    code=CoreErrorCode.CORE_BINARY_INVALID_FORMAT,
                )
            arches = set()
            for index in range(count):
                (cputype,) = struct.unpack_from(f"{order}I", header, 8 + 20 * index)
                arch = _MACHO_CPU_TYPES.get(cputype)
                if arch is not None:
                    arches.add(arch)
            return frozenset(arches)

        if magic == _ELF_MAGIC:
            order = ">" if header[5:6] == b"\x02" else "<"
            (machine,) = struct.unpack_from(f"{order}H", header, 18)
            arch = _ELF_MACHINES.get(machine)
            return frozenset([arch] if arch else [])

    except struct.error as e:
        raise CoreError(
            "Failed to parse binary header",
            details=f"{path.name} - {e}",
            code=CoreErrorCode.PARSE_ERROR,
        ) from e

    raise CoreError(
        "Core binary is not a native executable",
        details=path.name,
        code=CoreErrorCode.CORE_BINARY_INVALID_FORMAT,
    )


def validate_executable(path: Path, host_arch: Optional[HostArch] = None) -> HostArch:
    """
    Check ``path`` can run on this host.

    Args:
        path: Binary to inspect
        host_arch: Host architecture override (default: detected)

    Returns:
        The architecture the binary will execute as. On Apple Silicon this is
        ``x86_64`` for an Intel-only binary when translation is available.

    Raises:
        FileMissingError: If ``path`` does not exist
        CoreError: CORE_BINARY_INVALID_FORMAT, ROSETTA_REQUIRED or
            CORE_BINARY_ARCH_MISMATCH
    """
    path = Path(path)
    if not path.is_file():
        raise FileMissingError("Core binary not found", details=str(path))

    try:
        fmt = binary_format(path)
    except OSError as e:
        raise CoreError(
            "Failed to read core binary",
            details=f"{path} - {e}",
            code=CoreErrorCode.CORE_BINARY_INVALID_FORMAT,
        ) from e
    if fmt is None:
        raise CoreError(
            "Core binary is not a native executable",
            details=path.name,
            code=CoreErrorCode.CORE_BINARY_INVALID_FORMAT,
        )

    host = host_arch or current_host_arch()
    supported = supported_architectures(path)

    if host in supported:
        return host

    if fmt == FORMAT_MACHO and host is HostArch.ARM64 and HostArch.X86_64 in supported:
        if is_translation_available():
            logger.info(f"{path.name} is x86_64 only; running under translation")
            return HostArch.X86_64
        raise CoreError(
            "Rosetta is required to run x86_64 core on Apple Silicon",
            details=path.name,
            code=CoreErrorCode.ROSETTA_REQUIRED,
            recovery_suggestion="Install Rosetta with: softwareupdate --install-rosetta",
        )

    supported_list = ",".join(sorted(a.value for a in supported))
    raise CoreError(
        "Core binary architecture mismatch",
        details=f"host={host.value} supported={supported_list}",
        code=CoreErrorCode.CORE_BINARY_ARCH_MISMATCH,
    )
