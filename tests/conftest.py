"""
Pytest configuration for flux-core tests.
"""

import io
import os
import struct
import tarfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from flux_core.config import CoreConfig
from flux_core.types import BinaryInfo, HostArch, SourceInfo, VersionMetadata
from flux_core._core.state_store import LifecycleStateStore
from flux_core._core.storage import VersionStore

# Note: With pytest-asyncio in auto mode, no event_loop fixture needed

MACHO_CPU_TYPES = {HostArch.ARM64: 0x0100000C, HostArch.X86_64: 0x01000007}
ELF_MACHINES = {HostArch.ARM64: 183, HostArch.X86_64: 62}


def macho_header(arch: HostArch) -> bytes:
    """64-bit little-endian thin Mach-O header."""
    return struct.pack("<IIIIIIII", 0xFEEDFACF, MACHO_CPU_TYPES[arch], 0, 2, 0, 0, 0, 0)


def fat_macho_header(*arches: HostArch) -> bytes:
    header = struct.pack(">II", 0xCAFEBABE, len(arches))
    for arch in arches:
        header += struct.pack(">IIIII", MACHO_CPU_TYPES[arch], 0, 4096, 4096, 12)
    return header


def elf_header(arch: HostArch) -> bytes:
    ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + b"\x00" * 8
    return ident + struct.pack("<HH", 2, ELF_MACHINES[arch])


@pytest.fixture
def core_root(tmp_path):
    """Empty core-data root."""
    return tmp_path / "core"


@pytest.fixture
def store(core_root):
    """VersionStore with its directory layout created."""
    s = VersionStore(core_root)
    s.ensure_directories()
    return s


@pytest.fixture
def state_store(store):
    return LifecycleStateStore(store.state_file)


@pytest.fixture
def core_config(core_root):
    """Config with waits shortened for tests."""
    return CoreConfig(
        core_root=core_root,
        dry_run_wait=0,
        health_check_timeout=1,
        lock_poll_interval=0.01,
    )


@pytest.fixture
def make_binary():
    """Factory writing a fake native executable (header plus payload)."""
    def _make(path: Path, arch: HostArch = HostArch.ARM64, payload: bytes = b"", fmt: str = "macho") -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        header = macho_header(arch) if fmt == "macho" else elf_header(arch)
        path.write_bytes(header + payload)
        os.chmod(path, 0o755)
        return path

    return _make


@pytest.fixture
def install_version(store, make_binary):
    """Factory placing ``versions/<version>/CLIProxyAPI`` plus metadata."""
    def _install(version: str, installed_at: datetime = None, metadata: bool = True) -> Path:
        binary = make_binary(store.executable_path(version), payload=version.encode())
        if metadata:
            store.write_metadata(
                VersionMetadata(
                    version=version,
                    installed_at=installed_at or datetime(2025, 1, 1, tzinfo=timezone.utc),
                    source=SourceInfo(repo="local", tag=version, asset_name="CLIProxyAPI"),
                    binary=BinaryInfo(sha256="0" * 64, arch=HostArch.ARM64),
                )
            )
        return binary

    return _install


@pytest.fixture
def make_universal_binary():
    """Factory writing a fat Mach-O header listing ``arches``."""
    def _make(path: Path, *arches: HostArch) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(fat_macho_header(*arches))
        os.chmod(path, 0o755)
        return path

    return _make


@pytest.fixture
def make_tar_gz():
    """
    Factory writing a ``.tar.gz`` from ``(name, data)`` pairs.

    ``data`` may be bytes (regular file, mode 0755), None (directory) or
    ``("symlink", target)`` / ``("hardlink", target)``.
    """
    def _make(path: Path, members) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(path, "w:gz") as tar:
            for name, data in members:
                info = tarfile.TarInfo(name)
                if data is None:
                    info.type = tarfile.DIRTYPE
                    info.mode = 0o755
                    tar.addfile(info)
                elif isinstance(data, tuple):
                    kind, target = data
                    info.type = tarfile.SYMTYPE if kind == "symlink" else tarfile.LNKTYPE
                    info.linkname = target
                    tar.addfile(info)
                else:
                    info.size = len(data)
                    info.mode = 0o755
                    tar.addfile(info, io.BytesIO(data))
        return path

    return _make
