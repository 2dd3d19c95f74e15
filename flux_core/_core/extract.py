"""
Archive extraction and binary installation.

Handles:
- Unpacking ``.tar.gz`` / ``.tgz`` / ``.zip`` release archives
- Rejecting members that would land outside the extraction directory
  (``../`` paths, absolute paths, escaping symlinks and hard links)
- Locating the core executable in the unpacked tree
- Copying it into an install directory with mode 0755
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tarfile
import tempfile
import zipfile
from pathlib import Path
from typing import List, Optional, Tuple

from flux_core.config import BINARY_ALIASES, BINARY_NAME
from flux_core.errors import CoreError, CoreErrorCode, WriteError
from flux_core._core.inspector import is_native_executable

logger = logging.getLogger(__name__)

EXECUTABLE_MODE = 0o755


def _is_within(root: str, path: str) -> bool:
    return path == root or path.startswith(root + os.sep)


def _member_target(root: str, name: str) -> str:
    """Resolved destination of an archive member, or PATH_TRAVERSAL_DETECTED."""
    if not name or os.path.isabs(name) or name.startswith(("/", "\\")):
        raise CoreError(
            "Archive contains path traversal",
            details=name or "<empty name>",
            code=CoreErrorCode.PATH_TRAVERSAL_DETECTED,
        )
    target = os.path.normpath(os.path.join(root, name))
    if not _is_within(root, target):
        raise CoreError(
            "Archive contains path traversal",
            details=name,
            code=CoreErrorCode.PATH_TRAVERSAL_DETECTED,
        )
    return target


def _check_link(root: str, member_path: str, link_target: str, name: str) -> None:
    if os.path.isabs(link_target):
        resolved = os.path.normpath(link_target)
    else:
        resolved = os.path.normpath(os.path.join(os.path.dirname(member_path), link_target))
    if not _is_within(root, resolved):
        raise CoreError(
            "Archive contains symlink escape",
            details=f"{name} -> {link_target}",
            code=CoreErrorCode.SYMLINK_ESCAPE_DETECTED,
        )


def _archive_suffix(archive: Path) -> Optional[str]:
    name = archive.name.lower()
    if name.endswith((".tar.gz", ".tgz")):
        return "tar.gz"
    if name.endswith(".zip"):
        return "zip"
    return None


# =============================================================================
# Extraction
# =============================================================================


def extract_archive(archive: Path, dest: Path) -> None:
    """
    Unpack ``archive`` into ``dest``.

    Every member is checked before anything is written; a single unsafe
    member aborts the whole extraction.

    Raises:
        CoreError: UNSUPPORTED_ASSET_FORMAT, INVALID_ARCHIVE,
            PATH_TRAVERSAL_DETECTED or SYMLINK_ESCAPE_DETECTED
    """
    archive = Path(archive)
    dest = Path(dest)
    kind = _archive_suffix(archive)
    if kind is None:
        raise CoreError(
            "Unsupported asset format",
            details=archive.name,
            code=CoreErrorCode.UNSUPPORTED_ASSET_FORMAT,
        )

    dest.mkdir(parents=True, exist_ok=True)
    root = os.path.realpath(dest)

    try:
        if kind == "tar.gz":
            _extract_tar(archive, root)
        else:
            _extract_zip(archive, root)
    except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError) as e:
        raise CoreError(
            "Failed to extract archive",
            details=f"{archive.name} - {e}",
            code=CoreErrorCode.INVALID_ARCHIVE,
        ) from e

    validate_extracted_tree(dest)
    logger.debug(f"Extracted {archive.name} to {dest}")


def _extract_tar(archive: Path, root: str) -> None:
    with tarfile.open(archive, "r:gz") as tar:
        members = tar.getmembers()

        for member in members:
            target = _member_target(root, member.name)
            if member.issym():
                _check_link(root, target, member.linkname, member.name)
            elif member.islnk():
                _member_target(root, member.linkname)

        for member in members:
            target = _member_target(root, member.name)
            if member.isdir():
                os.makedirs(target, exist_ok=True)
            elif member.isreg():
                os.makedirs(os.path.dirname(target), exist_ok=True)
                source = tar.extractfile(member)
                if source is None:
                    continue
                with source, open(target, "wb") as out:
                    shutil.copyfileobj(source, out)
                os.chmod(target, member.mode & 0o777)
            elif member.issym():
                os.makedirs(os.path.dirname(target), exist_ok=True)
                os.symlink(member.linkname, target)
            elif member.islnk():
                os.makedirs(os.path.dirname(target), exist_ok=True)
                shutil.copyfile(_member_target(root, member.linkname), target)
            else:
                logger.debug(f"Skipping special archive member {member.name}")


def _zip_is_symlink(info: zipfile.ZipInfo) -> bool:
    return stat.S_ISLNK(info.external_attr >> 16)


def _extract_zip(archive: Path, root: str) -> None:
    with zipfile.ZipFile(archive) as zf:
        infos = zf.infolist()

        links = {}
        for info in infos:
            target = _member_target(root, info.filename)
            if _zip_is_symlink(info):
                link_target = zf.read(info).decode("utf-8")
                _check_link(root, target, link_target, info.filename)
                links[info.filename] = link_target

        for info in infos:
            target = _member_target(root, info.filename)
            if info.is_dir():
                os.makedirs(target, exist_ok=True)
                continue
            os.makedirs(os.path.dirname(target), exist_ok=True)
            if info.filename in links:
                os.symlink(links[info.filename], target)
                continue
            with zf.open(info) as source, open(target, "wb") as out:
                shutil.copyfileobj(source, out)
            mode = (info.external_attr >> 16) & 0o777
            if mode:
                os.chmod(target, mode)


def validate_extracted_tree(directory: Path) -> None:
    """
    Re-check an unpacked tree on disk.

    Raises:
        CoreError: PATH_TRAVERSAL_DETECTED or SYMLINK_ESCAPE_DETECTED
    """
    root = os.path.realpath(directory)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = os.path.join(dirpath, name)
            if not _is_within(root, os.path.normpath(path)):
                raise CoreError(
                    "Archive contains path traversal",
                    details=path,
                    code=CoreErrorCode.PATH_TRAVERSAL_DETECTED,
                )
            if os.path.islink(path) and not _is_within(root, os.path.realpath(path)):
                raise CoreError(
                    "Archive contains symlink escape",
                    details=path,
                    code=CoreErrorCode.SYMLINK_ESCAPE_DETECTED,
                )


# =============================================================================
# Executable discovery
# =============================================================================


def _regular_files(directory: Path) -> List[Path]:
    results: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(directory):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            path = Path(dirpath) / name
            if path.is_file() and not path.is_symlink():
                results.append(path)
    return results


def find_executable(directory: Path) -> Path:
    """
    Locate the core binary in an unpacked archive.

    Known names win (case-insensitive); otherwise the largest native
    executable is taken.

    Raises:
        CoreError: BINARY_NOT_FOUND_IN_ARCHIVE
    """
    files = _regular_files(Path(directory))
    wanted = {name.lower() for name in BINARY_ALIASES}

    for path in files:
        if path.name.lower() in wanted:
            return path

    natives = [(path.stat().st_size, path) for path in files if is_native_executable(path)]
    if natives:
        natives.sort(key=lambda item: item[0], reverse=True)
        return natives[0][1]

    raise CoreError(
        "Core executable not found in extracted archive",
        details=str(directory),
        code=CoreErrorCode.BINARY_NOT_FOUND_IN_ARCHIVE,
    )


# =============================================================================
# Install
# =============================================================================


def install_binary(source: Path, directory: Path, binary_name: str = BINARY_NAME) -> Path:
    """
    Copy ``source`` to ``directory/<binary_name>`` with mode 0755.

    ``directory`` is normally a staging directory from
    ``VersionStore.create_staging_dir``.

    Raises:
        WriteError: If the copy or chmod fails
    """
    destination = Path(directory) / binary_name
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        if destination.exists() or destination.is_symlink():
            destination.unlink()
        shutil.copyfile(source, destination)
        os.chmod(destination, EXECUTABLE_MODE)
    except OSError as e:
        raise WriteError(
            "Failed to install core binary",
            details=f"{destination} - {e}",
        ) from e
    logger.info(f"Installed core binary at {destination}")
    return destination


def install_from_archive(archive: Path, directory: Path, binary_name: str = BINARY_NAME) -> Tuple[Path, str]:
    """
    Extract ``archive`` to a scratch directory and install its core binary
    into ``directory``.

    Returns:
        (installed binary path, the binary's path inside the archive)
    """
    with tempfile.TemporaryDirectory(prefix="flux-core-") as scratch:
        scratch_path = Path(scratch)
        extract_archive(archive, scratch_path)
        executable = find_executable(scratch_path)
        name_in_archive = executable.relative_to(scratch_path).as_posix()
        installed = install_binary(executable, directory, binary_name)
    return installed, name_in_archive
