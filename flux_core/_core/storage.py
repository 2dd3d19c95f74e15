"""
On-disk layout of installed core versions.

    <core-root>/
      state.json
      config.yaml                           (core process config)
      current -> versions/<version>/        (symlink)
      releases/
      downloads/
      versions/<version>/<binary>, metadata.json
      locks/<name>.lock
      logs/core.log

``VersionStore`` exclusively owns ``versions/`` and the ``current`` symlink.
Mutations are serialized within the process; cross-process exclusion for
install/upgrade workflows is the ``LockManager``'s job.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from flux_core.config import (
    BINARY_NAME,
    CORE_CONFIG_FILE_NAME,
    CORE_LOG_FILE_NAME,
    CURRENT_LINK_NAME,
    METADATA_FILE_NAME,
    STATE_FILE_NAME,
)
from flux_core.errors import (
    BinaryMissingError,
    CannotDeleteCurrentVersionError,
    CoreError,
    CoreErrorCode,
    FileMissingError,
    ParseError,
    VersionNotInstalledError,
    WriteError,
)
from flux_core.serialization import read_json, write_json
from flux_core.types import HostArch, InstalledVersion, VersionMetadata

logger = logging.getLogger(__name__)

DEFAULT_KEEP_VERSIONS = 2
STAGING_PREFIX = ".staging-"
RETIRED_PREFIX = ".retired-"


def is_executable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def validate_version_name(version: str) -> str:
    """
    Reject identifiers that cannot safely be used as a directory name.

    Raises:
        CoreError: If ``version`` is empty, hidden, or contains a path separator
    """
    if (
        not version
        or version in (".", "..")
        or version.startswith(".")
        or "/" in version
        or "\\" in version
        or "\x00" in version
    ):
        raise CoreError(
            "Invalid version identifier",
            details=f"version={version!r}",
            code=CoreErrorCode.PARSE_ERROR,
        )
    return version


class VersionStore:
    """
    Installed versions, their metadata sidecars and the ``current`` symlink.

    Attributes:
        root: Core-data root directory
        binary_name: File name of the installed executable in each version dir
    """

    def __init__(self, root: Path, binary_name: str = BINARY_NAME):
        self.root = Path(root)
        self.binary_name = binary_name
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    @property
    def releases_dir(self) -> Path:
        return self.root / "releases"

    @property
    def downloads_dir(self) -> Path:
        return self.root / "downloads"

    @property
    def versions_dir(self) -> Path:
        return self.root / "versions"

    @property
    def locks_dir(self) -> Path:
        return self.root / "locks"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def state_file(self) -> Path:
        return self.root / STATE_FILE_NAME

    @property
    def current_link(self) -> Path:
        return self.root / CURRENT_LINK_NAME

    @property
    def config_file(self) -> Path:
        return self.root / CORE_CONFIG_FILE_NAME

    @property
    def log_file(self) -> Path:
        return self.logs_dir / CORE_LOG_FILE_NAME

    def version_dir(self, version: str) -> Path:
        return self.versions_dir / validate_version_name(version)

    def executable_path(self, version: str) -> Path:
        return self.version_dir(version) / self.binary_name

    def metadata_path(self, version: str) -> Path:
        return self.version_dir(version) / METADATA_FILE_NAME

    def ensure_directories(self) -> None:
        """Create the layout. Safe to call repeatedly."""
        try:
            for directory in (
                self.root,
                self.releases_dir,
                self.downloads_dir,
                self.versions_dir,
                self.locks_dir,
                self.logs_dir,
            ):
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WriteError("Failed to create core directories", details=f"{self.root} - {e}") from e

    # ------------------------------------------------------------------
    # Current version
    # ------------------------------------------------------------------

    def current_version(self) -> Optional[str]:
        """Version ``current`` points at, or None if the link is absent or dangling."""
        self.ensure_directories()
        link = self.current_link
        if not link.is_symlink():
            return None
        try:
            target = Path(os.readlink(link))
        except OSError:
            return None
        if not target.is_absolute():
            target = link.parent / target
        resolved = Path(os.path.normpath(target))
        if not resolved.is_dir():
            return None
        return resolved.name or None

    def current_executable(self) -> Optional[Path]:
        """Executable of the current version, or None if missing or not executable."""
        version = self.current_version()
        if version is None:
            return None
        try:
            path = self.executable_path(version)
        except CoreError:
            return None
        return path if is_executable_file(path) else None

    def set_current(self, version: str) -> None:
        """
        Point ``current`` at ``version`` (the promote step).

        The target is checked before the link is touched; the swap itself is a
        rename of a staged symlink over ``current``.

        Raises:
            VersionNotInstalledError: If the version directory is missing
            BinaryMissingError: If it holds no executable binary
            WriteError: If the symlink swap fails
        """
        with self._lock:
            self.ensure_directories()
            directory = self.version_dir(version)
            binary = self.executable_path(version)
            if not directory.is_dir():
                raise VersionNotInstalledError("Core version not installed", details=f"version={version}")
            if not is_executable_file(binary):
                raise BinaryMissingError("Core binary not found", details=f"path={binary}")

            link = self.current_link
            staged = self.root / f".{CURRENT_LINK_NAME}.{uuid.uuid4().hex}"
            relative_target = os.path.join(self.versions_dir.name, version)
            try:
                os.symlink(relative_target, staged, target_is_directory=True)
                os.replace(staged, link)
            except OSError as e:
                try:
                    os.unlink(staged)
                except OSError:
                    pass
                raise WriteError(
                    "Failed to update current symlink",
                    details=f"{link} -> {relative_target} - {e}",
                ) from e

            logger.info(f"Current core version set to {version}")

    # ------------------------------------------------------------------
    # Install / remove
    # ------------------------------------------------------------------

    def remove(self, version: str) -> None:
        """
        Delete an installed version. No-op if it is already gone.

        Raises:
            CannotDeleteCurrentVersionError: If ``version`` is current
        """
        with self._lock:
            self.ensure_directories()
            if self.current_version() == version:
                raise CannotDeleteCurrentVersionError(
                    "Cannot delete current core version",
                    details=f"version={version}",
                )
            directory = self.version_dir(version)
            if directory.is_symlink():
                directory.unlink()
            elif directory.exists():
                try:
                    shutil.rmtree(directory)
                except OSError as e:
                    raise WriteError("Failed to delete core version", details=f"{directory} - {e}") from e
                logger.info(f"Removed core version {version}")

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def create_staging_dir(self) -> Path:
        """
        Fresh ``versions/.staging-<id>/`` for an install in progress.

        Hidden entries are skipped by listing and pruning.

        Raises:
            WriteError: If the directory cannot be created
        """
        self.ensure_directories()
        staging = self.versions_dir / f"{STAGING_PREFIX}{uuid.uuid4().hex}"
        try:
            staging.mkdir()
        except OSError as e:
            raise WriteError("Failed to create staging directory", details=f"{staging} - {e}") from e
        return staging

    def commit_staged(self, staging: Path, version: str) -> bool:
        """
        Move a staged install to ``versions/<version>/``.

        An existing directory for the same version is renamed aside first
        and deleted once the staged one is in place.

        Returns:
            True if an existing installation was replaced

        Raises:
            WriteError: If the rename fails (the previous directory is restored)
        """
        with self._lock:
            target = self.version_dir(version)
            retired: Optional[Path] = None
            try:
                if target.is_symlink():
                    target.unlink()
                elif target.exists():
                    retired = self.versions_dir / f"{RETIRED_PREFIX}{uuid.uuid4().hex}"
                    os.rename(target, retired)
                os.rename(staging, target)
            except OSError as e:
                if retired is not None and not target.exists():
                    try:
                        os.rename(retired, target)
                    except OSError:
                        logger.error(f"Could not restore {target} from {retired}")
                raise WriteError(
                    "Failed to move staged version into place",
                    details=f"{staging} -> {target} - {e}",
                ) from e

            if retired is not None:
                self._remove_tree(retired)
            logger.info(f"Committed core version {version}")
            return retired is not None

    def discard_staged(self, staging: Path) -> None:
        with self._lock:
            self._remove_tree(staging)

    def clean_stale_staging(self) -> List[str]:
        """
        Delete staging and retired leftovers from interrupted installs.

        Only safe while the ``upgrade`` lock is held.
        """
        with self._lock:
            self.ensure_directories()
            removed: List[str] = []
            for entry in self.versions_dir.iterdir():
                if entry.name.startswith((STAGING_PREFIX, RETIRED_PREFIX)):
                    self._remove_tree(entry)
                    removed.append(entry.name)
            if removed:
                logger.info(f"Removed stale install directories: {', '.join(removed)}")
            return removed

    def _remove_tree(self, path: Path) -> None:
        try:
            if path.is_symlink():
                path.unlink()
            elif path.exists():
                shutil.rmtree(path)
        except OSError as e:
            logger.warning(f"Failed to remove {path}: {e}")

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def write_metadata(self, metadata: VersionMetadata, directory: Optional[Path] = None) -> Path:
        """
        Atomically write ``versions/<version>/metadata.json``, or the sidecar
        in ``directory`` (a staging directory) when given.

        Raises:
            VersionNotInstalledError: If the version directory does not exist
            WriteError: On I/O failure
        """
        with self._lock:
            path = self._sidecar(metadata.version, directory)
            if not path.parent.is_dir():
                raise VersionNotInstalledError(
                    "Core version not installed",
                    details=f"version={metadata.version}",
                )
            try:
                write_json(path, metadata.to_dict())
            except OSError as e:
                raise WriteError("Failed to write metadata", details=f"{path} - {e}") from e
            return path

    def read_metadata(self, version: str, directory: Optional[Path] = None) -> VersionMetadata:
        """
        Strictly read a version's metadata sidecar.

        Raises:
            FileMissingError: If there is no sidecar
            ParseError: If it cannot be decoded
        """
        path = self._sidecar(version, directory)
        if not path.exists():
            raise FileMissingError("Metadata not found", details=str(path))
        try:
            return VersionMetadata.from_dict(read_json(path))
        except (OSError, KeyError, TypeError, ValueError) as e:
            raise ParseError("Failed to parse version metadata", details=f"{path} - {e}") from e

    def _sidecar(self, version: str, directory: Optional[Path]) -> Path:
        if directory is None:
            return self.metadata_path(version)
        return Path(directory) / METADATA_FILE_NAME

    # ------------------------------------------------------------------
    # Listing / retention
    # ------------------------------------------------------------------

    def list_installed(self) -> List[InstalledVersion]:
        """
        Installed versions with an executable binary, newest first.

        Unreadable metadata degrades to the directory timestamp with no
        checksum or arch; it never aborts the listing.
        """
        self.ensure_directories()
        current = self.current_version()

        try:
            entries = sorted(self.versions_dir.iterdir())
        except OSError as e:
            raise FileMissingError(
                "Failed to read versions directory",
                details=f"{self.versions_dir} - {e}",
            ) from e

        results: List[InstalledVersion] = []
        for entry in entries:
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            executable = entry / self.binary_name
            if not is_executable_file(executable):
                continue

            installed_at, sha256, arch = self._read_metadata_or_fallback(entry)
            results.append(
                InstalledVersion(
                    version=entry.name,
                    installed_at=installed_at,
                    executable_path=executable,
                    sha256=sha256,
                    arch=arch,
                    is_current=entry.name == current,
                )
            )

        # Ties on installed_at fall back to the version string.
        results.sort(key=lambda item: (item.installed_at, item.version), reverse=True)
        return results

    def prune(self, keep: int = DEFAULT_KEEP_VERSIONS) -> List[str]:
        """
        Keep the current version plus the newest others up to ``keep`` total.

        ``keep`` is clamped to at least 1. Individual deletion failures are
        logged and skipped.

        Returns:
            Versions that were deleted
        """
        with self._lock:
            keep_count = max(1, keep)
            installed = self.list_installed()
            if len(installed) <= keep_count:
                return []

            kept: List[str] = [item.version for item in installed if item.is_current]
            for item in installed:
                if len(kept) >= keep_count:
                    break
                if item.version not in kept:
                    kept.append(item.version)

            removed: List[str] = []
            for item in installed:
                if item.version in kept:
                    continue
                try:
                    self.remove(item.version)
                except CoreError as e:
                    logger.warning(f"Failed to prune core version {item.version}: {e}")
                    continue
                removed.append(item.version)

            if removed:
                logger.info(f"Pruned core versions: {', '.join(removed)}")
            return removed

    def _read_metadata_or_fallback(
        self,
        version_dir: Path,
    ) -> Tuple[datetime, Optional[str], Optional[HostArch]]:
        metadata_path = version_dir / METADATA_FILE_NAME
        if metadata_path.exists():
            try:
                metadata = VersionMetadata.from_dict(read_json(metadata_path))
                return metadata.installed_at, metadata.binary.sha256, metadata.binary.arch
            except (OSError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring unreadable metadata {metadata_path}: {e}")

        try:
            st = version_dir.stat()
            timestamp = getattr(st, "st_birthtime", None) or st.st_mtime
            installed_at = datetime.fromtimestamp(timestamp, tz=timezone.utc)
        except OSError:
            installed_at = datetime.now(timezone.utc)
        return installed_at, None, None
