"""
Type definitions for flux-core.

Defines enums and dataclasses used across the package for:
- Host platform (architecture, advisory lock names, archive kinds)
- Release feed records (releases and their assets)
- Installed versions and their per-version metadata sidecar
- The persisted lifecycle document (``state.json``)

Persisted records expose ``to_dict()`` / ``from_dict()`` using the on-disk
camelCase keys. ``from_dict`` raises ``KeyError``, ``TypeError`` or
``ValueError`` on malformed input; the owning store turns those into
``ParseError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from flux_core.serialization import (
    format_timestamp,
    parse_optional_timestamp,
    parse_timestamp,
)
from flux_core.errors import CoreError, CoreErrorCode, error_for_code


def _require_object(data: Any, what: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise TypeError(f"Expected a JSON object for {what}, got {type(data).__name__}")
    return data


# =============================================================================
# Platform
# =============================================================================


class HostArch(str, Enum):
    """CPU architectures we ship core binaries for."""
    ARM64 = "arm64"
    X86_64 = "x86_64"

    @classmethod
    def from_machine(cls, value: str) -> Optional["HostArch"]:
        """Map an OS-reported machine string (``uname -m``) to a HostArch."""
        normalized = value.strip().lower()
        if normalized in ("arm64", "aarch64"):
            return cls.ARM64
        if normalized in ("x86_64", "amd64"):
            return cls.X86_64
        return None

    @property
    def asset_token(self) -> str:
        """Token used in release asset names (e.g. ``darwin_amd64``)."""
        if self is HostArch.ARM64:
            return "arm64"
        return "amd64"


class LockName(str, Enum):
    """Named host-wide advisory locks."""
    INSTALL = "install"
    UPGRADE = "upgrade"

    @property
    def file_name(self) -> str:
        return f"{self.value}.lock"


class ArchiveKind(str, Enum):
    TAR_GZ = "tar.gz"
    ZIP = "zip"


# =============================================================================
# Errors as data
# =============================================================================


@dataclass(frozen=True)
class ErrorInfo:
    """
    Serializable form of a ``CoreError``.

    Attributes:
        code: Stable error kind
        message: Human-readable summary
        details: Free-form diagnostic context
        recovery_suggestion: Optional hint for the operator
    """
    code: CoreErrorCode
    message: str
    details: Optional[str] = None
    recovery_suggestion: Optional[str] = None

    def to_error(self) -> CoreError:
        return error_for_code(self.code, self.message, self.details, self.recovery_suggestion)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details is not None:
            data["details"] = self.details
        if self.recovery_suggestion is not None:
            data["recoverySuggestion"] = self.recovery_suggestion
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorInfo":
        data = _require_object(data, "error")
        return cls(
            code=CoreErrorCode(data["code"]),
            message=str(data["message"]),
            details=data.get("details"),
            recovery_suggestion=data.get("recoverySuggestion"),
        )


# =============================================================================
# Release feed
# =============================================================================


@dataclass(frozen=True)
class Asset:
    """
    A downloadable file attached to a release.

    Attributes:
        name: File name (platform token and archive suffix live here)
        browser_download_url: Direct download URL
        size: Declared size in bytes
        digest: Optional ``algo:hex`` digest; only ``sha256:`` is trusted
        content_type: Optional MIME type
    """
    name: str
    browser_download_url: str
    size: int = 0
    digest: Optional[str] = None
    content_type: Optional[str] = None

    @property
    def lowercased_name(self) -> str:
        return self.name.lower()

    @property
    def sha256_digest(self) -> Optional[str]:
        """Hex value of a ``sha256:`` digest, None for any other algorithm."""
        if not self.digest or not self.digest.startswith("sha256:"):
            return None
        return self.digest[len("sha256:"):]

    @property
    def is_tar_gz(self) -> bool:
        return self.lowercased_name.endswith((".tar.gz", ".tgz"))

    @property
    def is_zip(self) -> bool:
        return self.lowercased_name.endswith(".zip")

    @property
    def archive_kind(self) -> Optional[ArchiveKind]:
        if self.is_tar_gz:
            return ArchiveKind.TAR_GZ
        if self.is_zip:
            return ArchiveKind.ZIP
        return None

    @classmethod
    def from_feed(cls, data: Dict[str, Any]) -> "Asset":
        data = _require_object(data, "asset")
        return cls(
            name=str(data["name"]),
            browser_download_url=str(data["browser_download_url"]),
            size=int(data.get("size") or 0),
            digest=data.get("digest"),
            content_type=data.get("content_type"),
        )

    def to_feed(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "browser_download_url": self.browser_download_url,
            "size": self.size,
        }
        if self.digest is not None:
            data["digest"] = self.digest
        if self.content_type is not None:
            data["content_type"] = self.content_type
        return data


@dataclass(frozen=True)
class Release:
    """
    A published core release.

    Attributes:
        tag_name: Raw git tag, e.g. ``v6.6.103-0``
        name: Optional display name
        published_at: Optional publish timestamp
        assets: Attached files, in feed order
    """
    tag_name: str
    name: Optional[str] = None
    published_at: Optional[datetime] = None
    assets: tuple = ()

    @property
    def version_string(self) -> str:
        """Tag with a single leading ``v`` stripped."""
        return self.tag_name[1:] if self.tag_name.startswith("v") else self.tag_name

    @classmethod
    def from_feed(cls, data: Dict[str, Any]) -> "Release":
        data = _require_object(data, "release")
        return cls(
            tag_name=str(data["tag_name"]),
            name=data.get("name"),
            published_at=parse_optional_timestamp(data.get("published_at")),
            assets=tuple(Asset.from_feed(a) for a in data.get("assets") or []),
        )

    def to_feed(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "tag_name": self.tag_name,
            "assets": [a.to_feed() for a in self.assets],
        }
        if self.name is not None:
            data["name"] = self.name
        if self.published_at is not None:
            data["published_at"] = format_timestamp(self.published_at)
        return data


# =============================================================================
# Installed versions
# =============================================================================


@dataclass
class InstalledVersion:
    """
    A version present under ``versions/``.

    Attributes:
        version: Identifier, also the directory name
        installed_at: From metadata, or the directory timestamp as fallback
        executable_path: Absolute path to the installed binary
        sha256: Binary digest from metadata, if available
        arch: Architecture from metadata, if available
        is_current: Whether ``current`` pointed here when listed
    """
    version: str
    installed_at: datetime
    executable_path: Path
    sha256: Optional[str] = None
    arch: Optional[HostArch] = None
    is_current: bool = False

    @property
    def id(self) -> str:
        return self.version


@dataclass
class SourceInfo:
    """Where an installed binary came from."""
    repo: str
    tag: str
    asset_name: str
    asset_url: Optional[str] = None
    asset_sha256: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"repo": self.repo, "tag": self.tag, "assetName": self.asset_name}
        if self.asset_url is not None:
            data["assetURL"] = self.asset_url
        if self.asset_sha256 is not None:
            data["assetSHA256"] = self.asset_sha256
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceInfo":
        data = _require_object(data, "source")
        return cls(
            repo=str(data["repo"]),
            tag=str(data["tag"]),
            asset_name=str(data["assetName"]),
            asset_url=data.get("assetURL"),
            asset_sha256=data.get("assetSHA256"),
        )


@dataclass
class BinaryInfo:
    """The installed binary itself. ``sha256`` is required and verified at install."""
    sha256: str
    final_name: str = "CLIProxyAPI"
    name_in_archive: Optional[str] = None
    arch: Optional[HostArch] = None
    format: str = "macho"
    is_executable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "finalName": self.final_name,
            "sha256": self.sha256,
            "format": self.format,
            "isExecutable": self.is_executable,
        }
        if self.name_in_archive is not None:
            data["nameInArchive"] = self.name_in_archive
        if self.arch is not None:
            data["arch"] = self.arch.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BinaryInfo":
        data = _require_object(data, "binary")
        arch = data.get("arch")
        return cls(
            sha256=str(data["sha256"]),
            final_name=str(data.get("finalName", "CLIProxyAPI")),
            name_in_archive=data.get("nameInArchive"),
            arch=HostArch(arch) if arch is not None else None,
            format=str(data.get("format", "macho")),
            is_executable=bool(data.get("isExecutable", True)),
        )


@dataclass
class VersionMetadata:
    """Sidecar ``versions/<version>/metadata.json``."""
    version: str
    installed_at: datetime
    source: SourceInfo
    binary: BinaryInfo
    validated_at: Optional[datetime] = None
    schema_version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "schemaVersion": self.schema_version,
            "version": self.version,
            "installedAt": format_timestamp(self.installed_at),
            "source": self.source.to_dict(),
            "binary": self.binary.to_dict(),
        }
        if self.validated_at is not None:
            data["validatedAt"] = format_timestamp(self.validated_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VersionMetadata":
        data = _require_object(data, "version metadata")
        return cls(
            schema_version=int(data.get("schemaVersion", 1)),
            version=str(data["version"]),
            installed_at=parse_timestamp(data["installedAt"]),
            validated_at=parse_optional_timestamp(data.get("validatedAt")),
            source=SourceInfo.from_dict(data["source"]),
            binary=BinaryInfo.from_dict(data["binary"]),
        )


# =============================================================================
# Persisted lifecycle document
# =============================================================================


@dataclass
class UpgradeAttempt:
    """Outcome of the most recent install/upgrade run."""
    version: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    result: Optional[str] = None
    error_code: Optional[CoreErrorCode] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "version": self.version,
            "startedAt": format_timestamp(self.started_at),
        }
        if self.finished_at is not None:
            data["finishedAt"] = format_timestamp(self.finished_at)
        if self.result is not None:
            data["result"] = self.result
        if self.error_code is not None:
            data["errorCode"] = self.error_code.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpgradeAttempt":
        data = _require_object(data, "upgrade attempt")
        code = data.get("errorCode")
        return cls(
            version=str(data["version"]),
            started_at=parse_timestamp(data["startedAt"]),
            finished_at=parse_optional_timestamp(data.get("finishedAt")),
            result=data.get("result"),
            error_code=CoreErrorCode(code) if code is not None else None,
        )


@dataclass
class PersistedCoreState:
    """
    The durable ``state.json`` document.

    Attributes:
        schema_version: Document schema, currently 1
        active_version: Version the supervisor last started
        last_known_good_version: Rollback target
        consecutive_health_failures: Reset to 0 on a healthy probe
        last_upgrade_attempt: Most recent install/upgrade outcome
    """
    schema_version: int = 1
    active_version: Optional[str] = None
    last_known_good_version: Optional[str] = None
    consecutive_health_failures: int = 0
    last_upgrade_attempt: Optional[UpgradeAttempt] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "schemaVersion": self.schema_version,
            "consecutiveHealthFailures": self.consecutive_health_failures,
        }
        if self.active_version is not None:
            data["activeVersion"] = self.active_version
        if self.last_known_good_version is not None:
            data["lastKnownGoodVersion"] = self.last_known_good_version
        if self.last_upgrade_attempt is not None:
            data["lastUpgradeAttempt"] = self.last_upgrade_attempt.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedCoreState":
        data = _require_object(data, "core state")
        attempt = data.get("lastUpgradeAttempt")
        return cls(
            schema_version=int(data["schemaVersion"]),
            active_version=data.get("activeVersion"),
            last_known_good_version=data.get("lastKnownGoodVersion"),
            consecutive_health_failures=int(data.get("consecutiveHealthFailures", 0)),
            last_upgrade_attempt=UpgradeAttempt.from_dict(attempt) if attempt is not None else None,
        )


__all__: List[str] = [
    "HostArch",
    "LockName",
    "ArchiveKind",
    "ErrorInfo",
    "Asset",
    "Release",
    "InstalledVersion",
    "SourceInfo",
    "BinaryInfo",
    "VersionMetadata",
    "UpgradeAttempt",
    "PersistedCoreState",
]
