"""
Exception types for flux-core.

Every fatal condition surfaced to callers is a ``CoreError`` carrying:
- code: stable ``CoreErrorCode`` kind
- message: human-readable summary
- details: optional free-form context (offending path, errno, HTTP status)

Subclasses exist for the kinds callers commonly need to catch on their own
(checksum failures, guarded deletes, missing binaries, ...).
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from flux_core.types import ErrorInfo


class CoreErrorCode(str, Enum):
    """Stable error kinds. Values are persisted in ``state.json``."""
    UNKNOWN = "unknown"

    # Network / GitHub
    NETWORK_ERROR = "networkError"
    RATE_LIMITED = "rateLimited"
    PARSE_ERROR = "parseError"
    CACHE_CORRUPTED = "cacheCorrupted"

    # Release / Asset
    NO_COMPATIBLE_ASSET = "noCompatibleAsset"
    UNSUPPORTED_ASSET_FORMAT = "unsupportedAssetFormat"
    UNSUPPORTED_PLATFORM = "unsupportedPlatform"

    # Download / IO
    DOWNLOAD_FAILED = "downloadFailed"
    FILE_WRITE_FAILED = "fileWriteFailed"
    FILE_MISSING = "fileMissing"
    PERMISSION_DENIED = "permissionDenied"
    LOCK_FAILED = "lockFailed"
    VERSION_NOT_INSTALLED = "versionNotInstalled"
    BINARY_MISSING = "binaryMissing"

    # Checksum
    CHECKSUM_MISSING = "checksumMissing"
    CHECKSUM_MISMATCH = "checksumMismatch"

    # Extract / Security
    INVALID_ARCHIVE = "invalidArchive"
    BINARY_NOT_FOUND_IN_ARCHIVE = "binaryNotFoundInArchive"
    PATH_TRAVERSAL_DETECTED = "pathTraversalDetected"
    SYMLINK_ESCAPE_DETECTED = "symlinkEscapeDetected"

    # Binary validation
    CORE_BINARY_INVALID_FORMAT = "coreBinaryInvalidFormat"
    CORE_BINARY_ARCH_MISMATCH = "coreBinaryArchMismatch"
    ROSETTA_REQUIRED = "rosettaRequired"

    # Run / Health
    PORT_IN_USE = "portInUse"
    CORE_START_FAILED = "coreStartFailed"
    CORE_START_TIMEOUT = "coreStartTimeout"
    HEALTH_CHECK_FAILED = "healthCheckFailed"

    # Promote / Rollback / State
    PROMOTE_FAILED = "promoteFailed"
    ROLLBACK_FAILED = "rollbackFailed"
    CANNOT_DELETE_CURRENT_VERSION = "cannotDeleteCurrentVersion"


class FluxCoreError(Exception):
    """Base exception for all flux-core errors."""
    pass


class CoreError(FluxCoreError):
    """
    Structured lifecycle error.

    Example:
        try:
            store.remove("6.6.103-0")
        except CoreError as e:
            logger.warning(f"{e.code.value}: {e.message} ({e.details})")
    """

    default_code: CoreErrorCode = CoreErrorCode.UNKNOWN

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        code: Optional[CoreErrorCode] = None,
        recovery_suggestion: Optional[str] = None,
    ):
        self.code = code or self.default_code
        self.message = message
        self.details = details
        self.recovery_suggestion = recovery_suggestion

        text = f"{self.code.value}: {message}"
        if details:
            text += f" ({details})"
        super().__init__(text)

    @property
    def info(self) -> "ErrorInfo":
        """Plain record of this error for embedding in lifecycle state."""
        from flux_core.types import ErrorInfo

        return ErrorInfo(
            code=self.code,
            message=self.message,
            details=self.details,
            recovery_suggestion=self.recovery_suggestion,
        )

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code!r}, message={self.message!r}, "
            f"details={self.details!r})"
        )


class FileMissingError(CoreError):
    """An expected path is absent."""
    default_code = CoreErrorCode.FILE_MISSING


class VersionNotInstalledError(FileMissingError):
    """The requested version directory does not exist."""
    default_code = CoreErrorCode.VERSION_NOT_INSTALLED


class BinaryMissingError(FileMissingError):
    """The version directory exists but holds no executable binary."""
    default_code = CoreErrorCode.BINARY_MISSING


class ParseError(CoreError):
    """Malformed JSON or an undecodable state/metadata document."""
    default_code = CoreErrorCode.PARSE_ERROR


class WriteError(CoreError):
    """A durable write failed."""
    default_code = CoreErrorCode.FILE_WRITE_FAILED


class PermissionDeniedError(CoreError):
    """Lock file or binary is not accessible."""
    default_code = CoreErrorCode.PERMISSION_DENIED


class LockError(CoreError):
    """Locking failed for a reason other than contention."""
    default_code = CoreErrorCode.LOCK_FAILED


class CannotDeleteCurrentVersionError(CoreError):
    """Refused to delete the version ``current`` points at."""
    default_code = CoreErrorCode.CANNOT_DELETE_CURRENT_VERSION


class ChecksumMismatchError(CoreError):
    """Downloaded archive or installed binary failed integrity verification."""
    default_code = CoreErrorCode.CHECKSUM_MISMATCH


class UnsupportedPlatformError(CoreError):
    """Host OS or CPU architecture is not one we ship binaries for."""
    default_code = CoreErrorCode.UNSUPPORTED_PLATFORM


_CODE_TO_CLASS = {
    cls.default_code: cls
    for cls in (
        FileMissingError,
        VersionNotInstalledError,
        BinaryMissingError,
        ParseError,
        WriteError,
        PermissionDeniedError,
        LockError,
        CannotDeleteCurrentVersionError,
        ChecksumMismatchError,
        UnsupportedPlatformError,
    )
}


def error_for_code(
    code: CoreErrorCode,
    message: str,
    details: Optional[str] = None,
    recovery_suggestion: Optional[str] = None,
) -> CoreError:
    """Build the most specific ``CoreError`` subclass for ``code``."""
    cls = _CODE_TO_CLASS.get(code, CoreError)
    return cls(message, details=details, code=code, recovery_suggestion=recovery_suggestion)
