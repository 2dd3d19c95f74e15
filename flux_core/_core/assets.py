"""
Release asset selection and checksum verification.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional

import requests

from flux_core.config import USER_AGENT
from flux_core.errors import ChecksumMismatchError, CoreError, CoreErrorCode
from flux_core.types import Asset, HostArch, Release
from flux_core._core.hashing import sha256_hex
from flux_core._core.releases import raise_for_github_status

logger = logging.getLogger(__name__)

CHECKSUMS_ASSET_NAME = "checksums.txt"

KNOWN_OS_TOKENS = ("darwin", "linux", "windows", "freebsd")

# Preferred archive suffixes, best first.
ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".zip")


def select_asset(release: Release, host_arch: HostArch, os_name: str) -> Asset:
    """
    Pick the release asset for this host.

    Matches ``_<os>_<arch token><archive suffix>`` against asset names,
    ignoring the checksums file and assets built for other operating systems.

    Raises:
        CoreError: NO_COMPATIBLE_ASSET if nothing matches
    """
    os_name = os_name.lower()
    token = host_arch.asset_token
    other_os = [name for name in KNOWN_OS_TOKENS if name != os_name]

    candidates = []
    for asset in release.assets:
        name = asset.lowercased_name
        if name == CHECKSUMS_ASSET_NAME:
            continue
        if any(other in name for other in other_os):
            continue
        candidates.append(asset)

    for suffix in ARCHIVE_SUFFIXES:
        expected = f"_{os_name}_{token}{suffix}"
        for asset in candidates:
            if asset.lowercased_name.endswith(expected):
                return asset

    raise CoreError(
        f"No compatible {os_name} asset found",
        details=f"tag={release.tag_name} expected=_{os_name}_{token}{{{','.join(ARCHIVE_SUFFIXES)}}}",
        code=CoreErrorCode.NO_COMPATIBLE_ASSET,
    )


def parse_checksums(text: str) -> Dict[str, str]:
    """Parse ``<sha256>  <filename>`` lines into ``{filename: sha256}``."""
    result: Dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        sha, name = parts[0], parts[1]
        # sha256sum binary mode marks names with a leading '*'
        result[name.lstrip("*")] = sha
    return result


class ChecksumVerifier:
    """
    Resolves the expected SHA-256 for an asset and checks downloaded files.

    The asset's declared ``sha256:`` digest wins; otherwise the release's
    ``checksums.txt`` is consulted.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self._session = session or requests.Session()
        self.timeout = timeout

    def expected_sha256(self, asset: Asset, release: Release) -> str:
        """
        Raises:
            CoreError: CHECKSUM_MISSING when no digest is available
        """
        digest = asset.sha256_digest
        if digest:
            return digest.lower()

        checksums_asset = next(
            (a for a in release.assets if a.lowercased_name == CHECKSUMS_ASSET_NAME),
            None,
        )
        if checksums_asset is None:
            raise CoreError(
                "No checksum available",
                details=f"asset={asset.name}",
                code=CoreErrorCode.CHECKSUM_MISSING,
            )

        text = self._download_text(checksums_asset.browser_download_url)
        parsed = parse_checksums(text).get(asset.name)
        if not parsed:
            raise CoreError(
                "Checksum not found",
                details=f"asset={asset.name}",
                code=CoreErrorCode.CHECKSUM_MISSING,
            )
        return parsed.lower()

    def verify(self, path: Path, asset: Asset, release: Release) -> str:
        """
        Check ``path`` against the asset's expected digest.

        Returns:
            The verified digest

        Raises:
            ChecksumMismatchError: If the digests differ or the file cannot be hashed
        """
        expected = self.expected_sha256(asset, release)
        try:
            actual = sha256_hex(path).lower()
        except OSError as e:
            raise ChecksumMismatchError("Failed to compute checksum", details=f"{path} - {e}") from e

        if actual != expected:
            raise ChecksumMismatchError(
                "Checksum verification failed",
                details=f"expected={expected} actual={actual} file={Path(path).name}",
            )
        logger.debug(f"Checksum verified for {asset.name}")
        return actual

    async def verify_async(self, path: Path, asset: Asset, release: Release) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.verify, path, asset, release)

    def _download_text(self, url: str) -> str:
        try:
            response = self._session.get(url, headers={"User-Agent": USER_AGENT}, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise CoreError(
                "Failed to download checksums",
                details=f"{url} - {e}",
                code=CoreErrorCode.NETWORK_ERROR,
            ) from e

        raise_for_github_status(response, url)
        return response.text
