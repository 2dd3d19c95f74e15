"""
Release feed client for the core binary's GitHub releases.

Only on-demand fetching lives here; when and how often to check for new
releases is up to the caller.

Usage:
    service = ReleaseService(ReleaseCache(store.releases_dir))
    latest = await service.fetch_latest_async()
    release = service.fetch_release("v6.6.103-0")
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

import requests

from flux_core.config import GITHUB_API_URL, RELEASES_CACHE_FILE_NAME, USER_AGENT
from flux_core.errors import CoreError, CoreErrorCode, ParseError, WriteError
from flux_core.serialization import (
    format_timestamp,
    parse_timestamp,
    read_json,
    utcnow,
    write_json,
)
from flux_core.types import Release

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 10 * 60
DEFAULT_REQUEST_TIMEOUT = 30.0


class CachePolicy(str, Enum):
    """How a fetch combines the on-disk cache with the network."""
    # Cached data if present and fresh, otherwise load.
    RETURN_CACHE_ELSE_LOAD = "returnCacheElseLoad"
    # Cached data even if stale; never load.
    RETURN_CACHE_DATA_DONT_LOAD = "returnCacheDataDontLoad"
    # Always load, revalidating with the cached ETag (304 keeps the cache).
    RELOAD_REVALIDATING_CACHE_DATA = "reloadRevalidatingCacheData"
    # Always load, ignoring any cached ETag.
    RELOAD_IGNORING_CACHE_DATA = "reloadIgnoringCacheData"


def raise_for_github_status(response: requests.Response, url: str) -> None:
    """
    Map a non-2xx GitHub response to a ``CoreError``.

    Raises:
        CoreError: RATE_LIMITED for 429 or an exhausted 403, NETWORK_ERROR otherwise
    """
    status = response.status_code
    if 200 <= status < 300:
        return
    if status == 429:
        raise CoreError("Request rate limited", details=f"HTTP 429 {url}", code=CoreErrorCode.RATE_LIMITED)
    if status == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
        raise CoreError(
            "Request rate limited",
            details=f"HTTP 403 rate limited {url}",
            code=CoreErrorCode.RATE_LIMITED,
        )
    raise CoreError("HTTP request failed", details=f"HTTP {status} {url}", code=CoreErrorCode.NETWORK_ERROR)


@dataclass
class CacheFile:
    etag: Optional[str]
    fetched_at: datetime
    ttl_seconds: int
    releases: List[Release]

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return (now - self.fetched_at).total_seconds() > max(0, self.ttl_seconds)


class ReleaseCache:
    """``releases/github_releases_cache.json``: last fetched feed plus its ETag."""

    def __init__(self, releases_dir: Path, default_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS):
        self.releases_dir = Path(releases_dir)
        self.default_ttl_seconds = default_ttl_seconds

    @property
    def path(self) -> Path:
        return self.releases_dir / RELEASES_CACHE_FILE_NAME

    def load(self) -> Optional[CacheFile]:
        """
        Raises:
            CoreError: CACHE_CORRUPTED if the cache exists but cannot be read
        """
        if not self.path.exists():
            return None
        try:
            data = read_json(self.path)
            if not isinstance(data, dict):
                raise TypeError(f"Expected a JSON object, got {type(data).__name__}")
            return CacheFile(
                etag=data.get("etag"),
                fetched_at=parse_timestamp(data["fetchedAt"]),
                ttl_seconds=int(data["ttlSeconds"]),
                releases=[Release.from_feed(r) for r in data["releases"]],
            )
        except (OSError, KeyError, TypeError, ValueError) as e:
            raise CoreError(
                "Failed to read releases cache",
                details=f"{self.path} - {e}",
                code=CoreErrorCode.CACHE_CORRUPTED,
            ) from e

    def store(
        self,
        etag: Optional[str],
        releases: List[Release],
        fetched_at: Optional[datetime] = None,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        document = {
            "fetchedAt": format_timestamp(fetched_at or utcnow()),
            "ttlSeconds": self.default_ttl_seconds if ttl_seconds is None else ttl_seconds,
            "releases": [r.to_feed() for r in releases],
        }
        if etag is not None:
            document["etag"] = etag
        try:
            write_json(self.path, document)
        except OSError as e:
            raise WriteError("Failed to write releases cache", details=f"{self.path} - {e}") from e

    def touch_fetched_at(self, when: Optional[datetime] = None) -> None:
        cached = self.load()
        if cached is None:
            return
        self.store(cached.etag, cached.releases, fetched_at=when or utcnow(), ttl_seconds=cached.ttl_seconds)

    def upsert(self, release: Release) -> None:
        """Put ``release`` first in the cached list, replacing any entry with the same tag."""
        cached = self.load()
        releases = [r for r in (cached.releases if cached else []) if r.tag_name != release.tag_name]
        releases.insert(0, release)
        # A single-release fetch carries no list ETag.
        self.store(None, releases, ttl_seconds=cached.ttl_seconds if cached else None)


class ReleaseService:
    """
    Fetches releases from the GitHub API with an ETag-revalidated disk cache.

    Blocking methods use ``requests``; the ``*_async`` variants run them in
    the default executor.
    """

    def __init__(
        self,
        cache: ReleaseCache,
        base_url: str = GITHUB_API_URL,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch_releases(self, policy: CachePolicy = CachePolicy.RETURN_CACHE_ELSE_LOAD) -> List[Release]:
        cached = self.cache.load()

        if policy is CachePolicy.RETURN_CACHE_DATA_DONT_LOAD:
            if cached is None:
                raise CoreError("No cached releases available", code=CoreErrorCode.CACHE_CORRUPTED)
            return cached.releases

        if policy is CachePolicy.RETURN_CACHE_ELSE_LOAD and cached is not None and not cached.is_expired():
            return cached.releases

        etag = cached.etag if cached is not None and policy is not CachePolicy.RELOAD_IGNORING_CACHE_DATA else None
        return self._load_releases(etag)

    def fetch_release(self, tag: str, policy: CachePolicy = CachePolicy.RETURN_CACHE_ELSE_LOAD) -> Release:
        cached = self.cache.load()
        cached_release = None
        if cached is not None:
            cached_release = next((r for r in cached.releases if r.tag_name == tag), None)

        if policy is CachePolicy.RETURN_CACHE_DATA_DONT_LOAD:
            if cached_release is None:
                raise CoreError(
                    "Release not found in cache",
                    details=f"tag={tag}",
                    code=CoreErrorCode.CACHE_CORRUPTED,
                )
            return cached_release

        if (
            policy is CachePolicy.RETURN_CACHE_ELSE_LOAD
            and cached_release is not None
            and not cached.is_expired()
        ):
            return cached_release

        url = f"{self.base_url}/releases/tags/{tag}"
        response = self._get(url)
        raise_for_github_status(response, url)
        release = self._decode_release(response, url)
        self.cache.upsert(release)
        return release

    def fetch_latest(self, policy: CachePolicy = CachePolicy.RETURN_CACHE_ELSE_LOAD) -> Release:
        """Newest release; the list endpoint is ordered newest first."""
        releases = self.fetch_releases(policy)
        if not releases:
            raise ParseError("No releases available")
        return releases[0]

    async def fetch_releases_async(
        self,
        policy: CachePolicy = CachePolicy.RETURN_CACHE_ELSE_LOAD,
    ) -> List[Release]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.fetch_releases, policy)

    async def fetch_release_async(
        self,
        tag: str,
        policy: CachePolicy = CachePolicy.RETURN_CACHE_ELSE_LOAD,
    ) -> Release:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.fetch_release, tag, policy)

    async def fetch_latest_async(
        self,
        policy: CachePolicy = CachePolicy.RETURN_CACHE_ELSE_LOAD,
    ) -> Release:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.fetch_latest, policy)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _get(self, url: str, etag: Optional[str] = None) -> requests.Response:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
        }
        if etag:
            headers["If-None-Match"] = etag
        try:
            return self._session.get(url, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise CoreError("Failed to reach release feed", details=f"{url} - {e}", code=CoreErrorCode.NETWORK_ERROR) from e

    def _load_releases(self, etag: Optional[str]) -> List[Release]:
        url = f"{self.base_url}/releases"
        response = self._get(url, etag)

        if response.status_code == 304:
            cached = self.cache.load()
            if cached is None:
                raise CoreError("Received 304 but cache is missing", code=CoreErrorCode.CACHE_CORRUPTED)
            self.cache.touch_fetched_at()
            logger.debug("Release feed not modified")
            return cached.releases

        raise_for_github_status(response, url)

        try:
            payload = response.json()
            if not isinstance(payload, list):
                raise TypeError(f"expected a list, got {type(payload).__name__}")
            releases = [Release.from_feed(item) for item in payload]
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError("Failed to parse releases", details=str(e)) from e

        self.cache.store(response.headers.get("ETag"), releases)
        logger.info(f"Fetched {len(releases)} core releases")
        return releases

    def _decode_release(self, response: requests.Response, url: str) -> Release:
        try:
            return Release.from_feed(response.json())
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError("Failed to parse release", details=f"{url} - {e}") from e
