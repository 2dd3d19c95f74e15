"""
Configuration and constants for flux-core.

Tunables are read from ``FLUX_CORE_<KEY>`` environment variables, falling
back to built-in defaults when unset or malformed:

    FLUX_CORE_ROOT                          core-data root directory
    FLUX_CORE_HEALTH_CHECK_INTERVAL_SECONDS background probe interval (30)
    FLUX_CORE_HEALTH_CHECK_TIMEOUT_SECONDS  per-request timeout (5)
    FLUX_CORE_HEALTH_CHECK_RETRIES          extra attempts per probe (0)
    FLUX_CORE_DRY_RUN_WAIT_SECONDS          canary warm-up (2)
    FLUX_CORE_MAX_CONSECUTIVE_HEALTH_FAILURES  rollback threshold (3)
    FLUX_CORE_DEFAULT_KEEP_VERSIONS         prune retention (2)
    FLUX_CORE_RELEASE_CACHE_TTL_SECONDS     release feed cache TTL (600)
    FLUX_CORE_DOWNLOAD_TIMEOUT_SECONDS      asset download timeout (300)
    FLUX_CORE_LOCK_POLL_INTERVAL_SECONDS    blocking lock poll (0.1)
    FLUX_CORE_PORT                          production port (8080)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from platformdirs import user_data_dir

logger = logging.getLogger(__name__)

FLUX_CORE_VERSION = "0.1.0"

# Release feed
GITHUB_REPO = "router-for-me/CLIProxyAPIPlus"
GITHUB_API_URL = f"https://api.github.com/repos/{GITHUB_REPO}"
USER_AGENT = f"flux-core/{FLUX_CORE_VERSION}"

# On-disk layout
BINARY_NAME = "CLIProxyAPI"
BINARY_ALIASES = ("CLIProxyAPI", "cli-proxy-api-plus")
STATE_FILE_NAME = "state.json"
METADATA_FILE_NAME = "metadata.json"
CURRENT_LINK_NAME = "current"
RELEASES_CACHE_FILE_NAME = "github_releases_cache.json"
CORE_LOG_FILE_NAME = "core.log"
CORE_CONFIG_FILE_NAME = "config.yaml"

HEALTH_CHECK_PATH = "/v0/management/debug"

ENV_PREFIX = "FLUX_CORE_"


def default_core_root(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Core-data root: ``FLUX_CORE_ROOT`` if set, else the per-user data dir."""
    env = os.environ if environ is None else environ
    override = env.get(f"{ENV_PREFIX}ROOT")
    if override:
        return Path(override).expanduser()
    return Path(user_data_dir("flux", "flux")) / "core"


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(f"{ENV_PREFIX}{key}")
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring malformed {ENV_PREFIX}{key}={raw!r}, using {default}")
        return default


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(f"{ENV_PREFIX}{key}")
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring malformed {ENV_PREFIX}{key}={raw!r}, using {default}")
        return default


@dataclass
class CoreConfig:
    """
    Runtime tunables for install, canary and health monitoring.

    Attributes:
        core_root: Directory holding versions/, state.json, locks/, ...
        health_check_interval: Seconds between background health probes
        health_check_timeout: Per-request health probe timeout in seconds
        health_check_retries: Extra attempts per probe on connection failure
        dry_run_wait: Seconds to let a canary warm up before probing
        max_consecutive_health_failures: Failures that trigger a rollback
        keep_versions: Versions retained by prune after a promotion
        release_cache_ttl: Seconds the release feed cache stays fresh
        download_timeout: Asset download timeout in seconds
        lock_poll_interval: Sleep between blocking lock attempts
        port: Production port of the core process
    """
    core_root: Path
    health_check_interval: float = 30.0
    health_check_timeout: float = 5.0
    health_check_retries: int = 0
    dry_run_wait: float = 2.0
    max_consecutive_health_failures: int = 3
    keep_versions: int = 2
    release_cache_ttl: int = 600
    download_timeout: float = 300.0
    lock_poll_interval: float = 0.1
    port: int = 8080

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CoreConfig":
        env = os.environ if environ is None else environ
        return cls(
            core_root=default_core_root(env),
            health_check_interval=float(_env_int(env, "HEALTH_CHECK_INTERVAL_SECONDS", 30)),
            health_check_timeout=float(_env_int(env, "HEALTH_CHECK_TIMEOUT_SECONDS", 5)),
            health_check_retries=_env_int(env, "HEALTH_CHECK_RETRIES", 0),
            dry_run_wait=float(_env_int(env, "DRY_RUN_WAIT_SECONDS", 2)),
            max_consecutive_health_failures=_env_int(env, "MAX_CONSECUTIVE_HEALTH_FAILURES", 3),
            keep_versions=_env_int(env, "DEFAULT_KEEP_VERSIONS", 2),
            release_cache_ttl=_env_int(env, "RELEASE_CACHE_TTL_SECONDS", 600),
            download_timeout=float(_env_int(env, "DOWNLOAD_TIMEOUT_SECONDS", 300)),
            lock_poll_interval=_env_float(env, "LOCK_POLL_INTERVAL_SECONDS", 0.1),
            port=_env_int(env, "PORT", 8080),
        )
