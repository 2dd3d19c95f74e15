"""
HTTP health probe for the core process.

The core answers ``GET /v0/management/debug``; any status below 500 (auth
failures included) means the server is up and routing requests.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

import requests

from flux_core.config import HEALTH_CHECK_PATH, USER_AGENT
from flux_core.errors import CoreError, CoreErrorCode

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PROBE_TIMEOUT = 5.0
RETRY_DELAY = 0.2


def health_url(port: int, host: str = DEFAULT_HOST) -> str:
    return f"http://{host}:{port}{HEALTH_CHECK_PATH}"


def is_healthy(
    port: int,
    host: str = DEFAULT_HOST,
    retries: int = 0,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
    session: Optional[requests.Session] = None,
) -> bool:
    """
    Probe the core once, retrying connection failures ``retries`` times.

    An HTTP response is final: 200-499 is healthy, anything else is not.
    """
    url = health_url(port, host)
    getter = session.get if session is not None else requests.get
    attempts = max(0, retries) + 1

    for attempt in range(1, attempts + 1):
        try:
            response = getter(url, headers={"User-Agent": USER_AGENT}, timeout=timeout)
        except requests.exceptions.RequestException as e:
            logger.debug(f"Health probe {attempt}/{attempts} to {url} failed: {e}")
            if attempt < attempts:
                time.sleep(RETRY_DELAY)
            continue
        healthy = 200 <= response.status_code < 500
        if not healthy:
            logger.debug(f"Health probe to {url} returned HTTP {response.status_code}")
        return healthy

    return False


async def is_healthy_async(
    port: int,
    host: str = DEFAULT_HOST,
    retries: int = 0,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> bool:
    """Run ``is_healthy`` in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None,
        lambda: is_healthy(port, host=host, retries=retries, timeout=timeout),
    )


async def wait_healthy(
    port: int,
    host: str = DEFAULT_HOST,
    timeout: float = 10.0,
    interval: float = 0.5,
) -> None:
    """
    Wait for the core to become healthy.

    Polls until a probe succeeds or ``timeout`` expires.

    Raises:
        CoreError: HEALTH_CHECK_FAILED if the core never answered
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        probe_timeout = max(0.1, min(interval, deadline - loop.time()))
        if await is_healthy_async(port, host=host, timeout=probe_timeout):
            logger.debug(f"Core on port {port} is healthy")
            return
        if loop.time() + interval > deadline:
            break
        await asyncio.sleep(interval)

    raise CoreError(
        "Core did not become healthy",
        details=f"port={port} timeout={timeout}s",
        code=CoreErrorCode.HEALTH_CHECK_FAILED,
    )
