"""
Streaming asset download into ``<core-root>/downloads``.

The body is written to a uniquely named temp file and renamed to the asset
name only once fully received, so a partial download is never mistaken for
a complete one. Cancelling the awaiting task stops the transfer at the next
chunk and removes whatever was written.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Callable, Optional

import requests

from flux_core.config import USER_AGENT
from flux_core.errors import CoreError, CoreErrorCode
from flux_core.types import Asset

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
DEFAULT_DOWNLOAD_TIMEOUT = 300.0

# (bytes_received, total_bytes or -1 when unknown)
ProgressCallback = Callable[[int, int], None]


def download_asset(
    asset: Asset,
    downloads_dir: Path,
    timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
    progress: Optional[ProgressCallback] = None,
    session: Optional[requests.Session] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Path:
    """
    Download ``asset`` to ``downloads_dir / asset.name``.

    Returns:
        Path to the complete downloaded file

    Raises:
        CoreError: DOWNLOAD_FAILED on HTTP or I/O failure, or once
            ``cancel_event`` is set (temp file removed)
    """
    downloads_dir = Path(downloads_dir)
    downloads_dir.mkdir(parents=True, exist_ok=True)

    safe_name = Path(asset.name).name
    temp_path = downloads_dir / f"{uuid.uuid4().hex}-{safe_name}"
    final_path = downloads_dir / safe_name
    url = asset.browser_download_url
    getter = session.get if session is not None else requests.get

    logger.info(f"Downloading {asset.name} ({asset.size} bytes)...")

    try:
        response = getter(
            url,
            headers={"Accept": "application/octet-stream", "User-Agent": USER_AGENT},
            stream=True,
            timeout=timeout,
        )
        response.raise_for_status()

        expected = -1
        content_length = response.headers.get("Content-Length") if response.headers else None
        if content_length and str(content_length).isdigit() and int(content_length) > 0:
            expected = int(content_length)
        elif asset.size > 0:
            expected = asset.size

        received = 0
        with open(temp_path, "wb") as f:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                _check_cancelled(cancel_event, asset)
                if not chunk:
                    continue
                f.write(chunk)
                received += len(chunk)
                if progress is not None:
                    progress(received, expected)

        _check_cancelled(cancel_event, asset)
        os.replace(temp_path, final_path)
        if cancel_event is not None and cancel_event.is_set():
            _discard(final_path)
            _check_cancelled(cancel_event, asset)
        logger.info(f"Downloaded {asset.name} to {final_path}")
        return final_path

    except requests.exceptions.RequestException as e:
        _discard(temp_path)
        raise CoreError("Download failed", details=f"{url} - {e}", code=CoreErrorCode.DOWNLOAD_FAILED) from e
    except OSError as e:
        _discard(temp_path)
        raise CoreError(
            "Failed to write downloaded file",
            details=f"{temp_path} -> {final_path} - {e}",
            code=CoreErrorCode.DOWNLOAD_FAILED,
        ) from e
    except BaseException:
        _discard(temp_path)
        raise


async def download_asset_async(
    asset: Asset,
    downloads_dir: Path,
    timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
    progress: Optional[ProgressCallback] = None,
) -> Path:
    """
    Run ``download_asset`` in the default executor.

    On cancellation the worker is told to stop; if it still finishes, the
    file it produced is removed.
    """
    loop = asyncio.get_running_loop()
    cancel_event = threading.Event()
    future = loop.run_in_executor(
        None,
        lambda: download_asset(
            asset,
            downloads_dir,
            timeout=timeout,
            progress=progress,
            cancel_event=cancel_event,
        ),
    )
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        cancel_event.set()
        future.add_done_callback(_discard_abandoned)
        logger.info(f"Download of {asset.name} cancelled")
        raise


def _check_cancelled(cancel_event: Optional[threading.Event], asset: Asset) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise CoreError("Download cancelled", details=asset.name, code=CoreErrorCode.DOWNLOAD_FAILED)


def _discard_abandoned(future: "asyncio.Future[Path]") -> None:
    if future.cancelled():
        return
    if future.exception() is not None:
        logger.debug(f"Abandoned download ended with: {future.exception()}")
        return
    _discard(future.result())


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.debug(f"Could not remove partial download {path}: {e}")
