"""
Streaming content hashing.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Union

DEFAULT_CHUNK_SIZE = 1024 * 1024


def sha256_hex(path: Union[str, Path], chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """
    Compute the lowercase hex SHA-256 of a file without loading it whole.

    Args:
        path: File to hash
        chunk_size: Bytes read per iteration (default 1 MiB)

    Returns:
        64-character lowercase hex digest

    Raises:
        OSError: If the file cannot be opened or a read fails
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()
