"""
JSON encoding conventions shared by every persisted flux-core document.

- Keys are sorted, output is indented for humans.
- Timestamps are UTC ISO-8601 without fractional seconds on write
  (``2025-01-31T12:00:00Z``); fractional seconds and explicit offsets are
  accepted on read.
- Files are replaced atomically: temp file in the same directory, fsync,
  ``os.replace``.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


def utcnow() -> datetime:
    """Current time, truncated to whole seconds so it round-trips through JSON."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc).replace(microsecond=0)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an ISO-8601 timestamp.

    Raises:
        ValueError: If ``value`` is not a string or not a valid timestamp
    """
    if not isinstance(value, str):
        raise ValueError(f"Invalid date: {value!r}")

    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"

    # fromisoformat before 3.11 only takes 3 or 6 fractional digits
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if not ch.isdigit():
                rest = tail[i:]
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}" if digits else head + rest

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValueError(f"Invalid date: {value!r}") from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_optional_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return parse_timestamp(value)


def dumps(document: Any) -> str:
    return json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def atomic_write_text(path: Path, content: str) -> None:
    """
    Write ``content`` to ``path`` so readers see either the old or the new file.

    Raises:
        OSError: If the temp write or the rename fails (temp file is removed)
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def write_json(path: Path, document: Any) -> None:
    atomic_write_text(path, dumps(document))


def read_json(path: Path) -> Any:
    """
    Load a JSON document.

    Raises:
        OSError: If the file cannot be read
        ValueError: If the content is not valid JSON
    """
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
