"""
Durable lifecycle document (``state.json``).

The store is the single source of truth across process restarts. A corrupt
file is surfaced as ``ParseError`` rather than silently reset, since a reset
could hide a pending rollback.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from flux_core.errors import FileMissingError, ParseError, PermissionDeniedError, WriteError
from flux_core.serialization import read_json, write_json
from flux_core.types import PersistedCoreState

logger = logging.getLogger(__name__)

StateMutator = Callable[[PersistedCoreState], Optional[PersistedCoreState]]


class LifecycleStateStore:
    """
    Reads and atomically writes ``PersistedCoreState``.

    ``update`` calls from different threads (or interleaved coroutines that
    call it) run strictly one after another.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.RLock()

    def read(self) -> PersistedCoreState:
        """
        Load the persisted state, or the default state if none exists yet.

        Raises:
            ParseError: If the file exists but cannot be decoded
            PermissionDeniedError: If the file cannot be opened for reading
            FileMissingError: On any other read failure
        """
        with self._lock:
            if not self.path.exists():
                return PersistedCoreState()
            try:
                data = read_json(self.path)
            except PermissionError as e:
                raise PermissionDeniedError(
                    "Cannot read core state file",
                    details=f"{self.path} - {e}",
                ) from e
            except ValueError as e:
                raise ParseError(
                    "Failed to parse core state file",
                    details=f"{self.path} - {e}",
                ) from e
            except OSError as e:
                raise FileMissingError(
                    "Failed to read core state file",
                    details=f"{self.path} - {e}",
                ) from e
            try:
                return PersistedCoreState.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                raise ParseError(
                    "Failed to parse core state file",
                    details=f"{self.path} - {e}",
                ) from e

    def write(self, state: PersistedCoreState) -> None:
        """
        Replace the state file atomically.

        Raises:
            WriteError: On I/O failure; the previous file stays intact
        """
        with self._lock:
            try:
                write_json(self.path, state.to_dict())
            except OSError as e:
                raise WriteError(
                    "Failed to write core state file",
                    details=f"{self.path} - {e}",
                ) from e

    def update(self, mutator: StateMutator) -> PersistedCoreState:
        """
        Read, mutate and write as one unit.

        ``mutator`` may modify the state in place or return a replacement.

        Returns:
            The state that was written
        """
        with self._lock:
            state = self.read()
            replacement = mutator(state)
            if replacement is not None:
                state = replacement
            self.write(state)
            logger.debug(f"Core state updated: {state.to_dict()}")
            return state
