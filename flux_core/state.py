"""
Lifecycle state machine for the supervised core process.

The lifecycle is a closed set of mutually exclusive variants, one frozen
dataclass per state, each tagged with a ``kind`` discriminant:

    Idle -> Installing -> Testing -> Promoting -> Running
                             |                      |
                             +----> RollingBack <---+
    any state -> Error -> (reset) -> Idle

``encode_lifecycle_state`` / ``decode_lifecycle_state`` map a variant to and
from ``{"kind": ..., <payload>}`` so the state can be shipped to a UI process
or logged. Only ``PersistedCoreState`` is required to survive restarts; this
in-memory state is reconstructed from it plus live process inspection.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Union

from flux_core.errors import ParseError
from flux_core.serialization import format_timestamp, parse_timestamp
from flux_core.types import ErrorInfo


@dataclass(frozen=True)
class Idle:
    """No core process managed, no operation in flight."""
    kind: ClassVar[str] = "idle"


@dataclass(frozen=True)
class Starting:
    """Launch requested, not yet confirmed running."""
    port: int
    target_version: Optional[str] = None
    kind: ClassVar[str] = "starting"


@dataclass(frozen=True)
class Running:
    active_version: str
    pid: int
    port: int
    started_at: datetime
    kind: ClassVar[str] = "running"


@dataclass(frozen=True)
class Stopping:
    kind: ClassVar[str] = "stopping"


@dataclass(frozen=True)
class Installing:
    """A new version is being fetched, unpacked or verified. ``phase`` is a progress label."""
    version: str
    phase: Optional[str] = None
    kind: ClassVar[str] = "installing"


@dataclass(frozen=True)
class Testing:
    """Canary of a freshly installed version running on a non-production port."""
    version: str
    pid: int
    port: int
    started_at: datetime
    kind: ClassVar[str] = "testing"


@dataclass(frozen=True)
class Promoting:
    version: str
    kind: ClassVar[str] = "promoting"


@dataclass(frozen=True)
class RollingBack:
    from_version: str
    to_version: str
    kind: ClassVar[str] = "rollingBack"


@dataclass(frozen=True)
class Error:
    """Failure of the current attempt. Always recoverable via the orchestrator's ``reset()``."""
    error: ErrorInfo
    kind: ClassVar[str] = "error"


LifecycleState = Union[
    Idle, Starting, Running, Stopping, Installing, Testing, Promoting, RollingBack, Error
]

# States in which the core binary is (or is about to be) executing.
ACTIVE_STATES = (Starting, Running, Testing)

# States in which an install/upgrade workflow owns the versions directory.
BUSY_STATES = (Installing, Testing, Promoting, RollingBack)


def encode_lifecycle_state(state: LifecycleState) -> Dict[str, Any]:
    """Encode a lifecycle variant as a tagged JSON object."""
    data: Dict[str, Any] = {"kind": state.kind}

    if isinstance(state, Starting):
        if state.target_version is not None:
            data["targetVersion"] = state.target_version
        data["port"] = state.port
    elif isinstance(state, Running):
        data["activeVersion"] = state.active_version
        data["pid"] = state.pid
        data["port"] = state.port
        data["startedAt"] = format_timestamp(state.started_at)
    elif isinstance(state, Installing):
        data["version"] = state.version
        if state.phase is not None:
            data["phase"] = state.phase
    elif isinstance(state, Testing):
        data["version"] = state.version
        data["pid"] = state.pid
        data["port"] = state.port
        data["startedAt"] = format_timestamp(state.started_at)
    elif isinstance(state, Promoting):
        data["version"] = state.version
    elif isinstance(state, RollingBack):
        data["from"] = state.from_version
        data["to"] = state.to_version
    elif isinstance(state, Error):
        data["error"] = state.error.to_dict()

    return data


def decode_lifecycle_state(data: Dict[str, Any]) -> LifecycleState:
    """
    Decode a tagged JSON object back into a lifecycle variant.

    Raises:
        ParseError: On an unknown ``kind`` or a missing/ill-typed payload field
    """
    if not isinstance(data, dict):
        raise ParseError("Lifecycle state must be a JSON object", details=repr(data))

    kind = data.get("kind")
    try:
        if kind == Idle.kind:
            return Idle()
        if kind == Starting.kind:
            return Starting(port=_port(data["port"]), target_version=data.get("targetVersion"))
        if kind == Running.kind:
            return Running(
                active_version=str(data["activeVersion"]),
                pid=int(data["pid"]),
                port=_port(data["port"]),
                started_at=parse_timestamp(data["startedAt"]),
            )
        if kind == Stopping.kind:
            return Stopping()
        if kind == Installing.kind:
            return Installing(version=str(data["version"]), phase=data.get("phase"))
        if kind == Testing.kind:
            return Testing(
                version=str(data["version"]),
                pid=int(data["pid"]),
                port=_port(data["port"]),
                started_at=parse_timestamp(data["startedAt"]),
            )
        if kind == Promoting.kind:
            return Promoting(version=str(data["version"]))
        if kind == RollingBack.kind:
            return RollingBack(from_version=str(data["from"]), to_version=str(data["to"]))
        if kind == Error.kind:
            return Error(error=ErrorInfo.from_dict(data["error"]))
    except (KeyError, TypeError, ValueError) as e:
        raise ParseError(f"Invalid '{kind}' lifecycle state", details=str(e)) from e

    raise ParseError("Unknown lifecycle state kind", details=f"kind={kind!r}")


def _port(value: Any) -> int:
    port = int(value)
    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range: {port}")
    return port
