"""Error taxonomy shared by sessions, trackers and the metrics layer."""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    CONNECTION = "connection"
    PROTOCOL = "protocol"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class SyncLoadError(Exception):
    kind: ErrorKind = ErrorKind.TRANSPORT


class SessionConnectionError(SyncLoadError, ConnectionError):
    """Handshake failed before the session opened."""

    kind = ErrorKind.CONNECTION


class ProtocolError(SyncLoadError):
    """Inbound message that cannot be matched to a pending send."""

    kind = ErrorKind.PROTOCOL


class TransportError(SyncLoadError):
    """Transport fault after the session opened."""

    kind = ErrorKind.TRANSPORT


class SessionTimeout(SyncLoadError, TimeoutError):
    """Connect or stall timeout; a normal terminal transition."""

    kind = ErrorKind.TIMEOUT


class AggregationError(SyncLoadError, ValueError):
    """Sample that would corrupt a distribution (NaN, inf, non-numeric)."""


class SessionStateError(SyncLoadError, RuntimeError):
    """Illegal state machine transition; a logic defect."""


class ConfigError(ValueError):
    pass
