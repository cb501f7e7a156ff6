"""Sync module for the remote note API.

Propagates local note mutations to the server through a single-flight
queue, including conflict detection and resolution.
"""

from .conflict import (
    ConflictDetector,
    ConflictError,
    ConflictNotFoundError,
    ConflictOutcome,
    detect_conflict,
)
from .events import EventBus, SyncEvent
from .gateway import (
    GatewayError,
    NetworkError,
    RemoteGateway,
    SemanticError,
    VersionConflictError,
)
from .queue import (
    QueueStatus,
    SyncQueue,
    SyncQueueEntry,
    SyncResult,
    call_with_retry,
)

__all__ = [
    # Gateway
    "GatewayError",
    "NetworkError",
    "RemoteGateway",
    "SemanticError",
    "VersionConflictError",
    # Events
    "EventBus",
    "SyncEvent",
    # Conflict handling
    "ConflictDetector",
    "ConflictError",
    "ConflictNotFoundError",
    "ConflictOutcome",
    "detect_conflict",
    # Queue
    "QueueStatus",
    "SyncQueue",
    "SyncQueueEntry",
    "SyncResult",
    "call_with_retry",
]
