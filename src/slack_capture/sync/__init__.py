"""Cross-context synchronisation: message bus, extraction peer, coordinator, viewer."""

from slack_capture.sync.bus import (
    COORDINATOR_ADDRESS,
    ContextInvalidatedError,
    MessageBus,
    Role,
    is_transport_error,
)
from slack_capture.sync.connection import ConnectionService, ConnectionState
from slack_capture.sync.coordinator import Coordinator, SourceLivenessRecord, SourceRegistry
from slack_capture.sync.viewer import Viewer

__all__ = [
    "COORDINATOR_ADDRESS",
    "ConnectionService",
    "ConnectionState",
    "ContextInvalidatedError",
    "Coordinator",
    "MessageBus",
    "Role",
    "SourceLivenessRecord",
    "SourceRegistry",
    "Viewer",
    "is_transport_error",
]
