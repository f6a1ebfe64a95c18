"""Persistence: durable key-value stores, batched writes and the state service."""

from slack_capture.storage.batch import WriteBatcher
from slack_capture.storage.service import (
    LEGACY_STATE_KEY,
    MIGRATION_MARKER_KEY,
    STATE_KEY,
    ChannelDeletionError,
    StorageService,
)
from slack_capture.storage.store import JsonFileStore, KeyValueStore, MemoryStore

__all__ = [
    "ChannelDeletionError",
    "JsonFileStore",
    "KeyValueStore",
    "LEGACY_STATE_KEY",
    "MIGRATION_MARKER_KEY",
    "MemoryStore",
    "STATE_KEY",
    "StorageService",
    "WriteBatcher",
]
