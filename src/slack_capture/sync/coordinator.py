"""Coordinator peer: per-source liveness, fan-out to viewers, channel deletion.

Per-source state lives only in memory. A recycled coordinator starts empty
and is rebuilt as extraction contexts reconnect and resync.
"""

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

from cachetools import TTLCache
from pydantic import ValidationError

from slack_capture.config import Settings, get_settings
from slack_capture.merge import remove_channel
from slack_capture.models.messages import (
    ChannelDeletedMessage,
    DeleteChannelMessage,
    HeartbeatMessage,
    PopupStatusMessage,
    StateUpdateMessage,
    SyncMessage,
    parse_message,
    success,
)
from slack_capture.models.state import PersistedState
from slack_capture.scheduling import Timers
from slack_capture.storage.service import ChannelDeletionError, StorageService
from slack_capture.sync.bus import COORDINATOR_ADDRESS, MessageBus, Role

logger = logging.getLogger(__name__)


@dataclass
class SourceLivenessRecord:
    """What the coordinator knows about one extraction source."""

    last_heartbeat_at: float
    last_known_state: PersistedState = field(default_factory=PersistedState)


class SourceRegistry:
    """Keyed liveness records that expire ``ttl`` seconds after the last refresh.

    Backed by a ``TTLCache``: every heartbeat or sync re-inserts the record,
    which restarts its expiry. ``expire()`` evicts silent sources and reports
    which ones went away.
    """

    def __init__(
        self,
        ttl: float,
        maxsize: int = 256,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timer = timer
        self._records: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._known: set[str] = set()

    def touch(self, source_id: str) -> SourceLivenessRecord:
        """Create or refresh a source's record."""
        now = self._timer()
        record = self._records.get(source_id)
        if record is None:
            record = SourceLivenessRecord(last_heartbeat_at=now)
            logger.info("Source registered", extra={"source_id": source_id})
        else:
            record.last_heartbeat_at = now
        self._records[source_id] = record
        self._known.add(source_id)
        return record

    def get(self, source_id: str) -> SourceLivenessRecord | None:
        return self._records.get(source_id)

    def remove(self, source_id: str) -> None:
        self._records.pop(source_id, None)
        self._known.discard(source_id)

    def expire(self) -> list[str]:
        """Evict every record past its TTL; returns the evicted source ids."""
        self._records.expire()
        gone = sorted(sid for sid in self._known if sid not in self._records)
        self._known.difference_update(gone)
        return gone

    def items(self) -> Iterator[tuple[str, SourceLivenessRecord]]:
        for source_id in sorted(self._known):
            record = self._records.get(source_id)
            if record is not None:
                yield source_id, record

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._records

    def __len__(self) -> int:
        return sum(1 for _ in self.items())


class Coordinator:
    """Single long-lived peer that every extraction context and viewer talks to."""

    def __init__(
        self,
        bus: MessageBus,
        storage: StorageService,
        settings: Settings | None = None,
        timer: Callable[[], float] = time.monotonic,
        address: str = COORDINATOR_ADDRESS,
    ) -> None:
        self._bus = bus
        self._storage = storage
        self._settings = settings or get_settings()
        self._address = address
        self._registry = SourceRegistry(
            ttl=self._settings.heartbeat_timeout,
            maxsize=self._settings.max_sources,
            timer=timer,
        )
        self._timers = Timers("coordinator")

    @property
    def registry(self) -> SourceRegistry:
        return self._registry

    def start(self) -> None:
        self._bus.register(self._address, Role.COORDINATOR, self.handle_message)
        settings = self._settings
        self._timers.every("cleanup", settings.coordinator_cleanup_interval, self.cleanup)
        self._timers.every(
            "rebroadcast", settings.coordinator_rebroadcast_interval, self.broadcast_all
        )
        logger.info("Coordinator started")

    async def stop(self) -> None:
        self._bus.unregister(self._address)
        self._timers.cancel_all()
        await self._storage.flush()
        logger.info("Coordinator stopped", extra={"sources": len(self._registry)})

    async def handle_message(self, payload: dict, sender: str | None) -> dict:
        """Dispatch one incoming message and build its response."""
        try:
            message = parse_message(payload)
        except ValidationError as exc:
            logger.warning(
                "Rejected malformed message",
                extra={"sender": sender, "errors": exc.error_count()},
            )
            return success(False, "Invalid message")

        if isinstance(message, HeartbeatMessage):
            return await self._on_heartbeat(sender, message)
        if isinstance(message, SyncMessage):
            return await self._on_sync(sender, message)
        if isinstance(message, PopupStatusMessage):
            return self._on_popup_status(message)
        if isinstance(message, DeleteChannelMessage):
            return await self._on_delete_channel(message)
        return success(False, f"Unsupported message type: {message.type}")

    async def _on_heartbeat(self, source_id: str | None, message: HeartbeatMessage) -> dict:
        if not source_id:
            return success(False, "Missing source")
        # An unknown source (recycled coordinator, expired record) must resync its tree
        known = source_id in self._registry
        record = self._registry.touch(source_id)
        record.last_known_state = record.last_known_state.model_copy(
            update={
                "is_extracting": message.is_extracting,
                "current_channel": message.channel_info,
            }
        )
        await self._broadcast_state(source_id, record)
        return {**success(), "known": known}

    async def _on_sync(self, source_id: str | None, message: SyncMessage) -> dict:
        if not source_id:
            return success(False, "Missing source")
        record = self._registry.touch(source_id)
        record.last_known_state = record.last_known_state.model_copy(
            update={
                "extracted_messages": message.extracted_messages,
                "current_channel": message.current_channel,
            }
        )
        await self._broadcast_state(source_id, record)
        return success()

    def _on_popup_status(self, message: PopupStatusMessage) -> dict:
        record = self._registry.get(message.source_id)
        if record is None:
            return {"state": None}
        return {"state": record.last_known_state.to_wire()}

    async def _on_delete_channel(self, message: DeleteChannelMessage) -> dict:
        organization, channel = message.organization, message.channel
        try:
            await self._storage.delete_channel_messages(organization, channel)
        except ChannelDeletionError as exc:
            logger.warning(
                "Channel deletion refused",
                extra={"organization": organization, "channel": channel, "error": str(exc)},
            )
            return success(False, str(exc))

        for _, record in self._registry.items():
            tree = remove_channel(record.last_known_state.extracted_messages, organization, channel)
            record.last_known_state = record.last_known_state.model_copy(
                update={"extracted_messages": tree}
            )

        await self._bus.broadcast(
            Role.EXTRACTION,
            ChannelDeletedMessage(organization=organization, channel=channel),
            sender=self._address,
        )
        await self.broadcast_all()
        return success()

    async def _broadcast_state(self, source_id: str, record: SourceLivenessRecord) -> None:
        await self._bus.broadcast(
            Role.VIEWER,
            StateUpdateMessage(
                timestamp=time.time(), source_id=source_id, state=record.last_known_state
            ),
            sender=self._address,
        )

    async def broadcast_all(self) -> None:
        """Send every live source's state to every open viewer."""
        for source_id, record in self._registry.items():
            await self._broadcast_state(source_id, record)

    async def cleanup(self) -> None:
        for source_id in self._registry.expire():
            logger.info("Source expired", extra={"source_id": source_id})
