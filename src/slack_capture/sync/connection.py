"""Extraction-side peer: heartbeats, debounced syncs and reconnection.

While CONNECTED the service sends a heartbeat every ``heartbeat_interval``
and a full snapshot whenever ``request_sync`` settles and the snapshot hash
changed since the last successful send. A heartbeat answered with
``known: false`` (the coordinator was recycled or evicted this source) forces
a full resync regardless of the hash. Any transport failure moves it to
DISCONNECTED, tears every timer down and retries with linear backoff; after
``reconnect_max_attempts`` it stops trying (ABANDONED) and reports a short
status line instead.
"""

import hashlib
import json
import logging
import time
from collections.abc import Callable
from enum import Enum

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from slack_capture.config import Settings, get_settings
from slack_capture.extraction.monitor import MonitorSnapshot
from slack_capture.models.messages import HeartbeatMessage, SyncMessage
from slack_capture.scheduling import Timers
from slack_capture.sync.bus import COORDINATOR_ADDRESS, MessageBus, is_transport_error

logger = logging.getLogger(__name__)

LOST_CONNECTION_STATUS = "Lost connection to coordinator"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ABANDONED = "abandoned"


def snapshot_hash(message: SyncMessage) -> str:
    """SHA-256 over the canonical JSON of a sync payload, ignoring its timestamp."""
    payload = message.model_dump(
        mode="json", by_alias=True, include={"extracted_messages", "current_channel"}
    )
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ConnectionService:
    """Keeps one extraction context attached to the coordinator."""

    def __init__(
        self,
        bus: MessageBus,
        source_id: str,
        get_current_state: Callable[[], MonitorSnapshot],
        on_connection_loss: Callable[[], None] | None = None,
        on_status: Callable[[str], None] | None = None,
        settings: Settings | None = None,
        coordinator: str = COORDINATOR_ADDRESS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._bus = bus
        self._source_id = source_id
        self._get_current_state = get_current_state
        self._on_connection_loss = on_connection_loss
        self._on_status = on_status
        self._settings = settings or get_settings()
        self._coordinator = coordinator
        self._clock = clock

        self._timers = Timers(f"connection:{source_id}")
        self._state = ConnectionState.DISCONNECTED
        self._last_heartbeat = 0.0
        self._last_sync_hash: str | None = None
        self._reconnecting = False
        self._stopped = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def last_heartbeat(self) -> float:
        return self._last_heartbeat

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def update_last_heartbeat(self, timestamp: float | None = None) -> None:
        self._last_heartbeat = self._clock() if timestamp is None else timestamp

    async def initialize_connection(self) -> bool:
        """Start from a clean slate and connect; falls back to reconnection on failure."""
        self._stopped = False
        self._timers.cancel_all()
        self._last_sync_hash = None
        try:
            await self._connect()
        except Exception as exc:
            if not is_transport_error(exc):
                raise
            await self.handle_connection_loss()
        return self.is_connected()

    async def _connect(self) -> None:
        # The first heartbeat doubles as the connectivity check
        await self._send_heartbeat()
        self._state = ConnectionState.CONNECTED
        self._timers.every("heartbeat", self._settings.heartbeat_interval, self.send_heartbeat)
        await self._send_sync()
        logger.info("Connected to coordinator", extra={"source_id": self._source_id})

    async def stop(self) -> None:
        self._stopped = True
        self._timers.cancel_all()
        self._state = ConnectionState.DISCONNECTED

    # -- outgoing --

    async def _send_heartbeat(self) -> bool:
        """Send one heartbeat; returns False when the coordinator did not know this source."""
        snapshot = self._get_current_state()
        message = HeartbeatMessage(
            timestamp=self._clock(),
            is_extracting=snapshot.is_extracting,
            channel_info=snapshot.channel_info,
            message_count=snapshot.message_count,
        )
        response = await self._bus.send(self._coordinator, message, sender=self._source_id)
        if not response or not response.get("success"):
            return True
        self.update_last_heartbeat()
        return response.get("known") is not False

    async def _send_sync(self) -> bool:
        snapshot = self._get_current_state()
        message = SyncMessage(
            timestamp=self._clock(),
            extracted_messages=snapshot.extracted_messages,
            current_channel=snapshot.channel_info,
        )
        digest = snapshot_hash(message)
        if digest == self._last_sync_hash:
            logger.debug("Snapshot unchanged, sync skipped")
            return False
        await self._bus.send(self._coordinator, message, sender=self._source_id)
        self._last_sync_hash = digest
        return True

    async def send_heartbeat(self) -> None:
        """Send one heartbeat now; a transport failure starts reconnection."""
        if not self.is_connected():
            return
        try:
            if not await self._send_heartbeat():
                logger.info(
                    "Coordinator has no record of this source, resyncing",
                    extra={"source_id": self._source_id},
                )
                self._last_sync_hash = None
                await self._send_sync()
        except Exception as exc:
            if not is_transport_error(exc):
                raise
            await self.handle_connection_loss()

    async def _sync_tick(self) -> None:
        try:
            await self._send_sync()
        except Exception as exc:
            if not is_transport_error(exc):
                raise
            await self.handle_connection_loss()

    def request_sync(self) -> None:
        """Debounce a snapshot send; bursts within ``sync_debounce`` collapse to one."""
        if self._state is not ConnectionState.CONNECTED:
            return
        self._timers.after("sync", self._settings.sync_debounce, self._sync_tick)

    # -- liveness --

    async def check_connection(self) -> bool:
        """Reconnect if no heartbeat was acknowledged within ``heartbeat_timeout``."""
        if self._stopped or self._reconnecting or self._state is ConnectionState.ABANDONED:
            return False
        fresh = self._clock() - self._last_heartbeat <= self._settings.heartbeat_timeout
        if self.is_connected() and fresh:
            return True
        logger.info("Heartbeat overdue", extra={"source_id": self._source_id})
        await self.handle_connection_loss()
        return self.is_connected()

    async def handle_connection_loss(self) -> None:
        """Tear down, then retry with linear backoff until connected or abandoned."""
        if self._reconnecting or self._stopped:
            return
        self._reconnecting = True
        self._state = ConnectionState.DISCONNECTED
        self._timers.cancel_all()
        self._last_sync_hash = None
        logger.warning("Lost connection to coordinator", extra={"source_id": self._source_id})
        if self._on_connection_loss is not None:
            self._on_connection_loss()

        settings = self._settings
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(is_transport_error),
                wait=wait_incrementing(
                    start=settings.reconnect_backoff, increment=settings.reconnect_backoff
                ),
                stop=stop_after_attempt(settings.reconnect_max_attempts),
                before_sleep=before_sleep_log(logger, logging.INFO),
                reraise=True,
            ):
                with attempt:
                    if self._stopped:
                        return
                    await self._connect()
        except Exception as exc:
            if not is_transport_error(exc):
                raise
            self._timers.cancel_all()
            self._state = ConnectionState.ABANDONED
            logger.error(
                "Giving up on coordinator after %d attempts",
                settings.reconnect_max_attempts,
                extra={"source_id": self._source_id},
            )
            if self._on_status is not None:
                self._on_status(LOST_CONNECTION_STATUS)
        finally:
            self._reconnecting = False
