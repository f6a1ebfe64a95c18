"""One extraction context: monitor + connection wired to the message bus.

Handles the commands a viewer or the coordinator sends to a tab
(start/stop, scroll toggle, heartbeat acks, channel deletion notices),
forwards channel changes to viewers as a status line, and checks the
coordinator connection every ``connection_check_interval``.
"""

import logging
import time
from collections.abc import Callable

from pydantic import ValidationError

from slack_capture.config import Settings, get_settings
from slack_capture.extraction.dom import Document
from slack_capture.extraction.extractor import MessageExtractor
from slack_capture.extraction.monitor import MonitorService
from slack_capture.models.messages import (
    ChannelDeletedMessage,
    ExtractionControlMessage,
    ExtractionStatusMessage,
    HeartbeatMessage,
    SetScrollingMessage,
    parse_message,
    success,
)
from slack_capture.models.record import ChannelInfo
from slack_capture.scheduling import Timers
from slack_capture.storage.service import StorageService
from slack_capture.sync.bus import MessageBus, Role
from slack_capture.sync.connection import ConnectionService, ConnectionState

logger = logging.getLogger(__name__)


class ExtractionContext:
    """Everything that runs inside one Slack tab."""

    def __init__(
        self,
        bus: MessageBus,
        document: Document,
        storage: StorageService,
        settings: Settings | None = None,
        source_id: str = "tab-1",
        extractor: MessageExtractor | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._bus = bus
        self._storage = storage
        self._settings = settings or get_settings()
        self._source_id = source_id
        self._timers = Timers(f"content:{source_id}")

        self.monitor = MonitorService(
            document,
            extractor or MessageExtractor(),
            storage,
            settings=self._settings,
            on_channel_change=self._on_channel_change,
            on_sync=self._on_sync,
        )
        self.connection = ConnectionService(
            bus,
            source_id,
            self.monitor.get_current_state,
            on_status=self.emit_status,
            settings=self._settings,
            clock=clock,
        )

    @property
    def source_id(self) -> str:
        return self._source_id

    async def start(self, resume: bool = False) -> None:
        """Register on the bus and connect; with ``resume`` restart an interrupted extraction."""
        self._bus.register(self._source_id, Role.EXTRACTION, self.handle_message)
        await self.connection.initialize_connection()
        self._timers.every(
            "connection-check",
            self._settings.connection_check_interval,
            self._check_connection,
        )
        if resume:
            state = await self._storage.load_state()
            if state.is_extracting:
                await self.start_extraction()

    async def stop(self) -> None:
        self._timers.cancel_all()
        if self.monitor.is_monitoring:
            await self.monitor.stop_monitoring()
        await self.connection.stop()
        self._bus.unregister(self._source_id)
        await self.monitor.wait_idle()
        await self._timers.drain()
        await self._storage.flush()

    async def start_extraction(self) -> None:
        if self.connection.state is ConnectionState.ABANDONED:
            await self.connection.initialize_connection()
        await self.monitor.start_monitoring()
        await self.connection.send_heartbeat()
        self.connection.request_sync()
        channel = self.monitor.get_current_state().channel_info
        if channel is not None:
            self.emit_status(f"Now monitoring {channel.channel}...")

    async def stop_extraction(self) -> None:
        await self.monitor.stop_monitoring()
        await self.connection.send_heartbeat()
        self.connection.request_sync()

    async def handle_message(self, payload: dict, sender: str | None) -> dict:
        try:
            message = parse_message(payload)
        except ValidationError as exc:
            logger.warning(
                "Rejected malformed message",
                extra={"sender": sender, "errors": exc.error_count()},
            )
            return success(False, "Invalid message")

        try:
            if isinstance(message, ExtractionControlMessage):
                if message.type == "START_EXTRACTION":
                    await self.start_extraction()
                else:
                    await self.stop_extraction()
            elif isinstance(message, SetScrollingMessage):
                await self.monitor.set_scrolling_enabled(message.enabled)
            elif isinstance(message, HeartbeatMessage):
                self.connection.update_last_heartbeat()
            elif isinstance(message, ChannelDeletedMessage):
                await self.monitor.forget_channel(message.organization, message.channel)
                self.connection.request_sync()
            else:
                return success(False, f"Unsupported message type: {message.type}")
        except Exception as exc:
            logger.exception("Error handling message", extra={"type": message.type})
            return success(False, str(exc))
        return success()

    def emit_status(self, status: str) -> None:
        """Push a short status line to every open viewer."""
        self._timers.spawn(
            self._bus.broadcast(
                Role.VIEWER, ExtractionStatusMessage(status=status), sender=self._source_id
            )
        )

    def _on_channel_change(self, channel: ChannelInfo) -> None:
        self.emit_status(f"Now monitoring {channel.channel}...")
        self.connection.request_sync()

    def _on_sync(self) -> None:
        self.connection.request_sync()

    async def _check_connection(self) -> None:
        await self.connection.check_connection()
