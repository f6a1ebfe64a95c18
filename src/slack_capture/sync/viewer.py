"""On-demand viewer of one extraction source.

A viewer is opened and closed at will. It asks the coordinator for the
source's last known state, keeps it current from ``state_update`` broadcasts,
and sends start/stop/scroll commands straight to the source. Everything it
shows the user is a short status line or derived stats, never raw payloads.
"""

import json
import logging
import time
from dataclasses import dataclass, field

from pydantic import ValidationError

from slack_capture.models.base import WireModel
from slack_capture.models.messages import (
    DeleteChannelMessage,
    ExtractionControlMessage,
    ExtractionStatusMessage,
    PopupStatusMessage,
    SetScrollingMessage,
    StateUpdateMessage,
    parse_message,
    success,
)
from slack_capture.models.record import count_records
from slack_capture.models.state import PersistedState
from slack_capture.sync.bus import COORDINATOR_ADDRESS, MessageBus, Role, is_transport_error

logger = logging.getLogger(__name__)

EXPORT_FILENAME = "slack-messages.json"


@dataclass
class ChannelStats:
    name: str
    message_count: int


@dataclass
class OrganizationStats:
    name: str
    message_count: int
    channels: list[ChannelStats] = field(default_factory=list)


class Viewer:
    """Read-mostly view of one source plus its control buttons."""

    def __init__(
        self,
        bus: MessageBus,
        address: str,
        source_id: str,
        coordinator: str = COORDINATOR_ADDRESS,
    ) -> None:
        self._bus = bus
        self._address = address
        self._source_id = source_id
        self._coordinator = coordinator
        self._state: PersistedState | None = None
        self._last_status: str | None = None
        self._last_error: str | None = None

    @property
    def state(self) -> PersistedState | None:
        return self._state

    @property
    def last_status(self) -> str | None:
        """Most recent status line pushed by the source."""
        return self._last_status

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def open(self) -> None:
        self._bus.register(self._address, Role.VIEWER, self.handle_message)

    def close(self) -> None:
        self._bus.unregister(self._address)

    async def handle_message(self, payload: dict, sender: str | None) -> dict:
        try:
            message = parse_message(payload)
        except ValidationError:
            logger.debug("Viewer ignored malformed message", extra={"sender": sender})
            return success(False, "Invalid message")

        if isinstance(message, StateUpdateMessage):
            if message.source_id in (None, self._source_id):
                self._state = message.state
        elif isinstance(message, ExtractionStatusMessage):
            self._last_status = message.status
        return success()

    # -- requests --

    async def query_status(self) -> PersistedState | None:
        """Ask the coordinator for the source's last known state."""
        message = PopupStatusMessage(timestamp=time.time(), source_id=self._source_id)
        try:
            response = await self._bus.send(self._coordinator, message, sender=self._address)
        except Exception as exc:
            if not is_transport_error(exc):
                raise
            self._last_error = "Coordinator unavailable"
            return self._state

        raw = (response or {}).get("state")
        self._state = PersistedState.model_validate(raw) if raw is not None else None
        return self._state

    async def _command(self, message: WireModel) -> bool:
        try:
            response = await self._bus.send(self._source_id, message, sender=self._address)
        except Exception as exc:
            if not is_transport_error(exc):
                raise
            self._last_error = "Not connected to Slack"
            return False
        ok = bool(response and response.get("success"))
        self._last_error = None if ok else (response or {}).get("error", "Request failed")
        return ok

    async def start_extraction(self) -> bool:
        ok = await self._command(ExtractionControlMessage(type="START_EXTRACTION"))
        if ok:
            await self.query_status()
        return ok

    async def stop_extraction(self) -> bool:
        ok = await self._command(ExtractionControlMessage(type="STOP_EXTRACTION"))
        if ok:
            await self.query_status()
        return ok

    async def set_scrolling(self, enabled: bool) -> bool:
        return await self._command(SetScrollingMessage(enabled=enabled))

    async def delete_channel(self, organization: str, channel: str) -> bool:
        """Ask the coordinator to delete one channel; the reason is kept on failure."""
        message = DeleteChannelMessage(organization=organization, channel=channel)
        try:
            response = await self._bus.send(self._coordinator, message, sender=self._address)
        except Exception as exc:
            if not is_transport_error(exc):
                raise
            self._last_error = "Coordinator unavailable"
            return False
        if response and response.get("success"):
            self._last_error = None
            await self.query_status()
            return True
        self._last_error = (response or {}).get("error", "Delete failed")
        return False

    # -- presentation --

    def is_connected(self) -> bool:
        return self._bus.is_registered(self._source_id)

    def status_text(self) -> str:
        if not self.is_connected():
            return "Not connected to Slack"
        if self._state is not None and self._state.is_extracting:
            return "Extracting messages..."
        return "Connected to Slack"

    def channel_text(self) -> str:
        channel = self._state.current_channel if self._state else None
        if channel is None:
            return "No channel selected"
        return f"Current channel: {channel.channel} ({channel.organization})"

    def total_messages(self) -> int:
        if self._state is None:
            return 0
        return count_records(self._state.extracted_messages)

    def message_stats(self) -> list[OrganizationStats]:
        """Organizations and their channels, busiest first."""
        if self._state is None:
            return []
        stats = []
        for organization, channels in self._state.extracted_messages.items():
            channel_stats = sorted(
                (
                    ChannelStats(name, sum(len(records) for records in days.values()))
                    for name, days in channels.items()
                ),
                key=lambda c: c.message_count,
                reverse=True,
            )
            stats.append(
                OrganizationStats(
                    organization, sum(c.message_count for c in channel_stats), channel_stats
                )
            )
        return sorted(stats, key=lambda o: o.message_count, reverse=True)

    def export_json(self) -> str | None:
        """Pretty-printed tree for download as ``EXPORT_FILENAME``; None with nothing loaded."""
        if self._state is None:
            return None
        wire = self._state.to_wire()["extractedMessages"]
        return json.dumps(wire, indent=2, ensure_ascii=False)
