"""Cross-context message contracts.

Every message is a JSON object tagged by ``type``. ``parse_message`` turns an
incoming dict into the matching model; callers answer unparseable input with
``{"success": False, "error": ...}``.
"""

from typing import Annotated, Literal, Union

from pydantic import Field, TypeAdapter

from slack_capture.models.base import WireModel
from slack_capture.models.record import ChannelInfo, RecordTree
from slack_capture.models.state import PersistedState


class HeartbeatMessage(WireModel):
    """Extraction -> coordinator liveness ping with a status summary."""

    type: Literal["heartbeat"] = "heartbeat"
    timestamp: float
    is_extracting: bool
    channel_info: ChannelInfo | None = None
    message_count: int = 0


class SyncMessage(WireModel):
    """Extraction -> coordinator full snapshot of the source's tree."""

    type: Literal["sync"] = "sync"
    timestamp: float
    extracted_messages: RecordTree = Field(default_factory=dict)
    current_channel: ChannelInfo | None = None


class PopupStatusMessage(WireModel):
    """Viewer -> coordinator query for a source's last known state."""

    type: Literal["popup_status"] = "popup_status"
    timestamp: float = 0.0
    source_id: str


class StateUpdateMessage(WireModel):
    """Coordinator -> viewers broadcast of one source's state."""

    type: Literal["state_update"] = "state_update"
    timestamp: float
    source_id: str | None = None
    state: PersistedState


class ExtractionControlMessage(WireModel):
    """Viewer -> extraction start/stop command."""

    type: Literal["START_EXTRACTION", "STOP_EXTRACTION"]


class SetScrollingMessage(WireModel):
    """Viewer -> extraction toggle for scroll-triggered scans."""

    type: Literal["SET_SCROLLING"] = "SET_SCROLLING"
    enabled: bool


class DeleteChannelMessage(WireModel):
    """Viewer -> coordinator request to drop one channel's records."""

    type: Literal["DELETE_CHANNEL_MESSAGES"] = "DELETE_CHANNEL_MESSAGES"
    organization: str
    channel: str


class ChannelDeletedMessage(WireModel):
    """Coordinator -> extraction notice that a channel was deleted from storage."""

    type: Literal["channel_deleted"] = "channel_deleted"
    organization: str
    channel: str


class ExtractionStatusMessage(WireModel):
    """Extraction -> viewers human-readable status line."""

    type: Literal["EXTRACTION_STATUS"] = "EXTRACTION_STATUS"
    status: str


Message = Annotated[
    Union[
        HeartbeatMessage,
        SyncMessage,
        PopupStatusMessage,
        StateUpdateMessage,
        ExtractionControlMessage,
        SetScrollingMessage,
        DeleteChannelMessage,
        ChannelDeletedMessage,
        ExtractionStatusMessage,
    ],
    Field(discriminator="type"),
]

_MESSAGE_ADAPTER: TypeAdapter[Message] = TypeAdapter(Message)


def parse_message(data: dict) -> Message:
    """Validate an incoming dict into its message model.

    Raises pydantic.ValidationError for unknown types or malformed payloads.
    """
    return _MESSAGE_ADAPTER.validate_python(data)


def success(ok: bool = True, error: str | None = None) -> dict:
    """Build the standard ``{success}`` / ``{success: false, error}`` response."""
    if error is None:
        return {"success": ok}
    return {"success": ok, "error": error}
