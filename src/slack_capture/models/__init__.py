"""Data models for records, durable state and cross-context messages."""

from slack_capture.models.messages import (
    ChannelDeletedMessage,
    DeleteChannelMessage,
    ExtractionControlMessage,
    ExtractionStatusMessage,
    HeartbeatMessage,
    PopupStatusMessage,
    SetScrollingMessage,
    StateUpdateMessage,
    SyncMessage,
    parse_message,
)
from slack_capture.models.record import (
    Attachment,
    AttachmentImage,
    ChannelInfo,
    CustomStatus,
    Record,
    RecordTree,
    count_records,
)
from slack_capture.models.sender import LastKnownSender, SenderInfo
from slack_capture.models.state import PersistedState

__all__ = [
    "Attachment",
    "AttachmentImage",
    "ChannelInfo",
    "CustomStatus",
    "Record",
    "RecordTree",
    "count_records",
    "LastKnownSender",
    "SenderInfo",
    "PersistedState",
    "HeartbeatMessage",
    "SyncMessage",
    "PopupStatusMessage",
    "StateUpdateMessage",
    "ExtractionControlMessage",
    "SetScrollingMessage",
    "DeleteChannelMessage",
    "ChannelDeletedMessage",
    "ExtractionStatusMessage",
    "parse_message",
]
