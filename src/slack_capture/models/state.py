"""Durable extraction state shared by every context through the store."""

from pydantic import Field

from slack_capture.models.base import WireModel
from slack_capture.models.record import ChannelInfo, RecordTree


class PersistedState(WireModel):
    """The single durable state document per installation."""

    is_extracting: bool = False
    current_channel: ChannelInfo | None = None
    extracted_messages: RecordTree = Field(default_factory=dict)
    is_scrolling_enabled: bool = True
