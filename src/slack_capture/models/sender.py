"""Sender attribution used while walking the candidates of one extraction pass."""

from pydantic import BaseModel

from slack_capture.models.record import CustomStatus


class LastKnownSender(BaseModel):
    """Most recent directly observed sender; carried forward to grouped follow-ups."""

    sender_name: str
    sender_id: str
    avatar_url: str | None = None
    custom_status: CustomStatus | None = None


class SenderInfo(BaseModel):
    """Resolved sender for one candidate, observed or inferred."""

    sender_name: str | None = None
    sender_id: str | None = None
    avatar_url: str | None = None
    custom_status: CustomStatus | None = None
    is_inferred: bool = False
