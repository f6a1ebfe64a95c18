"""Extracted message records and the organization/channel/day tree that holds them."""

from datetime import datetime, timezone

from slack_capture.models.base import WireModel

DM_PREFIX = "DM: "


class CustomStatus(WireModel):
    """Sender's custom status emoji as rendered next to their name."""

    emoji: str | None = None
    emoji_url: str | None = None


class AttachmentImage(WireModel):
    """Image thumbnail inside a message attachment."""

    url: str
    thumbnail_url: str | None = None
    alt: str | None = None


class Attachment(WireModel):
    """Unfurled or shared-message attachment rendered under a record."""

    type: str = "message_attachment"
    title: str | None = None
    text: str | None = None
    author_name: str | None = None
    author_icon: str | None = None
    footer_text: str | None = None
    timestamp: str | None = None  # Human-readable label, not normalized
    permalink: str | None = None
    images: list[AttachmentImage] | None = None


class Record(WireModel):
    """A single extracted message.

    Nullable fields are allowed at the schema level so partially parsed
    candidates can be represented; ``slack_capture.merge.is_valid_message``
    decides whether a record may enter the tree.
    """

    id: str | None = None  # e.g. "1700000000.001" or "messages_<uuid>" in search
    sender_name: str | None = None
    sender_id: str | None = None
    timestamp_utc: str | None = None  # ISO-8601, UTC
    body: str
    permalink: str | None = None
    avatar_url: str | None = None
    custom_status: CustomStatus | None = None
    is_inferred_sender: bool = False  # Sender carried forward, not observed
    attachments: list[Attachment] | None = None


class ChannelInfo(WireModel):
    """Organization and channel a record was extracted from."""

    organization: str
    channel: str  # "DM: <name>" for direct-message threads

    @property
    def is_direct_message(self) -> bool:
        return self.channel.startswith(DM_PREFIX)


# organization -> channel -> day bucket (UTC midnight, ISO-8601) -> records
RecordTree = dict[str, dict[str, dict[str, list[Record]]]]


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive values are taken as UTC. Returns None for None or unparseable input.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def iso_utc(moment: datetime) -> str:
    """Render a datetime as ISO-8601 UTC with millisecond precision and a Z suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def start_of_day_utc(timestamp: str) -> str:
    """Return the day bucket key (UTC midnight) for an ISO-8601 timestamp.

    Raises ValueError if the timestamp cannot be parsed.
    """
    parsed = parse_timestamp(timestamp)
    if parsed is None:
        raise ValueError(f"Unparseable timestamp: {timestamp!r}")
    return iso_utc(parsed.replace(hour=0, minute=0, second=0, microsecond=0))


def count_records(tree: RecordTree) -> int:
    """Total number of records across every organization, channel and day."""
    return sum(
        len(records)
        for channels in tree.values()
        for days in channels.values()
        for records in days.values()
    )
