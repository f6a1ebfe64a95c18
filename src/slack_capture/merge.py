"""Deterministic reconciliation of record trees.

Two trees (the live in-memory tree and a new record, or two snapshots
collected independently by different pages) are folded into one. Records are
matched by identity rather than by ``id`` alone because the same message can
surface with a different id representation across passes (list item id vs
search result id), and timestamps are compared at whole-second precision to
absorb jitter between the epoch and label parse strategies.

Records are treated as immutable: merging returns new containers and new
Record instances for reconciled pairs, never mutating the inputs.
"""

import logging
import math

from slack_capture.models.record import (
    ChannelInfo,
    Record,
    RecordTree,
    parse_timestamp,
    start_of_day_utc,
)

logger = logging.getLogger(__name__)

SECURE_SCHEME = "https://"

# Sender fields travel together: they all come from the same observation
_SENDER_FIELDS = ("sender_name", "sender_id", "avatar_url", "custom_status")
_NULLABLE_FIELDS = ("id", "timestamp_utc", "permalink", "attachments")


def _timestamp_seconds(record: Record) -> int | None:
    parsed = parse_timestamp(record.timestamp_utc)
    if parsed is None:
        return None
    return math.floor(parsed.timestamp())


def identity_key(record: Record) -> tuple[str, str | None, str | None, int | None]:
    """Composite dedup key: (body, sender name, sender id, whole-second timestamp)."""
    return (record.body, record.sender_name, record.sender_id, _timestamp_seconds(record))


def same_record(a: Record, b: Record) -> bool:
    """Whether two records describe the same logical message.

    Equal non-null ids always match. Otherwise body and whole-second
    timestamp must match, and the sender pair must match unless either side's
    sender was inferred (an inferred sender is a guess and matches any sender).
    """
    if a.id is not None and a.id == b.id:
        return True
    key_a = identity_key(a)
    key_b = identity_key(b)
    if key_a[0] != key_b[0] or key_a[3] != key_b[3]:
        return False
    if a.is_inferred_sender or b.is_inferred_sender:
        return True
    return key_a[1:3] == key_b[1:3]


def reconcile(a: Record, b: Record) -> Record:
    """Merge two matching records field by field.

    - The directly observed sender beats an inferred one.
    - With equal sender provenance the later observation (``b``) wins.
    - Nullable fields fall back to whichever side has a value.
    - The result is inferred only if both inputs were inferred.
    """
    if b.is_inferred_sender and not a.is_inferred_sender:
        primary, secondary = a, b
    else:
        primary, secondary = b, a

    update: dict = {name: getattr(primary, name) for name in _SENDER_FIELDS}
    for name in _NULLABLE_FIELDS:
        value = getattr(primary, name)
        update[name] = value if value is not None else getattr(secondary, name)
    update["body"] = primary.body or secondary.body
    update["is_inferred_sender"] = a.is_inferred_sender and b.is_inferred_sender
    return primary.model_copy(update=update)


def is_valid_message(record: Record) -> bool:
    """Whether a record may enter the tree.

    Requires an id, a timestamp that parses to a real date, a non-blank body,
    an ``https://`` permalink and, unless the sender was inferred, both sender
    name and id.
    """
    if record.id is None or record.timestamp_utc is None:
        return False
    if parse_timestamp(record.timestamp_utc) is None:
        return False
    if not record.body.strip():
        return False
    if not record.is_inferred_sender and (record.sender_name is None or record.sender_id is None):
        return False
    if record.permalink is None or not record.permalink.startswith(SECURE_SCHEME):
        return False
    return True


def _sort_key(record: Record) -> tuple:
    parsed = parse_timestamp(record.timestamp_utc)
    return (parsed.timestamp() if parsed else 0.0, record.id or "", record.body)


def merge_bucket(existing: list[Record], incoming: list[Record]) -> list[Record]:
    """Fold ``incoming`` into ``existing`` for one (organization, channel, day) bucket.

    Invalid records are dropped silently. Output is sorted ascending by
    timestamp (ties broken by id, then body) so the result does not depend on
    which side was existing.
    """
    merged: list[Record] = []
    # (body, whole-second timestamp) -> indexes into merged
    by_content: dict[tuple[str, int | None], list[int]] = {}
    by_id: dict[str, int] = {}

    for record in [*existing, *incoming]:
        if not is_valid_message(record):
            continue

        content_key = (record.body, _timestamp_seconds(record))
        match: int | None = by_id.get(record.id) if record.id is not None else None
        if match is None:
            for index in by_content.get(content_key, []):
                if same_record(merged[index], record):
                    match = index
                    break

        if match is None:
            merged.append(record)
            index = len(merged) - 1
            by_content.setdefault(content_key, []).append(index)
            if record.id is not None:
                by_id[record.id] = index
            continue

        combined = reconcile(merged[match], record)
        merged[match] = combined
        if combined.id is not None:
            by_id[combined.id] = match
        if record.id is not None:
            by_id.setdefault(record.id, match)

    merged.sort(key=_sort_key)
    return merged


def merge(existing: RecordTree, incoming: RecordTree) -> RecordTree:
    """Reconcile two record trees into a new one.

    Pure and idempotent: ``merge(t, t) == t`` for any tree whose buckets
    already satisfy the sort and uniqueness invariants. Empty buckets,
    channels and organizations are pruned.
    """
    result: RecordTree = {}
    organizations = list(dict.fromkeys([*existing, *incoming]))
    for organization in organizations:
        ours = existing.get(organization, {})
        theirs = incoming.get(organization, {})
        channels_out: dict[str, dict[str, list[Record]]] = {}
        for channel in dict.fromkeys([*ours, *theirs]):
            our_days = ours.get(channel, {})
            their_days = theirs.get(channel, {})
            days_out: dict[str, list[Record]] = {}
            for day in dict.fromkeys([*our_days, *their_days]):
                bucket = merge_bucket(our_days.get(day, []), their_days.get(day, []))
                if bucket:
                    days_out[day] = bucket
            if days_out:
                channels_out[channel] = days_out
        if channels_out:
            result[organization] = channels_out
    return result


def insert_record(tree: RecordTree, channel: ChannelInfo, record: Record) -> RecordTree:
    """Return a new tree with ``record`` folded into its day bucket.

    Only the target bucket is rebuilt; other buckets are shared with ``tree``.
    An invalid record leaves the tree unchanged.
    """
    if not is_valid_message(record):
        return tree
    day = start_of_day_utc(record.timestamp_utc)
    result: RecordTree = dict(tree)
    channels = dict(result.get(channel.organization, {}))
    days = dict(channels.get(channel.channel, {}))
    days[day] = merge_bucket(days.get(day, []), [record])
    channels[channel.channel] = days
    result[channel.organization] = channels
    return result


def rebucket(tree: RecordTree) -> RecordTree:
    """Re-file every record under the UTC day bucket of its own timestamp.

    Used when adopting trees written with a different bucketing rule
    (e.g. local midnight). Records with unparseable timestamps are dropped.
    """
    result: RecordTree = {}
    for organization, channels in tree.items():
        for channel_name, days in channels.items():
            channel = ChannelInfo(organization=organization, channel=channel_name)
            for records in days.values():
                for record in records:
                    result = insert_record(result, channel, record)
    return result


def remove_channel(tree: RecordTree, organization: str, channel: str) -> RecordTree:
    """Return a new tree without ``organization/channel``.

    The organization is dropped too once it has no channels left. Missing
    keys are ignored; callers that need to report them check first.
    """
    result: RecordTree = dict(tree)
    channels = dict(result.get(organization, {}))
    channels.pop(channel, None)
    if channels:
        result[organization] = channels
    else:
        result.pop(organization, None)
    return result
