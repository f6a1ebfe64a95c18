"""Field extraction from the Slack web client's rendered message list.

Every field is located with a short list of fallback strategies (regular
channel view first, then search results) because the host page renders the
same message with different markup depending on the view. Nothing here
mutates extraction state beyond the ``data-*`` marks on list items; the
carry-forward sender is passed in and returned explicitly.
"""

import logging
import re
from datetime import datetime, timezone
from urllib.parse import urljoin

from bs4 import Tag
from url_normalize import url_normalize

from slack_capture.extraction.dom import Document
from slack_capture.models.record import (
    DM_PREFIX,
    Attachment,
    AttachmentImage,
    ChannelInfo,
    CustomStatus,
    Record,
    iso_utc,
)
from slack_capture.models.sender import LastKnownSender, SenderInfo

logger = logging.getLogger(__name__)

EXTRACTED_ATTRIBUTE = "data-message-extracted"
NEEDS_SENDER_UPDATE_ATTRIBUTE = "data-needs-sender-update"
REJECTED_ATTRIBUTE = "data-extraction-rejected"  # Parsed but not storable
PERMALINK_BASE = "https://slack.com"

CANDIDATE_SELECTOR = '[data-qa="virtual-list-item"]'
MESSAGE_TEXT_SELECTOR = '[data-qa="message-text"]'
TIMESTAMP_SELECTOR = ".c-timestamp"

# Checked in order; the first one holding message content wins
CONTAINER_SELECTORS = (
    ".p-message_pane",
    ".c-virtual_list__scroll_container",
    '[data-qa="message_pane"]',
    '[data-qa="virtual_list"]',
    ".p-workspace__primary_view_contents",
    ".p-workspace__primary_view_body",
    ".c-search__results_container",
)
_CONTENT_SELECTOR = f"{MESSAGE_TEXT_SELECTOR}, {CANDIDATE_SELECTOR}, .c-message_kit__blocks"

# (sender element, avatar image): regular channel view, then search results
_SENDER_STRATEGIES = (
    ('[data-qa="message_sender_name"]', ".c-message_kit__avatar img"),
    ("[data-message-sender]", ".c-search_message__avatar img"),
)
_CUSTOM_STATUS_SELECTOR = ".c-custom_status .c-emoji img"

_MESSAGE_ID_PATTERNS = (
    re.compile(r"^\d+\.\d+$"),  # list item id: "<epoch>.<seq>"
    re.compile(r"^messages_[0-9a-f-]+$"),  # search result id
)

_SEARCH_TITLE = re.compile(r"^Search - (.+?) - Slack$")
_CHANNEL_TITLE = re.compile(r"^(.+?) \(Channel\) - (.+?) - Slack$")
_DM_TITLE = re.compile(r"^(.+?) \(DM\) - (.+?) - Slack$")
_WORKSPACE_HOST = re.compile(r"^([^.]+)\.slack\.com$")
_NAME_MARKERS = re.compile(r"^[!*]")
_UNREAD_SUFFIX = re.compile(r"\s*-\s*\d+\s*(new\s*items?)?$")

# "14 November at 22:13:20", "3 Jan 9:05"
_LABEL_DATETIME = re.compile(
    r"(\d{1,2})\s+([A-Za-z]+)(?:\s+at)?\s+(\d{1,2}):(\d{2})(?::(\d{2}))?"
)


def _text(element: Tag | None) -> str | None:
    if element is None:
        return None
    return element.get_text().strip()


def _attr(element: Tag | None, name: str) -> str | None:
    if element is None:
        return None
    value = element.get(name)
    if isinstance(value, list):  # multi-valued attributes such as class
        return " ".join(value)
    return value


class MessageExtractor:
    """Pulls channel, sender, timestamp, body and attachments out of the document."""

    # -- containers and channel --

    def get_message_container(self, document: Document) -> Tag | None:
        """Return the element that holds the rendered message list, if any."""
        for selector in CONTAINER_SELECTORS:
            for container in document.select(selector):
                if container.select_one(_CONTENT_SELECTOR) is not None:
                    return container
        logger.debug("No message container found")
        return None

    def extract_channel_info(self, document: Document) -> ChannelInfo | None:
        """Identify organization and channel from the search header, title or hostname."""
        title = document.title

        search_channel = _text(document.select_one(".c-channel_entity__name"))
        if search_channel:
            search_match = _SEARCH_TITLE.match(title)
            if search_match:
                organization = search_match.group(1).strip()
                if organization:
                    return ChannelInfo(organization=organization, channel=search_channel)

            host_match = _WORKSPACE_HOST.match(document.hostname)
            organization = host_match.group(1).strip() if host_match else ""
            if organization and organization != "app":
                return ChannelInfo(organization=organization, channel=search_channel)

        channel_match = _CHANNEL_TITLE.match(title)
        if channel_match:
            return ChannelInfo(
                organization=_clean_organization(channel_match.group(2)),
                channel=_clean_name(channel_match.group(1)),
            )

        dm_match = _DM_TITLE.match(title)
        if dm_match:
            return ChannelInfo(
                organization=_clean_organization(dm_match.group(2)),
                channel=f"{DM_PREFIX}{_clean_name(dm_match.group(1))}",
            )

        return None

    # -- candidates --

    def list_candidates(self, document: Document) -> list[Tag]:
        return document.select(CANDIDATE_SELECTOR)

    def is_valid_message_id(self, message_id: str | None) -> bool:
        if not message_id:
            return False
        return any(pattern.match(message_id) for pattern in _MESSAGE_ID_PATTERNS)

    def extract_body(self, item: Tag) -> str:
        return _text(item.select_one(MESSAGE_TEXT_SELECTOR)) or ""

    # -- sender --

    def extract_message_sender(
        self, item: Tag, last_known: LastKnownSender | None
    ) -> tuple[SenderInfo, LastKnownSender | None]:
        """Resolve the sender of one list item.

        A directly rendered sender is returned as observed and becomes the new
        carry-forward sender. Grouped follow-up messages render no sender;
        they inherit ``last_known`` with ``is_inferred=True``.
        """
        status = self._extract_custom_status(item)

        for sender_selector, avatar_selector in _SENDER_STRATEGIES:
            sender_element = item.select_one(sender_selector)
            if sender_element is None:
                continue
            sender_name = _text(sender_element)
            sender_id = _attr(sender_element, "data-message-sender")
            avatar_url = _attr(item.select_one(avatar_selector), "src")
            if sender_name and sender_id:
                last_known = LastKnownSender(
                    sender_name=sender_name,
                    sender_id=sender_id,
                    avatar_url=avatar_url,
                    custom_status=status,
                )
            info = SenderInfo(
                sender_name=sender_name or None,
                sender_id=sender_id,
                avatar_url=avatar_url,
                custom_status=status,
                is_inferred=False,
            )
            return info, last_known

        if last_known is not None:
            info = SenderInfo(
                sender_name=last_known.sender_name,
                sender_id=last_known.sender_id,
                avatar_url=last_known.avatar_url,
                custom_status=last_known.custom_status,
                is_inferred=True,
            )
            return info, last_known

        return SenderInfo(), None

    def _extract_custom_status(self, item: Tag) -> CustomStatus | None:
        emoji = item.select_one(_CUSTOM_STATUS_SELECTOR)
        if emoji is None:
            return None
        alt = _attr(emoji, "alt")
        return CustomStatus(
            emoji=alt.replace(":", "") if alt is not None else None,
            emoji_url=_attr(emoji, "src"),
        )

    # -- timestamp and permalink --

    def extract_message_timestamp(
        self, element: Tag, now: datetime | None = None
    ) -> tuple[str | None, str | None]:
        """Return ``(timestamp, permalink)`` for a timestamp link element.

        Strategies, in order:
        1. ``data-ts`` epoch seconds (machine readable).
        2. ``aria-label`` such as "14 November at 22:13:20", anchored to the
           current year and read as UTC.
        """
        timestamp = self._timestamp_from_epoch(_attr(element, "data-ts"))
        if timestamp is None:
            timestamp = self._timestamp_from_label(_attr(element, "aria-label"), now)
        return timestamp, self.normalize_permalink(_attr(element, "href"))

    @staticmethod
    def _timestamp_from_epoch(raw: str | None) -> str | None:
        if raw is None:
            return None
        try:
            return iso_utc(datetime.fromtimestamp(float(raw), tz=timezone.utc))
        except (ValueError, OverflowError, OSError):
            logger.debug("Unparseable data-ts value: %s", raw)
            return None

    @staticmethod
    def _timestamp_from_label(label: str | None, now: datetime | None) -> str | None:
        if label is None:
            return None
        match = _LABEL_DATETIME.search(label)
        if match is None:
            return None
        day, month, hours, minutes, seconds = match.groups()
        year = (now or datetime.now(timezone.utc)).year
        try:
            parsed = datetime.strptime(
                f"{day} {month[:3]} {year} {hours}:{minutes}:{seconds or '0'}",
                "%d %b %Y %H:%M:%S",
            )
        except ValueError:
            logger.debug("Unparseable timestamp label: %s", label)
            return None
        return iso_utc(parsed.replace(tzinfo=timezone.utc))

    @staticmethod
    def normalize_permalink(href: str | None) -> str | None:
        """Resolve relative permalinks against slack.com and normalize the URL."""
        if not href:
            return None
        if not href.startswith("http"):
            href = urljoin(PERMALINK_BASE, href)
        return url_normalize(href)

    # -- attachments --

    def extract_attachments(self, item: Tag) -> list[Attachment] | None:
        container = item.select_one(".c-message_kit__attachments")
        if container is None:
            return None

        attachments: list[Attachment] = []
        for element in container.select(".c-message_attachment"):
            attachment = Attachment()

            author = element.select_one(".c-message_attachment__author")
            if author is not None:
                attachment.author_name = _text(author)
                attachment.author_icon = _attr(author.select_one("img"), "src")

            title = element.select_one(".c-message_attachment__title")
            if title is not None:
                attachment.title = _text(title)

            text = element.select_one('[data-qa="message_attachment_slack_msg_text"]')
            if text is not None:
                attachment.text = _text(text)

            footer = element.select_one('[data-qa="attachment-footer"]')
            if footer is not None:
                attachment.footer_text = _text(footer)
                attachment.timestamp = _attr(
                    footer.select_one('[data-qa="attachment-footer-timestamp"] a'), "aria-label"
                )
                attachment.permalink = _attr(
                    footer.select_one('[data-qa="attachment-footer-permalink"] a'), "href"
                )

            images = [
                AttachmentImage(
                    url=_attr(wrapper, "href") or "",
                    thumbnail_url=_attr(img, "src"),
                    alt=_attr(img, "alt"),
                )
                for wrapper in element.select(".p-file_image_thumbnail__wrapper")
                if (img := wrapper.select_one("img")) is not None
            ]
            if images:
                attachment.images = images

            attachments.append(attachment)

        return attachments or None

    # -- whole candidate --

    def build_record(
        self, item: Tag, last_known: LastKnownSender | None, now: datetime | None = None
    ) -> tuple[Record | None, LastKnownSender | None]:
        """Assemble a candidate Record from one list item.

        Returns ``(None, last_known)`` for items that are not messages (bad
        id, empty body, no timestamp). The returned carry-forward sender must
        be threaded into the next item of the same pass either way.
        """
        message_id = _attr(item, "id")
        if not self.is_valid_message_id(message_id):
            return None, last_known

        body = self.extract_body(item)
        if not body:
            return None, last_known

        sender, last_known = self.extract_message_sender(item, last_known)

        timestamp_element = item.select_one(TIMESTAMP_SELECTOR)
        if timestamp_element is None:
            return None, last_known
        timestamp, permalink = self.extract_message_timestamp(timestamp_element, now)
        if timestamp is None:
            return None, last_known

        record = Record(
            id=message_id,
            sender_name=sender.sender_name,
            sender_id=sender.sender_id,
            timestamp_utc=timestamp,
            body=body,
            permalink=permalink,
            avatar_url=sender.avatar_url,
            custom_status=sender.custom_status,
            is_inferred_sender=sender.is_inferred,
            attachments=self.extract_attachments(item),
        )
        return record, last_known

    # -- extraction marks --

    def is_message_extracted(self, item: Tag) -> bool:
        return item.has_attr(EXTRACTED_ATTRIBUTE)

    def needs_sender_update(self, item: Tag) -> bool:
        return item.has_attr(NEEDS_SENDER_UPDATE_ATTRIBUTE)

    def mark_message_as_extracted(self, item: Tag, recheck_sender: bool = False) -> None:
        """Mark an item as stored; ``recheck_sender`` schedules one more pass over it."""
        item[EXTRACTED_ATTRIBUTE] = "true"
        if item.has_attr(REJECTED_ATTRIBUTE):
            del item[REJECTED_ATTRIBUTE]
        if recheck_sender:
            item[NEEDS_SENDER_UPDATE_ATTRIBUTE] = "true"
        elif item.has_attr(NEEDS_SENDER_UPDATE_ATTRIBUTE):
            del item[NEEDS_SENDER_UPDATE_ATTRIBUTE]

    def is_message_rejected(self, item: Tag) -> bool:
        return item.has_attr(REJECTED_ATTRIBUTE)

    def mark_message_as_rejected(self, item: Tag) -> None:
        """Mark an item that yielded no storable record so polling stops retrying it."""
        item[REJECTED_ATTRIBUTE] = "true"

    def remove_extraction_mark(self, item: Tag) -> None:
        for name in (EXTRACTED_ATTRIBUTE, NEEDS_SENDER_UPDATE_ATTRIBUTE, REJECTED_ATTRIBUTE):
            if item.has_attr(name):
                del item[name]


def _clean_name(name: str) -> str:
    return _NAME_MARKERS.sub("", name).strip()


def _clean_organization(organization: str) -> str:
    return _UNREAD_SUFFIX.sub("", organization).strip()
