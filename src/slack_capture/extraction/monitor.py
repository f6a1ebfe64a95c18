"""Extraction state machine driven by document changes.

States: IDLE (nothing attached) -> OBSERVING (mutation observer attached)
-> EXTRACTING (one scan in flight, never nested) -> back to OBSERVING.
SCROLLING detaches the observer while the host scrolls and reattaches once
motion has stopped for ``scroll_debounce`` seconds.

Scans are triggered by mutations, scroll settle, a fallback poller (virtual
scrolling can swap subtrees so the observer stops firing), channel changes,
and start. A trigger that arrives while a scan is running is dropped; the
next mutation, poll or health check picks up whatever was missed. A scan is
never cancelled once started.

Items that yield no storable record are marked rejected. The fallback poller
skips them; any other scan tries them again.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from bs4 import Tag

from slack_capture.config import Settings, get_settings
from slack_capture.extraction.dom import Document, Observation
from slack_capture.extraction.extractor import MessageExtractor
from slack_capture.merge import insert_record, is_valid_message, remove_channel
from slack_capture.models.record import ChannelInfo, RecordTree, count_records
from slack_capture.models.sender import LastKnownSender
from slack_capture.models.state import PersistedState
from slack_capture.scheduling import Timers
from slack_capture.storage.service import StorageService

logger = logging.getLogger(__name__)


class MonitorState(str, Enum):
    """Observable state of the extraction state machine."""

    IDLE = "idle"
    OBSERVING = "observing"
    EXTRACTING = "extracting"
    SCROLLING = "scrolling"


@dataclass
class MonitorSnapshot:
    """Status handed to the connection layer for heartbeats and syncs."""

    is_extracting: bool
    channel_info: ChannelInfo | None
    message_count: int
    extracted_messages: RecordTree = field(default_factory=dict)


class MonitorService:
    """Watches the host document and folds newly rendered messages into the tree."""

    def __init__(
        self,
        document: Document,
        extractor: MessageExtractor,
        storage: StorageService,
        settings: Settings | None = None,
        on_channel_change: Callable[[ChannelInfo], None] | None = None,
        on_sync: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._document = document
        self._extractor = extractor
        self._storage = storage
        self._settings = settings or get_settings()
        self._on_channel_change = on_channel_change
        self._on_sync = on_sync
        self._clock = clock

        self._timers = Timers("monitor")
        self._observation: Observation | None = None
        self._title_observation: Observation | None = None
        self._scan_task = None

        self._tree: RecordTree = {}
        self._channel: ChannelInfo | None = None
        self._monitoring = False
        self._is_extracting = False
        self._is_scrolling = False
        self._scrolling_enabled = True
        self._recheck_channel = False
        self._last_record_at = clock()

    # -- state --

    @property
    def state(self) -> MonitorState:
        if self._is_extracting:
            return MonitorState.EXTRACTING
        if not self._monitoring:
            return MonitorState.IDLE
        if self._is_scrolling:
            return MonitorState.SCROLLING
        return MonitorState.OBSERVING

    @property
    def is_monitoring(self) -> bool:
        return self._monitoring

    @property
    def extracted_messages(self) -> RecordTree:
        return self._tree

    def get_current_state(self) -> MonitorSnapshot:
        return MonitorSnapshot(
            is_extracting=self._monitoring,
            channel_info=self._channel,
            message_count=count_records(self._tree),
            extracted_messages=self._tree,
        )

    # -- lifecycle --

    async def start_monitoring(self) -> None:
        """Load state, attach every trigger, run one pass and persist."""
        if self._monitoring:
            return

        state = await self._storage.load_state()
        self._tree = state.extracted_messages
        self._scrolling_enabled = state.is_scrolling_enabled
        self._channel = self._extractor.extract_channel_info(self._document)
        self._monitoring = True
        self._last_record_at = self._clock()

        settings = self._settings
        self._title_observation = self._document.observe_title(self._on_title_change)
        self._timers.every("channel-poll", settings.channel_poll_interval, self.check_channel_change)
        self._attach_observer()
        if self._scrolling_enabled:
            self._document.add_scroll_listener(self._on_scroll)
        self._timers.every(
            "observer-health", settings.health_check_interval, self._check_observer_health
        )
        self._timers.every("fallback-poll", settings.fallback_poll_interval, self._poll_unextracted)

        await self.extract_messages()
        await self._save()
        logger.info(
            "Monitoring started",
            extra={"channel": self._channel.channel if self._channel else None},
        )

    async def stop_monitoring(self) -> None:
        """Detach every trigger and persist. An in-flight scan is allowed to finish."""
        self._monitoring = False
        self._timers.cancel_all()
        self._detach_observer()
        if self._title_observation is not None:
            self._title_observation.disconnect()
            self._title_observation = None
        self._document.remove_scroll_listener(self._on_scroll)
        self._is_scrolling = False
        await self._save()
        logger.info("Monitoring stopped", extra={"records": count_records(self._tree)})

    async def wait_idle(self) -> None:
        """Wait until triggered scans have finished."""
        await self._timers.drain()

    # -- observer --

    def _attach_observer(self) -> bool:
        self._detach_observer()
        container = self._extractor.get_message_container(self._document)
        if container is None:
            logger.debug("Message container not rendered yet; observer not attached")
            return False
        self._observation = self._document.observe(container, self._on_mutation)
        return True

    def _detach_observer(self) -> None:
        if self._observation is not None:
            self._observation.disconnect()
            self._observation = None

    def _on_mutation(self) -> None:
        if self._is_extracting or (self._scan_task is not None and not self._scan_task.done()):
            return
        self._scan_task = self._timers.spawn(self._extract_and_sync())

    def _on_title_change(self) -> None:
        if self._monitoring:
            self._timers.spawn(self.check_channel_change())

    # -- scrolling --

    def _on_scroll(self) -> None:
        if not self._monitoring:
            return
        self._is_scrolling = True
        self._detach_observer()
        self._timers.after("scroll-settle", self._settings.scroll_debounce, self._on_scroll_settled)

    async def _on_scroll_settled(self) -> None:
        self._is_scrolling = False
        if not self._monitoring:
            return
        self._attach_observer()
        if not self._is_extracting:
            await self._extract_and_sync()

    async def set_scrolling_enabled(self, enabled: bool) -> None:
        """Turn scroll-triggered scans on or off and persist the setting."""
        self._scrolling_enabled = enabled
        if self._monitoring:
            if enabled:
                self._document.add_scroll_listener(self._on_scroll)
            else:
                self._document.remove_scroll_listener(self._on_scroll)
                self._timers.cancel("scroll-settle")
                if self._is_scrolling:
                    self._is_scrolling = False
                    self._attach_observer()
        await self._save()

    # -- periodic checks --

    async def _check_observer_health(self) -> None:
        if self._is_scrolling:
            return
        stale = self._clock() - self._last_record_at > self._settings.observer_stale_after
        if stale or self._observation is None or not self._observation.active:
            logger.debug("Reattaching message observer", extra={"stale": stale})
            self._attach_observer()

    async def _poll_unextracted(self) -> None:
        if self._is_extracting or self._is_scrolling:
            return
        extractor = self._extractor
        for item in extractor.list_candidates(self._document):
            if not extractor.is_valid_message_id(item.get("id")):
                continue
            if extractor.is_message_rejected(item):
                continue
            if not extractor.is_message_extracted(item) or extractor.needs_sender_update(item):
                await self._extract_and_sync()
                return

    async def check_channel_change(self) -> None:
        """Reattach and run a pass when the document now shows a different channel.

        A change seen while a scan is running is rechecked once that scan ends.
        """
        channel = self._extractor.extract_channel_info(self._document)
        if channel is None or channel == self._channel:
            return
        if self._is_extracting:
            self._recheck_channel = True
            return
        if self._monitoring:
            self._attach_observer()
        await self.extract_messages()

    # -- scanning --

    async def _extract_and_sync(self) -> None:
        accepted = await self.extract_messages()
        if accepted and self._on_sync is not None:
            self._on_sync()

    async def extract_messages(self) -> int:
        """Scan the document once; returns the number of records accepted.

        Re-entrant calls while a scan is running return 0 immediately.
        """
        if self._is_extracting:
            return 0
        self._is_extracting = True
        switched_to: ChannelInfo | None = None
        try:
            channel = self._extractor.extract_channel_info(self._document)
            if channel is None:
                return 0
            if channel != self._channel:
                switched_to = channel
                self._channel = channel

            accepted = self._scan(channel)
            if accepted:
                self._last_record_at = self._clock()
                await self._save()
            return accepted
        finally:
            self._is_extracting = False
            if switched_to is not None:
                self._channel_switched(switched_to)
            if self._recheck_channel:
                self._recheck_channel = False
                self._timers.spawn(self.check_channel_change())

    def _scan(self, channel: ChannelInfo) -> int:
        extractor = self._extractor
        now = datetime.now(timezone.utc)
        last_known: LastKnownSender | None = None  # reset every pass
        accepted = 0

        for item in extractor.list_candidates(self._document):
            recheck = extractor.needs_sender_update(item)
            if extractor.is_message_extracted(item) and not recheck:
                # Still feeds the carry-forward sender for the items below it
                _, last_known = extractor.extract_message_sender(item, last_known)
                continue

            try:
                record, last_known = extractor.build_record(item, last_known, now)
            except Exception:
                logger.debug("Skipping unparseable candidate", exc_info=True)
                record = None

            if record is None or not is_valid_message(record):
                self._reject(item, recheck)
                continue

            self._tree = insert_record(self._tree, channel, record)
            extractor.mark_message_as_extracted(
                item, recheck_sender=record.is_inferred_sender and not recheck
            )
            accepted += 1

        if accepted:
            logger.debug(
                "Extraction pass complete",
                extra={"accepted": accepted, "channel": channel.channel},
            )
        return accepted

    def _reject(self, item: Tag, recheck: bool) -> None:
        # Polling skips rejected items; mutation scans still retry them
        extractor = self._extractor
        if recheck:
            # The stored record stands; only the pending re-check is dropped
            extractor.mark_message_as_extracted(item)
        elif extractor.is_valid_message_id(item.get("id")):
            extractor.mark_message_as_rejected(item)

    def _channel_switched(self, channel: ChannelInfo) -> None:
        logger.info(
            "Channel changed",
            extra={"organization": channel.organization, "channel": channel.channel},
        )
        if self._monitoring:
            self._attach_observer()
        self._last_record_at = self._clock()
        if self._on_channel_change is not None:
            self._on_channel_change(channel)

    # -- external edits --

    async def forget_channel(self, organization: str, channel: str) -> None:
        """Drop a channel deleted elsewhere so the next save does not restore it."""
        self._tree = remove_channel(self._tree, organization, channel)
        self._storage.forget_channel(organization, channel)
        await self._save()

    async def _save(self) -> None:
        await self._storage.save_state(
            PersistedState(
                is_extracting=self._monitoring,
                current_channel=self._channel,
                extracted_messages=self._tree,
                is_scrolling_enabled=self._scrolling_enabled,
            )
        )
