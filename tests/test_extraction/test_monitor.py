"""Tests for the extraction state machine."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import DAY_BUCKET, basic_items, item_html, page_html, wait_for
from slack_capture.config import Settings
from slack_capture.extraction.dom import SoupDocument
from slack_capture.extraction.extractor import (
    NEEDS_SENDER_UPDATE_ATTRIBUTE,
    REJECTED_ATTRIBUTE,
    MessageExtractor,
)
from slack_capture.extraction.monitor import MonitorService, MonitorState
from slack_capture.models import ChannelInfo, count_records
from slack_capture.storage.service import STATE_KEY, StorageService
from slack_capture.storage.store import MemoryStore


@pytest.fixture
def document() -> SoupDocument:
    return SoupDocument(page_html(basic_items()))


def _make_monitor(
    document: SoupDocument, storage: StorageService, settings: Settings, **kwargs
) -> MonitorService:
    return MonitorService(document, MessageExtractor(), storage, settings=settings, **kwargs)


def _bob(message_id: str, body: str) -> str:
    """A message Bob posted directly."""
    return item_html(message_id, body, ts=message_id, sender="Bob", sender_id="U2")


def _general(monitor: MonitorService) -> list:
    return monitor.extracted_messages["acme"]["general"][DAY_BUCKET]


# --- scan algorithm ---


async def test_basic_extraction(document, storage, settings):
    """A grouped follow-up inherits the sender and is flagged for one re-check."""
    monitor = _make_monitor(document, storage, settings)

    accepted = await monitor.extract_messages()

    assert accepted == 2
    first, second = _general(monitor)
    assert (first.id, first.sender_name, first.is_inferred_sender) == (
        "1700000000.001",
        "Alice",
        False,
    )
    assert (second.id, second.sender_id, second.is_inferred_sender) == (
        "1700000000.002",
        "U1",
        True,
    )
    items = document.select('[data-qa="virtual-list-item"]')
    assert not items[0].has_attr(NEEDS_SENDER_UPDATE_ATTRIBUTE)
    assert items[1].has_attr(NEEDS_SENDER_UPDATE_ATTRIBUTE)


async def test_repeat_passes_converge(document, storage, settings):
    """The flagged item is re-checked once; after that passes accept nothing."""
    monitor = _make_monitor(document, storage, settings)
    await monitor.extract_messages()

    assert await monitor.extract_messages() == 1
    assert await monitor.extract_messages() == 0
    assert count_records(monitor.extracted_messages) == 2
    items = document.select('[data-qa="virtual-list-item"]')
    assert not items[1].has_attr(NEEDS_SENDER_UPDATE_ATTRIBUTE)


async def test_reentrant_scan_returns_zero(document, storage, settings):
    """A scan requested while one is running is dropped."""
    monitor = _make_monitor(document, storage, settings)
    nested: list[int] = []
    original_save = storage.save_state

    async def save_and_reenter(state):
        nested.append(await monitor.extract_messages())
        await original_save(state)

    storage.save_state = save_and_reenter
    assert await monitor.extract_messages() == 2
    assert nested == [0]


async def test_unparseable_candidates_are_skipped(storage, settings):
    items = [
        item_html("date-divider", "Today", ts="1700000000.000"),
        item_html("1700000000.003", "no timestamp", sender="Alice", sender_id="U1"),
        *basic_items(),
    ]
    monitor = _make_monitor(SoupDocument(page_html(items)), storage, settings)
    assert await monitor.extract_messages() == 2


async def test_first_message_without_sender_is_not_stored(storage, settings):
    """With nothing to inherit, a sender-less message fails validation."""
    items = [item_html("1700000000.002", "orphan", ts="1700000000.002")]
    monitor = _make_monitor(SoupDocument(page_html(items)), storage, settings)
    assert await monitor.extract_messages() == 0
    assert monitor.extracted_messages == {}


async def test_failed_candidate_is_marked_rejected(storage, settings):
    items = [item_html("1700000000.002", "orphan", ts="1700000000.002")]
    document = SoupDocument(page_html(items))
    monitor = _make_monitor(document, storage, settings)

    await monitor.extract_messages()

    assert document.select_one('[data-qa="virtual-list-item"]').has_attr(REJECTED_ATTRIBUTE)


async def test_failed_sender_recheck_keeps_record(document, storage, settings):
    """A re-check that fails drops the flag and keeps the stored record."""
    monitor = _make_monitor(document, storage, settings)
    await monitor.extract_messages()
    monitor._extractor.build_record = MagicMock(side_effect=ValueError("detached"))

    assert await monitor.extract_messages() == 0

    assert count_records(monitor.extracted_messages) == 2
    items = document.select('[data-qa="virtual-list-item"]')
    assert not items[1].has_attr(NEEDS_SENDER_UPDATE_ATTRIBUTE)
    assert not items[1].has_attr(REJECTED_ATTRIBUTE)


async def test_no_channel_no_scan(storage, settings):
    document = SoupDocument(page_html(basic_items(), title="Slack"))
    monitor = _make_monitor(document, storage, settings)
    assert await monitor.extract_messages() == 0


# --- lifecycle ---


async def test_start_and_stop(document, store, storage, settings):
    monitor = _make_monitor(document, storage, settings)

    await monitor.start_monitoring()
    assert monitor.state is MonitorState.OBSERVING
    assert document.observer_count == 1
    assert document.scroll_listener_count == 1
    await storage.flush()
    persisted = store.snapshot()[STATE_KEY]
    assert persisted["isExtracting"] is True
    assert persisted["currentChannel"] == {"organization": "acme", "channel": "general"}

    await monitor.stop_monitoring()
    assert monitor.state is MonitorState.IDLE
    assert document.observer_count == 0
    assert document.scroll_listener_count == 0
    await storage.flush()
    persisted = store.snapshot()[STATE_KEY]
    assert persisted["isExtracting"] is False
    assert count_records(monitor.extracted_messages) == 2


async def test_start_resumes_stored_tree(document, settings):
    """Records stored by an earlier session survive a restart."""
    store = MemoryStore()
    first = StorageService(store, write_delay=0.01)
    monitor = _make_monitor(document, first, settings)
    await monitor.start_monitoring()
    await monitor.stop_monitoring()
    await first.close()

    fresh_document = SoupDocument(page_html([_bob("1700000001.000", "new")]))
    restarted = _make_monitor(fresh_document, StorageService(store, write_delay=0.01), settings)
    await restarted.start_monitoring()
    assert count_records(restarted.extracted_messages) == 3
    await restarted.stop_monitoring()


async def test_mutation_triggers_scan(document, storage, settings):
    on_sync = MagicMock()
    monitor = _make_monitor(document, storage, settings, on_sync=on_sync)
    await monitor.start_monitoring()

    document.append(
        _bob("1700000003.000", "late reply"),
        ".p-message_pane",
    )
    await monitor.wait_idle()

    assert count_records(monitor.extracted_messages) == 3
    on_sync.assert_called()
    await monitor.stop_monitoring()


async def test_scroll_detaches_then_reattaches(document, storage, settings):
    monitor = _make_monitor(document, storage, settings)
    await monitor.start_monitoring()

    document.scroll()
    assert monitor.state is MonitorState.SCROLLING
    assert document.observer_count == 0

    await wait_for(lambda: monitor.state is MonitorState.OBSERVING)
    assert document.observer_count == 1
    await monitor.stop_monitoring()


async def test_scrolling_disabled_ignores_scroll(document, store, storage, settings):
    monitor = _make_monitor(document, storage, settings)
    await monitor.start_monitoring()

    await monitor.set_scrolling_enabled(False)
    assert document.scroll_listener_count == 0
    document.scroll()
    assert monitor.state is MonitorState.OBSERVING

    await storage.flush()
    assert store.snapshot()[STATE_KEY]["isScrollingEnabled"] is False
    await monitor.stop_monitoring()


async def test_channel_change_notifies_and_reattaches(document, storage, settings):
    on_channel_change = MagicMock()
    monitor = _make_monitor(document, storage, settings, on_channel_change=on_channel_change)
    await monitor.start_monitoring()

    document.load(
        page_html(
            [_bob("1700000005.000", "over here")],
            title="random (Channel) - acme - Slack",
        )
    )
    await monitor.wait_idle()

    on_channel_change.assert_called_once_with(ChannelInfo(organization="acme", channel="random"))
    assert set(monitor.extracted_messages["acme"]) == {"general", "random"}
    assert document.observer_count == 1
    await monitor.stop_monitoring()


async def test_channel_change_during_scan_is_picked_up(document, storage, settings):
    """A switch noticed mid-scan is handled as soon as that scan ends."""
    on_channel_change = MagicMock()
    monitor = _make_monitor(document, storage, settings, on_channel_change=on_channel_change)
    original_save = storage.save_state
    switched: list[bool] = []

    async def save_and_switch(state):
        if not switched:
            switched.append(True)
            document.set_title("random (Channel) - acme - Slack")
            await monitor.check_channel_change()
        await original_save(state)

    storage.save_state = save_and_switch
    await monitor.extract_messages()
    await monitor.wait_idle()

    on_channel_change.assert_called_once_with(ChannelInfo(organization="acme", channel="random"))
    assert monitor.get_current_state().channel_info.channel == "random"


async def test_channel_poll_reattaches_before_scanning(document, storage, settings):
    monitor = _make_monitor(document, storage, settings)
    await monitor.start_monitoring()
    attached: list[bool] = []
    original_scan = monitor.extract_messages

    async def scan_and_record() -> int:
        container = document.select_one(".p-message_pane")
        attached.append(monitor._observation.target is container)
        return await original_scan()

    monitor.extract_messages = scan_and_record
    document.load(page_html(basic_items(), title="random (Channel) - acme - Slack"))
    await monitor.check_channel_change()
    await monitor.wait_idle()

    assert attached[0] is True
    await monitor.stop_monitoring()


async def test_fallback_poll_recovers_from_virtual_scrolling(document, storage, settings):
    """A wholesale swap silences the observer; the poller still finds the new items."""
    fast_poll = settings.model_copy(update={"fallback_poll_interval": 0.01})
    monitor = _make_monitor(document, storage, fast_poll)
    await monitor.start_monitoring()

    document.load(
        page_html([*basic_items(), _bob("1700000007.000", "scrolled in")])
    )
    await wait_for(lambda: count_records(monitor.extracted_messages) == 3)
    await monitor.stop_monitoring()


async def test_fallback_poll_skips_rejected_items(storage, settings):
    """An item that never yields a record does not keep the poller rescanning."""
    items = [item_html("1700000000.002", "orphan", ts="1700000000.002")]
    monitor = _make_monitor(SoupDocument(page_html(items)), storage, settings)
    await monitor.extract_messages()

    monitor.extract_messages = AsyncMock(return_value=0)
    await monitor._poll_unextracted()

    monitor.extract_messages.assert_not_awaited()


async def test_later_scan_retries_rejected_items(storage, settings):
    """Once a sender renders above it, a rejected item is accepted."""
    orphan = item_html("1700000000.002", "orphan", ts="1700000000.002")
    document = SoupDocument(page_html([orphan]))
    monitor = _make_monitor(document, storage, settings)
    await monitor.extract_messages()

    rejected = str(document.select_one('[data-qa="virtual-list-item"]'))
    document.load(page_html([_bob("1700000000.001", "first"), rejected]))

    assert await monitor.extract_messages() == 2
    assert count_records(monitor.extracted_messages) == 2


async def test_health_check_reattaches_stale_observer(document, storage, settings):
    fast_health = settings.model_copy(
        update={"health_check_interval": 0.01, "observer_stale_after": 0.0}
    )
    monitor = _make_monitor(document, storage, fast_health)
    await monitor.start_monitoring()
    document.load(page_html(basic_items()))
    stale = monitor._observation

    await wait_for(lambda: monitor._observation is not stale)
    assert monitor._observation.active
    await monitor.stop_monitoring()


async def test_forget_channel(document, store, storage, settings):
    monitor = _make_monitor(document, storage, settings)
    await monitor.extract_messages()

    await monitor.forget_channel("acme", "general")

    assert monitor.extracted_messages == {}
    await storage.flush()
    assert store.snapshot()[STATE_KEY]["extractedMessages"] == {}


async def test_stop_lets_running_scan_finish(document, storage, settings):
    monitor = _make_monitor(document, storage, settings)
    await monitor.start_monitoring()
    document.append(
        _bob("1700000004.000", "in flight"),
        ".p-message_pane",
    )
    await monitor.stop_monitoring()
    await monitor.wait_idle()
    await asyncio.sleep(0)
    assert count_records(monitor.extracted_messages) == 3
