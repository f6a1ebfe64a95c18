"""Tests for the coordinator: liveness, fan-out and channel deletion."""

from unittest.mock import AsyncMock

import pytest

from conftest import DAY_BUCKET, FakeClock
from slack_capture.models import PersistedState, Record
from slack_capture.storage.service import STATE_KEY, StorageService
from slack_capture.storage.store import MemoryStore
from slack_capture.sync.bus import MessageBus, Role
from slack_capture.sync.coordinator import Coordinator, SourceRegistry


def _record(message_id: str, body: str) -> Record:
    return Record(
        id=message_id,
        sender_name="Alice",
        sender_id="U1",
        timestamp_utc="2023-11-14T22:13:20.001Z",
        body=body,
    )


def _tree() -> dict:
    return {
        "acme": {
            "general": {DAY_BUCKET: [_record("1700000000.001", "hello")]},
            "random": {DAY_BUCKET: [_record("1700000000.009", "other")]},
        }
    }


def _heartbeat(extracting: bool = True, channel: str | None = "general") -> dict:
    info = {"organization": "acme", "channel": channel} if channel else None
    return {
        "type": "heartbeat",
        "timestamp": 1.0,
        "isExtracting": extracting,
        "channelInfo": info,
        "messageCount": 0,
    }


def _sync(tree: dict) -> dict:
    wire = PersistedState(extracted_messages=tree).to_wire()["extractedMessages"]
    return {
        "type": "sync",
        "timestamp": 1.0,
        "extractedMessages": wire,
        "currentChannel": {"organization": "acme", "channel": "general"},
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> MessageBus:
    return MessageBus()


@pytest.fixture
def viewer(bus: MessageBus) -> AsyncMock:
    handler = AsyncMock(return_value={"success": True})
    bus.register("viewer-1", Role.VIEWER, handler)
    return handler


@pytest.fixture
def coordinator(bus, storage, settings, clock) -> Coordinator:
    return Coordinator(bus, storage, settings, timer=clock)


# --- registry ---


def test_registry_expires_silent_sources(clock: FakeClock):
    registry = SourceRegistry(ttl=10.0, timer=clock)
    registry.touch("tab-1")
    registry.touch("tab-2")

    clock.advance(6)
    registry.touch("tab-2")
    clock.advance(6)

    assert registry.expire() == ["tab-1"]
    assert "tab-1" not in registry
    assert "tab-2" in registry
    assert len(registry) == 1


def test_registry_touch_keeps_record(clock: FakeClock):
    registry = SourceRegistry(ttl=10.0, timer=clock)
    first = registry.touch("tab-1")
    clock.advance(3)
    again = registry.touch("tab-1")
    assert again is first
    assert again.last_heartbeat_at == clock.now


# --- heartbeat / sync ---


async def test_heartbeat_registers_and_broadcasts(coordinator, viewer):
    response = await coordinator.handle_message(_heartbeat(), "tab-1")

    assert response == {"success": True, "known": False}
    assert "tab-1" in coordinator.registry
    payload, sender = viewer.await_args.args
    assert sender == "coordinator"
    assert payload["type"] == "state_update"
    assert payload["sourceId"] == "tab-1"
    assert payload["state"]["isExtracting"] is True
    assert payload["state"]["currentChannel"] == {"organization": "acme", "channel": "general"}


async def test_heartbeat_reports_whether_source_was_known(coordinator, clock, settings):
    """A source the coordinator lost track of is told so it can resync its tree."""
    first = await coordinator.handle_message(_heartbeat(), "tab-1")
    second = await coordinator.handle_message(_heartbeat(), "tab-1")
    assert (first["known"], second["known"]) == (False, True)

    clock.advance(settings.heartbeat_timeout + 1)
    await coordinator.cleanup()
    after_expiry = await coordinator.handle_message(_heartbeat(), "tab-1")
    assert after_expiry == {"success": True, "known": False}


async def test_heartbeat_without_source(coordinator):
    response = await coordinator.handle_message(_heartbeat(), None)
    assert response == {"success": False, "error": "Missing source"}


async def test_sync_replaces_tree(coordinator, viewer):
    await coordinator.handle_message(_sync(_tree()), "tab-1")
    smaller = {"acme": {"general": _tree()["acme"]["general"]}}
    await coordinator.handle_message(_sync(smaller), "tab-1")

    state = coordinator.registry.get("tab-1").last_known_state
    assert list(state.extracted_messages["acme"]) == ["general"]
    assert viewer.await_count == 2


async def test_heartbeat_keeps_synced_tree(coordinator):
    await coordinator.handle_message(_sync(_tree()), "tab-1")
    await coordinator.handle_message(_heartbeat(extracting=False), "tab-1")

    state = coordinator.registry.get("tab-1").last_known_state
    assert state.is_extracting is False
    assert set(state.extracted_messages["acme"]) == {"general", "random"}


async def test_popup_status(coordinator):
    assert await coordinator.handle_message(
        {"type": "popup_status", "sourceId": "tab-1"}, "viewer-1"
    ) == {"state": None}

    await coordinator.handle_message(_heartbeat(), "tab-1")
    response = await coordinator.handle_message(
        {"type": "popup_status", "sourceId": "tab-1"}, "viewer-1"
    )
    assert response["state"]["isExtracting"] is True
    assert response["state"]["extractedMessages"] == {}


async def test_silent_source_is_forgotten(coordinator, clock, settings):
    await coordinator.handle_message(_heartbeat(), "tab-1")
    clock.advance(settings.heartbeat_timeout + 1)

    await coordinator.cleanup()

    assert "tab-1" not in coordinator.registry
    response = await coordinator.handle_message(
        {"type": "popup_status", "sourceId": "tab-1"}, "viewer-1"
    )
    assert response == {"state": None}


async def test_heartbeats_keep_source_alive(coordinator, clock, settings):
    for _ in range(3):
        clock.advance(settings.heartbeat_timeout - 1)
        await coordinator.handle_message(_heartbeat(), "tab-1")
    await coordinator.cleanup()
    assert "tab-1" in coordinator.registry


async def test_broadcast_all(coordinator, viewer):
    await coordinator.handle_message(_heartbeat(), "tab-1")
    await coordinator.handle_message(_heartbeat(channel=None), "tab-2")
    viewer.reset_mock()

    await coordinator.broadcast_all()

    assert [call.args[0]["sourceId"] for call in viewer.await_args_list] == ["tab-1", "tab-2"]


# --- malformed / unsupported ---


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "nonsense"},
        {"type": "heartbeat"},
        {"no": "type"},
    ],
)
async def test_malformed_message(coordinator, payload: dict):
    assert await coordinator.handle_message(payload, "tab-1") == {
        "success": False,
        "error": "Invalid message",
    }


async def test_unsupported_message(coordinator):
    response = await coordinator.handle_message({"type": "SET_SCROLLING", "enabled": True}, "x")
    assert response == {"success": False, "error": "Unsupported message type: SET_SCROLLING"}


# --- channel deletion ---


async def test_delete_channel(bus, viewer, settings):
    store = MemoryStore()
    storage = StorageService(store, write_delay=0.01)
    await storage.save_state(PersistedState(extracted_messages=_tree()))
    await storage.flush()
    coordinator = Coordinator(bus, storage, settings)
    tab = AsyncMock(return_value={"success": True})
    bus.register("tab-1", Role.EXTRACTION, tab)
    await coordinator.handle_message(_sync(_tree()), "tab-1")
    viewer.reset_mock()

    response = await coordinator.handle_message(
        {"type": "DELETE_CHANNEL_MESSAGES", "organization": "acme", "channel": "general"},
        "viewer-1",
    )

    assert response == {"success": True}
    assert list(store.snapshot()[STATE_KEY]["extractedMessages"]["acme"]) == ["random"]
    state = coordinator.registry.get("tab-1").last_known_state
    assert list(state.extracted_messages["acme"]) == ["random"]
    tab.assert_awaited_once_with(
        {"type": "channel_deleted", "organization": "acme", "channel": "general"},
        "coordinator",
    )
    payload, _ = viewer.await_args.args
    assert list(payload["state"]["extractedMessages"]["acme"]) == ["random"]


async def test_delete_unknown_channel(coordinator, viewer):
    response = await coordinator.handle_message(
        {"type": "DELETE_CHANNEL_MESSAGES", "organization": "nope", "channel": "general"},
        "viewer-1",
    )
    assert response == {"success": False, "error": "Organization not found: nope"}
    viewer.assert_not_awaited()


# --- lifecycle ---


async def test_start_and_stop(bus, coordinator):
    coordinator.start()
    assert bus.addresses(Role.COORDINATOR) == ["coordinator"]

    await coordinator.stop()
    assert bus.addresses(Role.COORDINATOR) == []
