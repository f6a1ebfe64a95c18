"""Shared test fixtures."""

import asyncio
from collections.abc import Callable

import pytest

from slack_capture.config import Settings
from slack_capture.storage.service import StorageService
from slack_capture.storage.store import MemoryStore

CHANNEL_TITLE = "general (Channel) - acme - Slack"
DAY_BUCKET = "2023-11-14T00:00:00.000Z"


def item_html(
    message_id: str,
    body: str,
    *,
    ts: str | None = None,
    label: str | None = None,
    sender: str | None = None,
    sender_id: str | None = None,
    avatar: str | None = None,
    href: str | None = None,
) -> str:
    """Render one virtual-list item the way the Slack client does."""
    parts = [f'<div data-qa="virtual-list-item" id="{message_id}">']
    if avatar:
        parts.append(f'<span class="c-message_kit__avatar"><img src="{avatar}"></span>')
    if sender:
        parts.append(
            f'<button data-qa="message_sender_name" data-message-sender="{sender_id}">'
            f"{sender}</button>"
        )
    if ts or label:
        link = href or f"/archives/C1/p{message_id.replace('.', '')}"
        attrs = f'class="c-timestamp" href="{link}"'
        if ts:
            attrs += f' data-ts="{ts}"'
        if label:
            attrs += f' aria-label="{label}"'
        parts.append(f"<a {attrs}>time</a>")
    parts.append(f'<div data-qa="message-text">{body}</div>')
    parts.append("</div>")
    return "".join(parts)


def page_html(items: list[str], title: str = CHANNEL_TITLE) -> str:
    """Wrap list items in a page with a message pane."""
    return (
        f"<html><head><title>{title}</title></head><body>"
        f'<div class="p-message_pane">{"".join(items)}</div>'
        "</body></html>"
    )


def basic_items() -> list[str]:
    """Alice posts, then a grouped follow-up without a rendered sender."""
    return [
        item_html(
            "1700000000.001", "hello", ts="1700000000.001", sender="Alice", sender_id="U1"
        ),
        item_html("1700000000.002", "world", ts="1700000000.002"),
    ]


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeClock:
    """Manually advanced clock for liveness tests."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with short debounces and periodic timers pushed out of the way."""
    return Settings(
        _env_file=None,
        storage_path=str(tmp_path / "state.json"),
        write_batch_delay=0.01,
        scroll_debounce=0.01,
        sync_debounce=0.01,
        heartbeat_interval=60.0,
        heartbeat_timeout=120.0,
        health_check_interval=60.0,
        channel_poll_interval=60.0,
        fallback_poll_interval=60.0,
        connection_check_interval=60.0,
        coordinator_cleanup_interval=60.0,
        coordinator_rebroadcast_interval=60.0,
        reconnect_max_attempts=2,
        reconnect_backoff=0.0,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def storage(store: MemoryStore) -> StorageService:
    return StorageService(store, write_delay=0.01)
