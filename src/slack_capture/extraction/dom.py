"""Live host document backed by BeautifulSoup.

The page being scraped is owned by the host (a browser driver, a test
fixture). The host pushes HTML in through the mutator methods; extraction
code reads it through ``select``/``select_one`` and subscribes to changes the
way a page script would with a mutation observer, a title observer and a
scroll listener.

A mutation observation is bound to one element. When the host swaps the
document wholesale (``load``), elements observed before the swap are gone and
their observers go quiet, which is exactly how virtual scrolling starves a
real mutation observer. Notifications are delivered synchronously; a
subscriber that raises is logged and never breaks the host.
"""

import logging
from collections.abc import Callable
from typing import Protocol

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

Callback = Callable[[], None]


class Observation:
    """Handle for one subscription; ``disconnect()`` stops delivery."""

    def __init__(
        self, registry: list["Observation"], callback: Callback, target: Tag | None = None
    ) -> None:
        self._registry = registry
        self.callback = callback
        self.target = target
        registry.append(self)

    @property
    def active(self) -> bool:
        return self in self._registry

    def disconnect(self) -> None:
        if self in self._registry:
            self._registry.remove(self)


class Document(Protocol):
    """What the extraction side needs from the host page."""

    @property
    def title(self) -> str: ...

    @property
    def hostname(self) -> str: ...

    def select(self, selector: str) -> list[Tag]: ...

    def select_one(self, selector: str) -> Tag | None: ...

    def observe(self, target: Tag, callback: Callback) -> Observation: ...

    def observe_title(self, callback: Callback) -> Observation: ...

    def add_scroll_listener(self, callback: Callback) -> None: ...

    def remove_scroll_listener(self, callback: Callback) -> None: ...


def _within(node: Tag, target: Tag) -> bool:
    # Identity, not Tag.__eq__ (which compares markup)
    return node is target or any(parent is target for parent in node.parents)


class SoupDocument:
    """In-process document whose content is replaced or extended by the host."""

    def __init__(self, html: str = "", hostname: str = "app.slack.com") -> None:
        self._soup = BeautifulSoup(html, "html.parser")
        self._hostname = hostname
        self._observers: list[Observation] = []
        self._title_observers: list[Observation] = []
        self._scroll_listeners: list[Callback] = []

    # -- reads --

    @property
    def title(self) -> str:
        title = self._soup.title
        if title is None:
            return ""
        return title.get_text().strip()

    @property
    def hostname(self) -> str:
        return self._hostname

    def select(self, selector: str) -> list[Tag]:
        return list(self._soup.select(selector))

    def select_one(self, selector: str) -> Tag | None:
        return self._soup.select_one(selector)

    # -- subscriptions --

    def observe(self, target: Tag, callback: Callback) -> Observation:
        """Subscribe to child-list and ``data-qa`` attribute changes under ``target``."""
        return Observation(self._observers, callback, target)

    def observe_title(self, callback: Callback) -> Observation:
        return Observation(self._title_observers, callback)

    def add_scroll_listener(self, callback: Callback) -> None:
        if callback not in self._scroll_listeners:
            self._scroll_listeners.append(callback)

    def remove_scroll_listener(self, callback: Callback) -> None:
        if callback in self._scroll_listeners:
            self._scroll_listeners.remove(callback)

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    @property
    def scroll_listener_count(self) -> int:
        return len(self._scroll_listeners)

    # -- host-side mutators --

    def load(self, html: str) -> None:
        """Replace the whole document, as virtual scrolling or navigation does.

        Extraction marks and mutation observers on the old elements are lost
        with them; only title observers are told about the swap.
        """
        previous_title = self.title
        self._soup = BeautifulSoup(html, "html.parser")
        if self.title != previous_title:
            self._notify(self._title_observers)

    def append(self, html: str, parent_selector: str) -> None:
        """Append an HTML fragment to the first element matching ``parent_selector``."""
        parent = self._soup.select_one(parent_selector)
        if parent is None:
            raise LookupError(f"No element matches {parent_selector!r}")
        fragment = BeautifulSoup(html, "html.parser")
        for child in list(fragment.contents):
            parent.append(child.extract())
        self._notify_subtree(parent)

    def set_attribute(self, selector: str, name: str, value: str) -> None:
        """Set an attribute on every match; only ``data-qa`` changes are observed."""
        for element in self._soup.select(selector):
            element[name] = value
            if name == "data-qa":
                self._notify_subtree(element)

    def set_title(self, title: str) -> None:
        if self._soup.title is None:
            head = self._soup.head
            if head is None:
                head = self._soup.new_tag("head")
                self._soup.insert(0, head)
            head.append(self._soup.new_tag("title"))
        self._soup.title.string = title
        self._notify(self._title_observers)

    def scroll(self) -> None:
        """Dispatch a scroll event to every listener."""
        for callback in list(self._scroll_listeners):
            self._dispatch(callback)

    def _notify_subtree(self, node: Tag) -> None:
        for observation in list(self._observers):
            if observation.target is not None and _within(node, observation.target):
                self._dispatch(observation.callback)

    def _notify(self, observers: list[Observation]) -> None:
        for observation in list(observers):
            self._dispatch(observation.callback)

    @staticmethod
    def _dispatch(callback: Callback) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Document subscriber failed")
