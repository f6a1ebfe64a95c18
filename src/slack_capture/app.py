"""Composition root: one coordinator and one extraction context on a shared bus."""

import itertools
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from slack_capture.config import Settings, get_settings
from slack_capture.content import ExtractionContext
from slack_capture.extraction.dom import Document
from slack_capture.logging_config import configure_logging
from slack_capture.storage.service import StorageService
from slack_capture.storage.store import JsonFileStore, KeyValueStore
from slack_capture.sync.bus import MessageBus
from slack_capture.sync.coordinator import Coordinator
from slack_capture.sync.viewer import Viewer

logger = logging.getLogger(__name__)


def _storage(store: KeyValueStore, settings: Settings) -> StorageService:
    return StorageService(
        store,
        write_delay=settings.write_batch_delay,
        max_write_attempts=settings.max_write_attempts,
    )


@dataclass
class Runtime:
    """Live handles for a running capture session."""

    settings: Settings
    bus: MessageBus
    store: KeyValueStore
    coordinator: Coordinator
    extraction: ExtractionContext
    viewers: list[Viewer] = field(default_factory=list)
    _viewer_ids: itertools.count = field(default_factory=lambda: itertools.count(1))

    def new_viewer(self) -> Viewer:
        """Open a viewer on the extraction context's source."""
        viewer = Viewer(self.bus, f"viewer-{next(self._viewer_ids)}", self.extraction.source_id)
        viewer.open()
        self.viewers.append(viewer)
        return viewer


@asynccontextmanager
async def lifespan(
    document: Document,
    settings: Settings | None = None,
    store: KeyValueStore | None = None,
    resume: bool = False,
) -> AsyncIterator[Runtime]:
    """Start coordinator and extraction context; stop everything and flush on exit."""
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    store = store if store is not None else JsonFileStore(settings.storage_path)

    bus = MessageBus()
    coordinator = Coordinator(bus, _storage(store, settings), settings)
    coordinator.start()
    extraction = ExtractionContext(bus, document, _storage(store, settings), settings)
    await extraction.start(resume=resume)
    runtime = Runtime(settings, bus, store, coordinator, extraction)
    logger.info("Capture runtime started", extra={"environment": settings.environment})
    try:
        yield runtime
    finally:
        for viewer in runtime.viewers:
            viewer.close()
        await runtime.extraction.stop()
        await runtime.coordinator.stop()
        logger.info("Capture runtime stopped")
