"""Message extraction from a rendered Slack document.

Public API:
    SoupDocument(html) -> Document
        Host document fed by a browser driver or a test fixture.
    MessageExtractor().build_record(item, last_known) -> (Record | None, LastKnownSender | None)
        Per-candidate field extraction with fallback strategies.
    MonitorService(document, extractor, storage)
        Mutation/scroll/poll driven state machine that keeps the tree current.
"""

from slack_capture.extraction.dom import Document, Observation, SoupDocument
from slack_capture.extraction.extractor import MessageExtractor
from slack_capture.extraction.monitor import MonitorService, MonitorSnapshot, MonitorState

__all__ = [
    "Document",
    "MessageExtractor",
    "MonitorService",
    "MonitorSnapshot",
    "MonitorState",
    "Observation",
    "SoupDocument",
]
