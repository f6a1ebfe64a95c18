"""Debounced, keyed write queue for the durable store.

Writes are closures that read the latest in-memory value when they run, so
every write scheduled for the same key inside one batch window collapses into
a single durable write. A flush runs all pending closures concurrently; any
that fail are re-queued for the next window, up to ``max_attempts`` in total,
after which the write is dropped and logged.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from slack_capture.scheduling import Timers

logger = logging.getLogger(__name__)

WriteFn = Callable[[], Awaitable[None]]


@dataclass
class PendingWrite:
    """A queued write and how many times it has already failed."""

    write: WriteFn
    attempts: int = 0


class WriteBatcher:
    """Collects writes for ``delay`` seconds, then flushes them together."""

    def __init__(self, delay: float = 1.0, max_attempts: int = 5) -> None:
        self._delay = delay
        self._max_attempts = max_attempts
        self._pending: dict[str, PendingWrite] = {}
        self._timers = Timers("write-batch")

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def schedule(self, key: str, write: WriteFn) -> None:
        """Queue ``write`` under ``key``; a later write for the same key replaces it.

        The batch window is fixed: it starts with the first write and is not
        extended by later ones.
        """
        previous = self._pending.get(key)
        self._pending[key] = PendingWrite(write, previous.attempts if previous else 0)
        if not self._timers.is_scheduled("flush"):
            self._timers.after("flush", self._delay, self.flush)

    async def flush(self) -> None:
        """Run every pending write now; re-queue failures for the next window."""
        self._timers.cancel("flush")
        batch, self._pending = self._pending, {}
        if not batch:
            return

        results = await asyncio.gather(
            *(pending.write() for pending in batch.values()), return_exceptions=True
        )

        for (key, pending), result in zip(batch.items(), results):
            if not isinstance(result, Exception):
                continue
            attempts = pending.attempts + 1
            if attempts >= self._max_attempts:
                logger.error(
                    "Dropping write after %d failed attempts",
                    attempts,
                    extra={"key": key, "error": str(result)},
                )
                continue
            if key in self._pending:
                # A newer write for the key was queued while this one ran
                continue
            logger.warning(
                "Write failed, retrying next batch (attempt %d/%d)",
                attempts,
                self._max_attempts,
                extra={"key": key, "error": str(result)},
            )
            self._pending[key] = PendingWrite(pending.write, attempts)

        if self._pending and not self._timers.is_scheduled("flush"):
            self._timers.after("flush", self._delay, self.flush)

    async def close(self) -> None:
        """Flush once more and stop the batch timer; unflushed failures are dropped."""
        await self.flush()
        self._timers.cancel_all()
        if self._pending:
            logger.warning("Closing with %d unflushed write(s)", len(self._pending))
            self._pending.clear()
