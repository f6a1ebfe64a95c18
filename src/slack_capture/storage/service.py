"""Schema-validated, write-behind access to the durable extraction state.

The in-memory cache is the single owner of "current truth" inside one running
context: reads are served from it after the first load, saves update it
synchronously and queue a durable write through a ``WriteBatcher``. Several
contexts share one store, so a write merges the cached tree into the durable
one instead of replacing it; only channel deletion removes records. Anything
read from or written to the store is validated against ``PersistedState``;
a document that fails validation is treated as absent and replaced by
defaults rather than propagated.

A one-time migration adopts the legacy flat document (older field names,
no scrolling flag, local-midnight day buckets) under the current key.
"""

import logging
from typing import Any

from pydantic import ValidationError

from slack_capture.merge import merge, rebucket, remove_channel
from slack_capture.models.state import PersistedState
from slack_capture.storage.batch import WriteBatcher
from slack_capture.storage.store import KeyValueStore

logger = logging.getLogger(__name__)

STATE_KEY = "extractionState"
LEGACY_STATE_KEY = "extensionState"
MIGRATION_MARKER_KEY = "stateMigrationComplete"

# Legacy record field -> current wire name
_LEGACY_RECORD_FIELDS = {
    "messageId": "id",
    "sender": "senderName",
    "timestamp": "timestampUtc",
    "text": "body",
}


class ChannelDeletionError(ValueError):
    """A channel deletion request could not be applied."""


def validate_state(raw: Any) -> PersistedState | None:
    """Validate a raw stored value; None when absent or invalid."""
    if raw is None:
        return None
    try:
        return PersistedState.model_validate(raw)
    except ValidationError as exc:
        logger.warning(
            "Stored state failed validation, using defaults",
            extra={"errors": exc.error_count()},
        )
        return None


def upgrade_legacy_state(raw: Any) -> Any:
    """Map the legacy flat document onto the current shape, filling defaults.

    Values that are not shaped like the legacy document are returned as-is so
    that validation rejects them.
    """
    if not isinstance(raw, dict):
        return raw

    tree = raw.get("extractedMessages", {})
    if isinstance(tree, dict):
        tree = {
            organization: _upgrade_channels(channels)
            for organization, channels in tree.items()
        }

    return {
        "isExtracting": raw.get("isExtracting", False),
        "currentChannel": raw.get("currentChannel"),
        "extractedMessages": tree,
        "isScrollingEnabled": raw.get("isScrollingEnabled", True),
    }


def _upgrade_channels(channels: Any) -> Any:
    if not isinstance(channels, dict):
        return channels
    upgraded = {}
    for channel, days in channels.items():
        if not isinstance(days, dict):
            upgraded[channel] = days
            continue
        upgraded[channel] = {
            day: [_upgrade_record(r) for r in records] if isinstance(records, list) else records
            for day, records in days.items()
        }
    return upgraded


def _upgrade_record(record: Any) -> Any:
    if not isinstance(record, dict):
        return record
    upgraded = dict(record)
    for legacy, current in _LEGACY_RECORD_FIELDS.items():
        if legacy in upgraded and current not in upgraded:
            upgraded[current] = upgraded.pop(legacy)
    return upgraded


class StorageService:
    """Cached, batched, validated access to the single durable state document."""

    def __init__(
        self,
        store: KeyValueStore,
        write_delay: float = 1.0,
        max_write_attempts: int = 5,
    ) -> None:
        self._store = store
        self._cache: PersistedState | None = None
        self._migration_checked = False
        self._forgotten: set[tuple[str, str]] = set()
        self._batcher = WriteBatcher(delay=write_delay, max_attempts=max_write_attempts)

    @property
    def pending_writes(self) -> int:
        return self._batcher.pending_count

    async def load_state(self) -> PersistedState:
        """Return a copy of the current state, loading and migrating on first use."""
        if self._cache is None:
            await self.migrate()
            stored = await self._store.get([STATE_KEY])
            self._cache = validate_state(stored.get(STATE_KEY)) or PersistedState()
        return self._cache.model_copy(deep=True)

    async def save_state(self, state: PersistedState) -> None:
        """Replace the cached state and queue a durable (merging) write.

        Invalid state is refused (logged) and leaves the cache untouched.
        """
        validated = validate_state(state.to_wire())
        if validated is None:
            logger.warning("Refusing to persist state that fails validation")
            return
        self._cache = validated
        self._batcher.schedule(STATE_KEY, self._write_current)

    async def _write_current(self) -> None:
        """Write the cache, merged into whatever other contexts stored meanwhile.

        Channels forgotten since the last write are removed from the durable
        tree first so the merge cannot bring them back.
        """
        if self._cache is None:
            return
        forgotten, self._forgotten = self._forgotten, set()
        try:
            stored = await self._store.get([STATE_KEY])
            durable = validate_state(stored.get(STATE_KEY))
            tree = self._cache.extracted_messages
            if durable is not None:
                base = durable.extracted_messages
                for organization, channel in forgotten:
                    base = remove_channel(base, organization, channel)
                tree = merge(base, tree)
            state = self._cache.model_copy(update={"extracted_messages": tree})
            await self._store.set({STATE_KEY: state.to_wire()})
        except Exception:
            self._forgotten |= forgotten
            raise

    def forget_channel(self, organization: str, channel: str) -> None:
        """Drop a channel from the cache and from durable state on the next write."""
        self._forgotten.add((organization, channel))
        if self._cache is not None:
            self._cache.extracted_messages = remove_channel(
                self._cache.extracted_messages, organization, channel
            )

    async def reload(self) -> PersistedState:
        """Drop the cache and read the durable state again."""
        self._cache = None
        return await self.load_state()

    async def migrate(self) -> bool:
        """Adopt the legacy document once; returns True if anything was migrated.

        Gated by a durable marker so it never runs twice per installation.
        A legacy document that fails validation is left in place.
        """
        if self._migration_checked:
            return False
        self._migration_checked = True

        stored = await self._store.get([MIGRATION_MARKER_KEY, LEGACY_STATE_KEY, STATE_KEY])
        if stored.get(MIGRATION_MARKER_KEY):
            return False

        migrated = False
        if LEGACY_STATE_KEY in stored:
            legacy = validate_state(upgrade_legacy_state(stored[LEGACY_STATE_KEY]))
            if legacy is None:
                logger.warning("Legacy state is invalid and was not migrated")
            else:
                tree = rebucket(legacy.extracted_messages)
                current = validate_state(stored.get(STATE_KEY))
                if current is not None:
                    tree = merge(current.extracted_messages, tree)
                    legacy = current
                state = legacy.model_copy(update={"extracted_messages": tree})
                await self._store.set({STATE_KEY: state.to_wire()})
                await self._store.remove([LEGACY_STATE_KEY])
                migrated = True
                logger.info("Migrated legacy state", extra={"organizations": len(tree)})

        await self._store.set({MIGRATION_MARKER_KEY: True})
        return migrated

    async def delete_channel_messages(self, organization: str, channel: str) -> PersistedState:
        """Delete one channel's records from durable state and return the new state.

        Reads the durable state fresh (other contexts may have written since
        this cache was filled) and writes the result immediately.

        Raises:
            ChannelDeletionError: empty arguments, or unknown organization/channel.
        """
        if not organization or not channel:
            raise ChannelDeletionError("Organization and channel are required")

        await self._batcher.flush()
        state = await self.reload()
        tree = state.extracted_messages
        if organization not in tree:
            raise ChannelDeletionError(f"Organization not found: {organization}")
        if channel not in tree[organization]:
            raise ChannelDeletionError(f"Channel not found: {channel} in {organization}")

        state.extracted_messages = remove_channel(tree, organization, channel)
        self._cache = state
        await self._store.set({STATE_KEY: state.to_wire()})
        logger.info(
            "Deleted channel messages",
            extra={"organization": organization, "channel": channel},
        )
        return state.model_copy(deep=True)

    async def flush(self) -> None:
        await self._batcher.flush()

    async def close(self) -> None:
        await self._batcher.close()
