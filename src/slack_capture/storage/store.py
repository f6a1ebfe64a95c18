"""Durable key-value stores holding JSON documents.

``JsonFileStore`` keeps every key in a single JSON file, written atomically
through a temp file and ``os.replace``. Blocking file I/O runs in
``asyncio.to_thread`` so the event loop is never stalled by a large tree.
``MemoryStore`` has the same contract without touching disk.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Async JSON key-value store, modelled on a browser extension's local storage."""

    async def get(self, keys: list[str]) -> dict[str, Any]: ...

    async def set(self, items: dict[str, Any]) -> None: ...

    async def remove(self, keys: list[str]) -> None: ...


class JsonFileStore:
    """All keys in one JSON document on disk."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def get(self, keys: list[str]) -> dict[str, Any]:
        data = await asyncio.to_thread(self._read)
        return {key: data[key] for key in keys if key in data}

    async def set(self, items: dict[str, Any]) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            data.update(items)
            await asyncio.to_thread(self._write, data)

    async def remove(self, keys: list[str]) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            for key in keys:
                data.pop(key, None)
            await asyncio.to_thread(self._write, data)

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Store file is not valid JSON, treating as empty: %s", self.path)
            return {}
        if not isinstance(data, dict):
            logger.warning("Store file does not hold an object, treating as empty: %s", self.path)
            return {}
        return data

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        tmp_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, self.path)


class MemoryStore:
    """In-process store; values are JSON round-tripped so callers never share objects."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, str] = {
            key: json.dumps(value) for key, value in (initial or {}).items()
        }

    async def get(self, keys: list[str]) -> dict[str, Any]:
        return {key: json.loads(self._data[key]) for key in keys if key in self._data}

    async def set(self, items: dict[str, Any]) -> None:
        for key, value in items.items():
            self._data[key] = json.dumps(value)

    async def remove(self, keys: list[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of everything stored. Used for testing."""
        return {key: json.loads(value) for key, value in self._data.items()}
