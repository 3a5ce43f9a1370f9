"""Key-value storage backends.

The client only needs get/set/remove by key with last-write-wins semantics.
Values must be JSON-serializable.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol

_LOGGER = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Persistent key-value store used for session keys and purchase records."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def remove(self, *keys: str) -> None: ...


class MemoryStore:
    """In-process store, useful for tests and ephemeral clients."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    async def get(self, key: str) -> Any | None:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def remove(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)

    def snapshot(self) -> dict[str, Any]:
        return dict(self._data)


class JsonFileStore:
    """Store backed by a single JSON document on disk.

    File IO runs in a worker thread so the event loop is never blocked.
    Writes replace the file atomically via a temporary sibling.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open(encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as err:
            _LOGGER.warning("Ignoring unreadable store %s: %s", self.path, err)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        tmp_path.replace(self.path)

    async def get(self, key: str) -> Any | None:
        data = await asyncio.to_thread(self._read)
        return data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            data[key] = value
            await asyncio.to_thread(self._write, data)

    async def remove(self, *keys: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            if not any(key in data for key in keys):
                return
            for key in keys:
                data.pop(key, None)
            await asyncio.to_thread(self._write, data)
