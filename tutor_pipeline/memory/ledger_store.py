"""Durable storage for long-term memory entries.

Architectural role:
    `MemoryLedger` reads and writes `MemoryEntry` records through the
    `LedgerStore` protocol. Two implementations:
    - `JsonLedgerStore`: one JSON file, rewritten atomically on every mutation
      (tmp file + `os.replace`).
    - `InMemoryLedgerStore`: dictionary-backed, for tests and ephemeral runs.

Concurrency:
    Mutations are serialized by an `asyncio.Lock`; file I/O runs in a worker
    thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Protocol

from tutor_pipeline.core.routing_types import MemoryEntry, MemoryStatus
from tutor_pipeline.retrieval.retriever import atomic_json_save


logger = logging.getLogger(__name__)


class LedgerStore(Protocol):
    async def add(self, entry: MemoryEntry) -> None: ...

    async def update(self, entry: MemoryEntry) -> None: ...

    async def get(self, entry_id: str) -> MemoryEntry | None: ...

    async def list_by_user(
        self,
        user_id: str,
        namespace: dict[str, str] | None = None,
        status: MemoryStatus | None = None,
        min_importance: float | None = None,
        max_importance: float | None = None,
    ) -> list[MemoryEntry]: ...

    async def all_active(self) -> list[MemoryEntry]: ...

    async def get_marker(self, name: str) -> str | None: ...

    async def set_marker(self, name: str, value: str) -> None: ...


def _matches(
    entry: MemoryEntry,
    namespace: dict[str, str] | None,
    status: MemoryStatus | None,
    min_importance: float | None,
    max_importance: float | None,
) -> bool:
    if namespace and any(entry.namespace.get(k) != v for k, v in namespace.items()):
        return False
    if status is not None and entry.status != status:
        return False
    if min_importance is not None and entry.importance_score < min_importance:
        return False
    if max_importance is not None and entry.importance_score > max_importance:
        return False
    return True


class InMemoryLedgerStore:
    def __init__(self) -> None:
        self.entries: dict[str, MemoryEntry] = {}
        self.markers: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def add(self, entry: MemoryEntry) -> None:
        async with self._lock:
            self.entries[entry.id] = entry

    async def update(self, entry: MemoryEntry) -> None:
        async with self._lock:
            if entry.id not in self.entries:
                raise KeyError(entry.id)
            self.entries[entry.id] = entry

    async def get(self, entry_id: str) -> MemoryEntry | None:
        return self.entries.get(entry_id)

    async def list_by_user(self, user_id, namespace=None, status=None, min_importance=None, max_importance=None):
        return [
            e for e in self.entries.values()
            if e.user_id == user_id and _matches(e, namespace, status, min_importance, max_importance)
        ]

    async def all_active(self) -> list[MemoryEntry]:
        return [e for e in self.entries.values() if e.status == MemoryStatus.ACTIVE]

    async def get_marker(self, name: str) -> str | None:
        return self.markers.get(name)

    async def set_marker(self, name: str, value: str) -> None:
        self.markers[name] = value


class JsonLedgerStore(InMemoryLedgerStore):
    """JSON-file ledger. Layout: `{"entries": [...], "markers": {...}}`."""

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = path
        self._loaded = False
        self._load_lock = asyncio.Lock()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            # readers queued behind the first load see it finished
            if self._loaded:
                return
            if os.path.exists(self.path):
                payload = await asyncio.to_thread(self._read)
                for row in payload.get("entries", []):
                    entry = MemoryEntry.from_dict(row)
                    self.entries[entry.id] = entry
                self.markers.update(payload.get("markers", {}))
                logger.info("Loaded %d ledger entries from %s", len(self.entries), self.path)
            self._loaded = True

    def _read(self) -> dict:
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    async def _save(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        payload = {
            "entries": [e.to_dict() for e in self.entries.values()],
            "markers": dict(self.markers),
        }
        await asyncio.to_thread(atomic_json_save, self.path, payload)

    async def add(self, entry: MemoryEntry) -> None:
        await self._ensure_loaded()
        async with self._lock:
            self.entries[entry.id] = entry
            await self._save()

    async def update(self, entry: MemoryEntry) -> None:
        await self._ensure_loaded()
        async with self._lock:
            if entry.id not in self.entries:
                raise KeyError(entry.id)
            self.entries[entry.id] = entry
            await self._save()

    async def get(self, entry_id: str) -> MemoryEntry | None:
        await self._ensure_loaded()
        return await super().get(entry_id)

    async def list_by_user(self, user_id, namespace=None, status=None, min_importance=None, max_importance=None):
        await self._ensure_loaded()
        return await super().list_by_user(user_id, namespace, status, min_importance, max_importance)

    async def all_active(self) -> list[MemoryEntry]:
        await self._ensure_loaded()
        return await super().all_active()

    async def get_marker(self, name: str) -> str | None:
        await self._ensure_loaded()
        return self.markers.get(name)

    async def set_marker(self, name: str, value: str) -> None:
        await self._ensure_loaded()
        async with self._lock:
            self.markers[name] = value
            await self._save()
