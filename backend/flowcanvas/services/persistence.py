"""
Graph snapshot persistence.

``PersistenceAdapter`` sits between a workflow session and two snapshot
stores: a durable one (JSON files or Supabase) and a session-scoped one
(in memory). Saves are debounced; each write follows a fixed degrade policy:

1. full snapshot -> durable store
2. on overflow, reduced snapshot (allow-listed fields, small text
   responses only) -> durable store, with a warning
3. on repeated overflow, full snapshot -> session store, with a warning

Credentials are stripped from every snapshot before it is written.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel

from flowcanvas.config import save_debounce_seconds, storage_backend, storage_dir, storage_max_bytes
from flowcanvas.models.errors import StorageOverflowError

logger = logging.getLogger(__name__)

# Responses longer than this are dropped from reduced snapshots
MAX_REDUCED_RESPONSE_CHARS = 1000

_REDUCED_NODE_FIELDS = ("id", "type_tag", "label", "position", "config")
_REDUCED_RUNTIME_FIELDS = ("input_type", "response_type", "error")
_CREDENTIAL_KEYS = ("api_key", "apiKey")


class SaveResult(BaseModel):
    key: str
    tier: Literal["full", "reduced", "session", "skipped", "failed"]
    payload_bytes: int = 0
    warning: str | None = None


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class SnapshotStore(ABC):
    name: str = "store"

    def __init__(self, max_bytes: int | None = None):
        self.max_bytes = max_bytes

    @abstractmethod
    def write(self, key: str, payload: str) -> None: ...

    @abstractmethod
    def read(self, key: str) -> str | None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    def _check_size(self, key: str, payload: str) -> int:
        size = len(payload.encode("utf-8"))
        if self.max_bytes is not None and size > self.max_bytes:
            raise StorageOverflowError(key, size, self.max_bytes)
        return size


class MemoryStore(SnapshotStore):
    """Process-local store; plays the role of per-tab session storage."""

    name = "memory"

    def __init__(self, max_bytes: int | None = None):
        super().__init__(max_bytes)
        self._data: dict[str, str] = {}
        self.write_count = 0

    def write(self, key: str, payload: str) -> None:
        self._check_size(key, payload)
        self._data[key] = payload
        self.write_count += 1

    def read(self, key: str) -> str | None:
        return self._data.get(key)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore(SnapshotStore):
    name = "file"

    def __init__(self, directory: str | Path, max_bytes: int | None = None):
        super().__init__(max_bytes)
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key) or "_"
        return self.directory / f"{safe}.json"

    def write(self, key: str, payload: str) -> None:
        self._check_size(key, payload)
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        # Unique temp file per write
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.directory,
            prefix=f"{path.stem}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp.write(payload)
        try:
            os.replace(tmp.name, path)
        except OSError:
            Path(tmp.name).unlink(missing_ok=True)
            raise

    def read(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class SupabaseStore(SnapshotStore):
    """Hosted store: one row per key in the ``workflow_snapshots`` table."""

    name = "supabase"
    table = "workflow_snapshots"

    def __init__(self, client: Any = None, max_bytes: int | None = None):
        super().__init__(max_bytes)
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            from flowcanvas.db.supabase import get_supabase

            self._client = get_supabase()
        return self._client

    def write(self, key: str, payload: str) -> None:
        size = self._check_size(key, payload)
        self.client.table(self.table).upsert(
            {"key": key, "payload": payload, "payload_bytes": size},
            on_conflict="key",
        ).execute()

    def read(self, key: str) -> str | None:
        result = self.client.table(self.table)\
            .select("payload")\
            .eq("key", key)\
            .limit(1)\
            .execute()
        if result.data and len(result.data) > 0:
            return result.data[0].get("payload")
        return None

    def delete(self, key: str) -> None:
        self.client.table(self.table).delete().eq("key", key).execute()


# ---------------------------------------------------------------------------
# Snapshot shaping
# ---------------------------------------------------------------------------


def strip_credentials(snapshot: dict[str, Any]) -> dict[str, Any]:
    nodes = []
    for node in snapshot.get("nodes", []):
        node = dict(node)
        config = node.get("config")
        if isinstance(config, dict):
            node["config"] = {k: v for k, v in config.items() if k not in _CREDENTIAL_KEYS}
        nodes.append(node)
    return {**snapshot, "nodes": nodes}


def reduce_snapshot(snapshot: dict[str, Any]) -> dict[str, Any]:
    """
    Reduced-fidelity snapshot: structure, configuration and small text only.

    Binary inputs/responses and text responses of 1000 characters or more
    are dropped.
    """
    nodes = []
    for node in snapshot.get("nodes", []):
        reduced = {field: node.get(field) for field in _REDUCED_NODE_FIELDS if field in node}
        runtime = node.get("runtime") or {}
        reduced_runtime = {field: runtime.get(field) for field in _REDUCED_RUNTIME_FIELDS}
        value = runtime.get("input")
        reduced_runtime["input"] = value if isinstance(value, str) else None
        response = runtime.get("response")
        reduced_runtime["response"] = (
            response
            if isinstance(response, str) and len(response) < MAX_REDUCED_RESPONSE_CHARS
            else None
        )
        reduced["runtime"] = reduced_runtime
        nodes.append(reduced)
    return {"nodes": nodes, "edges": list(snapshot.get("edges", []))}


def _serialize(snapshot: dict[str, Any]) -> str:
    return json.dumps(snapshot, separators=(",", ":"), default=str)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class PersistenceAdapter:
    def __init__(
        self,
        durable: SnapshotStore,
        session: SnapshotStore | None = None,
        *,
        debounce_seconds: float | None = None,
    ):
        self.durable = durable
        self.session = session if session is not None else MemoryStore()
        self.debounce_seconds = (
            save_debounce_seconds() if debounce_seconds is None else debounce_seconds
        )
        self.last_results: dict[str, SaveResult] = {}
        self._pending: dict[str, dict[str, Any]] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._writes: set[asyncio.Task] = set()
        # Writes for one key run one at a time, in the order they were started
        self._key_locks: dict[str, asyncio.Lock] = {}

    def save(self, key: str, snapshot: dict[str, Any]) -> None:
        """
        Schedule a debounced save; a newer snapshot for the same key replaces
        a pending one. Without a running event loop the write happens now.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.write_now(key, snapshot)
            return
        self._pending[key] = snapshot
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()
        self._timers[key] = loop.call_later(self.debounce_seconds, self._fire, key)

    async def flush(self) -> list[SaveResult]:
        """
        Wait for in-flight writes, then write every pending snapshot now.

        Pending snapshots are always newer than the in-flight ones, so they
        are written last.
        """
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        await self._wait_for_writes()
        pending, self._pending = self._pending, {}
        results = [await self._write_async(key, snapshot) for key, snapshot in pending.items()]
        await self._wait_for_writes()
        return results

    @property
    def has_pending(self) -> bool:
        return bool(self._pending) or bool(self._writes)

    def write_now(self, key: str, snapshot: dict[str, Any]) -> SaveResult:
        if not snapshot or not snapshot.get("nodes"):
            return self._record(SaveResult(key=key, tier="skipped"))

        snapshot = strip_credentials(snapshot)
        full_payload = _serialize(snapshot)
        full_bytes = len(full_payload.encode("utf-8"))
        try:
            try:
                self.durable.write(key, full_payload)
                self.session.delete(key)
                return self._record(SaveResult(key=key, tier="full", payload_bytes=full_bytes))
            except StorageOverflowError as overflow:
                logger.warning("Full snapshot overflow: %s", overflow.message)

            reduced_payload = _serialize(reduce_snapshot(snapshot))
            reduced_bytes = len(reduced_payload.encode("utf-8"))
            try:
                self.durable.write(key, reduced_payload)
                self.session.delete(key)
                return self._record(SaveResult(
                    key=key,
                    tier="reduced",
                    payload_bytes=reduced_bytes,
                    warning=(
                        f"Workflow was too large to save in full ({full_bytes} bytes). "
                        "Saved without large responses."
                    ),
                ))
            except StorageOverflowError as overflow:
                logger.warning("Reduced snapshot overflow: %s", overflow.message)

            self.session.write(key, full_payload)
            self.durable.delete(key)
            return self._record(SaveResult(
                key=key,
                tier="session",
                payload_bytes=full_bytes,
                warning=(
                    f"Workflow was too large to save ({full_bytes} bytes). "
                    "It is kept for this session only."
                ),
            ))
        except Exception as e:
            logger.exception("Failed to save snapshot %s: %s", key, str(e))
            return self._record(SaveResult(
                key=key,
                tier="failed",
                payload_bytes=full_bytes,
                warning="Workflow could not be saved.",
            ))

    def load(self, key: str) -> dict[str, Any] | None:
        for store in (self.durable, self.session):
            try:
                raw = store.read(key)
            except Exception as e:
                logger.exception("Error loading %s from %s store: %s", key, store.name, str(e))
                continue
            if not raw:
                continue
            try:
                return json.loads(raw)
            except ValueError:
                logger.warning("Ignoring unreadable snapshot %s in %s store", key, store.name)
        return None

    def clear(self, key: str) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()
        self._pending.pop(key, None)
        self.last_results.pop(key, None)
        for store in (self.durable, self.session):
            try:
                store.delete(key)
            except Exception as e:
                logger.exception("Error removing %s from %s store: %s", key, store.name, str(e))

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        snapshot = self._pending.pop(key, None)
        if snapshot is None:
            return
        task = asyncio.get_running_loop().create_task(self._write_async(key, snapshot))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def _write_async(self, key: str, snapshot: dict[str, Any]) -> SaveResult:
        lock = self._key_locks.setdefault(key, asyncio.Lock())
        async with lock:
            return await asyncio.to_thread(self.write_now, key, snapshot)

    async def _wait_for_writes(self) -> None:
        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    def _record(self, result: SaveResult) -> SaveResult:
        self.last_results[result.key] = result
        if result.tier in ("full", "skipped"):
            logger.debug("Saved %s (%s, %d bytes)", result.key, result.tier, result.payload_bytes)
        else:
            logger.info("Saved %s (%s): %s", result.key, result.tier, result.warning)
        return result


def build_persistence_adapter() -> PersistenceAdapter:
    """Adapter configured from the environment."""
    max_bytes = storage_max_bytes()
    if storage_backend() == "supabase":
        durable: SnapshotStore = SupabaseStore(max_bytes=max_bytes)
    else:
        durable = JsonFileStore(storage_dir(), max_bytes=max_bytes)
    return PersistenceAdapter(durable, MemoryStore())
