"""Shared persisted key-value store with change notification.

One ``StorageArea`` exists per device and is shared by every execution
context. Each context talks to it through its own ``PersistentStore`` view,
which exposes the async get/set/remove API and subscribes to change
notifications on that context's event loop.

Writes overwrite whole top-level keys. A per-key version counter backs
``compare_and_set`` so writers that care can detect a concurrent commit.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from profilenotes.errors import StorageUnavailable

logger = logging.getLogger(__name__)

_REMOVED = object()


@dataclass(frozen=True)
class StorageChange:
    """One committed change to a top-level key.

    ``version`` is the key's version after the commit; it increases by one per
    commit, so a listener can tell an older change from a newer one.
    """

    key: str
    old_value: Any = None
    new_value: Any = None
    version: int = field(default=0, compare=False)


ChangeCallback = Callable[[StorageChange], Any]


@dataclass(eq=False)
class _Subscriber:
    callback: ChangeCallback
    loop: asyncio.AbstractEventLoop
    tasks: set = field(default_factory=set)


class StorageArea:
    """Device-wide namespace, optionally persisted as a JSON file."""

    def __init__(self, path: Path | None = None, quota_bytes: int | None = None) -> None:
        self.path = path
        self.quota_bytes = quota_bytes
        self._data: dict[str, Any] = {}
        self._versions: dict[str, int] = {}
        self._subscribers: list[_Subscriber] = []
        self._lock = threading.Lock()
        self._load()

    # ── Persistence ──────────────────────────────────────────

    def _load(self) -> None:
        if not self.path or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable storage file %s: %s", self.path, e)
            return
        if isinstance(data, dict):
            self._data = data
        else:
            logger.warning("Ignoring storage file %s: top level is not an object", self.path)

    def _persist(self, data: dict[str, Any]) -> None:
        """Check the quota and write ``data`` to disk. Raises StorageUnavailable."""
        encoded = json.dumps(data, ensure_ascii=False)
        size = len(encoded.encode("utf-8"))
        if self.quota_bytes is not None and size > self.quota_bytes:
            raise StorageUnavailable(
                f"quota exceeded ({size} bytes > {self.quota_bytes} bytes)"
            )
        if not self.path:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(encoded, encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            raise StorageUnavailable(f"cannot write {self.path}: {e}") from e

    # ── Reads ────────────────────────────────────────────────

    def read(self, keys: str | Iterable[str] | None = None) -> dict[str, Any]:
        with self._lock:
            if keys is None:
                return copy.deepcopy(self._data)
            if isinstance(keys, str):
                keys = [keys]
            return {k: copy.deepcopy(self._data[k]) for k in keys if k in self._data}

    def read_versioned(self, key: str) -> tuple[Any, int]:
        with self._lock:
            return copy.deepcopy(self._data.get(key)), self._versions.get(key, 0)

    # ── Writes ───────────────────────────────────────────────

    def commit(self, changes: dict[str, Any]) -> list[StorageChange]:
        """Apply ``changes`` atomically. A value of ``_REMOVED`` deletes the key."""
        with self._lock:
            committed = self._commit_locked(changes)
            self._notify(committed)
        return committed

    def commit_if(self, key: str, expected_version: int, value: Any) -> bool:
        """Write ``key`` only if nobody committed it since ``expected_version``."""
        with self._lock:
            if self._versions.get(key, 0) != expected_version:
                return False
            committed = self._commit_locked({key: value})
            self._notify(committed)
        return True

    def _commit_locked(self, changes: dict[str, Any]) -> list[StorageChange]:
        candidate = dict(self._data)
        committed: list[tuple[str, Any, Any]] = []
        for key, value in changes.items():
            old = self._data.get(key)
            if value is _REMOVED:
                if key not in candidate:
                    continue
                del candidate[key]
                committed.append((key, copy.deepcopy(old), None))
            else:
                value = copy.deepcopy(value)
                candidate[key] = value
                committed.append((key, copy.deepcopy(old), copy.deepcopy(value)))

        self._persist(candidate)
        self._data = candidate
        changes_out = []
        for key, old, new in committed:
            version = self._versions.get(key, 0) + 1
            self._versions[key] = version
            changes_out.append(StorageChange(key, old, new, version))
        return changes_out

    # ── Notifications ────────────────────────────────────────

    def subscribe(
        self, callback: ChangeCallback, loop: asyncio.AbstractEventLoop
    ) -> Callable[[], None]:
        sub = _Subscriber(callback, loop)
        with self._lock:
            self._subscribers.append(sub)

        def unsubscribe() -> None:
            with self._lock:
                if sub in self._subscribers:
                    self._subscribers.remove(sub)

        return unsubscribe

    def _notify(self, changes: list[StorageChange]) -> None:
        """Queue deliveries on every subscriber's loop.

        Runs with the lock held, so deliveries are queued in commit order.
        """
        if not changes:
            return
        for sub in list(self._subscribers):
            for change in changes:
                try:
                    sub.loop.call_soon_threadsafe(_deliver, sub, change)
                except RuntimeError:
                    # Subscriber's loop is closed
                    self._subscribers.remove(sub)
                    break


def _deliver(sub: _Subscriber, change: StorageChange) -> None:
    try:
        result = sub.callback(change)
    except Exception:
        logger.exception("Storage change listener failed for key %r", change.key)
        return
    if asyncio.iscoroutine(result):
        task = sub.loop.create_task(result)
        sub.tasks.add(task)
        task.add_done_callback(lambda t: _listener_done(sub, t, change.key))


def _listener_done(sub: _Subscriber, task: asyncio.Task, key: str) -> None:
    sub.tasks.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error(
            "Storage change listener failed for key %r", key, exc_info=task.exception()
        )


class PersistentStore:
    """Per-context async view over a shared ``StorageArea``."""

    def __init__(self, area: StorageArea) -> None:
        self.area = area

    async def get(self, keys: str | Iterable[str] | None = None) -> dict[str, Any]:
        await asyncio.sleep(0)
        return self.area.read(keys)

    async def set(self, partial: dict[str, Any]) -> None:
        """Overwrite the named top-level keys wholesale (no deep merge)."""
        await asyncio.to_thread(self.area.commit, dict(partial))

    async def remove(self, keys: str | Iterable[str]) -> None:
        if isinstance(keys, str):
            keys = [keys]
        await asyncio.to_thread(self.area.commit, {k: _REMOVED for k in keys})

    async def get_versioned(self, key: str) -> tuple[Any, int]:
        await asyncio.sleep(0)
        return self.area.read_versioned(key)

    async def compare_and_set(self, key: str, expected_version: int, value: Any) -> bool:
        return await asyncio.to_thread(self.area.commit_if, key, expected_version, value)

    def on_change(
        self, callback: ChangeCallback, *, loop: asyncio.AbstractEventLoop | None = None
    ) -> Callable[[], None]:
        """Subscribe to committed writes from every context, including this one.

        Returns an unsubscribe function.
        """
        return self.area.subscribe(callback, loop or asyncio.get_running_loop())
