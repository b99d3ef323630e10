"""Per-context note cache synced with the shared ``notes`` key.

Reads are served from the in-memory cache. Writes re-read the collection,
apply the change, and commit with compare-and-set so a concurrent write from
another context is retried instead of silently overwritten. Every committed
write (local or remote) arrives back through the store's change notification
and refreshes the cache, after which local subscribers are called.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from profilenotes.errors import StorageUnavailable
from profilenotes.notes.model import (
    NoteRecord,
    average_of,
    is_valid_score,
    migrate,
    migrate_all,
    normalize,
    now_ms,
)

if TYPE_CHECKING:
    from profilenotes.logs.pipeline import SourceLogger
    from profilenotes.storage.store import PersistentStore, StorageChange

logger = logging.getLogger(__name__)

NOTES_KEY = "notes"
CAS_ATTEMPTS = 3

NotesListener = Callable[[dict[str, Any]], None]
Mutation = Callable[[dict[str, Any]], None]


class NoteStore:
    """Read/write access to note records for one execution context."""

    def __init__(
        self,
        store: PersistentStore,
        log: SourceLogger | None = None,
        *,
        clock: Callable[[], int] = now_ms,
        cas_attempts: int = CAS_ATTEMPTS,
    ) -> None:
        self.store = store
        self._log = log
        self._clock = clock
        self._cas_attempts = cas_attempts
        self._cache: dict[str, Any] = {}
        self._version = 0
        self._listeners: list[NotesListener] = []
        self._unsubscribe: Callable[[], None] | None = None

    # ── Cache sync ───────────────────────────────────────────

    async def load(self) -> dict[str, Any]:
        """Fill the cache from storage, writing back if any record needed migration."""
        try:
            current, version = await self.store.get_versioned(NOTES_KEY)
        except StorageUnavailable as e:
            self._emit("error", "Error loading notes:", e)
            return self._cache

        notes, changed = migrate_all(current)
        self._adopt(notes, version)
        if changed:
            try:
                await self.store.set({NOTES_KEY: notes})
                self._emit("log", "Migrated notes to multi-score format")
            except StorageUnavailable as e:
                self._emit("error", "Error saving migrated notes:", e)
        return self._cache

    def attach(self) -> None:
        """Follow ``notes`` changes committed by any context."""
        if self._unsubscribe is None:
            self._unsubscribe = self.store.on_change(self._on_storage_change)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_storage_change(self, change: StorageChange) -> None:
        if change.key != NOTES_KEY:
            return
        notes, _ = migrate_all(change.new_value)
        if self._adopt(notes, change.version):
            self._notify()

    def _adopt(self, notes: dict[str, Any], version: int) -> bool:
        """Replace the cache unless it already reflects a newer commit."""
        if version < self._version:
            logger.debug("Ignoring notes v%d, cache is at v%d", version, self._version)
            return False
        self._cache = notes
        self._version = version
        return True

    def subscribe(self, listener: NotesListener) -> Callable[[], None]:
        """Call ``listener(snapshot)`` whenever the cache changes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._cache)
            except Exception:
                logger.exception("Notes listener failed")

    # ── Reads (from cache) ───────────────────────────────────

    def get(self, username: str) -> NoteRecord | None:
        data = self._cache.get(normalize(username))
        if data is None:
            return None
        return NoteRecord.from_dict(data)

    def has_note(self, username: str) -> bool:
        record = self.get(username)
        return record is not None and not record.is_empty

    def scores(self, username: str) -> list:
        record = self.get(username)
        return list(record.scores) if record else []

    def average(self, username: str) -> float | None:
        return average_of(s.value for s in self.scores(username))

    def all(self) -> dict[str, NoteRecord]:
        return {name: NoteRecord.from_dict(data) for name, data in self._cache.items()}

    def snapshot(self) -> dict[str, Any]:
        return dict(self._cache)

    # ── Writes ───────────────────────────────────────────────

    async def upsert(self, username: str, note_text: str | None, score: int | None = None) -> bool:
        """Set the note text and optionally append a rating sample."""
        key = normalize(username)
        now = self._clock()

        def apply(notes: dict[str, Any]) -> None:
            existing = notes.get(key)
            record = (
                NoteRecord.from_dict(existing)
                if existing is not None
                else NoteRecord(created_at=now, updated_at=now)
            )
            record.note = note_text.strip() if note_text else ""
            if score is not None and is_valid_score(score):
                record.add_sample(score, now)
            record.updated_at = now
            if record.is_empty:
                notes.pop(key, None)
            else:
                notes[key] = record.to_dict()

        ok = await self._mutate(apply)
        if ok:
            avg = self.average(key)
            detail = f"(added score: {score}, avg: {avg})" if score else ""
            self._emit("log", f"Note saved for @{key}", detail)
        return ok

    async def delete_sample(self, username: str, index: int) -> bool:
        """Remove one rating by its position in stored order."""
        key = normalize(username)
        record = self.get(key)
        if record is None or not 0 <= index < len(record.scores):
            return False
        now = self._clock()
        removed = False

        def apply(notes: dict[str, Any]) -> None:
            nonlocal removed
            existing = notes.get(key)
            if existing is None:
                return
            current = NoteRecord.from_dict(existing)
            if not 0 <= index < len(current.scores):
                return
            del current.scores[index]
            current.updated_at = now
            removed = True
            if current.is_empty:
                notes.pop(key, None)
            else:
                notes[key] = current.to_dict()

        ok = await self._mutate(apply)
        if ok and removed:
            self._emit("log", f"Deleted score at index {index} for @{key}")
        return ok and removed

    async def delete(self, username: str) -> bool:
        """Remove the whole record."""
        key = normalize(username)

        def apply(notes: dict[str, Any]) -> None:
            notes.pop(key, None)

        ok = await self._mutate(apply)
        if ok:
            self._emit("log", f"Deleted note for @{key}")
        return ok

    async def replace_all(self, notes: dict[str, Any]) -> bool:
        """Overwrite the whole collection (used by import)."""

        def apply(current: dict[str, Any]) -> None:
            current.clear()
            current.update({k: migrate(v) for k, v in notes.items()})

        return await self._mutate(apply)

    async def _mutate(self, apply: Mutation) -> bool:
        """Read-modify-write ``notes`` with bounded compare-and-set retry."""
        try:
            for attempt in range(1, self._cas_attempts + 1):
                current, version = await self.store.get_versioned(NOTES_KEY)
                before, _ = migrate_all(current)
                after = {k: dict(v) for k, v in before.items()}
                apply(after)
                if after == before and current is not None:
                    self._adopt(after, version)
                    return True
                if not after and current is None:
                    return True
                if await self.store.compare_and_set(NOTES_KEY, version, after):
                    self._adopt(after, version + 1)
                    return True
                logger.debug("notes changed concurrently, retrying (attempt %d)", attempt)

            logger.warning(
                "notes still contended after %d attempts, overwriting", self._cas_attempts
            )
            await self.store.set({NOTES_KEY: after})
            self._cache = after
            return True
        except StorageUnavailable as e:
            # Keep this session's view; the change is not durable
            apply(self._cache)
            self._notify()
            self._emit("error", "Error saving notes:", e)
            return False

    def _emit(self, level: str, *values: Any) -> None:
        if self._log is not None:
            self._log.pipeline.log(self._log.source, level, *values)
        else:
            logger.log(logging.ERROR if level == "error" else logging.DEBUG, " ".join(map(str, values)))
