"""Debug log pipeline — console first, then batched into the shared store.

Every context owns one ``LogPipeline``. ``log()`` writes to the console
synchronously and queues a ``LogEntry``; a restartable debounce timer flushes
the queue into the persisted log list, which is capped at ``max_entries``.
Flushes are single-flight: a flush requested while another one is running is
coalesced into one follow-up flush.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from profilenotes.errors import StorageUnavailable

if TYPE_CHECKING:
    from profilenotes.storage.store import PersistentStore

logger = logging.getLogger(__name__)

LOG_KEY = "__pn_debug_logs__"
MAX_LOGS = 1000
DEFAULT_DEBOUNCE = 0.1

Source = Literal["content", "background", "popup"]
Level = Literal["log", "error", "warn", "info"]

SOURCES = ("content", "background", "popup")
LEVELS = ("log", "error", "warn", "info")

_CONSOLE_LEVELS = {
    "log": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class LogEntry:
    """One diagnostic line from any context."""

    timestamp: int
    source: str
    level: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"t": self.timestamp, "s": self.source, "l": self.level, "m": self.message}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEntry:
        return cls(
            timestamp=int(data.get("t", 0)),
            source=str(data.get("s", "")),
            level=str(data.get("l", "log")),
            message=str(data.get("m", "")),
        )


def format_value(value: Any) -> str:
    """Render one log argument the way it is stored."""
    if value is None:
        return "null"
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    if isinstance(value, (dict, list, tuple)):
        try:
            return json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def format_message(values: tuple[Any, ...]) -> str:
    return " ".join(format_value(v) for v in values)


def _stored_entries(value: Any) -> list[dict[str, Any]]:
    """The persisted log list, without anything that is not an entry object."""
    if value is None:
        return []
    if not isinstance(value, list):
        logger.warning("Discarding persisted log of type %s", type(value).__name__)
        return []
    return [item for item in value if isinstance(item, dict)]


class LogPipeline:
    """Per-context log batcher writing into ``LOG_KEY``."""

    def __init__(
        self,
        store: PersistentStore,
        *,
        debounce: float = DEFAULT_DEBOUNCE,
        max_entries: int = MAX_LOGS,
    ) -> None:
        self.store = store
        self.debounce = debounce
        self.max_entries = max_entries
        self._queue: list[LogEntry] = []
        self._timer: asyncio.TimerHandle | None = None
        self._flushing = False
        self._flush_again = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def is_flushing(self) -> bool:
        return self._flushing

    # ── Producer side ────────────────────────────────────────

    def log(self, source: Source, level: Level, *values: Any) -> LogEntry:
        """Write to the console now, queue for storage, restart the debounce timer."""
        if level not in _CONSOLE_LEVELS:
            level = "log"
        message = format_message(values)
        logging.getLogger(f"profilenotes.{source}").log(_CONSOLE_LEVELS[level], message)

        entry = LogEntry(
            timestamp=int(time.time() * 1000),
            source=source,
            level=level,
            message=message,
        )
        self._queue.append(entry)
        self._schedule()
        return entry

    def for_source(self, source: Source) -> SourceLogger:
        return SourceLogger(self, source)

    def _schedule(self) -> None:
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet: entries stay queued until the next flush
            return
        self._timer = loop.call_later(self.debounce, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ── Flush ────────────────────────────────────────────────

    async def flush(self) -> None:
        """Drain the queue into storage. Coalesces with an in-progress flush."""
        if self._flushing:
            self._flush_again = True
            return
        if not self._queue:
            return

        self._flushing = True
        self._idle.clear()
        batch, self._queue = self._queue, []
        try:
            result = await self.store.get(LOG_KEY)
            combined = _stored_entries(result.get(LOG_KEY)) + [e.to_dict() for e in batch]
            if len(combined) > self.max_entries:
                combined = combined[-self.max_entries :]
            await self.store.set({LOG_KEY: combined})
        except StorageUnavailable as e:
            # Console output already happened; don't feed this back into the queue
            logger.error("Failed to flush %d log entries to storage: %s", len(batch), e)
        except Exception:
            logger.exception("Failed to flush %d log entries", len(batch))
        finally:
            self._flushing = False
            self._idle.set()
            again = self._flush_again
            self._flush_again = False
            if self._queue and (again or self._timer is None):
                self._schedule()

    async def get_all(self) -> list[LogEntry]:
        """Flush everything queued so far, then return the persisted log."""
        await self._drain()
        try:
            result = await self.store.get(LOG_KEY)
        except StorageUnavailable as e:
            logger.error("Failed to read logs: %s", e)
            return []
        return [LogEntry.from_dict(d) for d in _stored_entries(result.get(LOG_KEY))]

    async def get_all_raw(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in await self.get_all()]

    async def clear(self) -> None:
        """Drop queued entries and delete the persisted log."""
        self._queue = []
        self._cancel_timer()
        try:
            await self.store.remove(LOG_KEY)
        except StorageUnavailable as e:
            logger.error("Failed to clear logs: %s", e)

    async def close(self) -> None:
        await self._drain()

    async def _drain(self) -> None:
        """Cancel the timer and flush until nothing is queued or in flight."""
        self._cancel_timer()
        while self._queue or self._flushing:
            if self._flushing:
                await self._idle.wait()
                continue
            await self.flush()
        self._cancel_timer()


class SourceLogger:
    """A ``LogPipeline`` bound to one source."""

    def __init__(self, pipeline: LogPipeline, source: Source) -> None:
        self.pipeline = pipeline
        self.source = source

    def log(self, *values: Any) -> LogEntry:
        return self.pipeline.log(self.source, "log", *values)

    def info(self, *values: Any) -> LogEntry:
        return self.pipeline.log(self.source, "info", *values)

    def warn(self, *values: Any) -> LogEntry:
        return self.pipeline.log(self.source, "warn", *values)

    def error(self, *values: Any) -> LogEntry:
        return self.pipeline.log(self.source, "error", *values)
