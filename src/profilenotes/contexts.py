"""Execution contexts — one explicit bundle of state per script world.

The content script, the background worker and the popup each get their own
``ExtensionContext``: a store view, a log pipeline, and a note cache. They
share nothing in memory; the ``StorageArea`` and its change notifications are
the only channel between them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from profilenotes.bridge import BridgeResponder
from profilenotes.engine.annotator import AnnotationEngine
from profilenotes.engine.editor import NoteEditor
from profilenotes.errors import StorageUnavailable
from profilenotes.logs.pipeline import LogPipeline, SourceLogger
from profilenotes.notes.store import NOTES_KEY, NoteStore
from profilenotes.storage.store import PersistentStore, StorageArea, StorageChange

if TYPE_CHECKING:
    from profilenotes.config import NotesConfig
    from profilenotes.document import Document
    from profilenotes.logs.pipeline import Source

logger = logging.getLogger(__name__)


@dataclass
class ExtensionContext:
    """Per-context state: store view, log pipeline, note cache."""

    name: Source
    store: PersistentStore
    logs: LogPipeline
    log: SourceLogger
    notes: NoteStore
    _closers: list[Callable[[], None]] = field(default_factory=list)

    @classmethod
    def create(
        cls, name: Source, area: StorageArea, config: NotesConfig | None = None
    ) -> ExtensionContext:
        store = PersistentStore(area)
        if config is not None:
            logs = LogPipeline(
                store,
                debounce=config.logs.debounce_ms / 1000,
                max_entries=config.logs.max_entries,
            )
        else:
            logs = LogPipeline(store)
        log = logs.for_source(name)
        return cls(name=name, store=store, logs=logs, log=log, notes=NoteStore(store, log))

    async def close(self) -> None:
        for closer in self._closers:
            closer()
        self._closers.clear()
        self.notes.detach()
        await self.logs.close()


class ContentScript:
    """The isolated-world script running on a page."""

    def __init__(
        self,
        document: Document,
        context: ExtensionContext,
        *,
        scan_debounce: float = 0.1,
        confirm: Callable[[str], bool] = lambda message: True,
    ) -> None:
        self.document = document
        self.context = context
        self.editor = NoteEditor(document, context.notes, context.log, confirm=confirm)
        self.engine = AnnotationEngine(
            document, context.notes, context.log, debounce=scan_debounce, editor=self.editor
        )
        self.responder = BridgeResponder(document.window, context.logs)

    @classmethod
    def create(
        cls, document: Document, area: StorageArea, config: NotesConfig | None = None, **kwargs
    ) -> ContentScript:
        context = ExtensionContext.create("content", area, config)
        if config is not None:
            kwargs.setdefault("scan_debounce", config.annotator.debounce_ms / 1000)
        return cls(document, context, **kwargs)

    async def start(self) -> None:
        self.context.log.log("Profile notes initialized")
        self.responder.attach()
        self.context._closers.append(self.editor.attach_keys())
        await self.engine.start()

    async def stop(self) -> None:
        self.engine.stop()
        self.responder.detach()
        await self.engine.scheduler.wait_idle()
        await self.context.close()


class BackgroundWorker:
    """Install-time initialisation and the note-count badge."""

    def __init__(self, context: ExtensionContext) -> None:
        self.context = context
        self.badge_text = ""

    @classmethod
    def create(cls, area: StorageArea, config: NotesConfig | None = None) -> BackgroundWorker:
        return cls(ExtensionContext.create("background", area, config))

    async def on_installed(self, reason: str, version: str = "") -> None:
        log = self.context.log
        if reason == "install":
            try:
                existing = await self.context.store.get(NOTES_KEY)
                if NOTES_KEY not in existing:
                    await self.context.store.set({NOTES_KEY: {}})
            except StorageUnavailable as e:
                log.error("Error initialising storage:", e)
            log.log("Profile notes installed")
        elif reason == "update":
            log.log("Profile notes updated to version", version)
        await self.update_badge()

    async def start(self) -> None:
        self.context._closers.append(self.context.store.on_change(self._on_change))
        await self.update_badge()

    async def stop(self) -> None:
        await self.context.close()

    async def update_badge(self) -> str:
        try:
            result = await self.context.store.get(NOTES_KEY)
        except StorageUnavailable as e:
            self.context.log.error("Error updating badge:", e)
            return self.badge_text
        count = len(result.get(NOTES_KEY) or {})
        self.badge_text = str(count) if count > 0 else ""
        return self.badge_text

    async def _on_change(self, change: StorageChange) -> None:
        if change.key == NOTES_KEY:
            await self.update_badge()
