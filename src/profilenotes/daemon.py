"""Observer daemon: one page, its contexts, and the HTTP observer endpoint.

Usage: python -m profilenotes serve [page.html]

The page is annotated by a content script, the background worker keeps the
badge count, and the observer endpoint reaches the content script only through
the page's event bridge. A PID file keeps a second instance from sharing the
same storage file; SIGTERM/SIGINT stop everything in reverse start order.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal

from profilenotes.config import NotesConfig, load_config
from profilenotes.connectors.http import ObserverServer
from profilenotes.contexts import BackgroundWorker, ContentScript
from profilenotes.document import Document
from profilenotes.storage.store import StorageArea

logger = logging.getLogger(__name__)


class AlreadyRunning(RuntimeError):
    """Another observer owns the PID file."""


class ObserverDaemon:
    """Hosts a page and serves its debug log until asked to stop."""

    def __init__(self, config: NotesConfig | None = None, html: str = "") -> None:
        self.config = config or load_config()
        self.html = html
        self.document: Document | None = None
        self.server: ObserverServer | None = None
        self._stop = asyncio.Event()

    # ── PID file ─────────────────────────────────────────────

    def _claim_pid_file(self) -> None:
        pid_file = self.config.pid_file
        if pid_file.exists():
            try:
                owner = int(pid_file.read_text().strip())
                os.kill(owner, 0)
            except (ProcessLookupError, ValueError):
                logger.info("Removing stale PID file %s", pid_file)
            else:
                raise AlreadyRunning(f"observer already running (pid={owner})")
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))

    def _release_pid_file(self) -> None:
        self.config.pid_file.unlink(missing_ok=True)

    # ── Shutdown ─────────────────────────────────────────────

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("Got %s, stopping observer", sig.name)
        self._stop.set()

    def request_shutdown(self) -> None:
        self._stop.set()

    def build_area(self) -> StorageArea:
        return StorageArea(self.config.storage.path, self.config.storage.quota_bytes)

    async def run(self) -> None:
        self._claim_pid_file()
        self._install_signal_handlers()

        area = self.build_area()
        self.document = Document(self.html)
        background = BackgroundWorker.create(area, self.config)
        content = ContentScript.create(self.document, area, self.config)
        self.server = ObserverServer(
            self.config.server,
            self.document.window,
            content.context.store,
            timeout=self.config.bridge.timeout_ms / 1000,
        )

        logger.info("Observer starting with storage %s", self.config.storage.path)
        try:
            await background.start()
            await content.start()
            await self.server.start()
            await self._stop.wait()
        finally:
            await self.server.stop()
            await content.stop()
            await background.stop()
            self._release_pid_file()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            logger.info("Observer stopped")
