"""HTTP observer endpoint.

Lets an automation harness pull the debug log out of the content context
without touching its objects: every request goes over the page's event bridge
exactly as an in-page observer would.

Routes:
    GET  /logs           → JSON list of {t, s, l, m}
    POST /logs/clear     → {"cleared": bool}
    GET  /notes/count    → {"count": n}
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiohttp import web

from profilenotes.bridge import BridgeClient
from profilenotes.errors import StorageUnavailable
from profilenotes.notes.store import NOTES_KEY

if TYPE_CHECKING:
    from profilenotes.config import ServerConfig
    from profilenotes.document import EventTarget
    from profilenotes.storage.store import PersistentStore

logger = logging.getLogger(__name__)


class ObserverServer:
    """aiohttp server that drives the bridge on behalf of external clients."""

    def __init__(
        self,
        config: ServerConfig,
        target: EventTarget,
        store: PersistentStore,
        *,
        timeout: float = 2.0,
    ) -> None:
        self._config = config
        self._client = BridgeClient(target, timeout)
        self._store = store
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/logs", self._handle_logs)
        app.router.add_post("/logs/clear", self._handle_clear)
        app.router.add_get("/notes/count", self._handle_count)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        logger.info("Observer listening on %s:%d", self._config.host, self._config.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            logger.info("Observer stopped")

    async def _handle_logs(self, request: web.Request) -> web.Response:
        logs = await self._client.request_logs()
        return web.json_response(logs)

    async def _handle_clear(self, request: web.Request) -> web.Response:
        cleared = await self._client.clear_logs()
        return web.json_response({"cleared": cleared})

    async def _handle_count(self, request: web.Request) -> web.Response:
        try:
            result = await self._store.get(NOTES_KEY)
        except StorageUnavailable as e:
            logger.error("Note count unavailable: %s", e)
            return web.json_response({"error": str(e)}, status=503)
        return web.json_response({"count": len(result.get(NOTES_KEY) or {})})
