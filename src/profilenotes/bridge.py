"""Event bridge between an external observer and the isolated content context.

The two sides share only the page's event target. The observer dispatches a
request event and waits for the matching response; the content side keeps a
standing listener that answers from its ``LogPipeline``.

Every request carries a fresh ``request_id`` and responses echo it, so an
observer ignores answers meant for someone else and several requests can be in
flight at once. A response without an id (an older responder) is taken by
whichever request is waiting. Requests that get no answer in time resolve to
an empty result.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import TYPE_CHECKING, Any

from profilenotes.document import Event
from profilenotes.errors import BridgeTimeout

if TYPE_CHECKING:
    from profilenotes.document import EventTarget
    from profilenotes.logs.pipeline import LogPipeline

logger = logging.getLogger(__name__)

GET_LOGS = "__pn_get_logs__"
LOGS_RESPONSE = "__pn_logs_response__"
CLEAR_LOGS = "__pn_clear_logs__"
CLEAR_LOGS_DONE = "__pn_clear_logs_done__"

DEFAULT_TIMEOUT = 2.0


class BridgeResponder:
    """Content-side standing listeners for log requests."""

    def __init__(self, target: EventTarget, pipeline: LogPipeline) -> None:
        self.target = target
        self.pipeline = pipeline
        self._attached = False

    def attach(self) -> None:
        if self._attached:
            return
        self.target.add_listener(GET_LOGS, self._on_get_logs)
        self.target.add_listener(CLEAR_LOGS, self._on_clear_logs)
        self._attached = True

    def detach(self) -> None:
        self.target.remove_listener(GET_LOGS, self._on_get_logs)
        self.target.remove_listener(CLEAR_LOGS, self._on_clear_logs)
        self._attached = False

    async def _on_get_logs(self, event: Event) -> None:
        logs = await self.pipeline.get_all_raw()
        self.target.dispatch(
            Event(LOGS_RESPONSE, detail=json.dumps(logs), request_id=event.request_id)
        )

    async def _on_clear_logs(self, event: Event) -> None:
        await self.pipeline.clear()
        self.target.dispatch(Event(CLEAR_LOGS_DONE, request_id=event.request_id))


class BridgeClient:
    """Observer-side requests over the shared event target."""

    def __init__(self, target: EventTarget, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.target = target
        self.timeout = timeout

    async def request_logs(self, timeout: float | None = None) -> list[dict[str, Any]]:
        """Fetch a flushed snapshot of the persisted log; ``[]`` on timeout."""
        try:
            event = await self._exchange(GET_LOGS, LOGS_RESPONSE, timeout)
        except BridgeTimeout:
            logger.warning("No log response within %.1fs", self._timeout(timeout))
            return []
        try:
            logs = json.loads(event.detail or "[]")
        except (TypeError, json.JSONDecodeError) as e:
            logger.warning("Discarding malformed log response: %s", e)
            return []
        return logs if isinstance(logs, list) else []

    async def clear_logs(self, timeout: float | None = None) -> bool:
        """Ask the content side to clear its log. False if nobody answered."""
        try:
            await self._exchange(CLEAR_LOGS, CLEAR_LOGS_DONE, timeout)
        except BridgeTimeout:
            logger.warning("No clear-logs confirmation within %.1fs", self._timeout(timeout))
            return False
        return True

    def _timeout(self, timeout: float | None) -> float:
        return self.timeout if timeout is None else timeout

    async def _exchange(
        self, request_type: str, response_type: str, timeout: float | None
    ) -> Event:
        loop = asyncio.get_running_loop()
        request_id = uuid.uuid4().hex
        response: asyncio.Future[Event] = loop.create_future()

        def on_response(event: Event) -> None:
            if event.request_id not in (None, request_id):
                return
            if not response.done():
                response.set_result(event)
            self.target.remove_listener(response_type, on_response)

        self.target.add_listener(response_type, on_response)
        try:
            self.target.dispatch(Event(request_type, request_id=request_id))
            return await asyncio.wait_for(response, self._timeout(timeout))
        except asyncio.TimeoutError as e:
            raise BridgeTimeout(f"{request_type} timed out") from e
        finally:
            self.target.remove_listener(response_type, on_response)
