"""A small live-document model the annotator and the bridge run against.

The tree is a BeautifulSoup document. Content loaders add nodes through
``insert_html()``, which reports the insertion to mutation observers the way
a browser's MutationObserver would. ``navigate()`` changes the URL without a
reload. ``window`` is the event target shared by every script on the page,
including ones that cannot see each other's objects.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

_PARSER = "html.parser"
_EDITABLE_TAGS = ("input", "textarea")


# ── Events ────────────────────────────────────────────────────


@dataclass
class Event:
    """A dispatched event. ``detail`` carries the payload, if any."""

    type: str
    detail: Any = None
    request_id: str | None = None


@dataclass
class KeyEvent:
    key: str
    alt: bool = False
    ctrl: bool = False
    meta: bool = False
    shift: bool = False
    default_prevented: bool = False
    propagation_stopped: bool = False

    def prevent_default(self) -> None:
        self.default_prevented = True

    def stop_propagation(self) -> None:
        self.propagation_stopped = True


EventListener = Callable[[Event], Any]


class EventTarget:
    """Synchronous same-document event dispatch."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[EventListener]] = {}
        self._tasks: set[asyncio.Task] = set()

    def add_listener(self, event_type: str, listener: EventListener) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def remove_listener(self, event_type: str, listener: EventListener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event_type: str) -> int:
        return len(self._listeners.get(event_type, []))

    def dispatch(self, event: Event) -> int:
        """Call every listener for ``event.type`` in registration order.

        Coroutines returned by listeners are scheduled on the running loop.
        Returns the number of listeners invoked.
        """
        listeners = list(self._listeners.get(event.type, []))
        for listener in listeners:
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._tasks.add(task)
                    task.add_done_callback(lambda t, kind=event.type: self._task_done(t, kind))
            except Exception:
                logger.exception("Listener for %s failed", event.type)
        return len(listeners)

    def _task_done(self, task: asyncio.Task, event_type: str) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Listener for %s failed", event_type, exc_info=task.exception())


# ── Document ──────────────────────────────────────────────────


@dataclass
class MutationRecord:
    """Nodes added under ``target`` in one insertion."""

    target: Tag
    added_nodes: list[Tag] = field(default_factory=list)


MutationCallback = Callable[[list[MutationRecord]], None]
NavigationCallback = Callable[[str], None]
KeyListener = Callable[[KeyEvent], Any]


class Document:
    """A page: tree, URL, focus, key events and a shared event target."""

    def __init__(self, html: str = "", url: str = "https://x.com/home") -> None:
        self.soup = BeautifulSoup(html or "<html><body></body></html>", _PARSER)
        if self.soup.body is None:
            body = self.soup.new_tag("body")
            for child in list(self.soup.contents):
                body.append(child.extract())
            self.soup.append(body)
        self.url = url
        self.window = EventTarget()
        self.active_element: Tag | None = None
        self._mutation_observers: list[MutationCallback] = []
        self._navigation_observers: list[NavigationCallback] = []
        self._key_listeners: list[KeyListener] = []

    @property
    def body(self) -> Tag:
        return self.soup.body

    def select(self, selector: str) -> list[Tag]:
        return self.soup.select(selector)

    def select_one(self, selector: str) -> Tag | None:
        return self.soup.select_one(selector)

    def new_tag(self, name: str, **attrs: Any) -> Tag:
        return self.soup.new_tag(name, attrs=attrs)

    def render(self) -> str:
        return str(self.soup)

    # ── Content loading ──────────────────────────────────────

    def insert_html(self, html: str, parent: Tag | str | None = None) -> list[Tag]:
        """Append parsed ``html`` under ``parent`` (default: body) and notify observers."""
        if isinstance(parent, str):
            target = self.select_one(parent)
            if target is None:
                raise ValueError(f"no element matches {parent!r}")
        else:
            target = parent if parent is not None else self.body

        fragment = BeautifulSoup(html, _PARSER)
        added: list[Tag] = []
        for node in list(fragment.contents):
            node = node.extract()
            target.append(node)
            if isinstance(node, Tag):
                added.append(node)

        if added:
            self._notify_mutations([MutationRecord(target, added)])
        return added

    def remove(self, tag: Tag) -> None:
        tag.decompose()

    def observe_mutations(self, callback: MutationCallback) -> Callable[[], None]:
        self._mutation_observers.append(callback)
        return lambda: self._discard(self._mutation_observers, callback)

    def _notify_mutations(self, records: list[MutationRecord]) -> None:
        for callback in list(self._mutation_observers):
            try:
                callback(records)
            except Exception:
                logger.exception("Mutation observer failed")

    # ── Navigation ───────────────────────────────────────────

    def navigate(self, url: str) -> None:
        """Client-side route change (no reload)."""
        if url == self.url:
            return
        self.url = url
        for callback in list(self._navigation_observers):
            try:
                callback(url)
            except Exception:
                logger.exception("Navigation observer failed")

    def observe_navigation(self, callback: NavigationCallback) -> Callable[[], None]:
        self._navigation_observers.append(callback)
        return lambda: self._discard(self._navigation_observers, callback)

    # ── Focus & keyboard ─────────────────────────────────────

    def focus(self, element: Tag | None) -> None:
        self.active_element = element

    def is_editing_text(self) -> bool:
        el = self.active_element
        if el is None:
            return False
        if el.name in _EDITABLE_TAGS:
            return True
        if el.has_attr("contenteditable"):
            return str(el["contenteditable"]).lower() in ("", "true")
        return False

    def add_key_listener(self, listener: KeyListener) -> Callable[[], None]:
        self._key_listeners.append(listener)
        return lambda: self._discard(self._key_listeners, listener)

    async def press_key(self, event: KeyEvent) -> KeyEvent:
        """Deliver a keydown to listeners in order until one stops propagation."""
        for listener in list(self._key_listeners):
            result = listener(event)
            if asyncio.iscoroutine(result):
                await result
            if event.propagation_stopped:
                break
        return event

    @staticmethod
    def _discard(listeners: list, item: Any) -> None:
        if item in listeners:
            listeners.remove(item)
