"""Annotation engine — finds username links and attaches note controls.

Two paths keep the page in sync with the note store:

- discovery (``scan``): look for qualifying ``<a href="/name">`` links that
  have not been decorated yet, wrap each one together with a note button.
  Driven by document insertions and client-side navigation through a
  debounced ``ScanScheduler``.
- refresh (``refresh_all``): re-render every existing button from the current
  note snapshot. Driven by note-store changes; never runs discovery.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from bs4 import Tag

from profilenotes.engine.scheduler import ScanScheduler
from profilenotes.notes.model import display_score, tier

if TYPE_CHECKING:
    from profilenotes.document import Document, KeyEvent, MutationRecord
    from profilenotes.engine.editor import NoteEditor
    from profilenotes.logs.pipeline import SourceLogger
    from profilenotes.notes.model import NoteRecord
    from profilenotes.notes.store import NoteStore

logger = logging.getLogger(__name__)

PROCESSED_ATTR = "data-pn-processed"
BUTTON_CLASS = "pn-note-btn"
WRAPPER_CLASS = "pn-username-wrapper"
MODAL_CLASS = "pn-modal"
INDICATOR_CLASS = "pn-has-note"
HAS_SCORE_CLASS = "pn-has-score"
SCORE_DISPLAY_CLASS = "pn-score-display"
TIER_CLASSES = tuple(f"pn-score-{n}" for n in range(1, 6))

# Anchors inside these are never decorated
OVERLAY_SELECTORS = (f".{MODAL_CLASS}", f".{WRAPPER_CLASS}")
EXCLUDED_CONTAINERS = ('[data-testid="tweetText"]',)

RESERVED_PATHS = frozenset(
    {"home", "explore", "notifications", "messages", "settings", "search", "compose", "i", "intent"}
)

PROFILE_HREF = re.compile(r"^/([A-Za-z0-9_]{1,15})$")

WRAPPER_STYLE = "display: inline-flex; align-items: center; white-space: nowrap;"
NOTE_ICON_PATH = (
    "M19 3H5c-1.1 0-2 .9-2 2v14c0 1.1.9 2 2 2h14c1.1 0 2-.9 2-2V5c0-1.1-.9-2-2-2zm0 "
    "16H5V5h14v14zM7 7h10v2H7zm0 4h10v2H7zm0 4h7v2H7z"
)


# ── Render state ──────────────────────────────────────────────


class ControlKind(enum.Enum):
    NO_NOTE = "no-note"
    HAS_NOTE = "has-note"
    HAS_SCORE = "has-score"


@dataclass(frozen=True)
class ControlState:
    """Everything a note button shows for one user."""

    kind: ControlKind
    label: str
    tier: int | None = None
    display: str | None = None
    count: int = 0


def control_state(username: str, record: NoteRecord | None) -> ControlState:
    if record is not None and record.scores:
        avg = record.average
        shown = display_score(avg)
        count = len(record.scores)
        plural = "s" if count > 1 else ""
        return ControlState(
            kind=ControlKind.HAS_SCORE,
            label=f"Avg: {shown}/5 ({count} score{plural}) - Click to edit",
            tier=tier(avg),
            display=shown,
            count=count,
        )
    if record is not None and record.note:
        return ControlState(ControlKind.HAS_NOTE, f"View/edit note for @{username}")
    return ControlState(ControlKind.NO_NOTE, f"Add note for @{username}")


def _classes(tag: Tag) -> list[str]:
    value = tag.get("class") or []
    if isinstance(value, str):
        value = value.split()
    return list(value)


def _closest(tag: Tag, selector: str) -> Tag | None:
    return tag.css.closest(selector)


@dataclass
class Candidate:
    element: Tag
    username: str


# ── Engine ────────────────────────────────────────────────────


class AnnotationEngine:
    """Decorates username links on one document and keeps them current."""

    def __init__(
        self,
        document: Document,
        notes: NoteStore,
        log: SourceLogger | None = None,
        *,
        debounce: float = 0.1,
        editor: NoteEditor | None = None,
    ) -> None:
        self.document = document
        self.notes = notes
        self.editor = editor
        self._log = log
        self.scheduler = ScanScheduler(self.scan, debounce)
        self._last_url = document.url
        self._teardown: list[Callable[[], None]] = []

    # ── Discovery ────────────────────────────────────────────

    def find_candidates(self) -> list[Candidate]:
        """Qualifying, not-yet-decorated username links in document order."""
        found: list[Candidate] = []
        for link in self.document.select('a[href^="/"]'):
            if link.has_attr(PROCESSED_ATTR):
                continue
            if any(_closest(link, sel) for sel in OVERLAY_SELECTORS):
                continue
            match = PROFILE_HREF.match(link.get("href", ""))
            if not match:
                continue
            username = match.group(1)
            text = link.get_text().strip()
            if not (text.startswith("@") or text.lower() == username.lower()):
                continue
            if any(_closest(link, sel) for sel in EXCLUDED_CONTAINERS):
                continue
            found.append(Candidate(link, username))
        return found

    def scan(self) -> int:
        """Decorate every new qualifying link. Returns how many were decorated."""
        injected = 0
        for candidate in self.find_candidates():
            if candidate.element.has_attr(PROCESSED_ATTR):
                continue
            if candidate.username.lower() in RESERVED_PATHS:
                continue
            self.decorate(candidate)
            injected += 1
        if injected:
            self._emit(f"Injected {injected} note buttons")
        return injected

    def decorate(self, candidate: Candidate) -> Tag:
        element, username = candidate.element, candidate.username
        element[PROCESSED_ATTR] = "true"

        soup = self.document.soup
        wrapper = soup.new_tag("span", attrs={"class": [WRAPPER_CLASS], "style": WRAPPER_STYLE})
        element.wrap(wrapper)

        button = soup.new_tag(
            "button",
            attrs={"class": [BUTTON_CLASS], "type": "button", "data-username": username},
        )
        wrapper.append(button)
        self.render(button, username)
        return button

    # ── Rendering ────────────────────────────────────────────

    def controls(self) -> list[Tag]:
        return self.document.select(f"button.{BUTTON_CLASS}")

    def render(self, button: Tag, username: str) -> ControlState:
        record = self.notes.get(username)
        state = control_state(username, record)
        soup = self.document.soup

        classes = [
            c for c in _classes(button) if c not in (HAS_SCORE_CLASS, INDICATOR_CLASS, *TIER_CLASSES)
        ]
        button.clear()
        if state.kind is ControlKind.HAS_SCORE:
            span = soup.new_tag("span", attrs={"class": [SCORE_DISPLAY_CLASS]})
            span.string = state.display
            button.append(span)
            classes += [HAS_SCORE_CLASS, f"pn-score-{state.tier}"]
            if record is not None and record.note:
                classes.append(INDICATOR_CLASS)
        else:
            svg = soup.new_tag(
                "svg", attrs={"viewBox": "0 0 24 24", "width": "16", "height": "16", "fill": "currentColor"}
            )
            svg.append(soup.new_tag("path", attrs={"d": NOTE_ICON_PATH}))
            button.append(svg)
            if state.kind is ControlKind.HAS_NOTE:
                classes.append(INDICATOR_CLASS)

        button["class"] = classes
        button["title"] = state.label
        button["aria-label"] = state.label
        return state

    def refresh_all(self, _snapshot: Any = None) -> int:
        """Re-render every existing control from the note cache."""
        buttons = self.controls()
        for button in buttons:
            self.render(button, button.get("data-username", ""))
        return len(buttons)

    # ── Interaction ──────────────────────────────────────────

    def activate(self, button: Tag) -> None:
        """A click on a note button opens the editor for its user."""
        if self.editor is not None:
            self.editor.open(button.get("data-username", ""))

    def first_username(self) -> str | None:
        """Username of the first control, else of the first discovery candidate."""
        buttons = self.controls()
        if buttons:
            return buttons[0].get("data-username")
        for candidate in self.find_candidates():
            if candidate.username.lower() not in RESERVED_PATHS:
                return candidate.username
        return None

    def handle_shortcut(self, event: KeyEvent) -> bool:
        """Alt+N opens the editor on the first username on the page."""
        if not (event.alt and not event.ctrl and not event.meta and event.key.lower() == "n"):
            return False
        if self.document.is_editing_text():
            return False
        if self.editor is None or self.editor.is_open:
            return False
        username = self.first_username()
        if not username:
            return False
        event.prevent_default()
        self._emit(f"Keyboard shortcut Alt+N: opening modal for @{username}")
        self.editor.open(username)
        return True

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        """Load notes, decorate the current page, and start watching for changes."""
        await self.notes.load()
        self.notes.attach()
        self._teardown.append(self.notes.subscribe(self.refresh_all))

        self.scan()

        self._teardown.append(self.document.observe_mutations(self._on_mutations))
        self._teardown.append(self.document.observe_navigation(self._on_navigation))
        self._teardown.append(self.document.add_key_listener(self.handle_shortcut))
        self._emit("Annotation engine started")

    def stop(self) -> None:
        self.scheduler.cancel()
        for undo in self._teardown:
            undo()
        self._teardown.clear()

    def _on_mutations(self, records: list[MutationRecord]) -> None:
        if any(r.added_nodes for r in records):
            self.scheduler.trigger()
        # Some routers swap content without announcing the URL change
        self._check_url()

    def _on_navigation(self, _url: str) -> None:
        self._check_url()

    def _check_url(self) -> None:
        if self.document.url != self._last_url:
            self._last_url = self.document.url
            self.scheduler.trigger()

    def _emit(self, message: str) -> None:
        if self._log is not None:
            self._log.log(message)
        else:
            logger.debug(message)
