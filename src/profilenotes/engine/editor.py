"""Note editor overlay.

State machine::

    closed → open → saving   → closed
                  → scoring  → open    (rating buttons stay in the editor)
                  → scoring  → closed  (number-key accelerator)
                  → deleting → open | closed

The overlay lives in the document as ``div.pn-modal`` so discovery skips
anything inside it.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from bs4 import Tag

from profilenotes.engine.annotator import MODAL_CLASS
from profilenotes.notes.model import MAX_SAMPLES, MAX_SCORE, MIN_SCORE, display_score

if TYPE_CHECKING:
    from profilenotes.document import Document, KeyEvent
    from profilenotes.logs.pipeline import SourceLogger
    from profilenotes.notes.store import NoteStore

logger = logging.getLogger(__name__)

OPEN_CLASS = "pn-modal-open"
TEXTAREA_CLASS = "pn-modal-textarea"
HISTORY_LIST_CLASS = "pn-score-history-list"
_SCORE_KEYS = tuple(str(n) for n in range(MIN_SCORE, MAX_SCORE + 1))


class EditorState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    SAVING = "saving"
    SCORING = "scoring"
    DELETING = "deleting"


@dataclass(frozen=True)
class HistoryEntry:
    """One rating row; ``index`` is the sample's position in stored order."""

    index: int
    value: int
    label: str


@dataclass
class EditorView:
    username: str = ""
    text: str = ""
    history: list[HistoryEntry] = field(default_factory=list)
    count_label: str = ""
    average_label: str = ""
    meta: str = ""
    can_delete: bool = False


def format_score_date(timestamp: int, now: datetime | None = None) -> str:
    """Relative date for the rating history."""
    when = datetime.fromtimestamp(timestamp / 1000)
    now = now or datetime.now()
    days = (now - when).days
    if days <= 0:
        return f"Today {when:%H:%M}"
    if days == 1:
        return "Yesterday"
    if days < 7:
        return f"{days} days ago"
    return f"{when:%b} {when.day}, {when.year}"


class NoteEditor:
    """Modal editor for one user's note and rating history."""

    def __init__(
        self,
        document: Document,
        notes: NoteStore,
        log: SourceLogger | None = None,
        *,
        confirm: Callable[[str], bool] = lambda message: True,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.document = document
        self.notes = notes
        self.confirm = confirm
        self._log = log
        self._clock = clock
        self.state = EditorState.CLOSED
        self.username: str | None = None
        self.view = EditorView()
        self._modal: Tag | None = None
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def is_open(self) -> bool:
        return self.state is not EditorState.CLOSED

    # ── Overlay element ──────────────────────────────────────

    def _ensure_modal(self) -> Tag:
        if self._modal is not None:
            return self._modal
        soup = self.document.soup
        modal = soup.new_tag("div", attrs={"class": [MODAL_CLASS]})
        title = soup.new_tag("h3", attrs={"class": ["pn-modal-title"]})
        textarea = soup.new_tag("textarea", attrs={"class": [TEXTAREA_CLASS]})
        history = soup.new_tag("div", attrs={"class": [HISTORY_LIST_CLASS]})
        modal.append(title)
        modal.append(textarea)
        modal.append(history)
        self.document.body.append(modal)
        self._modal = modal
        return modal

    @property
    def textarea(self) -> Tag:
        return self._ensure_modal().select_one(f".{TEXTAREA_CLASS}")

    def focus_text(self) -> None:
        self.document.focus(self.textarea)

    def blur_text(self) -> None:
        if self._modal is not None and self.document.active_element is self.textarea:
            self.document.focus(None)

    # ── Open / close ─────────────────────────────────────────

    def open(self, username: str) -> None:
        """Load the current note text and rating history and show the overlay."""
        self._emit(f"Opening modal for @{username}")
        record = self.notes.get(username)
        modal = self._ensure_modal()
        self.username = username
        self.view = EditorView(username=username, text=record.note if record else "")
        self._render_history()

        modal.select_one(".pn-modal-title").string = f"Note for @{username}"
        self.textarea.string = self.view.text
        if OPEN_CLASS not in modal["class"]:
            modal["class"] = list(modal["class"]) + [OPEN_CLASS]
        self.state = EditorState.OPEN

        if self._unsubscribe is None:
            self._unsubscribe = self.notes.subscribe(self._on_notes_changed)

    def close(self) -> None:
        if self._modal is not None:
            self._modal["class"] = [c for c in self._modal["class"] if c != OPEN_CLASS]
        self.blur_text()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.state = EditorState.CLOSED
        self.username = None

    def set_text(self, text: str) -> None:
        self.view.text = text
        self.textarea.string = text

    # ── Actions ──────────────────────────────────────────────

    async def save(self) -> bool:
        """Persist the text only, then close."""
        self._require_open()
        self.state = EditorState.SAVING
        ok = await self.notes.upsert(self.username, self.view.text, None)
        self.close()
        return ok

    async def add_score(self, value: int) -> bool:
        """Append a rating now and stay open with the history re-rendered."""
        self._require_open()
        if not MIN_SCORE <= value <= MAX_SCORE:
            return False
        self._emit(f"Adding score {value} for @{self.username}")
        self.state = EditorState.SCORING
        ok = await self.notes.upsert(self.username, self.view.text, value)
        self.state = EditorState.OPEN
        self._render_history()
        return ok

    async def quick_score(self, value: int) -> bool:
        """Number-key accelerator: append a rating and close in one step."""
        self._require_open()
        self._emit(f"Quick score {value} for @{self.username}")
        self.state = EditorState.SCORING
        ok = await self.notes.upsert(self.username, self.view.text, value)
        self.close()
        return ok

    async def delete_sample(self, index: int) -> bool:
        self._require_open()
        self.state = EditorState.DELETING
        ok = await self.notes.delete_sample(self.username, index)
        self.state = EditorState.OPEN
        self._render_history()
        return ok

    async def delete_all(self) -> bool:
        """Remove the whole record after confirmation, then close."""
        self._require_open()
        if not self.confirm(f"Delete all data for @{self.username}?"):
            return False
        self.state = EditorState.DELETING
        ok = await self.notes.delete(self.username)
        self.close()
        return ok

    async def handle_key(self, event: KeyEvent) -> bool:
        """Keyboard handling while the editor is open."""
        if not self.is_open:
            return False
        in_text = self.document.active_element is self.textarea

        if event.key == "Escape":
            self.close()
            return True
        if event.key == "Enter" and event.shift and in_text:
            event.prevent_default()
            await self.save()
            return True
        if event.key == "Tab" and not in_text:
            event.prevent_default()
            self.focus_text()
            return True
        if not in_text and event.key in _SCORE_KEYS:
            event.prevent_default()
            event.stop_propagation()
            await self.quick_score(int(event.key))
            return True
        return False

    def attach_keys(self) -> Callable[[], None]:
        return self.document.add_key_listener(self.handle_key)

    # ── History ──────────────────────────────────────────────

    def _on_notes_changed(self, _snapshot) -> None:
        if self.is_open and self.state is EditorState.OPEN:
            self._render_history()

    def _render_history(self) -> None:
        username = self.username or self.view.username
        record = self.notes.get(username)
        scores = record.scores if record else []
        now = self._clock()

        self.view.history = [
            HistoryEntry(index=i, value=s.value, label=format_score_date(s.timestamp, now))
            for i, s in reversed(list(enumerate(scores)))
        ]
        if scores:
            self.view.count_label = f"({len(scores)}/{MAX_SAMPLES})"
            self.view.average_label = f"Avg: {display_score(record.average)}"
        else:
            self.view.count_label = ""
            self.view.average_label = ""

        if record is not None and not record.is_empty:
            updated = datetime.fromtimestamp(record.updated_at / 1000)
            self.view.meta = f"Last updated: {updated:%Y-%m-%d %H:%M}"
            self.view.can_delete = True
        else:
            self.view.meta = ""
            self.view.can_delete = False

        if self._modal is not None:
            self._render_history_element()

    def _render_history_element(self) -> None:
        soup = self.document.soup
        container = self._modal.select_one(f".{HISTORY_LIST_CLASS}")
        container.clear()
        for entry in self.view.history:
            row = soup.new_tag(
                "div", attrs={"class": ["pn-score-entry"], "data-index": str(entry.index)}
            )
            value = soup.new_tag("span", attrs={"class": ["pn-score-value", f"pn-score-{entry.value}"]})
            value.string = str(entry.value)
            date = soup.new_tag("span", attrs={"class": ["pn-score-date"]})
            date.string = entry.label
            row.append(value)
            row.append(date)
            container.append(row)

    def _require_open(self) -> None:
        if not self.is_open or not self.username:
            raise RuntimeError("Editor is not open")

    def _emit(self, message: str) -> None:
        if self._log is not None:
            self._log.log(message)
        else:
            logger.debug(message)
