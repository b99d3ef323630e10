"""Note record shape, rating samples, and legacy-format migration.

Persisted shape under the ``notes`` key::

    {username: {note: str, scores: [{value: 1..5, timestamp: ms}], createdAt: ms, updatedAt: ms}}

Older records carry a single nullable ``score`` instead of ``scores``. They are
upgraded by ``migrate()``, which runs every step in ``MIGRATIONS`` in order.
Each step recognises its own input shape and leaves anything else untouched,
so migration is idempotent and can run on every read.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

MAX_SAMPLES = 5
MIN_SCORE = 1
MAX_SCORE = 5
USERNAME_MARKER = "@"


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize(username: str) -> str:
    """Lowercase and drop the leading ``@`` marker."""
    return username.strip().lower().lstrip(USERNAME_MARKER)


def is_valid_score(value: Any) -> bool:
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and MIN_SCORE <= value <= MAX_SCORE
    )


# ── Migration ─────────────────────────────────────────────────


def _lift_single_score(record: dict[str, Any]) -> dict[str, Any]:
    """v1 → v2: a single nullable ``score`` becomes a one-sample ``scores`` list."""
    if "score" not in record:
        return record
    record = dict(record)
    old = record.pop("score")
    if "scores" not in record:
        if old is None:
            record["scores"] = []
        else:
            timestamp = record.get("updatedAt") or now_ms()
            record["scores"] = [{"value": old, "timestamp": timestamp}]
    return record


def _ensure_scores_list(record: dict[str, Any]) -> dict[str, Any]:
    if isinstance(record.get("scores"), list):
        return record
    record = dict(record)
    record["scores"] = []
    return record


MIGRATIONS: tuple[Callable[[dict[str, Any]], dict[str, Any]], ...] = (
    _lift_single_score,
    _ensure_scores_list,
)


def migrate(record: dict[str, Any]) -> dict[str, Any]:
    """Upgrade a raw record to the current shape. Returns a new dict when it changes."""
    for step in MIGRATIONS:
        record = step(record)
    return record


def migrate_all(notes: dict[str, Any] | None) -> tuple[dict[str, Any], bool]:
    """Migrate every record of a collection. Returns (collection, changed)."""
    migrated: dict[str, Any] = {}
    changed = False
    for username, record in (notes or {}).items():
        if not isinstance(record, dict):
            # Not something we can upgrade; keep it out of the cache
            changed = True
            continue
        new = migrate(record)
        changed = changed or new is not record
        migrated[username] = new
    return migrated, changed


# ── Typed views ───────────────────────────────────────────────


@dataclass(frozen=True)
class ScoreSample:
    """One rating with the time it was given."""

    value: int
    timestamp: int

    def to_dict(self) -> dict[str, int]:
        return {"value": self.value, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScoreSample:
        return cls(value=int(data["value"]), timestamp=int(data.get("timestamp", 0)))


@dataclass
class NoteRecord:
    """A user's note text and up to ``MAX_SAMPLES`` most recent ratings."""

    note: str = ""
    scores: list[ScoreSample] = field(default_factory=list)
    created_at: int = 0
    updated_at: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.note and not self.scores

    @property
    def average(self) -> float | None:
        return average_of(s.value for s in self.scores)

    def add_sample(self, value: int, timestamp: int) -> None:
        self.scores.append(ScoreSample(value, timestamp))
        if len(self.scores) > MAX_SAMPLES:
            self.scores = self.scores[-MAX_SAMPLES:]

    def to_dict(self) -> dict[str, Any]:
        return {
            "note": self.note,
            "scores": [s.to_dict() for s in self.scores],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NoteRecord:
        data = migrate(data)
        note = data.get("note")
        return cls(
            note=note if isinstance(note, str) else "",
            scores=[
                ScoreSample.from_dict(s)
                for s in data["scores"]
                if isinstance(s, dict) and "value" in s
            ],
            created_at=int(data.get("createdAt") or 0),
            updated_at=int(data.get("updatedAt") or 0),
        )


# ── Score presentation ────────────────────────────────────────


def average_of(values) -> float | None:
    """Mean rounded to one decimal, or None when there are no samples."""
    values = list(values)
    if not values:
        return None
    mean = sum(values) / len(values)
    # Round half up like the UI does, not banker's rounding
    return int(mean * 10 + 0.5) / 10


def tier(avg: float) -> int:
    """Integer colour bucket for an average, clamped to 1..5."""
    return max(MIN_SCORE, min(MAX_SCORE, int(avg + 0.5)))


def display_score(avg: float) -> str:
    """``4`` for whole averages, ``4.3`` otherwise."""
    if avg == int(avg):
        return str(int(avg))
    return f"{avg:.1f}"
