"""JSON export and tolerant import of note collections."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from profilenotes.errors import MalformedRecord
from profilenotes.notes.model import is_valid_score, normalize, now_ms

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    """Counts reported back to the user after an import."""

    new: int = 0
    updated: int = 0
    skipped: int = 0

    def summary(self) -> str:
        text = f"Imported {self.new} new notes, updated {self.updated} existing notes."
        if self.skipped:
            text += f" Skipped {self.skipped} malformed entries."
        return text


def export_notes(notes: dict[str, Any]) -> str:
    return json.dumps(notes, indent=2, ensure_ascii=False)


def coerce_record(data: Any) -> dict[str, Any]:
    """Bring one imported entry into the current record shape.

    Accepts the current multi-sample form and the legacy single ``score``
    form. Raises MalformedRecord for anything else.
    """
    if not isinstance(data, dict):
        raise MalformedRecord(f"expected an object, got {type(data).__name__}")

    now = now_ms()
    scores: list[dict[str, int]] = []
    if isinstance(data.get("scores"), list):
        for sample in data["scores"]:
            if isinstance(sample, dict) and is_valid_score(sample.get("value")):
                scores.append(
                    {"value": sample["value"], "timestamp": int(sample.get("timestamp") or now)}
                )
    elif data.get("score") is not None:
        if not is_valid_score(data["score"]):
            raise MalformedRecord(f"score out of range: {data['score']!r}")
        scores = [{"value": data["score"], "timestamp": int(data.get("updatedAt") or now)}]

    note = data.get("note")
    if not isinstance(note, str) and not scores:
        raise MalformedRecord("entry has neither note text nor scores")

    return {
        "note": (note or "").strip() if isinstance(note, str) else "",
        "scores": scores[-5:],
        "createdAt": int(data.get("createdAt") or now),
        "updatedAt": int(data.get("updatedAt") or now),
    }


def import_notes(
    existing: dict[str, Any], payload: str | dict[str, Any]
) -> tuple[dict[str, Any], ImportResult]:
    """Merge an exported collection into ``existing``. Imported entries win."""
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise MalformedRecord(f"not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedRecord("import file must contain a JSON object")

    merged = dict(existing)
    result = ImportResult()
    for username, data in payload.items():
        try:
            record = coerce_record(data)
        except MalformedRecord as e:
            logger.debug("Skipping %r: %s", username, e)
            result.skipped += 1
            continue
        if not record["note"] and not record["scores"]:
            result.skipped += 1
            continue
        key = normalize(username)
        if key in merged:
            result.updated += 1
        else:
            result.new += 1
        merged[key] = record
    return merged, result
