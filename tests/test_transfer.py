"""Tests for note export and import."""

import json

import pytest

from profilenotes.errors import MalformedRecord
from profilenotes.notes.transfer import ImportResult, coerce_record, export_notes, import_notes


class TestExport:
    def test_pretty_json(self):
        text = export_notes({"alice": {"note": "é", "scores": []}})
        assert json.loads(text) == {"alice": {"note": "é", "scores": []}}
        assert "é" in text
        assert "\n  " in text


class TestCoerce:
    def test_legacy_score(self):
        record = coerce_record({"note": "n", "score": 4, "updatedAt": 10, "createdAt": 1})
        assert record == {
            "note": "n",
            "scores": [{"value": 4, "timestamp": 10}],
            "createdAt": 1,
            "updatedAt": 10,
        }

    def test_drops_invalid_samples(self):
        record = coerce_record({"scores": [{"value": 9}, {"value": 2, "timestamp": 3}, "x"]})
        assert record["scores"] == [{"value": 2, "timestamp": 3}]

    def test_keeps_last_five(self):
        samples = [{"value": v, "timestamp": i} for i, v in enumerate([1, 2, 3, 4, 5, 1])]
        assert [s["value"] for s in coerce_record({"scores": samples})["scores"]] == [2, 3, 4, 5, 1]

    @pytest.mark.parametrize("data", ["text", 3, None, {"score": 7}, {"updatedAt": 1}])
    def test_malformed(self, data):
        with pytest.raises(MalformedRecord):
            coerce_record(data)


class TestImport:
    def test_merge_counts(self):
        existing = {"alice": {"note": "old", "scores": []}}
        payload = json.dumps({
            "@Alice": {"note": "new", "scores": []},
            "bob": {"note": "", "score": 3, "updatedAt": 5},
            "junk": "nope",
        })
        merged, result = import_notes(existing, payload)
        assert result == ImportResult(new=1, updated=1, skipped=1)
        assert merged["alice"]["note"] == "new"
        assert merged["bob"]["scores"] == [{"value": 3, "timestamp": 5}]
        assert existing["alice"]["note"] == "old"

    def test_empty_entries_are_skipped(self):
        _, result = import_notes({}, {"carol": {"note": "  ", "scores": []}})
        assert result.skipped == 1
        assert result.new == 0

    def test_summary(self):
        assert ImportResult(2, 1).summary() == "Imported 2 new notes, updated 1 existing notes."
        assert ImportResult(0, 0, 3).summary().endswith("Skipped 3 malformed entries.")

    @pytest.mark.parametrize("payload", ["{broken", "[1, 2]"])
    def test_rejects_bad_payload(self, payload):
        with pytest.raises(MalformedRecord):
            import_notes({}, payload)
