"""Tests for the shared persisted store."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import pytest

from profilenotes.errors import StorageUnavailable
from profilenotes.storage.store import PersistentStore, StorageArea, StorageChange


async def settle() -> None:
    """Let queued change notifications run."""
    for _ in range(3):
        await asyncio.sleep(0)


@pytest.fixture
def area() -> StorageArea:
    return StorageArea()


class TestGetSet:
    @pytest.mark.asyncio
    async def test_get_missing_key(self, area: StorageArea):
        store = PersistentStore(area)
        assert await store.get("notes") == {}

    @pytest.mark.asyncio
    async def test_set_overwrites_whole_key(self, area: StorageArea):
        store = PersistentStore(area)
        await store.set({"notes": {"alice": {"note": "a"}}})
        await store.set({"notes": {"bob": {"note": "b"}}})
        assert await store.get("notes") == {"notes": {"bob": {"note": "b"}}}

    @pytest.mark.asyncio
    async def test_get_many_and_all(self, area: StorageArea):
        store = PersistentStore(area)
        await store.set({"a": 1, "b": 2})
        assert await store.get(["a", "c"]) == {"a": 1}
        assert await store.get() == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_values_are_copies(self, area: StorageArea):
        store = PersistentStore(area)
        value = {"alice": {"note": "x"}}
        await store.set({"notes": value})
        value["alice"]["note"] = "mutated"
        result = await store.get("notes")
        result["notes"]["alice"]["note"] = "also mutated"
        assert (await store.get("notes"))["notes"]["alice"]["note"] == "x"

    @pytest.mark.asyncio
    async def test_remove(self, area: StorageArea):
        store = PersistentStore(area)
        await store.set({"a": 1})
        await store.remove("a")
        assert await store.get("a") == {}


class TestChangeNotification:
    @pytest.mark.asyncio
    async def test_writer_is_notified(self, area: StorageArea):
        store = PersistentStore(area)
        seen: list[StorageChange] = []
        store.on_change(seen.append)
        await store.set({"notes": {"a": 1}})
        await settle()
        assert seen == [StorageChange("notes", None, {"a": 1})]

    @pytest.mark.asyncio
    async def test_other_context_is_notified_in_order(self, area: StorageArea):
        writer, reader = PersistentStore(area), PersistentStore(area)
        seen: list[StorageChange] = []
        reader.on_change(seen.append)
        await writer.set({"k": 1})
        await writer.set({"k": 2})
        await settle()
        assert [(c.old_value, c.new_value) for c in seen] == [(None, 1), (1, 2)]

    @pytest.mark.asyncio
    async def test_remove_notifies_with_none(self, area: StorageArea):
        store = PersistentStore(area)
        await store.set({"k": 1})
        seen: list[StorageChange] = []
        store.on_change(seen.append)
        await store.remove("k")
        await settle()
        assert seen == [StorageChange("k", 1, None)]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, area: StorageArea):
        store = PersistentStore(area)
        seen: list[StorageChange] = []
        unsubscribe = store.on_change(seen.append)
        unsubscribe()
        await store.set({"k": 1})
        await settle()
        assert seen == []

    @pytest.mark.asyncio
    async def test_async_listener(self, area: StorageArea):
        store = PersistentStore(area)
        seen: list[str] = []

        async def listener(change: StorageChange) -> None:
            seen.append(change.key)

        store.on_change(listener)
        await store.set({"k": 1})
        await settle()
        assert seen == ["k"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, area: StorageArea):
        store = PersistentStore(area)
        seen: list[str] = []

        def broken(change: StorageChange) -> None:
            raise RuntimeError("boom")

        store.on_change(broken)
        store.on_change(lambda c: seen.append(c.key))
        await store.set({"k": 1})
        await settle()
        assert seen == ["k"]


class TestCompareAndSet:
    @pytest.mark.asyncio
    async def test_succeeds_on_current_version(self, area: StorageArea):
        store = PersistentStore(area)
        _, version = await store.get_versioned("notes")
        assert await store.compare_and_set("notes", version, {"a": 1})
        assert (await store.get("notes"))["notes"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_fails_after_concurrent_write(self, area: StorageArea):
        mine, theirs = PersistentStore(area), PersistentStore(area)
        _, version = await mine.get_versioned("notes")
        await theirs.set({"notes": {"theirs": 1}})
        assert not await mine.compare_and_set("notes", version, {"mine": 1})
        assert (await mine.get("notes"))["notes"] == {"theirs": 1}


class TestPersistence:
    @pytest.mark.asyncio
    async def test_round_trip_through_file(self, tmp_path: Path):
        path = tmp_path / "storage.json"
        store = PersistentStore(StorageArea(path))
        await store.set({"notes": {"alice": {"note": "hi"}}})
        assert json.loads(path.read_text())["notes"]["alice"]["note"] == "hi"

        reopened = PersistentStore(StorageArea(path))
        assert await reopened.get("notes") == {"notes": {"alice": {"note": "hi"}}}

    def test_corrupt_file_starts_empty(self, tmp_path: Path):
        path = tmp_path / "storage.json"
        path.write_text("{not json")
        assert StorageArea(path).read() == {}


class TestFailures:
    @pytest.mark.asyncio
    async def test_quota_exceeded_raises_and_keeps_old_value(self):
        area = StorageArea(quota_bytes=40)
        store = PersistentStore(area)
        await store.set({"k": "small"})
        seen: list[StorageChange] = []
        store.on_change(seen.append)

        with pytest.raises(StorageUnavailable):
            await store.set({"k": "x" * 100})
        await settle()
        assert (await store.get("k"))["k"] == "small"
        assert seen == []

    @pytest.mark.asyncio
    async def test_unwritable_path_raises(self, tmp_path: Path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        store = PersistentStore(StorageArea(blocker / "storage.json"))
        with pytest.raises(StorageUnavailable):
            await store.set({"k": 1})


class TestVersions:
    @pytest.mark.asyncio
    async def test_changes_carry_increasing_versions(self, area: StorageArea):
        store = PersistentStore(area)
        seen: list[StorageChange] = []
        store.on_change(seen.append)
        await store.set({"notes": {"a": 1}})
        await store.set({"notes": {"a": 2}})
        await settle()
        assert [c.version for c in seen] == [1, 2]
        assert (await store.get_versioned("notes"))[1] == 2


class TestAsyncListenerFailure:
    @pytest.mark.asyncio
    async def test_failure_is_logged(self, area: StorageArea, caplog):
        store = PersistentStore(area)

        async def broken(change: StorageChange) -> None:
            raise RuntimeError("listener blew up")

        store.on_change(broken)
        with caplog.at_level(logging.ERROR):
            await store.set({"k": 1})
            await settle()
        assert "Storage change listener failed for key 'k'" in caplog.text
        assert "listener blew up" in caplog.text


class TestQuotaMessage:
    @pytest.mark.asyncio
    async def test_counts_encoded_bytes(self):
        store = PersistentStore(StorageArea(quota_bytes=10))
        with pytest.raises(StorageUnavailable, match="29 bytes > 10 bytes"):
            await store.set({"k": "é" * 10})
