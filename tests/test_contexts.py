"""End-to-end tests across the content, background and popup contexts."""

from __future__ import annotations

import asyncio

import pytest

from profilenotes.bridge import BridgeClient
from profilenotes.config import NotesConfig
from profilenotes.contexts import BackgroundWorker, ContentScript, ExtensionContext
from profilenotes.document import Document
from profilenotes.engine.annotator import BUTTON_CLASS, HAS_SCORE_CLASS
from profilenotes.notes.store import NOTES_KEY
from profilenotes.storage.store import StorageArea

PAGE = '<main><a href="/alice">@alice</a><a href="/bob">@bob</a></main>'


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def config(tmp_path) -> NotesConfig:
    config = NotesConfig()
    config.logs.debounce_ms = 20
    config.annotator.debounce_ms = 20
    config.storage.path = tmp_path / "storage.json"
    return config


@pytest.fixture
def area(config: NotesConfig) -> StorageArea:
    return StorageArea(config.storage.path)


class TestBackgroundWorker:
    @pytest.mark.asyncio
    async def test_install_initialises_notes(self, area, config):
        worker = BackgroundWorker.create(area, config)
        await worker.on_installed("install")
        assert area.read(NOTES_KEY) == {NOTES_KEY: {}}
        assert worker.badge_text == ""
        await worker.stop()

    @pytest.mark.asyncio
    async def test_install_keeps_existing_notes(self, area, config):
        popup = ExtensionContext.create("popup", area, config)
        await popup.notes.upsert("alice", "x")
        worker = BackgroundWorker.create(area, config)
        await worker.on_installed("install")
        assert "alice" in area.read(NOTES_KEY)[NOTES_KEY]
        assert worker.badge_text == "1"

    @pytest.mark.asyncio
    async def test_badge_follows_changes(self, area, config):
        worker = BackgroundWorker.create(area, config)
        await worker.start()
        popup = ExtensionContext.create("popup", area, config)

        await popup.notes.upsert("alice", "x")
        await popup.notes.upsert("bob", "", 3)
        await settle()
        assert worker.badge_text == "2"

        await popup.notes.delete("alice")
        await popup.notes.delete("bob")
        await settle()
        assert worker.badge_text == ""
        await worker.stop()
        await popup.close()


class TestContentScript:
    @pytest.mark.asyncio
    async def test_popup_edit_reaches_page(self, area, config):
        document = Document(PAGE)
        content = ContentScript.create(document, area, config)
        await content.start()
        popup = ExtensionContext.create("popup", area, config)

        await popup.notes.upsert("bob", "", 5)
        await settle()

        button = document.select_one(f'button.{BUTTON_CLASS}[data-username="bob"]')
        assert {HAS_SCORE_CLASS, "pn-score-5"} <= set(button["class"])
        await content.stop()
        await popup.close()

    @pytest.mark.asyncio
    async def test_observer_sees_every_context(self, area, config):
        document = Document(PAGE)
        content = ContentScript.create(document, area, config)
        await content.start()
        worker = BackgroundWorker.create(area, config)
        await worker.on_installed("update", "1.2.0")
        await worker.context.logs.flush()

        logs = await BridgeClient(document.window, 0.5).request_logs()
        messages = [(e["s"], e["m"]) for e in logs]
        assert ("content", "Profile notes initialized") in messages
        assert ("content", "Injected 2 note buttons") in messages
        assert ("background", "Profile notes updated to version 1.2.0") in messages
        await content.stop()
        await worker.stop()

    @pytest.mark.asyncio
    async def test_stop_flushes_and_detaches(self, area, config):
        document = Document(PAGE)
        content = ContentScript.create(document, area, config)
        await content.start()
        await content.stop()

        assert content.context.logs.pending == 0
        assert await BridgeClient(document.window, 0.05).request_logs() == []

    @pytest.mark.asyncio
    async def test_storage_survives_restart(self, area, config):
        popup = ExtensionContext.create("popup", area, config)
        await popup.notes.upsert("alice", "kept", 4)
        await popup.close()

        reopened = ExtensionContext.create("popup", StorageArea(config.storage.path), config)
        await reopened.notes.load()
        assert reopened.notes.average("alice") == 4.0
