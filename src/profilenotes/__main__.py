"""Entry point: python -m profilenotes <command>

- annotate PAGE.html   Decorate a saved page and print the result
- logs                 Print the persisted debug log
- clear-logs           Delete the persisted debug log
- export [FILE]        Write all notes as JSON (stdout by default)
- import FILE          Merge notes from an exported JSON file
- serve [PAGE.html]    Observer daemon (HTTP endpoint over the event bridge)
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

from profilenotes.config import NotesConfig, load_config

USAGE = """\
Usage: python -m profilenotes [annotate|logs|clear-logs|export|import|serve]
  annotate PAGE   — Decorate a saved page and print the result
  logs            — Print the persisted debug log
  clear-logs      — Delete the persisted debug log
  export [FILE]   — Write all notes as JSON
  import FILE     — Merge notes from an exported JSON file
  serve [PAGE]    — Observer daemon with HTTP endpoint"""


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _area(config: NotesConfig):
    from profilenotes.storage.store import StorageArea

    return StorageArea(config.storage.path, config.storage.quota_bytes)


async def _annotate(config: NotesConfig, page: Path) -> str:
    from profilenotes.contexts import ContentScript
    from profilenotes.document import Document

    document = Document(page.read_text(encoding="utf-8"))
    content = ContentScript.create(document, _area(config), config)
    await content.start()
    await content.stop()
    return document.render()


async def _logs(config: NotesConfig) -> list:
    from profilenotes.contexts import ExtensionContext

    context = ExtensionContext.create("popup", _area(config), config)
    entries = await context.logs.get_all()
    await context.close()
    return entries


async def _clear_logs(config: NotesConfig) -> None:
    from profilenotes.contexts import ExtensionContext

    context = ExtensionContext.create("popup", _area(config), config)
    await context.logs.clear()
    await context.close()


async def _export(config: NotesConfig) -> str:
    from profilenotes.contexts import ExtensionContext
    from profilenotes.notes.transfer import export_notes

    context = ExtensionContext.create("popup", _area(config), config)
    notes = await context.notes.load()
    await context.close()
    return export_notes(notes)


async def _import(config: NotesConfig, source: Path) -> str:
    from profilenotes.contexts import ExtensionContext
    from profilenotes.errors import MalformedRecord
    from profilenotes.notes.transfer import import_notes

    context = ExtensionContext.create("popup", _area(config), config)
    existing = await context.notes.load()
    try:
        merged, result = import_notes(existing, source.read_text(encoding="utf-8"))
    except MalformedRecord as e:
        context.log.error("Import error:", e)
        await context.close()
        return f"Failed to import notes: {e}"
    if not await context.notes.replace_all(merged):
        await context.close()
        return "Failed to import notes: storage unavailable"
    context.log.log(result.summary())
    await context.close()
    return result.summary()


def _run_serve(config: NotesConfig, page: Path | None) -> None:
    from profilenotes.daemon import AlreadyRunning, ObserverDaemon

    html = page.read_text(encoding="utf-8") if page else ""
    daemon = ObserverDaemon(config, html)
    try:
        asyncio.run(daemon.run())
    except AlreadyRunning as e:
        print(f"Not starting: {e}", file=sys.stderr)
        sys.exit(1)


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    arg = Path(sys.argv[2]) if len(sys.argv) > 2 else None

    config = load_config()
    _setup_logging(config.log_level)

    if cmd == "annotate" and arg:
        print(asyncio.run(_annotate(config, arg)))
    elif cmd == "logs":
        for entry in asyncio.run(_logs(config)):
            print(f"{entry.timestamp} [{entry.source}:{entry.level}] {entry.message}")
    elif cmd == "clear-logs":
        asyncio.run(_clear_logs(config))
    elif cmd == "export":
        data = asyncio.run(_export(config))
        if arg:
            arg.write_text(data, encoding="utf-8")
        else:
            print(data)
    elif cmd == "import" and arg:
        print(asyncio.run(_import(config, arg)))
    elif cmd == "serve":
        _run_serve(config, arg)
    else:
        print(USAGE)
        sys.exit(1)


if __name__ == "__main__":
    main()
